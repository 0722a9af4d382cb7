# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Lifecycle events for backup, restore and export jobs.

Each engine owns an EventBus. Observability collaborators subscribe to it
explicitly; there is no process-wide bus.
"""

import inspect
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

import structlog

logger = structlog.get_logger()


class EventKind(str, Enum):
    """Kinds of lifecycle events."""

    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DELETED = "deleted"
    CLEANUP = "cleanup"
    RESTORE_STARTED = "restore_started"
    RESTORE_PROGRESS = "restore_progress"
    RESTORE_COMPLETED = "restore_completed"
    RESTORE_FAILED = "restore_failed"


@dataclass(frozen=True)
class LifecycleEvent:
    """A single lifecycle notification."""

    kind: EventKind
    job_id: str
    stage: str | None = None
    fraction: float | None = None
    table: str | None = None
    error: str | None = None
    payload: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


Listener = Callable[[LifecycleEvent], Union[None, Awaitable[None]]]


class EventBus:
    """
    Typed observer registry.

    Listeners may be plain or async callables. A listener that raises is
    logged and skipped; it never fails the job that emitted the event.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A function that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def emit(self, event: LifecycleEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "event_listener_failed",
                    kind=event.kind.value,
                    job_id=event.job_id,
                    error=str(e),
                )

    def clear(self) -> None:
        self._listeners.clear()
