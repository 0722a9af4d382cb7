# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage backend contract.

A backup artifact is either a directory of chunk files or a single
<id>.tar.gz bundle. Remote backends keep the same layout under their
prefix: <prefix><id>.tar.gz or <prefix><id>/<file>.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Tuple, TypeVar

import structlog

from datamover.exceptions import TransientIOError

logger = structlog.get_logger()

T = TypeVar("T")

ARCHIVE_SUFFIX = ".tar.gz"


class StorageBackend(ABC):
    """Base class for places backup artifacts are kept."""

    name: str = ""
    label: str = ""

    async def initialize(self) -> None:
        """
        Prepare the backend for use.

        Raises:
            BackendUnavailableError: If the backend cannot be used
        """

    @abstractmethod
    async def upload(self, local_path: Path, key: str) -> str:
        """Store the artifact at local_path under key; return its location."""

    @abstractmethod
    async def download(self, key: str, destination_dir: Path) -> Path:
        """Fetch the artifact for key into destination_dir; return the local path."""

    @abstractmethod
    async def list(self) -> List[Dict[str, Any]]:
        """Describe stored artifacts as {id, size, backend, key} dicts."""

    @abstractmethod
    async def delete(self, backup_id: str) -> None:
        """Remove every object belonging to backup_id."""

    async def close(self) -> None:
        pass

    def describe(self) -> Dict[str, str]:
        return {"name": self.name, "label": self.label}


def split_object_name(name: str) -> Tuple[str, str] | None:
    """
    Map an object name (relative to the prefix) to (backup id, file).

    "backup_X.tar.gz"      -> ("backup_X", "backup_X.tar.gz")
    "backup_X/events.json" -> ("backup_X", "events.json")
    """
    if "/" in name:
        backup_id, _, rest = name.partition("/")
        if backup_id and rest:
            return backup_id, rest
        return None
    if name.endswith(ARCHIVE_SUFFIX):
        return name[: -len(ARCHIVE_SUFFIX)], name
    return None


def summarize_objects(
    objects: List[Tuple[str, int]],
    prefix: str,
    backend: str,
    location: str,
) -> List[Dict[str, Any]]:
    """Group (object name, size) pairs into one entry per backup id."""
    entries: Dict[str, Dict[str, Any]] = {}
    for name, size in objects:
        if not name.startswith(prefix):
            continue
        parsed = split_object_name(name[len(prefix):])
        if parsed is None:
            continue
        backup_id, file_name = parsed
        is_archive = file_name.endswith(ARCHIVE_SUFFIX) and file_name == f"{backup_id}{ARCHIVE_SUFFIX}"
        key = f"{prefix}{backup_id}{ARCHIVE_SUFFIX}" if is_archive else f"{prefix}{backup_id}/"
        entry = entries.setdefault(
            backup_id,
            {"id": backup_id, "size": 0, "backend": backend, "key": key, "location": f"{location}/{key}"},
        )
        entry["size"] += size
    return sorted(entries.values(), key=lambda e: e["id"])


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float | None,
    *,
    backend: str,
    operation: str,
    key: str | None = None,
) -> T:
    """
    Await a remote call under the backend timeout.

    Raises:
        TransientIOError: If the call does not finish in time
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning("backend_timeout", backend=backend, operation=operation, key=key)
        raise TransientIOError(
            f"{backend} {operation} timed out",
            details={"backend": backend, "operation": operation, "key": key, "timeout": timeout},
        ) from e
