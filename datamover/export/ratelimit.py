# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Per-tenant export admission control.

Each tenant has a deque of request timestamps covering the trailing
window. A request is admitted when fewer than `limit` timestamps remain
after pruning; only admitted requests are recorded.
"""

import time
from collections import deque
from typing import Callable, Deque, Dict

import structlog

from datamover.errors import explain_rate_limited
from datamover.exceptions import AdmissionError

logger = structlog.get_logger()

WINDOW_SECONDS = 60.0


class RateLimiter:
    """
    Sliding-window rate limiter.

    Args:
        limit: Requests allowed per tenant per window
        window: Window length in seconds
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        limit: int,
        window: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}

    def _prune(self, timestamps: Deque[float], now: float) -> None:
        cutoff = now - self.window
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

    def check(self, tenant_id: str) -> None:
        """
        Admit one request or refuse it.

        Raises:
            AdmissionError: If the tenant used up its window; carries
                retry_after, the seconds until the oldest request expires
        """
        now = self._clock()
        timestamps = self._windows.setdefault(tenant_id, deque())
        self._prune(timestamps, now)

        if len(timestamps) >= self.limit:
            retry_after = max(timestamps[0] + self.window - now, 0.0)
            logger.warning(
                "rate_limit_exceeded",
                tenant_id=tenant_id,
                limit=self.limit,
                retry_after=round(retry_after, 3),
            )
            raise AdmissionError(
                explain_rate_limited(tenant_id, self.limit, retry_after),
                details={"tenant_id": tenant_id, "limit": self.limit},
                retry_after=retry_after,
            )

        timestamps.append(now)

    def remaining(self, tenant_id: str) -> int:
        timestamps = self._windows.get(tenant_id)
        if not timestamps:
            return self.limit
        self._prune(timestamps, self._clock())
        return max(self.limit - len(timestamps), 0)

    def sweep(self) -> int:
        """
        Drop expired timestamps and idle tenants.

        Returns:
            Number of tenants removed
        """
        now = self._clock()
        idle = []
        for tenant_id, timestamps in self._windows.items():
            self._prune(timestamps, now)
            if not timestamps:
                idle.append(tenant_id)
        for tenant_id in idle:
            del self._windows[tenant_id]
        if idle:
            logger.debug("rate_limit_windows_swept", removed=len(idle))
        return len(idle)

    @property
    def tracked_tenants(self) -> int:
        return len(self._windows)
