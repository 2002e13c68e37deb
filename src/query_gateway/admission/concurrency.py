"""Non-blocking concurrency limiter with per-label capacities."""

from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager

from query_gateway.errors import ConcurrencyLimited
from query_gateway.types import ConcurrencyAcquisition


class ConcurrencyLimiter:
    """Admission slots per route family.

    ``acquire`` never waits: when a label is at capacity the caller is told so
    immediately and is expected to reject the request.
    """

    def __init__(self, capacities: Mapping[str, int]) -> None:
        for label, capacity in capacities.items():
            if capacity < 1:
                raise ValueError(f"capacity for {label!r} must be positive, got {capacity}")
        self._capacities = dict(capacities)
        self._active: dict[str, int] = {label: 0 for label in self._capacities}
        self._lock = threading.Lock()
        self.acquire_count = 0
        self.release_count = 0

    def capacity(self, label: str) -> int:
        return self._capacities[label]

    def active(self, label: str) -> int:
        with self._lock:
            return self._active[label]

    def acquire(self, label: str) -> ConcurrencyAcquisition:
        capacity = self._capacities[label]
        with self._lock:
            current = self._active[label]
            if current >= capacity:
                return ConcurrencyAcquisition(allowed=False, active=current, limit=capacity)
            self._active[label] = current + 1
            self.acquire_count += 1
            active = current + 1

        released = False

        def release() -> None:
            nonlocal released
            with self._lock:
                if released:
                    return
                released = True
                self._active[label] = max(0, self._active[label] - 1)
                self.release_count += 1

        return ConcurrencyAcquisition(allowed=True, active=active, limit=capacity, release=release)

    @contextmanager
    def slot(self, label: str) -> Iterator[ConcurrencyAcquisition]:
        """Hold one slot for the duration of the block, released on any exit."""

        acquisition = self.acquire(label)
        if not acquisition.allowed:
            raise ConcurrencyLimited(
                f"Concurrency limit reached for {label!r} ({acquisition.active}/{acquisition.limit})",
                retry_after=1.0,
                headers={
                    "X-Concurrency-Limit": str(acquisition.limit),
                    "X-Concurrency-Active": str(acquisition.active),
                    "Retry-After": "1",
                },
            )
        try:
            yield acquisition
        finally:
            acquisition.release()
