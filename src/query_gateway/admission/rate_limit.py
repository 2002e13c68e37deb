"""In-process fixed-window rate limiter."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from query_gateway.types import RateLimitDecision

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Window:
    count: int
    window_start: float
    window_seconds: float

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_seconds

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds


class FixedWindowRateLimiter:
    """Counts requests per ``(segment, client)`` key inside fixed windows.

    Counters are process-wide and guarded by one lock, so concurrent handlers
    never lose an increment. Suitable for single-instance deployments only.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        max_tracked_windows: int = 10_000,
    ) -> None:
        self._clock = clock
        self._max_tracked = max_tracked_windows
        self._windows: dict[tuple[str, str], _Window] = {}
        self._lock = threading.Lock()

    def check(
        self,
        client_id: str,
        segment: str,
        limit: int,
        window_seconds: float,
    ) -> RateLimitDecision:
        key = (segment, client_id)
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)

            if window is None or window.expired(now):
                if window is None and len(self._windows) >= self._max_tracked:
                    self._prune(now)
                window = _Window(count=1, window_start=now, window_seconds=window_seconds)
                self._windows[key] = window
                return RateLimitDecision(
                    allowed=True,
                    remaining=max(0, limit - 1),
                    reset_at=window.reset_at,
                    limit=limit,
                    identifier=client_id,
                )

            # A denied check leaves the stored count at the limit.
            if window.count >= limit:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=window.reset_at,
                    limit=limit,
                    identifier=client_id,
                )

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, limit - window.count),
                reset_at=window.reset_at,
                limit=limit,
                identifier=client_id,
            )

    def now(self) -> float:
        return self._clock()

    def tracked_windows(self) -> int:
        with self._lock:
            return len(self._windows)

    def _prune(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if window.expired(now)]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Pruned %d expired rate windows", len(expired))


def client_identifier(headers: Mapping[str, str], peer_host: str | None = None) -> str:
    """Derive the rate-limit identity from proxy headers or the socket peer."""

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer_host or "unknown"
