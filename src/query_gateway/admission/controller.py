"""Admission control service combining rate and concurrency limits."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass

from query_gateway.admission.concurrency import ConcurrencyLimiter
from query_gateway.admission.rate_limit import FixedWindowRateLimiter
from query_gateway.config import AdmissionConfig, RoutePolicy
from query_gateway.errors import ConcurrencyLimited, RateLimited
from query_gateway.types import RateLimitDecision

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AdmissionTicket:
    """Metadata of an admitted request, exported as response headers."""

    route: str
    rate: RateLimitDecision
    concurrency_limit: int
    concurrency_active: int

    def headers(self) -> dict[str, str]:
        return {
            **_rate_headers(self.rate),
            "X-Concurrency-Limit": str(self.concurrency_limit),
            "X-Concurrency-Active": str(self.concurrency_active),
        }


class AdmissionController:
    """Single entry point for admission decisions.

    Built once at process start and injected into the API layer, so tests can
    construct one with a fake clock or tight limits.
    """

    def __init__(
        self,
        config: AdmissionConfig | None = None,
        *,
        rate_limiter: FixedWindowRateLimiter | None = None,
        concurrency: ConcurrencyLimiter | None = None,
    ) -> None:
        self.config = config or AdmissionConfig()
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(
            max_tracked_windows=self.config.max_tracked_windows
        )
        self.concurrency = concurrency or ConcurrencyLimiter(
            {route: policy.concurrency for route, policy in self.config.routes.items()}
        )

    def policy(self, route: str) -> RoutePolicy:
        try:
            return self.config.routes[route]
        except KeyError as exc:
            raise KeyError(f"No admission policy configured for route: {route}") from exc

    @contextmanager
    def admit(self, client_id: str, route: str) -> Iterator[AdmissionTicket]:
        """Rate-check, then hold a concurrency slot until the block exits."""

        policy = self.policy(route)
        decision = self.rate_limiter.check(
            client_id, route, policy.limit, policy.window_seconds
        )
        if not decision.allowed:
            retry_after = decision.retry_after(self.rate_limiter.now())
            logger.warning("Rate limit exceeded on %s for %s", route, client_id)
            raise RateLimited(
                f"Rate limit exceeded for route {route!r}",
                retry_after=retry_after,
                headers={**_rate_headers(decision), "Retry-After": _ceil_seconds(retry_after)},
            )

        with ExitStack() as stack:
            try:
                acquisition = stack.enter_context(self.concurrency.slot(route))
            except ConcurrencyLimited as exc:
                logger.warning("Concurrency limit reached on %s (%s)", route, exc)
                exc.headers = {**_rate_headers(decision), **exc.headers}
                raise
            yield AdmissionTicket(
                route=route,
                rate=decision,
                concurrency_limit=acquisition.limit,
                concurrency_active=acquisition.active,
            )


def _rate_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(int(math.ceil(decision.reset_at))),
    }


def _ceil_seconds(value: float) -> str:
    return str(max(1, int(math.ceil(value))))
