"""Per-client sliding-window rate limiting.

Each policy allows `max_requests` per `window_seconds` per client address.
Timestamps of recent requests are kept in a deque per (policy, client); a
request is rejected when the deque already holds `max_requests` entries
younger than the window.

The store is owned by the application (`app.state.rate_limiter`), created
in `create_app()` and cleared on shutdown. Swap `InMemoryRateLimitStore`
for a shared cache when running more than one process.

## Default Policies

- auth: 5 requests / 15 minutes
- api: 100 requests / minute
- webhook: 1000 requests / minute (Google is the caller)
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from calendar_sync.config import Settings

logger = logging.getLogger(__name__)

AUTH = "auth"
API = "api"
WEBHOOK = "webhook"

# Stale keys are swept every this many recorded hits
SWEEP_EVERY = 1000


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_seconds: float


class InMemoryRateLimitStore:
    """Request timestamps per key, held in process memory."""

    def __init__(self):
        self._hits: dict[str, deque[float]] = {}
        self._windows: dict[str, float] = {}
        self._since_sweep = 0

    def __len__(self) -> int:
        return len(self._hits)

    def hit(self, key: str, max_requests: int, window_seconds: float, now: float) -> float | None:
        """Record a request unless the key is over its limit.

        Returns:
            None if allowed, otherwise seconds until the next slot frees up
        """
        hits = self._hits.setdefault(key, deque())
        self._windows[key] = window_seconds

        while hits and now - hits[0] >= window_seconds:
            hits.popleft()

        if len(hits) >= max_requests:
            return window_seconds - (now - hits[0])

        hits.append(now)

        self._since_sweep += 1
        if self._since_sweep >= SWEEP_EVERY:
            self.sweep(now)

        return None

    def sweep(self, now: float) -> None:
        """Drop keys with no requests inside their window."""
        stale = [
            key
            for key, hits in self._hits.items()
            if not hits or now - hits[-1] >= self._windows.get(key, 0)
        ]
        for key in stale:
            self._hits.pop(key, None)
            self._windows.pop(key, None)
        self._since_sweep = 0

    def clear(self) -> None:
        self._hits.clear()
        self._windows.clear()
        self._since_sweep = 0


class RateLimitExceeded(Exception):
    def __init__(self, policy: str, retry_after: float):
        super().__init__(f"Rate limit exceeded for {policy}")
        self.policy = policy
        self.retry_after = retry_after


class RateLimiter:
    """Applies named policies against a store."""

    def __init__(
        self,
        policies: dict[str, RateLimitPolicy],
        store: InMemoryRateLimitStore | None = None,
    ):
        self.policies = policies
        self.store = store or InMemoryRateLimitStore()

    @classmethod
    def from_settings(cls, settings: Settings) -> RateLimiter:
        return cls(
            {
                AUTH: RateLimitPolicy(
                    AUTH, settings.auth_rate_limit, settings.auth_rate_window_seconds
                ),
                API: RateLimitPolicy(
                    API, settings.api_rate_limit, settings.api_rate_window_seconds
                ),
                WEBHOOK: RateLimitPolicy(
                    WEBHOOK,
                    settings.webhook_rate_limit,
                    settings.webhook_rate_window_seconds,
                ),
            }
        )

    def check(self, policy_name: str, client: str, now: float | None = None) -> None:
        """Count a request from `client` against a policy.

        Raises:
            RateLimitExceeded: The client is over the policy's budget
        """
        policy = self.policies[policy_name]
        retry_after = self.store.hit(
            f"{policy_name}:{client}",
            policy.max_requests,
            policy.window_seconds,
            time.monotonic() if now is None else now,
        )
        if retry_after is not None:
            raise RateLimitExceeded(policy_name, retry_after)

    def reset(self) -> None:
        self.store.clear()


def rate_limit(policy_name: str):
    """FastAPI dependency enforcing a named policy on a route or router.

    Usage:
    ```python
    router = APIRouter(dependencies=[Depends(rate_limit(API))])
    ```
    """

    async def dependency(request: Request) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        client = request.client.host if request.client else "unknown"
        try:
            limiter.check(policy_name, client)
        except RateLimitExceeded as e:
            logger.warning(f"Rate limit {policy_name} exceeded by {client}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests",
                headers={"Retry-After": str(max(1, math.ceil(e.retry_after)))},
            ) from e

    return dependency
