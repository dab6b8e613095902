"""Request rate limiting for the mail-sending endpoints."""

from __future__ import annotations

import logging
import time
from collections import deque
from threading import Lock
from typing import TYPE_CHECKING, Callable, Deque, Protocol

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


class RequestRateLimiter(Protocol):
    def allow(self, key: str) -> bool: ...


class SlidingWindowRateLimiter:
    """Thread-safe sliding window rate limiter kept in process memory."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._events: dict[str, Deque[float]] = {}
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Return ``True`` and record the request when ``key`` is under its limit."""
        now = self._clock()
        with self._lock:
            queue = self._events.setdefault(key, deque())
            while queue and now - queue[0] > self._window:
                queue.popleft()
            if len(queue) >= self._max_requests:
                return False
            queue.append(now)
            return True


def build_rate_limiter(settings: "Settings") -> RequestRateLimiter:
    """Instantiate the configured limiter backend, preferring Redis when reachable."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        import redis
        from redis.exceptions import RedisError

        from .redis_rate_limiter import RedisSlidingWindowRateLimiter

        try:
            client = redis.from_url(settings.redis_url)
            client.ping()
        except RedisError as exc:
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)
        else:
            logger.info("rate limiter configured for redis backend")
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
