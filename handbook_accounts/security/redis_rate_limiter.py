"""Redis-backed sliding window rate limiter shared across service replicas."""

from __future__ import annotations

import logging
import time
from typing import Final

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)


class RedisSlidingWindowRateLimiter:
    """Sliding window limiter implemented with a Redis sorted set per key.

    When Redis cannot be reached the limiter lets the request through; a
    limiter outage must not take the account endpoints down with it.
    """

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local seq_key = key .. ':seq'
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
    if redis.call('ZCARD', key) >= max_requests then
        return 0
    end
    local seq = redis.call('INCR', seq_key)
    redis.call('PEXPIRE', seq_key, window_ms)
    redis.call('ZADD', key, now_ms, now_ms .. ':' .. seq)
    redis.call('PEXPIRE', key, window_ms)
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "handbook:rl",
    ) -> None:
        """Keep the Redis client and window configuration, and register the script."""
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def allow(self, key: str) -> bool:
        """Return ``True`` when ``key`` is still within the shared rate limit."""
        now_ms = int(time.time() * 1000)
        redis_key = f"{self._key_prefix}:{key}"
        try:
            try:
                result = self._script(
                    keys=[redis_key], args=[self._window_ms, self._max_requests, now_ms]
                )
            except ResponseError as exc:
                if "unknown command" not in str(exc).lower():
                    raise
                return self._allow_without_lua(redis_key, now_ms)
            return int(result) == 1
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning("redis rate limiter unreachable, allowing request: %s", exc)
            return True

    def _allow_without_lua(self, redis_key: str, now_ms: int) -> bool:
        """Non-atomic fallback for Redis deployments without scripting."""
        self._client.zremrangebyscore(redis_key, 0, now_ms - self._window_ms)
        if self._client.zcard(redis_key) >= self._max_requests:
            return False
        seq = self._client.incr(f"{redis_key}:seq")
        self._client.pexpire(f"{redis_key}:seq", self._window_ms)
        self._client.zadd(redis_key, {f"{now_ms}:{seq}": now_ms})
        self._client.pexpire(redis_key, self._window_ms)
        return True
