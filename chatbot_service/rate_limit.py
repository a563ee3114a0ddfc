from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List

from .utils import get_logger

logger = get_logger("rate_limit")


class BaseRateLimiter:
    async def allow(
        self, key: str, limit_per_minute: int
    ) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError


class InMemoryRateLimiter(BaseRateLimiter):
    """Sliding-window rate limiter for a single worker, with stale-key eviction.

    Runs on the event loop thread only; ``allow`` never awaits, so the
    read-modify-write of a bucket cannot interleave.
    """

    _MAX_KEYS: int = 50_000

    def __init__(self) -> None:
        self._bucket: Dict[str, List[float]] = {}

    async def allow(self, key: str, limit_per_minute: int) -> bool:
        now = time.time()
        one_min_ago = now - 60.0
        arr = [x for x in self._bucket.get(key, []) if x >= one_min_ago]
        if len(arr) >= limit_per_minute:
            self._bucket[key] = arr
            return False
        arr.append(now)
        self._bucket[key] = arr
        if len(self._bucket) > self._MAX_KEYS:
            self._evict_stale(one_min_ago)
        return True

    def _evict_stale(self, one_min_ago: float) -> None:
        stale = [
            k for k, v in self._bucket.items()
            if not v or max(v) < one_min_ago
        ]
        for k in stale:
            del self._bucket[k]
        if stale:
            logger.debug(
                "Rate limiter evicted %d stale keys (bucket size now: %d)",
                len(stale),
                len(self._bucket),
            )


@dataclass
class RedisRateLimiter(BaseRateLimiter):
    redis_client: Any
    key_prefix: str = "chat:rate"

    # ZREMRANGEBYSCORE + ZCARD + ZADD + EXPIRE in one atomic step.
    _LUA_SCRIPT = """
        local key        = KEYS[1]
        local now        = tonumber(ARGV[1])
        local window     = tonumber(ARGV[2])
        local limit      = tonumber(ARGV[3])
        local window_start = now - window
        redis.call('ZREMRANGEBYSCORE', key, 0, window_start)
        local count = redis.call('ZCARD', key)
        if count >= limit then
            return 0
        end
        redis.call('ZADD', key, now, tostring(now))
        redis.call('EXPIRE', key, math.ceil(window) + 1)
        return 1
    """

    def __post_init__(self) -> None:
        self._script = self.redis_client.register_script(self._LUA_SCRIPT)

    async def allow(self, key: str, limit_per_minute: int) -> bool:
        now = time.time()
        rkey = f"{self.key_prefix}:{key}"
        try:
            result = await self._script(keys=[rkey], args=[now, 60.0, limit_per_minute])
        except Exception as exc:
            # Fail open.
            logger.warning("Redis rate limiter unavailable, allowing request. reason=%s", exc)
            return True
        return bool(result)


def build_rate_limiter(
    *, backend: str, redis_client: Any | None, key_prefix: str
) -> BaseRateLimiter:
    normalized = (backend or "memory").strip().lower()
    if normalized == "redis":
        if redis_client is not None:
            logger.info("Using Redis distributed rate limiter")
            return RedisRateLimiter(redis_client=redis_client, key_prefix=key_prefix)
        logger.warning("Falling back to in-memory rate limiter. reason=no redis client")

    logger.info("Using in-memory rate limiter")
    return InMemoryRateLimiter()
