import asyncio

from chatbot_service.rate_limit import InMemoryRateLimiter, RedisRateLimiter, build_rate_limiter


def test_inmemory_rate_limiter_blocks_after_limit():
    rl = InMemoryRateLimiter()
    key = "client-1"
    assert asyncio.run(rl.allow(key, 2)) is True
    assert asyncio.run(rl.allow(key, 2)) is True
    assert asyncio.run(rl.allow(key, 2)) is False
    assert asyncio.run(rl.allow("client-2", 2)) is True


def test_inmemory_rate_limiter_window_slides(monkeypatch):
    import chatbot_service.rate_limit as rl_mod

    clock = {"now": 1000.0}
    monkeypatch.setattr(rl_mod.time, "time", lambda: clock["now"])
    rl = InMemoryRateLimiter()
    assert asyncio.run(rl.allow("k", 1)) is True
    assert asyncio.run(rl.allow("k", 1)) is False
    clock["now"] += 61.0
    assert asyncio.run(rl.allow("k", 1)) is True


def test_build_rate_limiter_falls_back_to_memory_without_redis():
    rl = build_rate_limiter(backend="redis", redis_client=None, key_prefix="x")
    assert isinstance(rl, InMemoryRateLimiter)
    assert isinstance(build_rate_limiter(backend="memory", redis_client=None, key_prefix="x"), InMemoryRateLimiter)


class FakeRedis:
    """Fake async Redis client supporting Lua script registration."""

    def __init__(self, count: int, fail: bool = False):
        self._count = count
        self._fail = fail
        self.keys = []

    def register_script(self, script: str):
        count = self._count
        fail = self._fail
        keys_seen = self.keys

        async def _run(keys, args):
            if fail:
                raise ConnectionError("redis down")
            keys_seen.extend(keys)
            _now, _window, limit = args
            return 1 if count < int(limit) else 0

        return _run


def test_build_rate_limiter_uses_redis_when_available():
    rl = build_rate_limiter(backend="REDIS", redis_client=FakeRedis(count=0), key_prefix="x")
    assert isinstance(rl, RedisRateLimiter)


def test_redis_rate_limiter_allows_under_limit():
    redis = FakeRedis(count=1)
    rl = RedisRateLimiter(redis_client=redis, key_prefix="k")
    assert asyncio.run(rl.allow("client-1", limit_per_minute=2)) is True
    assert redis.keys == ["k:client-1"]


def test_redis_rate_limiter_blocks_at_limit():
    rl = RedisRateLimiter(redis_client=FakeRedis(count=2), key_prefix="k")
    assert asyncio.run(rl.allow("client-1", limit_per_minute=2)) is False


def test_redis_rate_limiter_fails_open():
    rl = RedisRateLimiter(redis_client=FakeRedis(count=99, fail=True), key_prefix="k")
    assert asyncio.run(rl.allow("client-1", limit_per_minute=1)) is True
