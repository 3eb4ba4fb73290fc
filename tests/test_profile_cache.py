from __future__ import annotations

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.cache_metrics import get_cache_metrics
from app.core.resilience import CircuitState
from app.runtime.container import EngineRuntime
from conftest import record_attempts, seed


class FakeRedis:
    """Just the slice of redis.asyncio.Redis the profile cache uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.closed = False

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


class DownRedis(FakeRedis):
    def __init__(self):
        super().__init__()
        self.calls = 0

    async def get(self, key):
        self.calls += 1
        raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        self.calls += 1
        raise RedisConnectionError("connection refused")

    async def ping(self):
        raise RedisConnectionError("connection refused")


async def _cached_runtime(engine_settings, client) -> EngineRuntime:
    config = engine_settings.model_copy(
        update={"profile_cache_enabled": True, "profile_cache_ttl_seconds": 120, "cache_breaker_failure_threshold": 2}
    )
    rt = EngineRuntime(config, cache_client=client)
    await rt.start()
    return rt


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.mark.asyncio
async def test_profile_reads_go_through_the_cache(engine_settings, fake_redis):
    rt = await _cached_runtime(engine_settings, fake_redis)
    try:
        await seed(rt)
        first = await rt.pipeline.get_profile("s1")
        second = await rt.pipeline.get_profile("s1")

        assert first.version == second.version == 1
        assert fake_redis.expiry["skill_profile:s1"] == 120
        metrics = get_cache_metrics()
        assert metrics["cache_misses"] == 1
        assert metrics["cache_hits"] == 1
        assert metrics["cache_sets"] == 1
    finally:
        await rt.stop()
    assert fake_redis.closed


@pytest.mark.asyncio
async def test_profile_update_refreshes_the_cache(engine_settings, fake_redis):
    rt = await _cached_runtime(engine_settings, fake_redis)
    try:
        await seed(rt)
        await rt.pipeline.get_profile("s1")
        await record_attempts(rt, [True] * 8 + [False] * 2)

        result = await rt.pipeline.apply_attempt("s1", "c1")
        cached = await rt.cache.get("s1")

        assert cached.version == result.profile.version == 2
        assert cached.skills["fractions"].mastery_score == pytest.approx(0.6)
    finally:
        await rt.stop()


@pytest.mark.asyncio
async def test_unreadable_entry_is_a_miss(engine_settings, fake_redis):
    rt = await _cached_runtime(engine_settings, fake_redis)
    try:
        await seed(rt)
        fake_redis.store["skill_profile:s1"] = '{"student_id": "s1", "current_difficulty": 11}'

        profile = await rt.pipeline.get_profile("s1")
        assert profile.current_difficulty == 3
        metrics = get_cache_metrics()
        assert metrics["cache_hits"] == 0
        assert metrics["cache_discarded"] == 1
        assert "skill_profile:s1" in fake_redis.store
    finally:
        await rt.stop()


@pytest.mark.asyncio
async def test_redis_outage_falls_back_to_the_store(engine_settings):
    down = DownRedis()
    rt = await _cached_runtime(engine_settings, down)
    try:
        await seed(rt)
        await record_attempts(rt, [True, True, False])

        result = await rt.pipeline.apply_attempt("s1", "c1")
        assert result.profile.version == 2

        profile = await rt.pipeline.get_profile("s1")
        assert profile.version == 2
        assert "fractions" in profile.skills

        # breaker opened after two failures; later calls skip Redis entirely
        assert rt.cache.status()["breaker"]["state"] == CircuitState.OPEN.value
        calls_when_open = down.calls
        await rt.pipeline.get_profile("s1")
        assert down.calls == calls_when_open
        metrics = get_cache_metrics()
        assert metrics["cache_errors"] == 2
        assert metrics["cache_errors_by_operation"] == {"set": 1, "get": 1}
        assert await rt.cache.ping() is False
    finally:
        await rt.stop()


class SlowFirstSetRedis(FakeRedis):
    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay
        self.sets = 0

    async def set(self, key, value, ex=None):
        self.sets += 1
        if self.sets == 1:
            await asyncio.sleep(self.delay)
        return await super().set(key, value, ex=ex)


@pytest.mark.asyncio
async def test_slow_cache_write_does_not_leave_an_older_snapshot(engine_settings):
    slow = SlowFirstSetRedis(delay=0.2)
    rt = await _cached_runtime(engine_settings, slow)
    try:
        await seed(rt, concepts={"c1": ["a"], "c2": ["b"]})
        await asyncio.gather(rt.pipeline.apply_attempt("s1", "c1"), rt.pipeline.apply_attempt("s1", "c2"))

        stored = await rt.profiles.load("s1")
        cached = await rt.cache.get("s1")
        assert stored.version == 3
        assert sorted(stored.skills) == ["a", "b"]
        assert cached.version == stored.version
        assert sorted(cached.skills) == ["a", "b"]

        profile = await rt.pipeline.get_profile("s1")
        assert profile.version == 3
    finally:
        await rt.stop()
