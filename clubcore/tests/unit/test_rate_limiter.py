from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from clubcore.core.config import get_settings
from clubcore.core.errors import InfrastructureError
from clubcore.services.rate_limit import (
    RATE_LIMIT_API,
    RATE_LIMIT_AUTH,
    RATE_LIMIT_SENSITIVE,
    InMemoryRateLimitStore,
    RateLimitConfig,
    RateLimiter,
    RedisRateLimitStore,
    get_client_identifier,
    get_rate_limiter,
    rate_limit_config_for_tier,
    reset_rate_limiter_state,
)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubRedis:
    """Mimics the fixed-window script: one counter per key with a millisecond TTL."""

    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.ttl_ms: dict[str, int] = {}
        self.eval_calls: list[tuple] = []

    async def eval(self, script: str, numkeys: int, key: str, window_ms: int):
        self.eval_calls.append((numkeys, key, window_ms))
        self.counts[key] = self.counts.get(key, 0) + 1
        if self.counts[key] == 1:
            self.ttl_ms[key] = int(window_ms)
        return [self.counts[key], self.ttl_ms[key]]

    async def get(self, key: str):
        value = self.counts.get(key)
        return None if value is None else str(value)

    async def pttl(self, key: str) -> int:
        return self.ttl_ms.get(key, -2)

    async def delete(self, key: str) -> int:
        existed = key in self.counts
        self.counts.pop(key, None)
        self.ttl_ms.pop(key, None)
        return int(existed)

    async def scan_iter(self, match: str):
        prefix = match.rstrip("*")
        for key in list(self.counts):
            if key.startswith(prefix):
                yield key


class DownRedis:
    async def eval(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")


AUTH = RateLimitConfig(max_requests=5, window_ms=60_000)


def _limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(InMemoryRateLimitStore(), time_provider=clock)


def test_presets_keep_three_tiers() -> None:
    assert RATE_LIMIT_AUTH == RateLimitConfig(5, 60_000)
    assert RATE_LIMIT_API == RateLimitConfig(100, 60_000)
    assert RATE_LIMIT_SENSITIVE == RateLimitConfig(3, 60_000)


def test_tier_config_reads_settings(monkeypatch) -> None:
    monkeypatch.setenv("RL_SENSITIVE_MAX_REQUESTS", "7")
    monkeypatch.setenv("RL_SENSITIVE_WINDOW_MS", "30000")
    get_settings.cache_clear()
    assert rate_limit_config_for_tier("sensitive") == RateLimitConfig(7, 30_000)
    assert rate_limit_config_for_tier("auth") == RATE_LIMIT_AUTH
    with pytest.raises(ValueError):
        rate_limit_config_for_tier("bulk")


@pytest.mark.asyncio
async def test_window_boundary() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)

    decisions = [await limiter.check_limit("203.0.113.5", AUTH) for _ in range(6)]

    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert decisions[4].remaining == 0
    assert decisions[5].retry_after_seconds == 60

    clock.advance(60)
    fresh = await limiter.check_limit("203.0.113.5", AUTH)
    assert fresh.allowed
    assert fresh.remaining == 4
    status = await limiter.get_status("203.0.113.5")
    assert status is not None and status.count == 1


@pytest.mark.asyncio
async def test_retry_after_counts_down_to_window_end() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(5):
        await limiter.check_limit("client", AUTH)

    clock.advance(15.5)
    denied = await limiter.check_limit("client", AUTH)
    assert not denied.allowed
    assert denied.retry_after_seconds == 45

    clock.advance(44.0)
    still_denied = await limiter.check_limit("client", AUTH)
    assert still_denied.retry_after_seconds == 1


@pytest.mark.asyncio
async def test_denied_requests_still_count() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(8):
        await limiter.check_limit("client", AUTH)
    status = await limiter.get_status("client")
    assert status is not None
    assert status.count == 8


@pytest.mark.asyncio
async def test_clients_have_independent_budgets() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(6):
        await limiter.check_limit("client-a", AUTH)

    other = await limiter.check_limit("client-b", AUTH)
    assert other.allowed
    assert other.remaining == 4


@pytest.mark.asyncio
async def test_reset_clears_window() -> None:
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(6):
        await limiter.check_limit("client", AUTH)
    await limiter.reset("client")
    assert (await limiter.check_limit("client", AUTH)).allowed


@pytest.mark.asyncio
async def test_sweep_drops_stale_entries_only() -> None:
    clock = FakeClock()
    store = InMemoryRateLimitStore()
    limiter = RateLimiter(store, time_provider=clock)
    await limiter.check_limit("stale", AUTH)
    clock.advance(100)
    await limiter.check_limit("recent", AUTH)
    clock.advance(30)

    removed = await limiter.sweep()

    assert removed == 1
    assert len(store) == 1
    assert await limiter.get_status("recent") is not None


@pytest.mark.asyncio
async def test_same_client_increments_are_atomic_across_threads() -> None:
    store = InMemoryRateLimitStore()
    config = RateLimitConfig(max_requests=1_000, window_ms=3_600_000)

    def hit() -> None:
        asyncio.run(store.hit("shared", config, 1_000))

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: hit(), range(200)))

    entry = await store.status("shared", 1_000)
    assert entry is not None
    assert entry.count == 200


@pytest.mark.parametrize(
    ("headers", "expected"),
    [
        ({"X-Forwarded-For": "203.0.113.5, 10.0.0.1", "X-Real-IP": "10.0.0.9"}, "203.0.113.5"),
        ({"cf-connecting-ip": "198.51.100.7", "x-real-ip": "10.0.0.9"}, "198.51.100.7"),
        ({"X-Real-Ip": "192.0.2.44"}, "192.0.2.44"),
        ({"x-forwarded-for": " , 10.0.0.1", "x-real-ip": "192.0.2.44"}, "192.0.2.44"),
        ({}, "unknown"),
        (None, "unknown"),
    ],
)
def test_client_identifier_priority(headers, expected: str) -> None:
    assert get_client_identifier(headers) == expected


@pytest.mark.asyncio
async def test_redis_store_decisions_follow_script_counts() -> None:
    clock = FakeClock()
    redis = StubRedis()
    limiter = RateLimiter(RedisRateLimitStore(redis=redis, prefix="test:rl"), time_provider=clock)

    decisions = [await limiter.check_limit("auth:203.0.113.5", AUTH) for _ in range(6)]

    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert decisions[-1].retry_after_seconds == 60
    assert redis.eval_calls[0] == (1, "test:rl:auth:203.0.113.5", 60_000)

    status = await limiter.get_status("auth:203.0.113.5")
    assert status is not None and status.count == 6
    assert await limiter.sweep() == 0

    await limiter.reset("auth:203.0.113.5")
    assert await limiter.get_status("auth:203.0.113.5") is None


@pytest.mark.asyncio
async def test_redis_outage_raises_infrastructure_error() -> None:
    limiter = RateLimiter(RedisRateLimitStore(redis=DownRedis(), prefix="test:rl"))
    with pytest.raises(InfrastructureError):
        await limiter.check_limit("client", AUTH)


def test_backend_selection(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "redis")
    get_settings.cache_clear()
    reset_rate_limiter_state()
    assert isinstance(get_rate_limiter().store, RedisRateLimitStore)

    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    get_settings.cache_clear()
    reset_rate_limiter_state()
    limiter = get_rate_limiter()
    assert isinstance(limiter.store, InMemoryRateLimitStore)
    assert get_rate_limiter() is limiter


@pytest.mark.asyncio
async def test_resetting_unknown_clients_leaves_no_locks_behind() -> None:
    store = InMemoryRateLimitStore()
    for index in range(1_000):
        await store.reset(f"never-seen-{index}")
    await store.hit("active", AUTH, 1_000)
    await store.reset("active")

    assert len(store._locks) == 0
    assert len(store) == 0
    assert await store.sweep(10**15, 2) == 0


@pytest.mark.asyncio
async def test_sweep_reclaims_locks_without_entries() -> None:
    store = InMemoryRateLimitStore()
    store._lock_for("orphan")
    await store.hit("live", AUTH, 1_000)

    assert await store.sweep(2_000, 2) == 0
    assert set(store._locks) == {"live"}

    hit_after = await store.hit("orphan", AUTH, 3_000)
    assert hit_after.count == 1
