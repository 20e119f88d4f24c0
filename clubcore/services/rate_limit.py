from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass, replace
import logging
import math
import threading
import time
from typing import Callable, Mapping

from redis.asyncio import Redis
from redis.exceptions import RedisError

from clubcore.core.config import get_settings
from clubcore.core.errors import InfrastructureError
from clubcore.services.headers import header_value


logger = logging.getLogger(__name__)

TIER_AUTH = "auth"
TIER_API = "api"
TIER_SENSITIVE = "sensitive"

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int


RATE_LIMIT_AUTH = RateLimitConfig(max_requests=5, window_ms=60_000)
RATE_LIMIT_API = RateLimitConfig(max_requests=100, window_ms=60_000)
RATE_LIMIT_SENSITIVE = RateLimitConfig(max_requests=3, window_ms=60_000)


@dataclass(frozen=True)
class RateLimitEntry:
    client_id: str
    window_start_ms: int
    count: int
    window_ms: int

    @property
    def reset_at_ms(self) -> int:
        return self.window_start_ms + self.window_ms


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_seconds: int | None = None


def rate_limit_config_for_tier(tier: str) -> RateLimitConfig:
    # Resolve tier thresholds from settings so deployments can tune them.
    settings = get_settings()
    if tier == TIER_AUTH:
        return RateLimitConfig(settings.rl_auth_max_requests, settings.rl_auth_window_ms)
    if tier == TIER_SENSITIVE:
        return RateLimitConfig(settings.rl_sensitive_max_requests, settings.rl_sensitive_window_ms)
    if tier == TIER_API:
        return RateLimitConfig(settings.rl_api_max_requests, settings.rl_api_window_ms)
    raise ValueError(f"Unknown rate limit tier: {tier}")


def _first_forwarded(value: str) -> str | None:
    return value.split(",")[0].strip() or None


def _single(value: str) -> str | None:
    return value.strip() or None


# Evaluated in order: the outermost trusted proxy hop reports the originating client first.
CLIENT_IP_HEADERS: tuple[tuple[str, Callable[[str], str | None]], ...] = (
    ("x-forwarded-for", _first_forwarded),
    ("cf-connecting-ip", _single),
    ("x-real-ip", _single),
)


def get_client_identifier(headers: Mapping[str, str] | None) -> str:
    for name, parse in CLIENT_IP_HEADERS:
        raw = header_value(headers, name)
        if raw is None:
            continue
        client_id = parse(raw)
        if client_id:
            return client_id
    return UNKNOWN_CLIENT


class RateLimitStore(ABC):
    """Counter store for fixed windows.

    `hit` must be atomic per client id: concurrent hits for one client never
    lose an increment.
    """

    @abstractmethod
    async def hit(self, client_id: str, config: RateLimitConfig, now_ms: int) -> RateLimitEntry:
        """Count one request, starting a fresh window when the current one elapsed."""

    @abstractmethod
    async def status(self, client_id: str, now_ms: int) -> RateLimitEntry | None:
        """Return the live entry for a client without counting a request."""

    @abstractmethod
    async def reset(self, client_id: str) -> None:
        ...

    @abstractmethod
    async def sweep(self, now_ms: int, grace_multiplier: int) -> int:
        """Drop entries stale for longer than `grace_multiplier` windows."""

    @abstractmethod
    async def clear(self) -> None:
        ...


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self) -> None:
        self._entries: dict[str, RateLimitEntry] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._map_lock = threading.Lock()

    def _lock_for(self, client_id: str) -> threading.Lock:
        with self._map_lock:
            lock = self._locks.get(client_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[client_id] = lock
            return lock

    async def hit(self, client_id: str, config: RateLimitConfig, now_ms: int) -> RateLimitEntry:
        while True:
            lock = self._lock_for(client_id)
            with lock:
                # A sweep may have retired this lock while we waited; start over with the live one.
                if self._locks.get(client_id) is not lock:
                    continue
                entry = self._entries.get(client_id)
                if entry is None or now_ms - entry.window_start_ms >= entry.window_ms:
                    entry = RateLimitEntry(
                        client_id=client_id,
                        window_start_ms=now_ms,
                        count=1,
                        window_ms=config.window_ms,
                    )
                else:
                    entry = replace(entry, count=entry.count + 1)
                self._entries[client_id] = entry
                return entry

    async def status(self, client_id: str, now_ms: int) -> RateLimitEntry | None:
        entry = self._entries.get(client_id)
        if entry is None or now_ms - entry.window_start_ms >= entry.window_ms:
            return None
        return entry

    async def reset(self, client_id: str) -> None:
        # Retire the entry and its lock together; a waiting hit retries with a fresh lock.
        with self._map_lock:
            lock = self._locks.pop(client_id, None)
            if lock is None:
                self._entries.pop(client_id, None)
                return
            with lock:
                self._entries.pop(client_id, None)

    async def sweep(self, now_ms: int, grace_multiplier: int) -> int:
        removed = 0
        with self._map_lock:
            for client_id, entry in list(self._entries.items()):
                if now_ms - entry.window_start_ms < entry.window_ms * grace_multiplier:
                    continue
                lock = self._locks.get(client_id)
                # Skip clients mid-update; the next sweep will catch them.
                if lock is not None and not lock.acquire(blocking=False):
                    continue
                try:
                    del self._entries[client_id]
                    self._locks.pop(client_id, None)
                    removed += 1
                finally:
                    if lock is not None:
                        lock.release()
            for client_id, lock in list(self._locks.items()):
                if client_id in self._entries or not lock.acquire(blocking=False):
                    continue
                try:
                    del self._locks[client_id]
                finally:
                    lock.release()
        return removed

    async def clear(self) -> None:
        with self._map_lock:
            self._entries.clear()
            self._locks.clear()

    def __len__(self) -> int:
        return len(self._entries)


_FIXED_WINDOW_LUA = r"""
local count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
local ttl = redis.call("PTTL", KEYS[1])
if ttl < 0 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


async def _get_redis() -> Redis:
    # Cache Redis connections per event loop to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    settings = get_settings()
    _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    _redis_loop = current_loop
    return _redis_pool


class RedisRateLimitStore(RateLimitStore):
    """Shared counters for multi-instance deployments.

    Key expiry bounds memory, so `sweep` has nothing to do.
    """

    def __init__(self, *, redis: Redis | None = None, prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = prefix or get_settings().rl_redis_prefix

    def _key(self, client_id: str) -> str:
        return f"{self._prefix}:{client_id}"

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await _get_redis()

    async def hit(self, client_id: str, config: RateLimitConfig, now_ms: int) -> RateLimitEntry:
        try:
            redis = await self._client()
            result = await redis.eval(_FIXED_WINDOW_LUA, 1, self._key(client_id), config.window_ms)
        except (RedisError, OSError) as exc:
            raise InfrastructureError("Rate limit store unavailable") from exc
        count = int(result[0])
        ttl_ms = max(0, int(result[1]))
        return RateLimitEntry(
            client_id=client_id,
            window_start_ms=now_ms - (config.window_ms - ttl_ms),
            count=count,
            window_ms=config.window_ms,
        )

    async def status(self, client_id: str, now_ms: int) -> RateLimitEntry | None:
        key = self._key(client_id)
        try:
            redis = await self._client()
            raw_count = await redis.get(key)
            ttl_ms = await redis.pttl(key)
        except (RedisError, OSError) as exc:
            raise InfrastructureError("Rate limit store unavailable") from exc
        if raw_count is None or ttl_ms is None or int(ttl_ms) < 0:
            return None
        # Only the remaining TTL is stored; the reported window runs from now until key expiry.
        return RateLimitEntry(
            client_id=client_id,
            window_start_ms=now_ms,
            count=int(raw_count),
            window_ms=int(ttl_ms),
        )

    async def reset(self, client_id: str) -> None:
        try:
            redis = await self._client()
            await redis.delete(self._key(client_id))
        except (RedisError, OSError) as exc:
            raise InfrastructureError("Rate limit store unavailable") from exc

    async def sweep(self, now_ms: int, grace_multiplier: int) -> int:
        return 0

    async def clear(self) -> None:
        try:
            redis = await self._client()
            async for key in redis.scan_iter(match=f"{self._prefix}:*"):
                await redis.delete(key)
        except (RedisError, OSError) as exc:
            raise InfrastructureError("Rate limit store unavailable") from exc


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore | None = None,
        *,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._store = store if store is not None else get_rate_limit_store()
        self._time_provider = time_provider or time.time

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def _now_ms(self) -> int:
        return int(self._time_provider() * 1000)

    async def check_limit(self, client_id: str, config: RateLimitConfig) -> RateLimitDecision:
        now_ms = self._now_ms()
        entry = await self._store.hit(client_id, config, now_ms)
        reset_at_ms = entry.window_start_ms + config.window_ms
        remaining = max(0, config.max_requests - entry.count)
        # The first request of a fresh window is always admitted.
        if entry.count == 1 or entry.count <= config.max_requests:
            return RateLimitDecision(
                allowed=True,
                limit=config.max_requests,
                remaining=remaining,
                reset_at_ms=reset_at_ms,
            )
        retry_after = max(1, math.ceil((reset_at_ms - now_ms) / 1000))
        logger.debug("rate_limited client=%s count=%s retry_after=%s", client_id, entry.count, retry_after)
        return RateLimitDecision(
            allowed=False,
            limit=config.max_requests,
            remaining=0,
            reset_at_ms=reset_at_ms,
            retry_after_seconds=retry_after,
        )

    async def get_status(self, client_id: str) -> RateLimitEntry | None:
        return await self._store.status(client_id, self._now_ms())

    async def reset(self, client_id: str) -> None:
        await self._store.reset(client_id)

    async def sweep(self) -> int:
        grace = max(1, int(get_settings().rl_sweep_grace_multiplier))
        removed = await self._store.sweep(self._now_ms(), grace)
        if removed:
            logger.info("swept_rate_limit_entries=%s", removed)
        return removed


_store: RateLimitStore | None = None
_rate_limiter: RateLimiter | None = None


def get_rate_limit_store() -> RateLimitStore:
    # Select the backend from settings once per process.
    global _store
    if _store is None:
        backend = get_settings().rate_limit_backend.lower()
        if backend == "memory":
            _store = InMemoryRateLimitStore()
        elif backend == "redis":
            _store = RedisRateLimitStore()
        else:
            raise ValueError(f"Unsupported rate limit backend: {backend}")
        logger.info("initialized_rate_limit_store backend=%s", backend)
    return _store


def get_rate_limiter() -> RateLimiter:
    # Cache the limiter so requests share one store and time provider.
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(get_rate_limit_store())
    return _rate_limiter


def reset_rate_limiter_state() -> None:
    # Reset cached stores and Redis connections for deterministic test setup.
    global _store, _rate_limiter, _redis_pool, _redis_loop
    _store = None
    _rate_limiter = None
    _redis_pool = None
    _redis_loop = None


async def check_limit(client_id: str, config: RateLimitConfig) -> RateLimitDecision:
    return await get_rate_limiter().check_limit(client_id, config)


async def sweep_rate_limits() -> int:
    return await get_rate_limiter().sweep()
