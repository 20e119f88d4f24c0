from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from clubcore.core.errors import InfrastructureError
from clubcore.domain.models import Base, IdempotencyKey
from clubcore.persistence.repos.idempotency import SqlIdempotencyStore
from clubcore.services.idempotency import (
    IdempotencyScope,
    StoredResult,
    execute_idempotent,
    purge_expired_idempotency_records,
)


SCOPE = IdempotencyScope(
    key="550e8400-e29b-41d4-a716-446655440000",
    owner_id="user-1",
    endpoint="/v1/membership/applications",
)


@pytest.fixture
async def session_factory(tmp_path):
    # File-backed SQLite so every session sees the same committed rows.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'idempotency.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> SqlIdempotencyStore:
    return SqlIdempotencyStore(session_factory)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_claim_is_exclusive_per_scope(store: SqlIdempotencyStore) -> None:
    first = await store.claim(SCOPE, request_hash="h1", now=_now(), claim_ttl=timedelta(minutes=1))
    second = await store.claim(SCOPE, request_hash="h1", now=_now(), claim_ttl=timedelta(minutes=1))
    other_owner = await store.claim(
        IdempotencyScope(key=SCOPE.key, owner_id="user-2", endpoint=SCOPE.endpoint),
        request_hash="h1",
        now=_now(),
        claim_ttl=timedelta(minutes=1),
    )

    assert first is not None
    assert second is None
    assert other_owner is not None

    pending = await store.get(SCOPE, now=_now())
    assert pending is not None
    assert pending.is_completed is False
    assert pending.request_hash == "h1"


@pytest.mark.asyncio
async def test_complete_requires_owning_token(store: SqlIdempotencyStore) -> None:
    token = await store.claim(SCOPE, request_hash=None, now=_now(), claim_ttl=timedelta(minutes=1))
    result = StoredResult(success=True, status_code=201, data={"application_id": "app-1"})

    assert await store.complete(SCOPE, token="stale", result=result, now=_now(), ttl=timedelta(hours=24)) is False
    assert await store.complete(SCOPE, token=token, result=result, now=_now(), ttl=timedelta(hours=24)) is True

    record = await store.get(SCOPE, now=_now())
    assert record is not None
    assert record.is_completed
    assert record.result == result
    assert record.original_timestamp is not None
    assert record.original_timestamp.tzinfo is not None


@pytest.mark.asyncio
async def test_expired_claim_can_be_reclaimed(store: SqlIdempotencyStore) -> None:
    long_ago = _now() - timedelta(hours=1)
    abandoned = await store.claim(SCOPE, request_hash=None, now=long_ago, claim_ttl=timedelta(seconds=30))
    assert abandoned is not None
    assert await store.get(SCOPE, now=_now()) is None

    fresh = await store.claim(SCOPE, request_hash=None, now=_now(), claim_ttl=timedelta(minutes=1))
    assert fresh is not None
    assert fresh != abandoned


@pytest.mark.asyncio
async def test_release_only_drops_pending_claims(store: SqlIdempotencyStore, session_factory) -> None:
    token = await store.claim(SCOPE, request_hash=None, now=_now(), claim_ttl=timedelta(minutes=1))
    await store.release(SCOPE, token=token)
    assert await store.get(SCOPE, now=_now()) is None

    token = await store.claim(SCOPE, request_hash=None, now=_now(), claim_ttl=timedelta(minutes=1))
    await store.complete(
        SCOPE,
        token=token,
        result=StoredResult(success=True, status_code=200, data={}),
        now=_now(),
        ttl=timedelta(hours=24),
    )
    await store.release(SCOPE, token=token)

    async with session_factory() as session:
        rows = (await session.execute(select(IdempotencyKey))).scalars().all()
    assert len(rows) == 1
    assert rows[0].status == "completed"


@pytest.mark.asyncio
async def test_execute_replays_from_database(store: SqlIdempotencyStore) -> None:
    calls = 0

    async def operation() -> dict:
        nonlocal calls
        calls += 1
        return {"application_id": "app-9"}

    first = await execute_idempotent(SCOPE.key, SCOPE.owner_id, SCOPE.endpoint, operation, store=store)
    second = await execute_idempotent(SCOPE.key, SCOPE.owner_id, SCOPE.endpoint, operation, store=store)

    assert calls == 1
    assert first.cached is False
    assert second.cached is True
    assert second.data == {"application_id": "app-9"}
    assert second.original_timestamp is not None


@pytest.mark.asyncio
async def test_purge_deletes_only_expired_rows(store: SqlIdempotencyStore) -> None:
    past = _now() - timedelta(days=2)
    old_token = await store.claim(SCOPE, request_hash=None, now=past, claim_ttl=timedelta(minutes=1))
    await store.complete(
        SCOPE,
        token=old_token,
        result=StoredResult(success=True, status_code=200, data={}),
        now=past,
        ttl=timedelta(hours=24),
    )
    live_scope = IdempotencyScope(key="live_retry_token_0001", owner_id="user-1", endpoint=SCOPE.endpoint)
    await store.claim(live_scope, request_hash=None, now=_now(), claim_ttl=timedelta(minutes=1))

    deleted = await purge_expired_idempotency_records(store)

    assert deleted == 1
    assert await store.get(live_scope, now=_now()) is not None


@pytest.mark.asyncio
async def test_database_errors_become_infrastructure_errors(tmp_path) -> None:
    # No tables were created, so every statement fails at the driver level.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    broken = SqlIdempotencyStore(async_sessionmaker(engine, expire_on_commit=False))
    try:
        with pytest.raises(InfrastructureError):
            await broken.get(SCOPE, now=_now())
        with pytest.raises(InfrastructureError):
            await broken.claim(SCOPE, request_hash=None, now=_now(), claim_ttl=timedelta(minutes=1))
    finally:
        await engine.dispose()


def test_engine_options_bound_the_postgres_pool(monkeypatch) -> None:
    from clubcore.core.config import get_settings
    from clubcore.persistence.db import engine_options

    monkeypatch.setenv("API_DB_POOL_SIZE", "4")
    monkeypatch.setenv("API_DB_STATEMENT_TIMEOUT_MS", "2500")
    get_settings.cache_clear()

    assert engine_options("sqlite+aiosqlite:///:memory:") == {"pool_pre_ping": True}
    options = engine_options("postgresql+asyncpg://club:club@db/club")
    assert options["pool_size"] == 4
    assert options["connect_args"] == {"server_settings": {"statement_timeout": "2500"}}
