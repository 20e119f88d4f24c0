from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clubcore.core.errors import InfrastructureError
from clubcore.domain.models import (
    IDEMPOTENCY_STATUS_COMPLETED,
    IDEMPOTENCY_STATUS_PENDING,
    IdempotencyKey,
)
from clubcore.services.idempotency import (
    IdempotencyRecord,
    IdempotencyScope,
    IdempotencyStore,
    StoredResult,
)


SessionFactory = Callable[[], AsyncSession]


def _aware(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes; treat them as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _scope_filter(scope: IdempotencyScope) -> Any:
    return and_(
        IdempotencyKey.idem_key == scope.key,
        IdempotencyKey.owner_id == scope.owner_id,
        IdempotencyKey.endpoint == scope.endpoint,
    )


def _to_record(row: IdempotencyKey) -> IdempotencyRecord:
    result: StoredResult | None = None
    if row.status == IDEMPOTENCY_STATUS_COMPLETED and row.response_status is not None:
        body = row.response_body_json or {}
        result = StoredResult(
            success=bool(row.succeeded),
            status_code=row.response_status,
            data=body.get("data"),
            error=body.get("error"),
        )
    created_at = _aware(row.created_at) or datetime.now(timezone.utc)
    return IdempotencyRecord(
        scope=IdempotencyScope(key=row.idem_key, owner_id=row.owner_id, endpoint=row.endpoint),
        status=row.status,
        claim_token=row.claim_token,
        request_hash=row.request_hash,
        created_at=created_at,
        expires_at=_aware(row.expires_at),  # type: ignore[arg-type]
        result=result,
        completed_at=_aware(row.completed_at),
    )


class SqlIdempotencyStore(IdempotencyStore):
    """Shared store backed by the idempotency_keys table.

    The unique scope constraint is the claim: concurrent inserts for one scope
    race in the database and only the first commits.
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        if session_factory is None:
            from clubcore.persistence.db import get_sessionmaker

            session_factory = get_sessionmaker()
        self._session_factory = session_factory

    async def get(self, scope: IdempotencyScope, *, now: datetime) -> IdempotencyRecord | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(IdempotencyKey).where(_scope_filter(scope)))
                row = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise InfrastructureError("Failed to lookup idempotency record") from exc
        if row is None:
            return None
        record = _to_record(row)
        if record.expires_at <= now:
            return None
        return record

    async def claim(
        self,
        scope: IdempotencyScope,
        *,
        request_hash: str | None,
        now: datetime,
        claim_ttl: timedelta,
    ) -> str | None:
        token = uuid4().hex
        try:
            async with self._session_factory() as session:
                # Expired rows for the scope no longer count; clear them so the insert can win.
                await session.execute(
                    delete(IdempotencyKey).where(_scope_filter(scope), IdempotencyKey.expires_at <= now)
                )
                session.add(
                    IdempotencyKey(
                        idem_key=scope.key,
                        owner_id=scope.owner_id,
                        endpoint=scope.endpoint,
                        status=IDEMPOTENCY_STATUS_PENDING,
                        claim_token=token,
                        request_hash=request_hash,
                        created_at=now,
                        expires_at=now + claim_ttl,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return None
        except (SQLAlchemyError, OSError) as exc:
            raise InfrastructureError("Failed to claim idempotency key") from exc
        return token

    async def complete(
        self,
        scope: IdempotencyScope,
        *,
        token: str,
        result: StoredResult,
        now: datetime,
        ttl: timedelta,
    ) -> bool:
        body = {"data": result.data, "error": result.error}
        try:
            async with self._session_factory() as session:
                outcome = await session.execute(
                    update(IdempotencyKey)
                    .where(_scope_filter(scope), IdempotencyKey.claim_token == token)
                    .values(
                        status=IDEMPOTENCY_STATUS_COMPLETED,
                        succeeded=result.success,
                        response_status=result.status_code,
                        response_body_json=body,
                        completed_at=now,
                        expires_at=now + ttl,
                    )
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise InfrastructureError("Failed to persist idempotency record") from exc
        return (outcome.rowcount or 0) > 0

    async def release(self, scope: IdempotencyScope, *, token: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(IdempotencyKey).where(
                        _scope_filter(scope),
                        IdempotencyKey.claim_token == token,
                        IdempotencyKey.status == IDEMPOTENCY_STATUS_PENDING,
                    )
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise InfrastructureError("Failed to release idempotency claim") from exc

    async def purge_expired(self, now: datetime) -> int:
        # Completed rows past retention and abandoned pending claims both expire by expires_at.
        try:
            async with self._session_factory() as session:
                result = await session.execute(delete(IdempotencyKey).where(IdempotencyKey.expires_at <= now))
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise InfrastructureError("Failed to prune idempotency records") from exc
        return result.rowcount or 0

    async def clear(self) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(delete(IdempotencyKey))
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise InfrastructureError("Failed to clear idempotency records") from exc
