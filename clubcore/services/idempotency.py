from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
import re
import threading
from typing import Any, Awaitable, Callable, Mapping
from uuid import uuid4

from clubcore.core.config import get_settings
from clubcore.core.errors import (
    IdempotencyConflictError,
    IdempotencyInProgressError,
    InfrastructureError,
    OperationError,
    ValidationError,
)
from clubcore.services.headers import header_value


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"

_UUID_KEY = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
# Require a letter or underscore so digit/hyphen strings are treated as malformed UUIDs.
_TOKEN_KEY = re.compile(r"(?=.*[A-Za-z_])[A-Za-z0-9_-]{16,255}")

Operation = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class IdempotencyScope:
    key: str
    owner_id: str
    endpoint: str


@dataclass(frozen=True)
class StoredResult:
    # Outcome snapshot of the first execution; failures are cached like successes.
    success: bool
    status_code: int
    data: Any = None
    error: dict[str, Any] | None = None


@dataclass(frozen=True)
class IdempotencyRecord:
    scope: IdempotencyScope
    status: str
    claim_token: str
    request_hash: str | None
    created_at: datetime
    expires_at: datetime
    result: StoredResult | None = None
    completed_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED and self.result is not None

    @property
    def original_timestamp(self) -> datetime | None:
        return self.completed_at


@dataclass(frozen=True)
class IdempotentResult:
    success: bool
    status_code: int
    data: Any
    error: dict[str, Any] | None
    cached: bool
    request_id: str
    timestamp: datetime
    original_timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "cached": self.cached,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.cached and self.original_timestamp is not None:
            metadata["original_timestamp"] = self.original_timestamp.isoformat()
        payload: dict[str, Any] = {"success": self.success, "metadata": metadata}
        if self.success:
            payload["data"] = self.data
        else:
            payload["error"] = self.error
        return payload


class IdempotencyStore(ABC):
    """Keyed record store with an atomic insert-if-absent claim.

    Implementations must make `claim` atomic per scope: of any number of
    concurrent claims for the same live scope exactly one receives a token.
    Infrastructure failures surface as `InfrastructureError`.
    """

    @abstractmethod
    async def get(self, scope: IdempotencyScope, *, now: datetime) -> IdempotencyRecord | None:
        """Return the live (unexpired) record for the scope, pending or completed."""

    @abstractmethod
    async def claim(
        self,
        scope: IdempotencyScope,
        *,
        request_hash: str | None,
        now: datetime,
        claim_ttl: timedelta,
    ) -> str | None:
        """Insert a pending record; return its claim token, or None if the scope is taken."""

    @abstractmethod
    async def complete(
        self,
        scope: IdempotencyScope,
        *,
        token: str,
        result: StoredResult,
        now: datetime,
        ttl: timedelta,
    ) -> bool:
        """Record the outcome if `token` still owns the scope; False when the claim was lost."""

    @abstractmethod
    async def release(self, scope: IdempotencyScope, *, token: str) -> None:
        """Drop a pending claim so a retry can execute the operation."""

    @abstractmethod
    async def purge_expired(self, now: datetime) -> int:
        """Delete records past their retention or claim window; return the count."""

    @abstractmethod
    async def clear(self) -> None:
        """Delete every record (tests and local resets)."""


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local store for single-instance deployments."""

    def __init__(self) -> None:
        self._records: dict[IdempotencyScope, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    async def get(self, scope: IdempotencyScope, *, now: datetime) -> IdempotencyRecord | None:
        with self._lock:
            record = self._records.get(scope)
        if record is None or record.expires_at <= now:
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
        with self._lock:
            existing = self._records.get(scope)
            if existing is not None and existing.expires_at > now:
                return None
            token = uuid4().hex
            self._records[scope] = IdempotencyRecord(
                scope=scope,
                status=STATUS_PENDING,
                claim_token=token,
                request_hash=request_hash,
                created_at=now,
                expires_at=now + claim_ttl,
            )
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
        with self._lock:
            existing = self._records.get(scope)
            if existing is None or existing.claim_token != token:
                return False
            self._records[scope] = replace(
                existing,
                status=STATUS_COMPLETED,
                result=result,
                completed_at=now,
                expires_at=now + ttl,
            )
            return True

    async def release(self, scope: IdempotencyScope, *, token: str) -> None:
        with self._lock:
            existing = self._records.get(scope)
            if existing is not None and existing.claim_token == token and existing.status == STATUS_PENDING:
                del self._records[scope]

    async def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [scope for scope, record in self._records.items() if record.expires_at <= now]
            for scope in expired:
                del self._records[scope]
        return len(expired)

    async def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_idempotency_key(key: str | None) -> bool:
    if not key:
        return False
    return bool(_UUID_KEY.fullmatch(key) or _TOKEN_KEY.fullmatch(key))


def validate_idempotency_key(key: str | None) -> str:
    if not is_valid_idempotency_key(key):
        raise ValidationError(
            "Idempotency-Key must be a valid UUID or alphanumeric string (16-255 characters)",
            code="IDEMPOTENCY_KEY_INVALID",
        )
    return key  # type: ignore[return-value]


def extract_idempotency_key(headers: Mapping[str, str] | None) -> str | None:
    value = header_value(headers, IDEMPOTENCY_HEADER)
    if value is None:
        return None
    return value.strip() or None


def generate_idempotency_key() -> str:
    return str(uuid4())


def compute_request_hash(payload: Any) -> str:
    # Hash request payloads deterministically without persisting sensitive data.
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _ensure_same_request(record: IdempotencyRecord, request_hash: str | None) -> None:
    if request_hash and record.request_hash and record.request_hash != request_hash:
        raise IdempotencyConflictError("Idempotency-Key already used with a different request payload")


def _cached_result(record: IdempotencyRecord, request_id: str) -> IdempotentResult:
    stored = record.result
    if stored is None:
        raise InfrastructureError("Completed idempotency record has no stored result")
    return IdempotentResult(
        success=stored.success,
        status_code=stored.status_code,
        data=stored.data,
        error=stored.error,
        cached=True,
        request_id=request_id,
        timestamp=_utc_now(),
        original_timestamp=record.original_timestamp,
    )


def _fresh_result(stored: StoredResult, request_id: str) -> IdempotentResult:
    return IdempotentResult(
        success=stored.success,
        status_code=stored.status_code,
        data=stored.data,
        error=stored.error,
        cached=False,
        request_id=request_id,
        timestamp=_utc_now(),
    )


async def _run_operation(operation: Operation, success_status: int) -> StoredResult:
    try:
        data = await operation()
    except OperationError as exc:
        return StoredResult(success=False, status_code=exc.status_code, error=exc.to_dict())
    return StoredResult(success=True, status_code=success_status, data=data)


async def _wait_for_completion(
    store: IdempotencyStore,
    scope: IdempotencyScope,
    *,
    request_hash: str | None,
    deadline: float,
    poll_interval_s: float,
) -> IdempotencyRecord | None:
    # Poll until the competing request records its outcome; None means its claim vanished.
    loop = asyncio.get_running_loop()
    while True:
        record = await store.get(scope, now=_utc_now())
        if record is None:
            return None
        _ensure_same_request(record, request_hash)
        if record.is_completed:
            return record
        if loop.time() >= deadline:
            raise IdempotencyInProgressError(
                f"Request with Idempotency-Key for {scope.endpoint} is still in progress"
            )
        await asyncio.sleep(poll_interval_s)


async def _release_claim(store: IdempotencyStore, scope: IdempotencyScope, token: str) -> None:
    try:
        await store.release(scope, token=token)
    except InfrastructureError:
        logger.warning(
            "idempotency_claim_release_failed endpoint=%s owner=%s", scope.endpoint, scope.owner_id, exc_info=True
        )


async def execute_idempotent(
    key: str,
    owner_id: str,
    endpoint: str,
    operation: Operation,
    *,
    store: IdempotencyStore | None = None,
    request_hash: str | None = None,
    success_status: int = 200,
) -> IdempotentResult:
    """Run `operation` at most once per (key, owner_id, endpoint).

    Raises `ValidationError` for malformed keys before touching the store and
    `InfrastructureError` when the store cannot be reached before execution;
    callers are expected to fall back to running the operation directly.
    """
    validated = validate_idempotency_key(key)
    settings = get_settings()
    if store is None:
        store = get_idempotency_store()
    scope = IdempotencyScope(key=validated, owner_id=owner_id, endpoint=endpoint)
    request_id = str(uuid4())

    existing = await store.get(scope, now=_utc_now())
    if existing is not None and existing.is_completed:
        _ensure_same_request(existing, request_hash)
        logger.debug("idempotency_cache_hit endpoint=%s owner=%s", endpoint, owner_id)
        return _cached_result(existing, request_id)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.idempotency_wait_timeout_ms / 1000.0
    claim_ttl = timedelta(seconds=settings.idempotency_claim_ttl_s)
    while True:
        token = await store.claim(scope, request_hash=request_hash, now=_utc_now(), claim_ttl=claim_ttl)
        if token is not None:
            break
        record = await _wait_for_completion(
            store,
            scope,
            request_hash=request_hash,
            deadline=deadline,
            poll_interval_s=settings.idempotency_poll_interval_ms / 1000.0,
        )
        if record is not None:
            logger.info("idempotency_concurrent_duplicate endpoint=%s owner=%s", endpoint, owner_id)
            return _cached_result(record, request_id)
        if loop.time() >= deadline:
            raise IdempotencyInProgressError(f"Request with Idempotency-Key for {endpoint} is still in progress")

    try:
        outcome = await _run_operation(operation, success_status)
    except BaseException:
        # Release on unexpected errors and cancellation so a retry can run the operation.
        await _release_claim(store, scope, token)
        raise

    ttl = timedelta(hours=settings.idempotency_ttl_hours)
    try:
        owned = await store.complete(scope, token=token, result=outcome, now=_utc_now(), ttl=ttl)
    except InfrastructureError:
        logger.exception("idempotency_record_persist_failed endpoint=%s owner=%s", endpoint, owner_id)
        return _fresh_result(outcome, request_id)

    if not owned:
        # Another request became authoritative for this scope; its recorded outcome wins.
        try:
            winner = await store.get(scope, now=_utc_now())
        except InfrastructureError:
            logger.exception("idempotency_race_refetch_failed endpoint=%s owner=%s", endpoint, owner_id)
            winner = None
        if winner is not None and winner.is_completed:
            logger.warning("idempotency_race_resolved endpoint=%s owner=%s", endpoint, owner_id)
            return _cached_result(winner, request_id)
        logger.warning("idempotency_claim_lost endpoint=%s owner=%s", endpoint, owner_id)

    return _fresh_result(outcome, request_id)


async def purge_expired_idempotency_records(store: IdempotencyStore | None = None) -> int:
    # Remove records past the retention window to keep storage bounded.
    if store is None:
        store = get_idempotency_store()
    deleted = await store.purge_expired(_utc_now())
    logger.info("pruned_idempotency_records=%s", deleted)
    return deleted


_store: IdempotencyStore | None = None


def get_idempotency_store() -> IdempotencyStore:
    # Select the backend from settings once per process.
    global _store
    if _store is None:
        backend = get_settings().idempotency_backend.lower()
        if backend == "memory":
            _store = InMemoryIdempotencyStore()
        elif backend == "sql":
            from clubcore.persistence.repos.idempotency import SqlIdempotencyStore

            _store = SqlIdempotencyStore()
        else:
            raise ValueError(f"Unsupported idempotency backend: {backend}")
        logger.info("initialized_idempotency_store backend=%s", backend)
    return _store


def reset_idempotency_store() -> None:
    global _store
    _store = None
