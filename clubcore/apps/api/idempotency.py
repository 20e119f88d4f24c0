from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from clubcore.apps.api.response import error_response, request_locale, success_response
from clubcore.core.config import get_settings
from clubcore.core.errors import InfrastructureError, OperationError, ValidationError
from clubcore.core.messages import get_message
from clubcore.services.idempotency import (
    IdempotentResult,
    compute_request_hash,
    execute_idempotent,
    extract_idempotency_key,
)


logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

REQUEST_ID_HEADER = "X-Request-Id"
CACHED_HEADER = "X-Idempotency-Cached"
ORIGINAL_TIMESTAMP_HEADER = "X-Original-Timestamp"


def _key_error(request: Request, code: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": code, "message": get_message(code, request_locale(request))},
    )


def _render(request: Request, result: IdempotentResult) -> JSONResponse:
    # Status comes from the business outcome; the cache only annotates it.
    meta: dict[str, Any] = {"cached": result.cached}
    headers = {
        REQUEST_ID_HEADER: result.request_id,
        CACHED_HEADER: "true" if result.cached else "false",
    }
    if result.cached and result.original_timestamp is not None:
        original = result.original_timestamp.isoformat()
        meta["original_timestamp"] = original
        headers[ORIGINAL_TIMESTAMP_HEADER] = original
    if result.success:
        body = success_response(request=request, data=result.data, request_id=result.request_id, **meta)
    else:
        error = result.error or {}
        body = error_response(
            request=request,
            code=str(error.get("code") or "OPERATION_FAILED"),
            message=str(error.get("message") or "Request failed"),
            details=error.get("details"),
            request_id=result.request_id,
            **meta,
        )
    return JSONResponse(content=body, status_code=result.status_code, headers=headers)


async def _run_direct(
    operation: Callable[[], Awaitable[Any]],
    success_status: int,
) -> IdempotentResult:
    # Execute without duplicate suppression; business failures still render as error envelopes.
    now = datetime.now(timezone.utc)
    try:
        data = await operation()
    except OperationError as exc:
        return IdempotentResult(
            success=False,
            status_code=exc.status_code,
            data=None,
            error=exc.to_dict(),
            cached=False,
            request_id=str(uuid4()),
            timestamp=now,
        )
    return IdempotentResult(
        success=True,
        status_code=success_status,
        data=data,
        error=None,
        cached=False,
        request_id=str(uuid4()),
        timestamp=now,
    )


async def run_idempotent(
    request: Request,
    *,
    owner_id: str,
    operation: Callable[[], Awaitable[Any]],
    success_status: int = status.HTTP_200_OK,
    payload: Any = None,
    endpoint: str | None = None,
) -> JSONResponse:
    """Wrap a route's mutation with the idempotency cache.

    Only mutation methods are deduplicated. When the record store is unreachable
    the operation runs directly, without duplicate suppression.
    """
    settings = get_settings()
    if not settings.idempotency_enabled or request.method.upper() not in IDEMPOTENT_METHODS:
        return _render(request, await _run_direct(operation, success_status))

    key = extract_idempotency_key(request.headers)
    if key is None:
        if settings.idempotency_require_key:
            raise _key_error(request, "IDEMPOTENCY_KEY_MISSING")
        return _render(request, await _run_direct(operation, success_status))

    request_hash = compute_request_hash(payload) if payload is not None else None
    invoked = False

    async def tracked_operation() -> Any:
        nonlocal invoked
        invoked = True
        return await operation()

    try:
        result = await execute_idempotent(
            key,
            owner_id,
            endpoint or request.url.path,
            tracked_operation,
            request_hash=request_hash,
            success_status=success_status,
        )
    except ValidationError as exc:
        raise _key_error(request, exc.code) from exc
    except InfrastructureError:
        # Failures raised by the operation itself are not store outages; never run it twice.
        if invoked:
            raise
        logger.warning("idempotency_store_unavailable path=%s; executing directly", request.url.path, exc_info=True)
        result = await _run_direct(operation, success_status)
    return _render(request, result)
