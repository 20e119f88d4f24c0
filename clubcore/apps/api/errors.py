from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clubcore.apps.api.response import error_response, get_request_context, request_locale
from clubcore.core.errors import (
    IdempotencyConflictError,
    IdempotencyInProgressError,
    OperationError,
    ValidationError,
)
from clubcore.core.messages import get_message
from clubcore.services.correlation import context_headers


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_REQUIRED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _json_error(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    merged = dict(headers or {})
    merged.update(context_headers(get_request_context(request)))
    return JSONResponse(content=payload, status_code=status_code, headers=merged)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _json_error(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Ensure Starlette-raised exceptions (unknown routes, bad methods) share the envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    if code == "NOT_FOUND" and not isinstance(exc.detail, dict):
        message = get_message("NOT_FOUND", request_locale(request))
    return _json_error(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for UI/SDK parsing.
    return _json_error(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=get_message("VALIDATION_ERROR", request_locale(request)),
        details={"errors": exc.errors()},
    )


async def clubcore_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _json_error(
        request,
        status_code=400,
        code=exc.code,
        message=get_message(exc.code, request_locale(request)),
    )


async def idempotency_conflict_handler(request: Request, exc: IdempotencyConflictError) -> JSONResponse:
    return _json_error(
        request,
        status_code=409,
        code="IDEMPOTENCY_KEY_CONFLICT",
        message=get_message("IDEMPOTENCY_KEY_CONFLICT", request_locale(request)),
    )


async def idempotency_in_progress_handler(request: Request, exc: IdempotencyInProgressError) -> JSONResponse:
    return _json_error(
        request,
        status_code=409,
        code="IDEMPOTENCY_IN_PROGRESS",
        message=get_message("IDEMPOTENCY_IN_PROGRESS", request_locale(request)),
        headers={"Retry-After": "1"},
    )


async def operation_error_handler(request: Request, exc: OperationError) -> JSONResponse:
    return _json_error(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; the correlation id lets users reference the failure.
    context = get_request_context(request)
    logger.error(
        "unhandled_exception path=%s",
        request.url.path,
        exc_info=exc,
        extra={"correlation_id": context.correlation_id, "causation_id": context.causation_id},
    )
    return _json_error(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message=get_message("INTERNAL_ERROR", request_locale(request), correlation_id=context.correlation_id),
    )
