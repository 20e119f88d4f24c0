from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

from clubcore.core.config import get_settings
from clubcore.core.messages import supported_locales
from clubcore.services.correlation import RequestContext, create_root_context


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    # Include request and correlation metadata so users can quote them in reports.
    request_id: str
    correlation_id: str | None = None
    causation_id: str | None = None
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def get_request_context(request: Request) -> RequestContext:
    # Middleware binds the context; error handlers outside it rebuild one from headers.
    context = getattr(request.state, "context", None)
    if context is None:
        context = create_root_context(
            request.headers,
            request.headers.get("X-User-Id"),
            request_url=str(request.url),
            request_method=request.method,
        )
        request.state.context = context
    return context


def request_locale(request: Request) -> str:
    # Pick the first Accept-Language tag we ship messages for.
    header = request.headers.get("Accept-Language") or ""
    available = set(supported_locales())
    for part in header.split(","):
        tag = part.split(";")[0].strip().lower()
        language = tag.split("-")[0]
        if language in available:
            return language
    return get_settings().default_locale


def build_meta(request: Request, *, request_id: str | None = None, **extra: Any) -> dict[str, Any]:
    context = get_request_context(request)
    meta = ResponseMeta(
        request_id=request_id or get_request_id(request),
        correlation_id=context.correlation_id,
        causation_id=context.causation_id,
    ).model_dump()
    meta.update(extra)
    return meta


def success_response(*, request: Request, data: Any, request_id: str | None = None, **meta: Any) -> dict[str, Any]:
    return {"data": data, "meta": build_meta(request, request_id=request_id, **meta)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
    **meta: Any,
) -> dict[str, Any]:
    # Return the standard error envelope with request metadata.
    error = ErrorDetail(code=code, message=message, details=details)
    return {
        "error": error.model_dump(exclude_none=True),
        "meta": build_meta(request, request_id=request_id, **meta),
    }
