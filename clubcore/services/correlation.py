from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping
from uuid import UUID, uuid4

from clubcore.services.headers import header_value


CORRELATION_ID_HEADER = "X-Correlation-ID"
CAUSATION_ID_HEADER = "X-Causation-ID"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class RequestContext:
    # Immutable per-operation identity; nested operations get a child copy instead of mutating this.
    correlation_id: str
    causation_id: str
    user_id: str | None = None
    timestamp: str = field(default_factory=_utc_now_iso)
    parent_causation_id: str | None = None
    request_url: str | None = None
    request_method: str | None = None


_current_context: ContextVar[RequestContext | None] = ContextVar("clubcore_request_context", default=None)


def generate_correlation_id() -> str:
    return str(uuid4())


def generate_causation_id() -> str:
    return str(uuid4())


def _normalize_id(value: str | None) -> str | None:
    # Malformed identifiers are dropped so a fresh one is generated instead.
    if not value:
        return None
    try:
        return str(UUID(value.strip()))
    except (ValueError, AttributeError):
        return None


def extract_correlation_id(headers: Mapping[str, str] | None) -> str | None:
    return _normalize_id(header_value(headers, CORRELATION_ID_HEADER))


def extract_causation_id(headers: Mapping[str, str] | None) -> str | None:
    return _normalize_id(header_value(headers, CAUSATION_ID_HEADER))


def create_root_context(
    headers: Mapping[str, str] | None = None,
    user_id: str | None = None,
    *,
    request_url: str | None = None,
    request_method: str | None = None,
) -> RequestContext:
    # Reuse an inbound correlation id when present, but every operation gets its own causation id.
    return RequestContext(
        correlation_id=extract_correlation_id(headers) or generate_correlation_id(),
        causation_id=generate_causation_id(),
        user_id=user_id,
        parent_causation_id=extract_causation_id(headers),
        request_url=request_url,
        request_method=request_method,
    )


def create_child_context(parent: RequestContext, user_id: str | None = None) -> RequestContext:
    return RequestContext(
        correlation_id=parent.correlation_id,
        causation_id=generate_causation_id(),
        user_id=user_id or parent.user_id,
        parent_causation_id=parent.causation_id,
        request_url=parent.request_url,
        request_method=parent.request_method,
    )


def format_context(context: RequestContext) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "correlation_id": context.correlation_id,
        "causation_id": context.causation_id,
        "timestamp": context.timestamp,
    }
    if context.user_id:
        fields["user_id"] = context.user_id
    if context.parent_causation_id:
        fields["parent_causation_id"] = context.parent_causation_id
    return fields


def context_headers(context: RequestContext) -> dict[str, str]:
    return {
        CORRELATION_ID_HEADER: context.correlation_id,
        CAUSATION_ID_HEADER: context.causation_id,
    }


def get_current_context() -> RequestContext | None:
    return _current_context.get()


@contextmanager
def use_context(context: RequestContext) -> Iterator[RequestContext]:
    # Bind the context for log enrichment and restore the previous one on exit.
    token = _current_context.set(context)
    try:
        yield context
    finally:
        _current_context.reset(token)
