from __future__ import annotations

from datetime import datetime, timezone
import logging

from fastapi import HTTPException, Request, status

from clubcore.apps.api.response import API_VERSION, request_locale
from clubcore.core.config import get_settings
from clubcore.core.errors import InfrastructureError
from clubcore.core.messages import get_message
from clubcore.services.rate_limit import (
    TIER_API,
    TIER_AUTH,
    TIER_SENSITIVE,
    RateLimitDecision,
    get_client_identifier,
    get_rate_limiter,
    rate_limit_config_for_tier,
    reset_rate_limiter_state as _reset_service_state,
)


logger = logging.getLogger(__name__)

_MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_SENSITIVE_PREFIXES = ("/membership", "/admin", "/ops")
_VERSION_PREFIX = f"/{API_VERSION}"


def _strip_version(path: str) -> str:
    if path == _VERSION_PREFIX or path.startswith(f"{_VERSION_PREFIX}/"):
        return path[len(_VERSION_PREFIX):] or "/"
    return path


def route_class_for_path(path: str, method: str) -> str:
    # Map raw path/method inputs into rate limit tiers.
    normalized = _strip_version(path)
    if normalized == "/auth" or normalized.startswith("/auth/"):
        return TIER_AUTH
    if method.upper() in _MUTATION_METHODS and normalized.startswith(_SENSITIVE_PREFIXES):
        return TIER_SENSITIVE
    return TIER_API


def route_class_for_request(request: Request) -> str:
    return route_class_for_path(request.url.path, request.method)


def limiter_key(tier: str, client_id: str) -> str:
    # Tiers count separately so a burst on one class never drains another.
    return f"{tier}:{client_id}"


def reset_rate_limiter_state() -> None:
    _reset_service_state()


def _reset_header(decision: RateLimitDecision) -> str:
    return datetime.fromtimestamp(decision.reset_at_ms / 1000, tz=timezone.utc).isoformat()


def _throttle_exception(*, request: Request, tier: str, decision: RateLimitDecision) -> HTTPException:
    # Construct a stable 429 response with retry hints and a localized message.
    retry_after = decision.retry_after_seconds or 1
    headers = {
        "Retry-After": str(retry_after),
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": _reset_header(decision),
    }
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": get_message("RATE_LIMITED", request_locale(request), seconds=retry_after),
            "retry_after": retry_after,
            "tier": tier,
        },
        headers=headers,
    )


def _unavailable_exception(request: Request) -> HTTPException:
    # Return a stable 503 when rate limit storage is unavailable and fail-closed.
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "code": "RATE_LIMIT_UNAVAILABLE",
            "message": get_message("RATE_LIMIT_UNAVAILABLE", request_locale(request)),
        },
        headers={"Retry-After": "1"},
    )


async def enforce_rate_limit(request: Request) -> None:
    # Admit or reject the request before business logic runs; the middleware copies
    # request.state.rate_limit_headers onto whatever response the route produces.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    tier = route_class_for_request(request)
    client_id = get_client_identifier(request.headers)
    config = rate_limit_config_for_tier(tier)
    try:
        decision = await get_rate_limiter().check_limit(limiter_key(tier, client_id), config)
    except InfrastructureError as exc:
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception(request) from exc
        request.state.rate_limit_headers = {"X-RateLimit-Status": "degraded"}
        logger.warning("rate_limit_degraded path=%s tier=%s", request.url.path, tier)
        return

    if not decision.allowed:
        logger.info(
            "rate_limited path=%s tier=%s client=%s retry_after=%s",
            request.url.path,
            tier,
            client_id,
            decision.retry_after_seconds,
        )
        raise _throttle_exception(request=request, tier=tier, decision=decision)

    request.state.rate_limit_headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
    }
