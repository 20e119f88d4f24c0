from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from clubcore.apps.api.deps import Principal, require_role
from clubcore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from clubcore.apps.api.rate_limit import enforce_rate_limit, limiter_key
from clubcore.apps.api.response import SuccessEnvelope, success_response
from clubcore.core.errors import InfrastructureError
from clubcore.services.maintenance import run_maintenance_task
from clubcore.services.rate_limit import (
    TIER_API,
    TIER_AUTH,
    TIER_SENSITIVE,
    get_rate_limiter,
    rate_limit_config_for_tier,
)


router = APIRouter(
    prefix="/ops",
    tags=["ops"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(enforce_rate_limit)],
)

_TIERS = (TIER_AUTH, TIER_API, TIER_SENSITIVE)


class RateLimitTierStatus(BaseModel):
    tier: str
    limit: int
    count: int
    remaining: int
    reset_at: str | None


class RateLimitStatusResponse(BaseModel):
    client_id: str
    tiers: list[RateLimitTierStatus]


class RateLimitResetResponse(BaseModel):
    client_id: str
    reset: bool


class PruneResponse(BaseModel):
    task: str
    deleted: int


def _store_unavailable(exc: InfrastructureError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "STORE_UNAVAILABLE", "message": str(exc)},
    )


@router.get("/rate-limits/{client_id}", response_model=SuccessEnvelope[RateLimitStatusResponse])
async def rate_limit_status(
    client_id: str,
    request: Request,
    _principal: Principal = Depends(require_role("admin")),
) -> dict:
    # Report live window counters per tier for support investigations.
    limiter = get_rate_limiter()
    tiers: list[RateLimitTierStatus] = []
    try:
        for tier in _TIERS:
            config = rate_limit_config_for_tier(tier)
            entry = await limiter.get_status(limiter_key(tier, client_id))
            count = entry.count if entry is not None else 0
            reset_at = (
                datetime.fromtimestamp(entry.reset_at_ms / 1000, tz=timezone.utc).isoformat()
                if entry is not None
                else None
            )
            tiers.append(
                RateLimitTierStatus(
                    tier=tier,
                    limit=config.max_requests,
                    count=count,
                    remaining=max(0, config.max_requests - count),
                    reset_at=reset_at,
                )
            )
    except InfrastructureError as exc:
        raise _store_unavailable(exc) from exc
    payload = RateLimitStatusResponse(client_id=client_id, tiers=tiers)
    return success_response(request=request, data=payload.model_dump())


@router.delete("/rate-limits/{client_id}", response_model=SuccessEnvelope[RateLimitResetResponse])
async def reset_rate_limit(
    client_id: str,
    request: Request,
    _principal: Principal = Depends(require_role("admin")),
) -> dict:
    # Clear every tier's window so a locked-out client can retry immediately.
    limiter = get_rate_limiter()
    try:
        for tier in _TIERS:
            await limiter.reset(limiter_key(tier, client_id))
    except InfrastructureError as exc:
        raise _store_unavailable(exc) from exc
    payload = RateLimitResetResponse(client_id=client_id, reset=True)
    return success_response(request=request, data=payload.model_dump())


@router.post("/maintenance/prune-idempotency", response_model=SuccessEnvelope[PruneResponse])
async def prune_idempotency(
    request: Request,
    _principal: Principal = Depends(require_role("admin")),
) -> dict:
    try:
        deleted = await run_maintenance_task("prune_idempotency")
    except InfrastructureError as exc:
        raise _store_unavailable(exc) from exc
    payload = PruneResponse(task="prune_idempotency", deleted=deleted)
    return success_response(request=request, data=payload.model_dump())
