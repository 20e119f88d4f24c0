from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clubcore.apps.api.deps import Principal, get_context, get_current_principal, idempotency_key_header
from clubcore.apps.api.idempotency import run_idempotent
from clubcore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from clubcore.apps.api.rate_limit import enforce_rate_limit
from clubcore.apps.api.response import SuccessEnvelope, request_locale, success_response
from clubcore.core.logging import get_context_logger
from clubcore.core.messages import get_message
from clubcore.services.correlation import RequestContext, create_child_context
from clubcore.services.membership import get_membership_registry


router = APIRouter(
    prefix="/membership",
    tags=["membership"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(enforce_rate_limit)],
)


class MembershipApplicationRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    sport: str | None = Field(default=None, max_length=100)


class MembershipApplicationResponse(BaseModel):
    id: str
    owner_id: str
    full_name: str
    email: str
    sport: str | None
    status: str
    submitted_at: str


@router.post(
    "/applications",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[MembershipApplicationResponse],
)
async def submit_application(
    request: Request,
    body: MembershipApplicationRequest,
    principal: Principal = Depends(get_current_principal),
    context: RequestContext = Depends(get_context),
    _idempotency_key: str | None = Depends(idempotency_key_header),
) -> JSONResponse:
    async def _submit() -> dict:
        # The submission is its own operation node within the request chain.
        operation_context = create_child_context(context)
        log = get_context_logger(__name__, operation_context)
        log.info("submitting membership application")
        application = get_membership_registry().submit(
            owner_id=principal.owner_id,
            full_name=body.full_name,
            email=body.email,
            sport=body.sport,
        )
        return application.to_dict()

    return await run_idempotent(
        request,
        owner_id=principal.owner_id,
        operation=_submit,
        success_status=status.HTTP_201_CREATED,
        payload=body.model_dump(),
    )


@router.get(
    "/applications/{application_id}",
    response_model=SuccessEnvelope[MembershipApplicationResponse],
)
async def get_application(
    application_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> dict:
    application = get_membership_registry().get(application_id)
    if application is None or application.owner_id != principal.owner_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": get_message("NOT_FOUND", request_locale(request))},
        )
    return success_response(request=request, data=application.to_dict())
