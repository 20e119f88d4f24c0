from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from clubcore.apps.api.response import get_request_context, request_locale
from clubcore.core.messages import get_message
from clubcore.services.correlation import RequestContext


USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"

DEFAULT_ROLE = "member"
ROLE_ORDER: dict[str, int] = {"member": 1, "parent": 1, "athlete": 1, "coach": 2, "admin": 3}


class Principal(BaseModel):
    # Identity asserted by the upstream auth layer; idempotency records are scoped to it.
    owner_id: str
    role: str = DEFAULT_ROLE


def normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    return role if role in ROLE_ORDER else DEFAULT_ROLE


def role_allows(*, role: str, minimum_role: str) -> bool:
    # Compare roles by rank so higher roles inherit lower permissions.
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def _auth_error(request: Request) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_REQUIRED", "message": get_message("AUTH_REQUIRED", request_locale(request))},
    )


def _forbidden_error(request: Request, minimum_role: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "code": "AUTH_FORBIDDEN",
            "message": get_message("AUTH_FORBIDDEN", request_locale(request)),
            "required_role": minimum_role,
        },
    )


async def get_current_principal(request: Request) -> Principal:
    owner_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    if not owner_id:
        raise _auth_error(request)
    return Principal(owner_id=owner_id, role=normalize_role(request.headers.get(USER_ROLE_HEADER)))


def require_role(minimum_role: str):
    # Dependency factory to enforce role checks at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            raise _forbidden_error(request, minimum_role)
        return principal

    return _dependency


async def get_context(request: Request) -> RequestContext:
    return get_request_context(request)


def idempotency_key_header(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> str | None:
    # Expose Idempotency-Key in OpenAPI without forcing usage in handlers.
    return idempotency_key
