from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from clubcore.apps.api.errors import (
    clubcore_validation_handler,
    http_exception_handler,
    idempotency_conflict_handler,
    idempotency_in_progress_handler,
    operation_error_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from clubcore.apps.api.rate_limit import route_class_for_request
from clubcore.apps.api.response import API_VERSION
from clubcore.apps.api.routes.health import router as health_router
from clubcore.apps.api.routes.membership import router as membership_router
from clubcore.apps.api.routes.ops import router as ops_router
from clubcore.core.config import get_settings
from clubcore.core.errors import (
    IdempotencyConflictError,
    IdempotencyInProgressError,
    OperationError,
    ValidationError,
)
from clubcore.core.logging import configure_logging
from clubcore.services.correlation import context_headers, create_root_context, use_context
from clubcore.services.maintenance import build_sweepers


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Sweepers belong to the process, not to any request.
    sweepers = build_sweepers() if get_settings().maintenance_sweepers_enabled else []
    for sweeper in sweepers:
        sweeper.start()
    app.state.sweepers = sweepers
    try:
        yield
    finally:
        for sweeper in sweepers:
            await sweeper.stop()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="ClubCore API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Root the correlation chain here and bind it for every log line in the request.
        context = create_root_context(
            request.headers,
            request.headers.get("X-User-Id"),
            request_url=str(request.url),
            request_method=request.method,
        )
        request.state.context = context
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        status_code = 500
        with use_context(context):
            try:
                response = await call_next(request)
                status_code = response.status_code
            finally:
                # Unhandled errors escape call_next; still emit the access line as a 500.
                logger.info(
                    "request_completed method=%s path=%s status=%s route_class=%s latency_ms=%.1f",
                    request.method,
                    request.url.path,
                    status_code,
                    route_class_for_request(request),
                    (time.monotonic() - start) * 1000.0,
                )
        response.headers.setdefault("X-Request-Id", request_id)
        for key, value in (getattr(request.state, "rate_limit_headers", None) or {}).items():
            response.headers.setdefault(key, value)
        response.headers.update(context_headers(context))
        return response

    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, clubcore_validation_handler)
    app.add_exception_handler(IdempotencyConflictError, idempotency_conflict_handler)
    app.add_exception_handler(IdempotencyInProgressError, idempotency_in_progress_handler)
    app.add_exception_handler(OperationError, operation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(membership_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Document the correlation and idempotency headers shared by every route.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="ClubCore API", version=API_VERSION, routes=app.routes)
        schema["info"]["x-correlation-headers"] = ["X-Correlation-ID", "X-Causation-ID"]
        schema["info"]["x-app-name"] = settings.app_name
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
