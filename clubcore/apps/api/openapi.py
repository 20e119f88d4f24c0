from __future__ import annotations

from typing import Any

from clubcore.apps.api.response import ErrorEnvelope


_EXAMPLE_CORRELATION_ID = "2f1c6b1e-8a4f-4c55-9d2e-6a1b9d3e7c40"


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {
            "request_id": "req_example",
            "correlation_id": _EXAMPLE_CORRELATION_ID,
            "causation_id": "7b0e5b8e-2d3c-4f1a-8c6e-0f9a4d2b1c11",
            "api_version": "v1",
        },
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Bad request",
        _error_example(
            code="IDEMPOTENCY_KEY_INVALID",
            message="Idempotency-Key must be a valid UUID or an alphanumeric string (16-255 characters).",
        ),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_REQUIRED", message="Please sign in to continue."),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="You do not have permission to perform this action."),
    ),
    409: _response(
        "Conflict",
        _error_example(
            code="IDEMPOTENCY_KEY_CONFLICT",
            message="Idempotency-Key was already used with a different request.",
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(
            code="VALIDATION_ERROR",
            message="The submitted data is invalid.",
            details={"errors": [{"loc": ["body", "email"], "msg": "Field required"}]},
        ),
    ),
    429: _response(
        "Rate limited",
        _error_example(
            code="RATE_LIMITED",
            message="Too many requests. Please wait 42 seconds and try again.",
            details={"retry_after": 42, "tier": "sensitive"},
        ),
    ),
    500: _response(
        "Internal error",
        _error_example(
            code="INTERNAL_ERROR",
            message=(
                "An unexpected error occurred. Please quote reference "
                f"{_EXAMPLE_CORRELATION_ID} when reporting it."
            ),
        ),
    ),
    503: _response(
        "Service unavailable",
        _error_example(
            code="RATE_LIMIT_UNAVAILABLE",
            message="Rate limiting is temporarily unavailable. Please try again later.",
        ),
    ),
}
