from __future__ import annotations

from typing import Any


class ClubCoreError(Exception):
    """Base error for clubcore."""


class ValidationError(ClubCoreError):
    """Malformed client input, rejected before any side effect."""

    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class InfrastructureError(ClubCoreError):
    """Backing store (database, Redis) unreachable or failing."""


class IdempotencyConflictError(ClubCoreError):
    """Idempotency key reused for a different request payload."""


class IdempotencyInProgressError(ClubCoreError):
    """A concurrent request holding the same key has not finished yet."""


class OperationError(ClubCoreError):
    """Business failure raised by a wrapped operation.

    These are recorded by the idempotency cache exactly like successes so a
    retried duplicate observes the same failure.
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload
