from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import logging
import threading
from typing import Any
from uuid import uuid4

from clubcore.core.errors import OperationError


logger = logging.getLogger(__name__)

APPLICATION_STATUS_PENDING = "pending"


@dataclass(frozen=True)
class MembershipApplication:
    id: str
    owner_id: str
    full_name: str
    email: str
    sport: str | None
    status: str
    submitted_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MembershipRegistry:
    """In-process store of submitted applications.

    Exists so the idempotent mutation path has a real side effect to protect;
    review workflows live elsewhere.
    """

    def __init__(self) -> None:
        self._applications: dict[str, MembershipApplication] = {}
        self._lock = threading.Lock()
        self.submissions = 0

    def submit(
        self,
        *,
        owner_id: str,
        full_name: str,
        email: str,
        sport: str | None = None,
    ) -> MembershipApplication:
        normalized_email = email.strip().lower()
        with self._lock:
            self.submissions += 1
            for existing in self._applications.values():
                if existing.email == normalized_email:
                    raise OperationError(
                        "APPLICATION_EXISTS",
                        "A membership application for this email already exists",
                        status_code=409,
                        details={"application_id": existing.id},
                    )
            application = MembershipApplication(
                id=str(uuid4()),
                owner_id=owner_id,
                full_name=full_name.strip(),
                email=normalized_email,
                sport=sport,
                status=APPLICATION_STATUS_PENDING,
                submitted_at=datetime.now(timezone.utc).isoformat(),
            )
            self._applications[application.id] = application
        logger.info("membership_application_submitted application_id=%s", application.id)
        return application

    def get(self, application_id: str) -> MembershipApplication | None:
        with self._lock:
            return self._applications.get(application_id)

    def clear(self) -> None:
        with self._lock:
            self._applications.clear()
            self.submissions = 0


_registry: MembershipRegistry | None = None


def get_membership_registry() -> MembershipRegistry:
    global _registry
    if _registry is None:
        _registry = MembershipRegistry()
    return _registry


def reset_membership_registry() -> None:
    global _registry
    _registry = None
