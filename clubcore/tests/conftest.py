from __future__ import annotations

import pytest

from clubcore.core.config import get_settings
from clubcore.services.idempotency import reset_idempotency_store
from clubcore.services.membership import reset_membership_registry
from clubcore.services.rate_limit import reset_rate_limiter_state


def _reset_process_state() -> None:
    get_settings.cache_clear()
    reset_idempotency_store()
    reset_rate_limiter_state()
    reset_membership_registry()


@pytest.fixture(autouse=True)
def isolate_process_state(monkeypatch) -> None:
    # Keep backends in-process and start every test from fresh stores and settings.
    monkeypatch.setenv("IDEMPOTENCY_BACKEND", "memory")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    monkeypatch.setenv("MAINTENANCE_SWEEPERS_ENABLED", "false")
    monkeypatch.setenv("LOG_JSON", "true")
    _reset_process_state()
    yield
    _reset_process_state()
