from __future__ import annotations

from fastapi import FastAPI

from clubcore.apps.api import serve
from clubcore.core.config import get_settings


def test_runner_binds_configured_address(monkeypatch) -> None:
    monkeypatch.setenv("API_HOST", "127.0.0.1")
    monkeypatch.setenv("API_PORT", "9100")
    get_settings.cache_clear()
    calls: list[tuple] = []
    monkeypatch.setattr(serve.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    serve.main()

    ((app, kwargs),) = calls
    assert isinstance(app, FastAPI)
    assert kwargs == {"host": "127.0.0.1", "port": 9100, "log_config": None}
