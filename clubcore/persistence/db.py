from __future__ import annotations

from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from clubcore.core.config import get_settings


def engine_options(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    options: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        return options
    # Bounded asyncpg pool; idempotency lookups sit on the request path.
    options["pool_size"] = max(1, int(settings.api_db_pool_size))
    options["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    options["pool_timeout"] = 30
    options["pool_recycle"] = 1800
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


@lru_cache
def get_engine() -> AsyncEngine:
    # Built on first use so memory-backed deployments never open a pool.
    database_url = get_settings().database_url
    return create_async_engine(database_url, **engine_options(database_url))


@lru_cache
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), expire_on_commit=False)
