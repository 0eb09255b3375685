from __future__ import annotations

from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tenantfleet.core.config import get_settings


def create_control_engine(database_url: str | None = None) -> AsyncEngine:
    # Configure a bounded pool for the control-plane registry database.
    settings = get_settings()
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.control_db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.control_db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
    return create_async_engine(url, **engine_kwargs)


@lru_cache
def get_engine() -> AsyncEngine:
    return create_control_engine()


@lru_cache
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), expire_on_commit=False)
