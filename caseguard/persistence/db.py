from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from caseguard.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    """Pool options for the configured database.

    SQLite (tests) keeps SQLAlchemy defaults; Postgres gets a bounded pool
    and a server-side statement timeout.
    """
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=max(1, int(settings.db_pool_size)),
        max_overflow=max(0, int(settings.db_max_overflow)),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.db_statement_timeout_ms > 0:
        timeout = str(int(settings.db_statement_timeout_ms))
        options["connect_args"] = {"server_settings": {"statement_timeout": timeout}}
    return options


_settings = get_settings()
engine = create_async_engine(_settings.database_url, **engine_options(_settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
