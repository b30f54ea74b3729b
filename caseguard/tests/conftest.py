from __future__ import annotations

import os
import tempfile

# Point the shared engine at a throwaway SQLite file before any caseguard import builds it.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), f'caseguard_test_{os.getpid()}.db')}",
)
# Never reach for Redis from tests; the due-job poller path is exercised directly.
os.environ.setdefault("SCHEDULER_EXECUTION_MODE", "inline")

import pytest

from caseguard.core.config import get_settings
from caseguard.domain.models import Base
from caseguard.persistence.db import engine
from caseguard.services.telemetry import reset_counters


@pytest.fixture(autouse=True)
def reset_state_between_tests() -> None:
    # Settings and counters are process-wide; keep tests independent.
    get_settings.cache_clear()
    reset_counters()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db_schema() -> None:
    # Fresh schema per test; the engine is disposed so no connection outlives its loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()
