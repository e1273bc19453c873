from __future__ import annotations

import os

# Point settings at SQLite and in-process counters before any scorewatch module builds its engine.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RL_BACKEND", "memory")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from scorewatch.core.config import get_settings
from scorewatch.domain.models import Base
from scorewatch.services.telemetry import reset_counters


@pytest.fixture
async def session_factory() -> async_sessionmaker[AsyncSession]:
    # Fresh in-memory schema per test; StaticPool keeps every session on the same database.
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_process_state() -> None:
    # Clear cached settings and counters so env overrides never leak between tests.
    get_settings.cache_clear()
    reset_counters()
    yield
    get_settings.cache_clear()
    reset_counters()
