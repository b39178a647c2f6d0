"""Shared fixtures for backend tests."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from subscription_worker.db.engine import configure_sqlite_engine
from subscription_worker.db.models import Base
from subscription_worker.utils.metrics import metrics


# ── Database ────────────────────────────────────────────────────


@pytest.fixture
async def db_factory(tmp_path):
    """File-backed SQLite database with all tables; yields a session factory.

    A file (not ``:memory:``) so concurrent sessions get separate connections.
    """
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    configure_sqlite_engine(eng)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await eng.dispose()


# ── Metrics ─────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()
