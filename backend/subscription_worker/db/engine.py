"""SQLAlchemy async engine and session factory."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from subscription_worker.config import settings

WRITE_LOCK_OPTION = "sw_write_lock"


def _build_engine_kwargs() -> dict:
    """Return engine kwargs appropriate for the configured dialect."""
    if settings.is_postgres:
        return {
            "echo": settings.DEBUG,
            "future": True,
            "pool_size": settings.SW_DB_POOL_SIZE,
            "max_overflow": settings.SW_DB_MAX_OVERFLOW,
            "pool_timeout": settings.SW_DB_POOL_TIMEOUT,
            "pool_pre_ping": True,   # ensure stale connections are recycled
            "pool_recycle": 1800,    # recycle connections older than 30 min
        }
    # SQLite: single file, no pool tunables
    return {
        "echo": settings.DEBUG,
        "future": True,
        "connect_args": {"check_same_thread": False},
    }


def configure_sqlite_engine(eng: AsyncEngine) -> AsyncEngine:
    """Install the SQLite connection hooks the batch pipeline relies on.

    - WAL journal + busy_timeout so readers do not block the batch writer.
    - The driver's implicit BEGIN is disabled so SAVEPOINTs behave.  Sessions
      that called :func:`acquire_write_lock` start with ``BEGIN IMMEDIATE``
      and serialize on the write lock (SQLite has no row locks to skip);
      everything else gets a deferred ``BEGIN`` and reads from its snapshot.
    """

    @event.listens_for(eng.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, _conn_rec):  # type: ignore[misc]
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA synchronous=NORMAL")   # safe with WAL, faster than FULL
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(eng.sync_engine, "begin")
    def _begin(conn):  # type: ignore[misc]
        if conn.get_execution_options().get(WRITE_LOCK_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    return eng


engine = create_async_engine(settings.SW_DB_URL, **_build_engine_kwargs())

if settings.is_sqlite:
    configure_sqlite_engine(engine)


async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency: yields a session and commits/rollbacks."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def acquire_write_lock(db: AsyncSession) -> None:
    """Open *db*'s transaction as a writer.

    Must be the first statement inside ``db.begin()``.  On SQLite the
    connection is begun with ``BEGIN IMMEDIATE``; on PostgreSQL the option is
    ignored and row locks come from the claim query.
    """
    await db.connection(execution_options={WRITE_LOCK_OPTION: True})
