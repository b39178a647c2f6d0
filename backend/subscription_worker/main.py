"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_worker.api.deps import close_batch_processor, get_batch_processor
from subscription_worker.api.subscriptions import router as subscriptions_router
from subscription_worker.config import settings
from subscription_worker.db.engine import engine, get_db
from subscription_worker.db.models import Base
from subscription_worker.utils.logger import setup_logger
from subscription_worker.utils.tracing import setup_tracing, shutdown_tracing

setup_logger(log_format=settings.LOG_FORMAT, log_level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL)
logger = logging.getLogger("subworker.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.is_sqlite:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    # else: for PostgreSQL, run `alembic upgrade head` before starting the server

    # Start embedded worker when configured (default for SQLite dev mode)
    _worker_task: asyncio.Task | None = None
    if settings.WORKER_EMBEDDED:
        from subscription_worker.worker.loop import worker_loop as _worker_loop
        _worker_task = asyncio.create_task(_worker_loop(processor=get_batch_processor()))
        logger.info(
            "Embedded worker started (batch_size=%d, poll_interval=%.1fs)",
            settings.BATCH_SIZE,
            settings.WORKER_POLL_INTERVAL,
        )
    try:
        yield
    finally:
        if _worker_task is not None:
            _worker_task.cancel()
            try:
                await _worker_task
            except asyncio.CancelledError:
                pass
        await close_batch_processor()
        await engine.dispose()
        shutdown_tracing()


app = FastAPI(
    title="Subscription Worker",
    description="Claims due subscriptions, analyzes new documents and creates notifications",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(subscriptions_router, prefix="/api/subscriptions", tags=["subscriptions"])

setup_tracing(app, settings.OTLP_ENDPOINT, service_name=settings.OTEL_SERVICE_NAME)


@app.get("/api/health")
async def health(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Health check: database unreachable: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "database": "disconnected", "error": str(exc)},
        )
    return {"status": "ok", "database": "connected"}


@app.get("/api/metrics", response_class=PlainTextResponse, tags=["observability"])
async def prometheus_metrics():
    """Prometheus-compatible text exposition of in-process metrics.

    Example line: ``subworker_records_processed_total{status="success"} 42``
    """
    from subscription_worker.utils.metrics import to_prometheus_text
    return to_prometheus_text()
