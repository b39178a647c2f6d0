"""Worker process entrypoint.

Run as a standalone process (production PostgreSQL mode):

    # From backend/ directory:
    python -m subscription_worker.worker

    # One reaper pass + one batch, then exit (cron / Cloud Scheduler jobs):
    python -m subscription_worker.worker --once --limit 25

The worker will:
1. Load subscription_worker.config.settings (honours .env file)
2. Block until tables exist (new Alembic deployments may have a brief gap)
3. Run the poll loop
4. Handle SIGINT/SIGTERM gracefully (finish the current await, then exit)

For single-process dev mode (SQLite), the loop is started automatically as an
asyncio.Task inside the API process (WORKER_EMBEDDED=true default).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal

logger = logging.getLogger("subworker.worker")


async def _wait_for_db(max_retries: int = 10, delay: float = 2.0) -> None:
    """Wait until the ``subscription_processing`` table is accessible."""
    from sqlalchemy import text
    from subscription_worker.db.engine import async_session

    for attempt in range(1, max_retries + 1):
        try:
            async with async_session() as db:
                await db.execute(text("SELECT 1 FROM subscription_processing LIMIT 1"))
            logger.info("Database ready after %d attempt(s)", attempt)
            return
        except Exception as exc:
            logger.warning(
                "Database not ready (attempt %d/%d): %s", attempt, max_retries, exc
            )
            if attempt < max_retries:
                await asyncio.sleep(delay)

    raise RuntimeError(
        f"Database not accessible after {max_retries} attempts. "
        "Run `alembic upgrade head` before starting the worker."
    )


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Subscription processing worker")
    parser.add_argument("--once", action="store_true", help="run a single batch and exit")
    parser.add_argument("--limit", type=int, default=None, help="records per batch")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    """Worker process entrypoint."""
    from subscription_worker.config import settings
    from subscription_worker.db.engine import engine
    from subscription_worker.utils.logger import setup_logger
    from subscription_worker.utils.tracing import setup_tracing, shutdown_tracing
    from subscription_worker.worker.batch import build_batch_processor
    from subscription_worker.worker.loop import run_once, worker_loop

    args = _parse_args(argv)
    setup_logger(log_format=settings.LOG_FORMAT, log_level=settings.LOG_LEVEL)
    setup_tracing(otlp_endpoint=settings.OTLP_ENDPOINT, service_name=settings.OTEL_SERVICE_NAME)

    logger.info(
        "Starting subscription worker (dialect=%s, embedded=%s)",
        settings.SW_DB_DIALECT,
        settings.WORKER_EMBEDDED,
    )

    await _wait_for_db()
    processor = build_batch_processor()

    try:
        if args.once:
            summary = await run_once(processor, args.limit)
            print(json.dumps(summary.model_dump(), default=str))
            return

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _handle_stop(*_):
            logger.info("Received shutdown signal, stopping worker")
            stop_event.set()

        # Register SIGINT/SIGTERM handlers (Unix only; Windows uses default)
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _handle_stop)
            except (NotImplementedError, AttributeError):
                pass

        worker_task = asyncio.create_task(
            worker_loop(
                processor=processor,
                batch_size=args.limit,
                worker_id=os.environ.get("WORKER_ID"),
            )
        )

        await stop_event.wait()
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
    finally:
        await processor.aclose()
        await engine.dispose()
        shutdown_tracing()

    logger.info("Worker stopped cleanly")


def run() -> None:
    """Console-script entrypoint."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
