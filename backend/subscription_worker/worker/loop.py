"""Worker poll loop.

Every cycle:
  1. reclaim_stale_records(): fail ``processing`` rows left behind by other
     writers or earlier deployments (only when REAPER_ENABLED).
  2. processor.run_batch(): claim and process up to BATCH_SIZE due records.
  3. sleep WORKER_POLL_INTERVAL seconds.

Errors in a cycle are logged and the loop carries on; cancellation stops it.
Any number of these loops may run against the same database: the claim
query guarantees two batches never process the same record.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import uuid

from subscription_worker.config import settings
from subscription_worker.db.engine import acquire_write_lock
from subscription_worker.schemas.processing import BatchRunOut
from subscription_worker.services.processing_store import reap_stale_processing
from subscription_worker.utils.metrics import record_stale_reaped
from subscription_worker.worker.batch import BatchProcessor, build_batch_processor

logger = logging.getLogger("subworker.worker.loop")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


async def reclaim_stale_records(processor: BatchProcessor, stale_after_seconds: float | None = None) -> int:
    """Fail records stuck in ``processing`` longer than the stale threshold."""
    threshold = stale_after_seconds if stale_after_seconds is not None else settings.PROCESSING_STALE_SECONDS
    async with processor.session_factory() as db:
        async with db.begin():
            await acquire_write_lock(db)
            reaped = await reap_stale_processing(db, threshold)
    record_stale_reaped(len(reaped))
    return len(reaped)


async def run_once(processor: BatchProcessor, batch_size: int | None = None) -> BatchRunOut:
    """One reaper pass plus one batch; used by scheduler-driven invocations."""
    if settings.REAPER_ENABLED:
        await reclaim_stale_records(processor)
    results = await processor.run_batch(batch_size)
    return BatchRunOut.from_results(results)


async def worker_loop(
    processor: BatchProcessor | None = None,
    poll_interval: float | None = None,
    batch_size: int | None = None,
    worker_id: str | None = None,
) -> None:
    """Run batches until cancelled (e.g. on server shutdown).

    Args:
        processor:     Batch processor to drive (default: built from settings).
        poll_interval: Seconds between cycles (default: WORKER_POLL_INTERVAL).
        batch_size:    Records per batch (default: BATCH_SIZE).
        worker_id:     Identifier used in logs (default: hostname+uuid).
    """
    _processor = processor or build_batch_processor()
    _poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL
    _worker_id = worker_id or _default_worker_id()

    logger.info(
        "Worker %s started (batch_size=%s, poll_interval=%.1fs, dialect=%s)",
        _worker_id, batch_size or _processor.default_limit, _poll_interval, settings.SW_DB_DIALECT,
    )

    while True:
        try:
            if settings.REAPER_ENABLED:
                try:
                    await reclaim_stale_records(_processor)
                except Exception:
                    logger.exception("Error in stale-record reaper")

            summary = BatchRunOut.from_results(await _processor.run_batch(batch_size))
            if summary.count:
                logger.info(
                    "Worker %s batch: %d success, %d error",
                    _worker_id, summary.success_count, summary.error_count,
                )

        except asyncio.CancelledError:
            logger.info("Worker %s shutting down", _worker_id)
            raise

        except Exception:
            logger.exception("Unexpected error in worker loop; will retry")

        await asyncio.sleep(_poll_interval)
