"""Batch processor: claim due records and drive each through the pipeline.

One batch is one database transaction:

  BEGIN (IMMEDIATE on SQLite)
    claim_due_records(limit)            rows locked until COMMIT
    for each claimed record (sequentially):
      mark_processing                   last_run_at survives a failed run
      SAVEPOINT
        registry.resolve(type)          unknown type → record fails
        normalize_prompts               bad prompts → default prompt set
        analyzer.analyze(request)       transport error → record fails
        sink.create_many(drafts)        insert errors counted, not raised
        mark_completed(stats)
      RELEASE   | on any error: ROLLBACK TO SAVEPOINT + mark_failed(message)
      update_subscription_last_processed (own savepoint, best-effort)
  COMMIT

A failing record never aborts the batch.  Errors from the claim query or the
commit roll the whole transaction back and propagate to the caller.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_worker.config import Settings, settings as default_settings
from subscription_worker.connectors.pubsub_client import build_publisher
from subscription_worker.db.engine import acquire_write_lock
from subscription_worker.db.models import ProcessingStatus
from subscription_worker.errors import SubscriptionNotFoundError
from subscription_worker.processors.prompts import normalize_prompts
from subscription_worker.processors.registry import ProcessorRegistry, build_registry
from subscription_worker.schemas.analysis import AnalysisRequest
from subscription_worker.schemas.processing import ProcessOneResult, RecordResult
from subscription_worker.services import processing_store as store
from subscription_worker.services.notification_service import NotificationSink, build_draft
from subscription_worker.utils.logger import ctx_batch_id, ctx_subscription_id, ctx_trace_id
from subscription_worker.utils.metrics import (
    record_analysis_latency,
    record_batch_claimed,
    record_notifications,
    record_record_processed,
)
from subscription_worker.utils.tracing import get_tracer

logger = logging.getLogger("subworker.worker.batch")
_tracer = get_tracer("subworker.worker.batch")


def new_trace_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass
class _RunStats:
    matches_found: int
    notifications_created: int
    notification_errors: int


class BatchProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProcessorRegistry,
        sink: NotificationSink,
        *,
        default_limit: int = 10,
        max_limit: int = 50,
        result_limit: int = 5,
        default_prompts: Sequence[str] | None = None,
    ):
        self._session_factory = session_factory
        self.registry = registry
        self.sink = sink
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.result_limit = result_limit
        self.default_prompts = list(default_prompts) if default_prompts is not None else None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    def _clamp(self, limit: int | None) -> int:
        if limit is None:
            limit = self.default_limit
        return max(1, min(int(limit), self.max_limit))

    # ── Batch ───────────────────────────────────────────────────

    async def run_batch(self, limit: int | None = None) -> list[RecordResult]:
        """Claim up to *limit* due records and process them one by one."""
        limit = self._clamp(limit)
        batch_id = uuid.uuid4().hex[:8]
        token = ctx_batch_id.set(batch_id)
        try:
            with _tracer.start_as_current_span("subscription.batch") as span:
                span.set_attribute("batch.id", batch_id)
                span.set_attribute("batch.limit", limit)
                async with self._session_factory() as db:
                    async with db.begin():
                        await acquire_write_lock(db)
                        claimed = await store.claim_due_records(db, limit)
                        record_batch_claimed(len(claimed))
                        span.set_attribute("batch.claimed", len(claimed))
                        if not claimed:
                            logger.debug("No due records")
                            return []

                        logger.info("Claimed %d due record(s) (limit=%d)", len(claimed), limit)
                        results = [await self._process_claimed(db, record) for record in claimed]

            errors = sum(1 for r in results if r.status == "error")
            logger.info(
                "Batch complete: %d processed, %d success, %d error",
                len(results), len(results) - errors, errors,
            )
            return results
        except Exception:
            logger.exception("Batch aborted, transaction rolled back")
            raise
        finally:
            ctx_batch_id.reset(token)

    # ── Single record (manual trigger) ──────────────────────────

    async def process_one(self, subscription_id: str) -> ProcessOneResult:
        """Process one subscription now, regardless of its next_run_at."""
        trace_id = new_trace_id()
        async with self._session_factory() as db:
            async with db.begin():
                await acquire_write_lock(db)
                found = await store.get_subscription(db, subscription_id)
                if found is None:
                    raise SubscriptionNotFoundError(subscription_id)
                subscription, type_slug = found
                if not subscription.active:
                    logger.warning("Processing inactive subscription %s on explicit request", subscription_id)

                await store.ensure_processing_record(db, subscription_id)
                record = await store.get_record_for_subscription(db, subscription_id, lock=True)
                if record is None or record.status == ProcessingStatus.PROCESSING.value:
                    logger.info("Subscription %s is being processed by another worker; skipped", subscription_id)
                    return ProcessOneResult(status="skipped", subscription_id=subscription_id, trace_id=trace_id)

                claimed = store.ClaimedRecord(
                    record_id=record.id,
                    subscription_id=subscription.id,
                    user_id=subscription.user_id,
                    prompts=subscription.prompts,
                    frequency=subscription.frequency,
                    type_slug=type_slug,
                    next_run_at=store.as_utc(record.next_run_at),
                    subscription_metadata=dict(subscription.meta or {}),
                )
                result = await self._process_claimed(db, claimed, trace_id=trace_id)

        return ProcessOneResult(
            status=result.status,
            subscription_id=subscription_id,
            matches_count=result.matches_found or 0,
            notifications_created=result.notifications_created or 0,
            trace_id=trace_id,
            error=result.error,
        )

    # ── Per-record pipeline ─────────────────────────────────────

    async def _process_claimed(
        self,
        db: AsyncSession,
        record: store.ClaimedRecord,
        trace_id: str | None = None,
    ) -> RecordResult:
        """Run one record inside a SAVEPOINT; never raises for record-level errors."""
        trace_id = trace_id or new_trace_id()
        trace_token = ctx_trace_id.set(trace_id)
        sub_token = ctx_subscription_id.set(record.subscription_id)
        started = time.perf_counter()
        span = _tracer.start_span("subscription.process")
        span.set_attribute("subscription.id", record.subscription_id)
        span.set_attribute("subscription.type", record.type_slug or "")
        span.set_attribute("trace_id", trace_id)
        try:
            try:
                await store.mark_processing(db, record.record_id)
                async with db.begin_nested():
                    stats = await self._run_pipeline(db, record, trace_id, started)
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                logger.error("Processing failed for subscription %s: %s", record.subscription_id, message)
                span.record_exception(exc)
                span.set_attribute("outcome", "error")
                await store.mark_failed(db, record.record_id, message)
                record_record_processed("error", time.perf_counter() - started)
                return RecordResult(
                    subscription_id=record.subscription_id,
                    status="error",
                    error=message,
                    trace_id=trace_id,
                )

            span.set_attribute("outcome", "success")
            span.set_attribute("matches_found", stats.matches_found)
            await store.update_subscription_last_processed(db, record.subscription_id)
            record_record_processed("success", time.perf_counter() - started)
            return RecordResult(
                subscription_id=record.subscription_id,
                status="success",
                matches_found=stats.matches_found,
                notifications_created=stats.notifications_created,
                trace_id=trace_id,
            )
        finally:
            span.end()
            ctx_subscription_id.reset(sub_token)
            ctx_trace_id.reset(trace_token)

    async def _run_pipeline(
        self,
        db: AsyncSession,
        record: store.ClaimedRecord,
        trace_id: str,
        started: float,
    ) -> _RunStats:
        analyzer = self.registry.resolve(record.type_slug)
        prompts = normalize_prompts(record.prompts, self.default_prompts)
        request = AnalysisRequest(
            prompts=prompts,
            user_id=record.user_id,
            subscription_id=record.subscription_id,
            limit=self.result_limit,
            trace_id=trace_id,
        )

        analysis_started = time.perf_counter()
        result = await analyzer.analyze(request)
        analysis_seconds = time.perf_counter() - analysis_started
        record_analysis_latency(analyzer.type_slug, analysis_seconds)

        drafts = [
            build_draft(
                user_id=record.user_id,
                subscription_id=record.subscription_id,
                match=match,
                type_slug=analyzer.type_slug,
                trace_id=trace_id,
            )
            for match in result.matches
        ]
        created = await self.sink.create_many(db, drafts)
        record_notifications(len(created.created), created.errors)

        stats = _RunStats(
            matches_found=len(result.matches),
            notifications_created=len(created.created),
            notification_errors=created.errors,
        )
        await store.mark_completed(
            db,
            record.record_id,
            record.frequency,
            {
                "processed_at": datetime.now(timezone.utc).isoformat(),
                "matches_found": stats.matches_found,
                "notifications_created": stats.notifications_created,
                "notification_errors": stats.notification_errors,
                "analysis_status": result.status,
                "analysis_latency_ms": round(analysis_seconds * 1000),
                "processing_time_ms": round((time.perf_counter() - started) * 1000),
                "prompt_count": len(prompts),
                "trace_id": trace_id,
            },
        )
        logger.info(
            "Subscription %s processed: %d match(es), %d notification(s)",
            record.subscription_id, stats.matches_found, stats.notifications_created,
        )
        return stats

    async def aclose(self) -> None:
        await self.registry.aclose()
        await self.sink.close()


def build_batch_processor(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    cfg: Settings | None = None,
) -> BatchProcessor:
    """Wire the processor from settings: registry, publisher and sink."""
    cfg = cfg or default_settings
    if session_factory is None:
        from subscription_worker.db.engine import async_session as session_factory

    sink = NotificationSink(publisher=build_publisher(cfg), topic=cfg.PUBSUB_TOPIC)
    return BatchProcessor(
        session_factory,
        build_registry(cfg),
        sink,
        default_limit=cfg.BATCH_SIZE,
        max_limit=cfg.BATCH_SIZE_MAX,
        result_limit=cfg.ANALYSIS_RESULT_LIMIT,
        default_prompts=cfg.DEFAULT_PROMPTS,
    )
