"""Record store: claim and state transitions for subscription_processing.

Every function here takes an ``AsyncSession`` and never commits: the caller
owns the surrounding transaction, which is what keeps a claimed row locked
until the batch finishes.

Claiming strategy (dialect-aware):
  PostgreSQL: ``SELECT … FOR UPDATE OF subscription_processing SKIP LOCKED``.
              Concurrent batch transactions never see each other's rows.
  SQLite:     no row locks; batch transactions take the write lock up front
              (``BEGIN IMMEDIATE``, see db.engine.acquire_write_lock) so
              batch runs serialize while readers keep their snapshot.

State machine:
  pending / completed / failed   (claimable once next_run_at <= now)
    ↓   claim_due_records() + mark_processing()
  processing                     (never claimable)
    ↓   mark_completed() → next_run_at = now + schedule_interval(frequency)
    ↓   mark_failed()    → next_run_at = now + RETRY_BACKOFF_SECONDS
  completed / failed

A batch commits ``processing`` together with the terminal state, so a crashed
batch leaves no ``processing`` rows behind.  Rows stuck in ``processing``
written by other actors sharing the table, or by earlier deployments, are
failed by reap_stale_processing().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import Select, and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_worker.config import settings
from subscription_worker.db.models import (
    CLAIMABLE_STATUSES,
    ProcessingRecord,
    ProcessingStatus,
    Subscription,
    SubscriptionType,
)

logger = logging.getLogger("subworker.store")

_HISTORY_LIMIT = 50
_ERROR_MAX_CHARS = 2000
STALE_PROCESSING_MESSAGE = "Processing timed out (stale worker)"


@dataclass(frozen=True)
class ClaimedRecord:
    """Snapshot of a claimed record and the subscription fields it needs."""

    record_id: str
    subscription_id: str
    user_id: str
    prompts: Any
    frequency: str
    type_slug: str | None
    next_run_at: datetime
    subscription_metadata: dict = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _is_postgres(db: AsyncSession) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def schedule_interval(frequency: str | None) -> timedelta:
    """Two-bucket policy: daily subscriptions run once a day, everything else hourly."""
    if (frequency or "").lower() == "daily":
        return timedelta(days=1)
    return timedelta(hours=1)


def append_history(meta: dict | None, status: str, at: datetime) -> dict:
    """Return a copy of *meta* with ``{status, at}`` appended to its history log."""
    meta = dict(meta or {})
    history = [entry for entry in meta.get("history", []) if isinstance(entry, dict)]
    history.append({"status": status, "at": at.isoformat()})
    meta["history"] = history[-_HISTORY_LIMIT:]
    return meta


async def _load(db: AsyncSession, record_id: str) -> ProcessingRecord:
    record = await db.get(ProcessingRecord, record_id, populate_existing=True)
    if record is None:
        raise LookupError(f"Processing record '{record_id}' not found")
    return record


# ─────────────────────────────────────────────────────────────────────────────
# Claim
# ─────────────────────────────────────────────────────────────────────────────


async def claim_due_records(
    db: AsyncSession,
    limit: int,
    now: datetime | None = None,
) -> list[ClaimedRecord]:
    """Select and lock up to *limit* due records of active subscriptions.

    Oldest ``next_run_at`` first.  Rows locked by a concurrent transaction are
    skipped, never waited on.
    """
    stmt = _claim_stmt(limit, now or _utcnow(), postgres=_is_postgres(db))
    result = await db.execute(stmt)
    claimed = [
        ClaimedRecord(
            record_id=record.id,
            subscription_id=record.subscription_id,
            user_id=user_id,
            prompts=prompts,
            frequency=frequency,
            type_slug=slug,
            next_run_at=as_utc(record.next_run_at),
            subscription_metadata=dict(sub_meta or {}),
        )
        for record, user_id, prompts, frequency, sub_meta, slug in result.all()
    ]
    logger.debug("Claimed %d due record(s) (limit=%d)", len(claimed), limit)
    return claimed


def _claim_stmt(limit: int, now: datetime, *, postgres: bool) -> Select:
    """Due records of active subscriptions, oldest first; row-locked on PostgreSQL."""
    stmt = (
        select(
            ProcessingRecord,
            Subscription.user_id,
            Subscription.prompts,
            Subscription.frequency,
            Subscription.meta,
            SubscriptionType.slug,
        )
        .join(Subscription, Subscription.id == ProcessingRecord.subscription_id)
        .outerjoin(SubscriptionType, SubscriptionType.id == Subscription.type_id)
        .where(
            ProcessingRecord.status.in_(CLAIMABLE_STATUSES),
            ProcessingRecord.next_run_at <= now,
            Subscription.active.is_(True),
        )
        .order_by(ProcessingRecord.next_run_at.asc(), ProcessingRecord.id.asc())
        .limit(limit)
    )
    if postgres:
        stmt = stmt.with_for_update(skip_locked=True, of=ProcessingRecord)
    return stmt


# ─────────────────────────────────────────────────────────────────────────────
# State transitions
# ─────────────────────────────────────────────────────────────────────────────


async def mark_processing(
    db: AsyncSession, record_id: str, now: datetime | None = None
) -> ProcessingRecord:
    now = now or _utcnow()
    record = await _load(db, record_id)
    record.status = ProcessingStatus.PROCESSING.value
    record.last_run_at = now
    record.updated_at = now
    record.meta = append_history(record.meta, ProcessingStatus.PROCESSING.value, now)
    await db.flush()
    return record


async def mark_completed(
    db: AsyncSession,
    record_id: str,
    frequency: str | None,
    stats: dict[str, Any],
    now: datetime | None = None,
) -> datetime:
    """Reschedule a successfully processed record; returns the new next_run_at."""
    now = now or _utcnow()
    record = await _load(db, record_id)
    next_run_at = now + schedule_interval(frequency)
    meta = append_history(record.meta, ProcessingStatus.COMPLETED.value, now)
    meta["last_run_stats"] = dict(stats)
    record.meta = meta
    record.status = ProcessingStatus.COMPLETED.value
    record.next_run_at = next_run_at
    record.error = None
    record.updated_at = now
    await db.flush()
    return next_run_at


async def mark_failed(
    db: AsyncSession,
    record_id: str,
    message: str,
    now: datetime | None = None,
) -> datetime:
    """Fail a record with the fixed retry backoff, whatever its previous state."""
    now = now or _utcnow()
    record = await _load(db, record_id)
    next_run_at = now + timedelta(seconds=settings.RETRY_BACKOFF_SECONDS)
    meta = append_history(record.meta, ProcessingStatus.FAILED.value, now)
    meta["last_error_at"] = now.isoformat()
    record.meta = meta
    record.status = ProcessingStatus.FAILED.value
    record.error = (message or "Unknown error")[:_ERROR_MAX_CHARS]
    record.next_run_at = next_run_at
    record.updated_at = now
    await db.flush()
    return next_run_at


async def update_subscription_last_processed(
    db: AsyncSession, subscription_id: str, now: datetime | None = None
) -> bool:
    """Stamp ``metadata.last_processed_at`` on the subscription (best-effort).

    Runs in its own SAVEPOINT so a failure leaves the record's status intact.
    """
    now = now or _utcnow()
    try:
        async with db.begin_nested():
            subscription = await db.get(Subscription, subscription_id, populate_existing=True)
            if subscription is None:
                logger.warning("Cannot stamp last_processed_at: subscription %s missing", subscription_id)
                return False
            subscription.meta = {**(subscription.meta or {}), "last_processed_at": now.isoformat()}
            subscription.updated_at = now
        return True
    except SQLAlchemyError as exc:
        logger.warning("Failed to update last_processed_at for %s: %s", subscription_id, exc)
        return False


# ─────────────────────────────────────────────────────────────────────────────
# Reaper
# ─────────────────────────────────────────────────────────────────────────────


async def reap_stale_processing(
    db: AsyncSession,
    stale_after_seconds: float,
    now: datetime | None = None,
) -> list[str]:
    """Fail ``processing`` rows whose run started more than *stale_after_seconds* ago."""
    now = now or _utcnow()
    cutoff = now - timedelta(seconds=stale_after_seconds)
    stmt = select(ProcessingRecord.id).where(
        ProcessingRecord.status == ProcessingStatus.PROCESSING.value,
        or_(
            ProcessingRecord.last_run_at < cutoff,
            and_(ProcessingRecord.last_run_at.is_(None), ProcessingRecord.updated_at < cutoff),
        ),
    )
    if _is_postgres(db):
        stmt = stmt.with_for_update(skip_locked=True)

    stale_ids = list((await db.execute(stmt)).scalars().all())
    for record_id in stale_ids:
        await mark_failed(db, record_id, STALE_PROCESSING_MESSAGE, now=now)
    if stale_ids:
        logger.warning("Reaped %d stale processing record(s): %s", len(stale_ids), stale_ids)
    return stale_ids


# ─────────────────────────────────────────────────────────────────────────────
# Lookups used by the trigger surface
# ─────────────────────────────────────────────────────────────────────────────


async def get_subscription(db: AsyncSession, subscription_id: str) -> tuple[Subscription, str | None] | None:
    """Return ``(subscription, type_slug)`` or None."""
    result = await db.execute(
        select(Subscription, SubscriptionType.slug)
        .outerjoin(SubscriptionType, SubscriptionType.id == Subscription.type_id)
        .where(Subscription.id == subscription_id)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def get_record_for_subscription(
    db: AsyncSession, subscription_id: str, *, lock: bool = False
) -> ProcessingRecord | None:
    stmt = _record_stmt(subscription_id, lock=lock and _is_postgres(db))
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


def _record_stmt(subscription_id: str, *, lock: bool) -> Select:
    stmt = select(ProcessingRecord).where(ProcessingRecord.subscription_id == subscription_id)
    if lock:
        stmt = stmt.with_for_update(skip_locked=True)
    return stmt


async def ensure_processing_record(
    db: AsyncSession, subscription_id: str, now: datetime | None = None
) -> ProcessingRecord:
    """Return the subscription's record, creating a pending one (due now) if missing."""
    existing = await get_record_for_subscription(db, subscription_id)
    if existing is not None:
        return existing
    now = now or _utcnow()
    record = ProcessingRecord(
        subscription_id=subscription_id,
        status=ProcessingStatus.PENDING.value,
        next_run_at=now,
        meta=append_history({}, ProcessingStatus.PENDING.value, now),
        created_at=now,
        updated_at=now,
    )
    db.add(record)
    await db.flush()
    logger.info("Created processing record %s for subscription %s", record.id, subscription_id)
    return record


async def list_pending_records(
    db: AsyncSession,
    *,
    limit: int = 100,
    due_only: bool = False,
    now: datetime | None = None,
) -> list[tuple[ProcessingRecord, Subscription, str | None]]:
    """Records waiting for their next run, soonest first, with subscription data."""
    now = now or _utcnow()
    stmt = (
        select(ProcessingRecord, Subscription, SubscriptionType.slug)
        .join(Subscription, Subscription.id == ProcessingRecord.subscription_id)
        .outerjoin(SubscriptionType, SubscriptionType.id == Subscription.type_id)
        .where(
            ProcessingRecord.status.in_(CLAIMABLE_STATUSES),
            Subscription.active.is_(True),
        )
        .order_by(ProcessingRecord.next_run_at.asc())
        .limit(limit)
    )
    if due_only:
        stmt = stmt.where(ProcessingRecord.next_run_at <= now)
    result = await db.execute(stmt)
    return [(record, subscription, slug) for record, subscription, slug in result.all()]
