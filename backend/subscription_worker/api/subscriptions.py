"""Trigger endpoints: run a batch, process one subscription, list pending work."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_worker.api.deps import get_batch_processor
from subscription_worker.db.engine import get_db
from subscription_worker.errors import SubscriptionNotFoundError
from subscription_worker.schemas.processing import (
    BatchRunOut,
    PendingListOut,
    PendingRecordOut,
    ProcessOneResult,
)
from subscription_worker.services.processing_store import as_utc, list_pending_records
from subscription_worker.worker.batch import BatchProcessor

logger = logging.getLogger("subworker.api.subscriptions")

router = APIRouter()


@router.post("/process-batch", response_model=BatchRunOut)
async def process_pending_batch(
    limit: int | None = Query(default=None, ge=1),
    processor: BatchProcessor = Depends(get_batch_processor),
):
    """Claim and process up to *limit* due subscriptions."""
    try:
        results = await processor.run_batch(limit)
    except Exception as exc:
        raise HTTPException(status_code=500, detail=f"Batch processing failed: {exc}") from exc
    return BatchRunOut.from_results(results)


@router.get("/pending", response_model=PendingListOut)
async def list_pending(
    limit: int = Query(default=100, ge=1, le=1000),
    due_only: bool = False,
    db: AsyncSession = Depends(get_db),
):
    """Records waiting for their next run, soonest first."""
    rows = await list_pending_records(db, limit=limit, due_only=due_only)
    records = [
        PendingRecordOut(
            id=record.id,
            subscription_id=record.subscription_id,
            user_id=subscription.user_id,
            subscription_name=subscription.name,
            type_slug=type_slug,
            frequency=subscription.frequency,
            status=record.status,
            next_run_at=as_utc(record.next_run_at),
            last_run_at=as_utc(record.last_run_at),
            error=record.error,
            last_run_stats=(record.meta or {}).get("last_run_stats"),
        )
        for record, subscription, type_slug in rows
    ]
    return PendingListOut(records=records, count=len(records))


@router.post("/{subscription_id}/process", response_model=ProcessOneResult)
async def process_subscription(
    subscription_id: str,
    processor: BatchProcessor = Depends(get_batch_processor),
):
    """Process a single subscription immediately."""
    try:
        return await processor.process_one(subscription_id)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Processing subscription %s failed", subscription_id)
        raise HTTPException(status_code=500, detail=f"Processing failed: {exc}") from exc
