"""Pydantic models for batch processing results and the pending listing."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel


class RecordResult(BaseModel):
    """Outcome of one claimed record within a batch."""
    subscription_id: str
    status: Literal["success", "error"]
    matches_found: int | None = None
    notifications_created: int | None = None
    error: str | None = None
    trace_id: str | None = None


class BatchRunOut(BaseModel):
    results: list[RecordResult]
    count: int
    success_count: int
    error_count: int

    @classmethod
    def from_results(cls, results: list[RecordResult]) -> "BatchRunOut":
        success = sum(1 for r in results if r.status == "success")
        return cls(
            results=results,
            count=len(results),
            success_count=success,
            error_count=len(results) - success,
        )


class ProcessOneResult(BaseModel):
    status: Literal["success", "error", "skipped"]
    subscription_id: str
    matches_count: int = 0
    notifications_created: int = 0
    trace_id: str
    error: str | None = None


class PendingRecordOut(BaseModel):
    id: str
    subscription_id: str
    user_id: str
    subscription_name: str
    type_slug: str | None = None
    frequency: str
    status: str
    next_run_at: datetime
    last_run_at: datetime | None = None
    error: str | None = None
    last_run_stats: dict[str, Any] | None = None


class PendingListOut(BaseModel):
    records: list[PendingRecordOut]
    count: int
