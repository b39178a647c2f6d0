"""Shared FastAPI dependencies."""

from __future__ import annotations

from subscription_worker.worker.batch import BatchProcessor, build_batch_processor

_processor: BatchProcessor | None = None


def get_batch_processor() -> BatchProcessor:
    """Process-wide batch processor, built on first use."""
    global _processor
    if _processor is None:
        _processor = build_batch_processor()
    return _processor


async def close_batch_processor() -> None:
    global _processor
    if _processor is not None:
        await _processor.aclose()
        _processor = None
