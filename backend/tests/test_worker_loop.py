"""Tests for the worker poll loop, the reaper pass and the process entrypoint."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from subscription_worker.config import settings
from subscription_worker.services import processing_store as store
from subscription_worker.utils import logger as logger_module
from subscription_worker.utils.metrics import metrics
from subscription_worker.worker import batch as batch_module
from subscription_worker.worker import worker_main
from subscription_worker.worker.loop import reclaim_stale_records, run_once, worker_loop

from factories import FakeAnalyzer, load_record, make_processor, seed_subscription, utcnow


class TestReclaimStaleRecords:
    @pytest.mark.asyncio
    async def test_stale_processing_record_reclaimed(self, db_factory):
        _, record_id = await seed_subscription(db_factory)
        async with db_factory() as db:
            async with db.begin():
                await store.mark_processing(db, record_id, now=utcnow() - timedelta(hours=3))

        reaped = await reclaim_stale_records(make_processor(db_factory, FakeAnalyzer()), stale_after_seconds=60)

        assert reaped == 1
        assert (await load_record(db_factory, record_id)).status == "failed"
        assert metrics.get_counter("stale_records_reaped_total") == 1


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_summary_counts(self, db_factory):
        ok_sub, _ = await seed_subscription(db_factory)
        bad_sub, _ = await seed_subscription(db_factory)
        analyzer = FakeAnalyzer(per_subscription={bad_sub: RuntimeError("boom")})

        summary = await run_once(make_processor(db_factory, analyzer), batch_size=10)

        assert summary.count == 2
        assert summary.success_count == 1
        assert summary.error_count == 1
        assert {r.subscription_id for r in summary.results} == {ok_sub, bad_sub}


class _FlakyProcessor:
    """Raises on the first batch, then succeeds."""

    default_limit = 10

    def __init__(self):
        self.calls = 0
        self.ran_twice = asyncio.Event()

    async def run_batch(self, limit=None):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("database is locked")
        self.ran_twice.set()
        return []


class TestWorkerLoop:
    @pytest.mark.asyncio
    async def test_loop_processes_until_cancelled(self, db_factory):
        _, record_id = await seed_subscription(db_factory)
        analyzer = FakeAnalyzer()
        task = asyncio.create_task(
            worker_loop(make_processor(db_factory, analyzer), poll_interval=30, worker_id="test")
        )

        for _ in range(200):
            if (await load_record(db_factory, record_id)).status == "completed":
                break
            await asyncio.sleep(0.01)
        # let the loop reach its poll sleep before cancelling
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(analyzer.calls) == 1
        assert (await load_record(db_factory, record_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_loop_survives_batch_errors(self, monkeypatch):
        monkeypatch.setattr(settings, "REAPER_ENABLED", False)
        processor = _FlakyProcessor()
        task = asyncio.create_task(worker_loop(processor, poll_interval=0.01, worker_id="test"))

        await asyncio.wait_for(processor.ran_twice.wait(), timeout=2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert processor.calls >= 2


class TestWorkerMain:
    def test_parse_args(self):
        args = worker_main._parse_args(["--once", "--limit", "25"])
        assert args.once is True
        assert args.limit == 25

    def test_parse_args_defaults(self):
        args = worker_main._parse_args([])
        assert args.once is False
        assert args.limit is None

    @pytest.mark.asyncio
    async def test_once_prints_summary(self, db_factory, monkeypatch, capsys):
        sub_id, _ = await seed_subscription(db_factory)
        processor = make_processor(db_factory, FakeAnalyzer())

        async def _ready():
            return None

        monkeypatch.setattr(worker_main, "_wait_for_db", _ready)
        monkeypatch.setattr(logger_module, "setup_logger", lambda **kwargs: None)
        monkeypatch.setattr(batch_module, "build_batch_processor", lambda: processor)

        await worker_main.main(["--once", "--limit", "5"])

        lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
        summary = json.loads(lines[-1])
        assert summary["count"] == 1
        assert summary["results"][0]["subscription_id"] == sub_id
