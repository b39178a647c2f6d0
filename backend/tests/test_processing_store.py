"""Record store tests: claim eligibility, ordering, exclusivity and state transitions.

Covers:
1. claim_due_records: due/not-due, status filter, inactive subscriptions, ordering, limit
2. Claim exclusivity across sessions; row-lock clauses rendered for PostgreSQL
3. mark_processing / mark_completed / mark_failed semantics and history log
4. schedule_interval two-bucket policy
5. update_subscription_last_processed (best-effort)
6. reap_stale_processing
7. ensure_processing_record / list_pending_records
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.dialects import postgresql, sqlite

from subscription_worker.config import settings
from subscription_worker.db.models import Subscription
from subscription_worker.services import processing_store as store

from factories import load_record, seed_subscription, utcnow


# ─────────────────────────────────────────────────────────────────────────────
# 1. Claim eligibility and ordering
# ─────────────────────────────────────────────────────────────────────────────


class TestClaimDueRecords:
    @pytest.mark.asyncio
    async def test_future_next_run_at_is_never_claimed(self, db_factory):
        await seed_subscription(db_factory, next_run_at=utcnow() + timedelta(minutes=10))

        async with db_factory() as db:
            async with db.begin():
                claimed = await store.claim_due_records(db, 10)

        assert claimed == []

    @pytest.mark.asyncio
    async def test_processing_status_is_never_claimed(self, db_factory):
        await seed_subscription(db_factory, status="processing")

        async with db_factory() as db:
            async with db.begin():
                claimed = await store.claim_due_records(db, 10)

        assert claimed == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["pending", "completed", "failed"])
    async def test_finished_records_are_claimable_once_due(self, db_factory, status):
        sub_id, record_id = await seed_subscription(db_factory, status=status)

        async with db_factory() as db:
            async with db.begin():
                claimed = await store.claim_due_records(db, 10)

        assert [c.record_id for c in claimed] == [record_id]
        assert claimed[0].subscription_id == sub_id

    @pytest.mark.asyncio
    async def test_inactive_subscription_is_not_claimed(self, db_factory):
        await seed_subscription(db_factory, active=False)

        async with db_factory() as db:
            async with db.begin():
                claimed = await store.claim_due_records(db, 10)

        assert claimed == []

    @pytest.mark.asyncio
    async def test_limit_two_of_three_returns_oldest_first(self, db_factory):
        now = utcnow()
        ids = {}
        for minutes in (3, 2, 1):
            ids[minutes] = (
                await seed_subscription(db_factory, next_run_at=now - timedelta(minutes=minutes))
            )[1]

        async with db_factory() as db:
            async with db.begin():
                claimed = await store.claim_due_records(db, 2, now=now)

        assert [c.record_id for c in claimed] == [ids[3], ids[2]]

        untouched = await load_record(db_factory, ids[1])
        assert untouched.status == "pending"
        assert store.as_utc(untouched.next_run_at) == now - timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_claimed_record_carries_subscription_fields(self, db_factory):
        await seed_subscription(
            db_factory,
            prompts=["contratos menores"],
            frequency="hourly",
            type_slug="doga",
            user_id="user-42",
        )

        async with db_factory() as db:
            async with db.begin():
                (claimed,) = await store.claim_due_records(db, 1)

        assert claimed.user_id == "user-42"
        assert claimed.prompts == ["contratos menores"]
        assert claimed.frequency == "hourly"
        assert claimed.type_slug == "doga"

    @pytest.mark.asyncio
    async def test_subscription_without_type_has_no_slug(self, db_factory):
        await seed_subscription(db_factory, type_slug=None)

        async with db_factory() as db:
            async with db.begin():
                (claimed,) = await store.claim_due_records(db, 1)

        assert claimed.type_slug is None


# ─────────────────────────────────────────────────────────────────────────────
# 2. Exclusivity
# ─────────────────────────────────────────────────────────────────────────────


class TestClaimExclusivity:
    @pytest.mark.asyncio
    async def test_second_claim_skips_records_marked_processing(self, db_factory):
        for _ in range(3):
            await seed_subscription(db_factory)

        async with db_factory() as db:
            async with db.begin():
                first = await store.claim_due_records(db, 2)
                for record in first:
                    await store.mark_processing(db, record.record_id)

        async with db_factory() as db:
            async with db.begin():
                second = await store.claim_due_records(db, 10)

        first_ids = {c.record_id for c in first}
        second_ids = {c.record_id for c in second}
        assert len(first_ids) == 2
        assert len(second_ids) == 1
        assert first_ids.isdisjoint(second_ids)


class TestLockingStatements:
    @staticmethod
    def _sql(stmt, dialect) -> str:
        return " ".join(str(stmt.compile(dialect=dialect)).split())

    def test_postgres_claim_skips_locked_rows(self):
        sql = self._sql(store._claim_stmt(5, utcnow(), postgres=True), postgresql.dialect())
        assert sql.endswith("FOR UPDATE OF subscription_processing SKIP LOCKED")
        assert "ORDER BY subscription_processing.next_run_at ASC, subscription_processing.id ASC" in sql
        assert "LIMIT" in sql

    def test_sqlite_claim_has_no_row_lock(self):
        sql = self._sql(store._claim_stmt(5, utcnow(), postgres=False), sqlite.dialect())
        assert "FOR UPDATE" not in sql
        assert "ORDER BY subscription_processing.next_run_at ASC, subscription_processing.id ASC" in sql

    def test_postgres_record_lock_skips_locked_rows(self):
        sql = self._sql(store._record_stmt("s1", lock=True), postgresql.dialect())
        assert sql.endswith("FOR UPDATE SKIP LOCKED")
        assert "WHERE subscription_processing.subscription_id =" in sql

    def test_record_lookup_without_lock(self):
        sql = self._sql(store._record_stmt("s1", lock=False), postgresql.dialect())
        assert "FOR UPDATE" not in sql


# ─────────────────────────────────────────────────────────────────────────────
# 3. State transitions
# ─────────────────────────────────────────────────────────────────────────────


class TestStateTransitions:
    @pytest.mark.asyncio
    async def test_mark_processing_sets_status_and_last_run(self, db_factory):
        _, record_id = await seed_subscription(db_factory)
        now = utcnow()

        async with db_factory() as db:
            async with db.begin():
                await store.mark_processing(db, record_id, now=now)

        record = await load_record(db_factory, record_id)
        assert record.status == "processing"
        assert store.as_utc(record.last_run_at) == now
        assert record.meta["history"] == [{"status": "processing", "at": now.isoformat()}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("frequency", "interval"),
        [("daily", timedelta(days=1)), ("hourly", timedelta(hours=1)), ("weekly", timedelta(hours=1))],
    )
    async def test_mark_completed_reschedules_strictly_later(self, db_factory, frequency, interval):
        _, record_id = await seed_subscription(db_factory, frequency=frequency)
        now = utcnow()

        async with db_factory() as db:
            async with db.begin():
                await store.mark_processing(db, record_id, now=now)
                next_run_at = await store.mark_completed(
                    db, record_id, frequency, {"matches_found": 2}, now=now
                )

        assert next_run_at == now + interval
        assert next_run_at > now
        record = await load_record(db_factory, record_id)
        assert record.status == "completed"
        assert record.error is None
        assert record.meta["last_run_stats"] == {"matches_found": 2}
        assert [h["status"] for h in record.meta["history"]] == ["processing", "completed"]

    @pytest.mark.asyncio
    async def test_mark_failed_uses_fixed_backoff_regardless_of_prior_value(self, db_factory):
        far_future = utcnow() + timedelta(days=30)
        _, record_id = await seed_subscription(db_factory, status="completed", next_run_at=far_future)
        now = utcnow()

        async with db_factory() as db:
            async with db.begin():
                next_run_at = await store.mark_failed(db, record_id, "parser exploded", now=now)

        assert next_run_at == now + timedelta(seconds=settings.RETRY_BACKOFF_SECONDS)
        record = await load_record(db_factory, record_id)
        assert record.status == "failed"
        assert record.error == "parser exploded"
        assert store.as_utc(record.next_run_at) == now + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_completion_clears_previous_error(self, db_factory):
        _, record_id = await seed_subscription(db_factory)

        async with db_factory() as db:
            async with db.begin():
                await store.mark_failed(db, record_id, "boom")
                await store.mark_completed(db, record_id, "daily", {})

        record = await load_record(db_factory, record_id)
        assert record.status == "completed"
        assert record.error is None

    @pytest.mark.asyncio
    async def test_error_message_is_truncated(self, db_factory):
        _, record_id = await seed_subscription(db_factory)

        async with db_factory() as db:
            async with db.begin():
                await store.mark_failed(db, record_id, "x" * 5000)

        record = await load_record(db_factory, record_id)
        assert len(record.error) == 2000

    @pytest.mark.asyncio
    async def test_unknown_record_raises(self, db_factory):
        async with db_factory() as db:
            async with db.begin():
                with pytest.raises(LookupError):
                    await store.mark_processing(db, "missing")


class TestHistoryLog:
    def test_append_history_does_not_mutate_input(self):
        original = {"history": [{"status": "pending", "at": "t0"}], "other": 1}
        now = utcnow()

        updated = store.append_history(original, "processing", now)

        assert original["history"] == [{"status": "pending", "at": "t0"}]
        assert updated["history"][-1] == {"status": "processing", "at": now.isoformat()}
        assert updated["other"] == 1

    def test_history_is_capped(self):
        meta = {}
        now = utcnow()
        for _ in range(60):
            meta = store.append_history(meta, "completed", now)
        assert len(meta["history"]) == 50

    def test_malformed_history_entries_are_dropped(self):
        meta = store.append_history({"history": ["junk", 3]}, "failed", utcnow())
        assert [h["status"] for h in meta["history"]] == ["failed"]


class TestScheduleInterval:
    def test_daily_is_one_day(self):
        assert store.schedule_interval("daily") == timedelta(days=1)
        assert store.schedule_interval("DAILY") == timedelta(days=1)

    @pytest.mark.parametrize("frequency", ["hourly", "weekly", "monthly", None, ""])
    def test_everything_else_is_one_hour(self, frequency):
        assert store.schedule_interval(frequency) == timedelta(hours=1)


# ─────────────────────────────────────────────────────────────────────────────
# 5. Subscription stamp
# ─────────────────────────────────────────────────────────────────────────────


class TestUpdateSubscriptionLastProcessed:
    @pytest.mark.asyncio
    async def test_stamps_metadata_and_updated_at(self, db_factory):
        sub_id, _ = await seed_subscription(db_factory)
        now = utcnow()

        async with db_factory() as db:
            async with db.begin():
                ok = await store.update_subscription_last_processed(db, sub_id, now=now)

        assert ok is True
        async with db_factory() as db:
            subscription = await db.get(Subscription, sub_id)
        assert subscription.meta["last_processed_at"] == now.isoformat()
        assert store.as_utc(subscription.updated_at) == now

    @pytest.mark.asyncio
    async def test_missing_subscription_returns_false(self, db_factory):
        async with db_factory() as db:
            async with db.begin():
                assert await store.update_subscription_last_processed(db, "nope") is False


# ─────────────────────────────────────────────────────────────────────────────
# 6. Reaper
# ─────────────────────────────────────────────────────────────────────────────


class TestReapStaleProcessing:
    @pytest.mark.asyncio
    async def test_stale_processing_rows_are_failed(self, db_factory):
        _, stale_id = await seed_subscription(db_factory)
        _, fresh_id = await seed_subscription(db_factory)
        now = utcnow()

        async with db_factory() as db:
            async with db.begin():
                await store.mark_processing(db, stale_id, now=now - timedelta(hours=2))
                await store.mark_processing(db, fresh_id, now=now - timedelta(minutes=1))

        async with db_factory() as db:
            async with db.begin():
                reaped = await store.reap_stale_processing(db, 1800, now=now)

        assert reaped == [stale_id]
        stale = await load_record(db_factory, stale_id)
        fresh = await load_record(db_factory, fresh_id)
        assert stale.status == "failed"
        assert stale.error == store.STALE_PROCESSING_MESSAGE
        assert store.as_utc(stale.next_run_at) == now + timedelta(seconds=settings.RETRY_BACKOFF_SECONDS)
        assert fresh.status == "processing"

    @pytest.mark.asyncio
    async def test_nothing_to_reap(self, db_factory):
        await seed_subscription(db_factory)
        async with db_factory() as db:
            async with db.begin():
                assert await store.reap_stale_processing(db, 60) == []


# ─────────────────────────────────────────────────────────────────────────────
# 7. Lookups
# ─────────────────────────────────────────────────────────────────────────────


class TestLookups:
    @pytest.mark.asyncio
    async def test_ensure_processing_record_creates_due_pending_record(self, db_factory):
        sub_id, _ = await seed_subscription(db_factory, with_record=False)

        async with db_factory() as db:
            async with db.begin():
                created = await store.ensure_processing_record(db, sub_id)
                again = await store.ensure_processing_record(db, sub_id)

        assert created.id == again.id
        assert created.status == "pending"
        assert created.meta["history"][0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_get_subscription_returns_type_slug(self, db_factory):
        sub_id, _ = await seed_subscription(db_factory, type_slug="doga")

        async with db_factory() as db:
            subscription, slug = await store.get_subscription(db, sub_id)

        assert subscription.id == sub_id
        assert slug == "doga"

    @pytest.mark.asyncio
    async def test_get_subscription_missing(self, db_factory):
        async with db_factory() as db:
            assert await store.get_subscription(db, "missing") is None

    @pytest.mark.asyncio
    async def test_list_pending_records_orders_and_filters(self, db_factory):
        now = utcnow()
        _, later_id = await seed_subscription(db_factory, next_run_at=now + timedelta(hours=1))
        _, due_id = await seed_subscription(db_factory, next_run_at=now - timedelta(hours=1))
        await seed_subscription(db_factory, status="processing")

        async with db_factory() as db:
            everything = await store.list_pending_records(db, now=now)
            due = await store.list_pending_records(db, due_only=True, now=now)

        assert [r.id for r, _, _ in everything] == [due_id, later_id]
        assert [r.id for r, _, _ in due] == [due_id]
