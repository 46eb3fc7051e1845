"""
MaintenanceService: batched summary refresh, retention cleanup, summary
pruning and usage totals.
"""
from datetime import date, timedelta

import pytest

from diarybot.core.errors import LLMError, StoreError
from diarybot.models.entry import utcnow
from diarybot.services.inflight import InFlightRegistry
from diarybot.services.maintenance import ALERT_ACTIVE_USERS, ALERT_TOTAL_ENTRIES, MaintenanceService
from diarybot.services.summary_cache import SummaryCacheService

from tests.fakes import FakeSummary


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture()
def sleeps():
    return SleepRecorder()


@pytest.fixture()
def summary_cache(store, llm, resilience):
    return SummaryCacheService(store, llm, resilience, InFlightRegistry(), model="m")


@pytest.fixture()
def maintenance(store, summary_cache, resilience, sleeps):
    return MaintenanceService(store, summary_cache, resilience, batch_size=2, sleep=sleeps)


def add_summary(store, user_id, content, *, ended_days_ago=0, created_days_ago=0):
    end = date.today() - timedelta(days=ended_days_ago)
    summary = FakeSummary(
        user_id, end - timedelta(days=7), end, content,
        created_at=utcnow() - timedelta(days=created_days_ago),
    )
    store.summaries[(user_id, summary.start_date, end)] = summary
    return summary


class TestRefresh:
    @pytest.mark.asyncio
    async def test_batches_cover_every_active_user(self, maintenance, store, llm):
        for user in ("A", "B", "C", "D", "E"):
            store.add_entry(user, "一件目", days_ago=1)
            store.add_entry(user, "二件目", days_ago=0.2)

        report = await maintenance.run()

        assert report.active_users == 5
        assert report.summaries_refreshed == 5
        assert len(llm.summary_calls) == 5

    @pytest.mark.asyncio
    async def test_pause_between_batches_only(self, maintenance, store, sleeps):
        for user in ("A", "B", "C", "D", "E"):
            store.add_entry(user, "一件目", days_ago=1)

        await maintenance.run()

        # three batches of at most two users, no pause after the last one
        assert sleeps.calls == [0.1, 0.1]

    @pytest.mark.asyncio
    async def test_single_batch_does_not_pause(self, maintenance, store, sleeps):
        store.add_entry("A", "一件目", days_ago=1)
        await maintenance.run()
        assert sleeps.calls == []

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self, maintenance, store, llm):
        for user in ("A", "B"):
            store.add_entry(user, "一件目", days_ago=1)
            store.add_entry(user, "二件目", days_ago=0.2)
        llm.errors = [LLMError("bad request", status_code=400)]

        report = await maintenance.run()

        assert report.summaries_refreshed == 1
        assert report.summaries_skipped == 1

    @pytest.mark.asyncio
    async def test_active_user_lookup_failure_is_reported(self, maintenance, store):
        store.fail["active_user_ids"] = StoreError("relation does not exist")
        report = await maintenance.run()
        assert report.active_users == 0
        assert report.errors and report.errors[0].startswith("active_users")


class TestCleanup:
    @pytest.mark.asyncio
    async def test_old_entries_are_deleted(self, maintenance, store):
        store.add_entry("A", "古い", days_ago=120)
        store.add_entry("A", "新しい", days_ago=1)

        report = await maintenance.run()

        assert report.entries_deleted == 1
        assert [e.content for e in store.entries] == ["新しい"]

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_reported(self, maintenance, store):
        store.fail["delete_entries_before"] = StoreError("lock not available")
        report = await maintenance.run()
        assert any(e.startswith("cleanup") for e in report.errors)


# ---------------------------------------------------------------------------
# Summary pruning
# ---------------------------------------------------------------------------

class TestPruneSummaries:
    @pytest.mark.asyncio
    async def test_repeated_text_keeps_newest_row(self, maintenance, store):
        store.add_entry("A", "最近の日記", days_ago=40)
        add_summary(store, "A", "同じ要約", ended_days_ago=3, created_days_ago=3)
        newest = add_summary(store, "A", "同じ要約", ended_days_ago=1, created_days_ago=1)
        add_summary(store, "B", "同じ要約", ended_days_ago=3, created_days_ago=3)

        report = await maintenance.run()

        assert report.duplicate_summaries_deleted == 1
        remaining = [s for s in store.summaries.values() if s.user_id == "A"]
        assert remaining == [newest]

    @pytest.mark.asyncio
    async def test_silent_users_lose_old_summaries(self, maintenance, store):
        store.add_entry("writer", "今日も書いた", days_ago=1)
        add_summary(store, "writer", "書き手の要約", ended_days_ago=2, created_days_ago=10)
        add_summary(store, "silent", "古い要約", created_days_ago=10)
        add_summary(store, "newcomer", "作ったばかり", created_days_ago=2)

        report = await maintenance.run()

        assert report.orphaned_summaries_deleted == 1
        users = {s.user_id for s in store.summaries.values()}
        assert "silent" not in users
        assert {"writer", "newcomer"} <= users

    @pytest.mark.asyncio
    async def test_prune_failure_does_not_stop_usage_totals(self, maintenance, store):
        store.add_entry("A", "一件目", days_ago=1)
        store.fail["delete_duplicate_summaries"] = StoreError("deadlock detected")

        report = await maintenance.run()

        assert any(e.startswith("prune") for e in report.errors)
        assert report.total_entries == 1


# ---------------------------------------------------------------------------
# Usage totals and alerts
# ---------------------------------------------------------------------------

class TestUsage:
    @pytest.mark.asyncio
    async def test_totals(self, maintenance, store):
        store.add_entry("A", "一件目", days_ago=1)
        store.add_entry("A", "二件目", days_ago=0.5)
        store.add_entry("B", "ずっと前", days_ago=20)

        report = await maintenance.run()

        assert report.total_entries == 3
        assert report.total_users == 2
        assert report.recently_active_users == 1
        assert report.total_summaries == 1
        assert report.alerts == []

    @pytest.mark.asyncio
    async def test_thresholds_raise_alerts(self, store, summary_cache, resilience, sleeps):
        maintenance = MaintenanceService(
            store, summary_cache, resilience,
            alert_total_entries=2, alert_active_users=1, sleep=sleeps,
        )
        for user in ("A", "B", "C"):
            store.add_entry(user, "一件目", days_ago=1)

        report = await maintenance.run()

        assert report.alerts == [ALERT_TOTAL_ENTRIES, ALERT_ACTIVE_USERS]

    @pytest.mark.asyncio
    async def test_usage_failure_is_reported(self, maintenance, store):
        store.fail["usage_totals"] = StoreError("connection reset")
        report = await maintenance.run()
        assert any(e.startswith("usage") for e in report.errors)
        assert report.total_entries == 0
