"""
Tier selection under the wall-clock budget.

Budgets here are generous unless a test is about running out of them, so
results do not depend on machine speed.
"""
import asyncio
import itertools
import time

import pytest

from diarybot.core import messages
from diarybot.core.errors import DiaryInputError, LLMError, StoreError
from diarybot.services.inflight import InFlightRegistry
from diarybot.services.light_analysis import LightAnalyzer
from diarybot.services.performance import PerformanceMonitor
from diarybot.services.resilience import ResilienceError
from diarybot.services.summary_cache import SummaryCacheService
from diarybot.services.tiered_analysis import (
    LEVEL_1,
    LEVEL_2,
    LEVEL_3,
    TierBudgets,
    TieredAnalysisOrchestrator,
)

DIARY = "今日は楽しかった、友達と映画を見た"

# Event-loop wakeup and level-2 work after the level-1 cutoff.
SCHEDULING_SLACK_MS = 100.0


@pytest.fixture()
def monitor():
    return PerformanceMonitor()


def make_orchestrator(store, llm, resilience, monitor, budgets=None, clock=None):
    summary_cache = SummaryCacheService(store, llm, resilience, InFlightRegistry(), model="m")
    kwargs = {"clock": clock} if clock else {}
    return TieredAnalysisOrchestrator(
        store, llm, resilience, summary_cache, LightAnalyzer(), monitor,
        model="m",
        budgets=budgets or TierBudgets(level1_ms=2000.0, level3_ms=1000.0, llm_timeout_seconds=1.0),
        **kwargs,
    )


class TestLevel1:
    @pytest.mark.asyncio
    async def test_llm_reply_with_heuristic_fields(self, store, llm, resilience, monitor):
        orchestrator = make_orchestrator(store, llm, resilience, monitor)
        result = await orchestrator.process("U1", DIARY)

        assert result.level == LEVEL_1
        assert result.reply_text == llm.reply
        assert result.has_analysis
        stored = store.analyses[0]
        assert stored.level == LEVEL_1
        assert stored.emotion == llm.reply
        assert stored.themes == result.light.themes
        assert monitor.get_stats().level1_count == 1

    @pytest.mark.asyncio
    async def test_long_llm_reply_is_clipped_in_analysis_row(self, store, llm, resilience, monitor):
        llm.reply = "あ" * 400
        result = await make_orchestrator(store, llm, resilience, monitor).process("U1", DIARY)
        assert result.level == LEVEL_1
        assert len(store.analyses[0].emotion) == 100
        assert store.analyses[0].emotion.endswith("…")

    @pytest.mark.asyncio
    async def test_summary_is_passed_as_context(self, store, llm, resilience, monitor):
        store.add_entry("U1", "昨日の日記", days_ago=1)
        store.add_entry("U1", "一昨日の日記", days_ago=2)

        await make_orchestrator(store, llm, resilience, monitor).process("U1", DIARY)

        tiered_calls = [c for c in llm.calls if c not in llm.summary_calls]
        assert "【過去の傾向】" in tiered_calls[0][1]["content"]
        assert llm.summary_reply in tiered_calls[0][1]["content"]


class TestDegradation:
    @pytest.mark.asyncio
    async def test_llm_error_falls_to_level_2(self, store, llm, resilience, monitor):
        llm.errors = [LLMError("invalid api key", status_code=401)]
        result = await make_orchestrator(store, llm, resilience, monitor).process("U1", DIARY)

        assert result.level == LEVEL_2
        assert result.reply_text.startswith(messages.RESULT_TITLE)
        assert "軽量分析" in result.reply_text
        assert store.analyses[0].level == LEVEL_2

    @pytest.mark.asyncio
    async def test_hanging_llm_is_cut_off(self, store, llm, resilience, monitor):
        llm.hang = True
        # The LLM timeout alone would allow seconds; the level-1 budget must win.
        budgets = TierBudgets(level1_ms=200.0, level3_ms=1000.0, llm_timeout_seconds=5.0)
        orchestrator = make_orchestrator(store, llm, resilience, monitor, budgets=budgets)

        started = time.perf_counter()
        result = await orchestrator.process("U1", DIARY)
        elapsed_ms = (time.perf_counter() - started) * 1000

        assert result.level in (LEVEL_2, LEVEL_3)
        assert elapsed_ms <= budgets.level1_ms + SCHEDULING_SLACK_MS
        assert result.total_processing_time_ms <= budgets.level1_ms + SCHEDULING_SLACK_MS
        assert resilience.circuit_status("llm")["state"] == "closed"

    @pytest.mark.asyncio
    async def test_exhausted_context_budget_skips_llm(self, store, llm, resilience, monitor):
        budgets = TierBudgets(level1_ms=0.0001, level3_ms=1000.0)
        result = await make_orchestrator(store, llm, resilience, monitor, budgets=budgets).process("U1", DIARY)

        assert result.level == LEVEL_2
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_analysis_store_failure_gives_level_3(self, store, llm, resilience, monitor):
        store.fail["create_analysis"] = StoreError("disk I/O error")
        result = await make_orchestrator(store, llm, resilience, monitor).process("U1", DIARY)

        assert result.level == LEVEL_3
        assert result.reply_text == messages.EMERGENCY_REPLY
        assert not result.has_analysis
        assert store.analyses == []
        assert len(store.entries) == 1

    @pytest.mark.asyncio
    async def test_slow_persistence_skips_to_level_3(self, store, llm, resilience, monitor):
        ticks = itertools.count(step=0.005)
        budgets = TierBudgets(level1_ms=2000.0, level3_ms=2.0)
        orchestrator = make_orchestrator(store, llm, resilience, monitor, budgets=budgets, clock=lambda: next(ticks))

        result = await orchestrator.process("U1", DIARY)

        assert result.level == LEVEL_3
        assert llm.calls == []
        assert store.analyses == []
        assert monitor.get_stats().level3_count == 1


class TestHardFailures:
    @pytest.mark.asyncio
    async def test_entry_persistence_failure_raises(self, store, llm, resilience, monitor):
        store.fail["create_entry"] = StoreError("could not open connection to server")

        with pytest.raises(ResilienceError):
            await make_orchestrator(store, llm, resilience, monitor).process("U1", DIARY)

        assert store.calls.count("create_entry") == 3
        stats = monitor.get_stats()
        assert stats.total_requests == 1
        assert stats.success_rate == 0.0
        assert monitor.export_csv().strip().splitlines()[1].endswith("StoreError")

    @pytest.mark.asyncio
    async def test_empty_text_is_rejected(self, store, llm, resilience, monitor):
        with pytest.raises(DiaryInputError):
            await make_orchestrator(store, llm, resilience, monitor).process("U1", "   ")
        assert store.entries == []
        assert monitor.get_stats().total_requests == 1

    @pytest.mark.asyncio
    async def test_missing_user_is_rejected(self, store, llm, resilience, monitor):
        with pytest.raises(DiaryInputError):
            await make_orchestrator(store, llm, resilience, monitor).process("", DIARY)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_parallel_requests_are_independent(self, store, llm, resilience, monitor):
        orchestrator = make_orchestrator(store, llm, resilience, monitor)
        results = await asyncio.gather(*(orchestrator.process(f"U{i}", DIARY) for i in range(5)))

        assert {r.level for r in results} == {LEVEL_1}
        assert len({r.entry.id for r in results}) == 5
        assert monitor.get_stats().total_requests == 5
