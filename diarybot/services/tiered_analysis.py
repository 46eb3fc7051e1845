"""
Tiered diary analysis under a wall-clock budget.

    LEVEL 1  LLM reading + keyword heuristic   (best, slowest)
    LEVEL 2  keyword heuristic only            (standard path)
    LEVEL 3  fixed message, no analysis row    (emergency)

Transitions only go down. Each tier method returns a TieredResult or None;
None means "fall through to the next tier". Nothing is retried across tiers
within one request.

Rules:
- Entry persistence is the one hard dependency: its failure ends the request.
- If persisting the entry alone used up the level-3 budget, skip to level 3.
- Level 1 gives up once half its budget is spent gathering context, or 80%
  before the LLM call, and the LLM call itself may only use what is left.
- Every outcome, failures included, is recorded in the PerformanceMonitor.

Public API
----------
TieredAnalysisOrchestrator.process(user_id, text) -> TieredResult
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from diarybot.core import messages
from diarybot.core.errors import DiaryInputError
from diarybot.models.analysis import Analysis
from diarybot.models.entry import Entry
from diarybot.services.light_analysis import LightAnalysisResult, LightAnalyzer
from diarybot.services.llm import LLMClient, extract_text
from diarybot.services.performance import PerformanceMonitor, PerformanceSample
from diarybot.services.prompts import build_tiered_messages
from diarybot.services.resilience import (
    CIRCUIT_DATABASE,
    CIRCUIT_LLM,
    ResilienceError,
    ResilienceLayer,
)
from diarybot.services.response_parser import EMOTION_MAX, AnalysisFields
from diarybot.services.store import DiaryStore
from diarybot.services.summary_cache import SummaryCacheService

logger = logging.getLogger(__name__)

LEVEL_1 = 1
LEVEL_2 = 2
LEVEL_3 = 3

_CONTEXT_SHARE = 0.5
_LLM_CUTOFF_SHARE = 0.8


@dataclass
class TierBudgets:
    level1_ms: float = 8.0
    level3_ms: float = 2.0
    llm_timeout_seconds: float = 3.0


@dataclass
class TieredResult:
    level: int
    reply_text: str
    entry: Entry
    analysis: Optional[Analysis] = None
    light: Optional[LightAnalysisResult] = None
    total_processing_time_ms: float = 0.0

    @property
    def has_analysis(self) -> bool:
        return self.analysis is not None


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def _error_type(exc: BaseException) -> str:
    if isinstance(exc, ResilienceError) and exc.__cause__ is not None:
        return type(exc.__cause__).__name__
    return type(exc).__name__


class TieredAnalysisOrchestrator:
    def __init__(
        self,
        store: DiaryStore,
        llm: LLMClient,
        resilience: ResilienceLayer,
        summary_cache: SummaryCacheService,
        analyzer: LightAnalyzer,
        monitor: PerformanceMonitor,
        *,
        model: str,
        max_tokens: int = 300,
        temperature: float = 0.3,
        budgets: Optional[TierBudgets] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._store = store
        self._llm = llm
        self._resilience = resilience
        self._summary_cache = summary_cache
        self._analyzer = analyzer
        self._monitor = monitor
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.budgets = budgets or TierBudgets()
        self._clock = clock

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    async def process(self, user_id: str, text: str) -> TieredResult:
        started = self._clock()
        try:
            if not user_id:
                raise DiaryInputError("user_id is required.", field="user_id")
            if not text or not text.strip():
                raise DiaryInputError("Diary text is empty.", field="text")

            entry = await self._resilience.execute_with_protection(
                lambda: self._store.create_entry(user_id, text.strip()),
                CIRCUIT_DATABASE,
                "entries.create",
            )

            if self._elapsed_ms(started) > self.budgets.level3_ms:
                logger.info(
                    f"Entry persistence took {self._elapsed_ms(started):.1f}ms, skipping to level 3",
                    extra={"user_id": user_id, "entry_id": entry.id},
                )
                result = self._level_3(entry)
            else:
                result = (
                    await self._try_level_1(entry, text, started)
                    or await self._try_level_2(entry, text)
                    or self._level_3(entry)
                )
        except Exception as exc:
            self._record(user_id, text, started, LEVEL_3, success=False, error_type=_error_type(exc))
            raise

        result.total_processing_time_ms = self._elapsed_ms(started)
        self._record(user_id, text, started, result.level, success=True)
        logger.info(
            f"Diary processed at level {result.level} in {result.total_processing_time_ms:.1f}ms",
            extra={"user_id": user_id, "entry_id": entry.id, "level": result.level},
        )
        return result

    def _record(
        self,
        user_id: str,
        text: str,
        started: float,
        level: int,
        *,
        success: bool,
        error_type: Optional[str] = None,
    ) -> None:
        self._monitor.record(PerformanceSample(
            user_id=user_id,
            total_processing_time_ms=self._elapsed_ms(started),
            level=level,
            entry_length=len(text or ""),
            success=success,
            error_type=error_type,
        ))

    async def _persist_analysis(self, entry: Entry, level: int, fields: AnalysisFields) -> Analysis:
        return await self._resilience.execute_with_protection(
            lambda: self._store.create_analysis(entry.id, entry.user_id, level, fields.as_dict()),
            CIRCUIT_DATABASE,
            f"analyses.create.level{level}",
        )

    # -----------------------------------------------------------------------
    # Tiers
    # -----------------------------------------------------------------------

    async def _light(self, text: str) -> LightAnalysisResult:
        return self._analyzer.analyze(text)

    async def _try_level_1(self, entry: Entry, text: str, started: float) -> Optional[TieredResult]:
        budget = self.budgets.level1_ms
        context_deadline = budget * _CONTEXT_SHARE
        if self._elapsed_ms(started) > context_deadline:
            return None

        try:
            summary, light = await asyncio.wait_for(
                asyncio.gather(
                    self._summary_cache.get_or_create_summary(entry.user_id),
                    self._light(text),
                ),
                timeout=(context_deadline - self._elapsed_ms(started)) / 1000,
            )
        except asyncio.TimeoutError:
            logger.info("Level 1 abandoned: context lookup ran past half the budget")
            return None

        elapsed = self._elapsed_ms(started)
        if elapsed > budget * _LLM_CUTOFF_SHARE:
            logger.info(f"Level 1 abandoned before LLM call at {elapsed:.1f}ms")
            return None

        llm_timeout = min(self.budgets.llm_timeout_seconds, (budget - elapsed) / 1000)
        try:
            response = await asyncio.wait_for(
                self._resilience.execute_with_protection(
                    lambda: self._llm.complete(
                        build_tiered_messages(text, summary),
                        model=self.model,
                        max_tokens=self.max_tokens,
                        temperature=self.temperature,
                    ),
                    CIRCUIT_LLM,
                    "tiered.llm",
                ),
                timeout=llm_timeout,
            )
            llm_text = extract_text(response)
        except asyncio.TimeoutError:
            logger.info(f"Level 1 abandoned: LLM did not answer within {llm_timeout * 1000:.1f}ms")
            return None
        except Exception as exc:
            logger.info(f"Level 1 abandoned: {exc}", extra={"error_type": _error_type(exc)})
            return None

        fields = AnalysisFields.bounded(
            emotion=_clip(llm_text, EMOTION_MAX),
            themes=light.themes,
            patterns=light.patterns,
            positive_points=light.positive_points,
        )
        try:
            analysis = await self._persist_analysis(entry, LEVEL_1, fields)
        except Exception as exc:
            logger.warning(f"Level 1 analysis not stored: {exc}", extra={"entry_id": entry.id})
            return None

        return TieredResult(level=LEVEL_1, reply_text=llm_text, entry=entry, analysis=analysis, light=light)

    async def _try_level_2(self, entry: Entry, text: str) -> Optional[TieredResult]:
        light = self._analyzer.analyze(text)
        fields = AnalysisFields.bounded(
            emotion=light.emotion,
            themes=light.themes,
            patterns=light.patterns,
            positive_points=light.positive_points,
        )
        try:
            analysis = await self._persist_analysis(entry, LEVEL_2, fields)
        except Exception as exc:
            logger.warning(f"Level 2 analysis not stored: {exc}", extra={"entry_id": entry.id})
            return None

        return TieredResult(
            level=LEVEL_2,
            reply_text=LightAnalyzer.format_for_user(light),
            entry=entry,
            analysis=analysis,
            light=light,
        )

    def _level_3(self, entry: Entry) -> TieredResult:
        return TieredResult(level=LEVEL_3, reply_text=messages.EMERGENCY_REPLY, entry=entry)
