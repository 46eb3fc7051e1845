"""
Process-wide service graph.

Everything with state (circuit breakers, in-flight registry, performance
buffer, HTTP connection pools) is built once here at startup and handed to
request handlers through `get_container`. Tests build their own container.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import httpx
from fastapi import Request
from sqlalchemy.orm import Session

from diarybot.core.config import Settings
from diarybot.db.base import SessionLocal
from diarybot.services.async_dispatch import AsyncAnalysisDispatcher
from diarybot.services.diary import DiaryService
from diarybot.services.inflight import InFlightRegistry
from diarybot.services.light_analysis import LightAnalyzer
from diarybot.services.llm import LLMClient, OpenAIChatClient
from diarybot.services.maintenance import MaintenanceService
from diarybot.services.messaging import LineMessagingClient, MessagingClient
from diarybot.services.performance import HealthThresholds, PerformanceMonitor
from diarybot.services.resilience import (
    CIRCUIT_DATABASE,
    CIRCUIT_LLM,
    CIRCUIT_MESSAGING,
    CircuitBreakerConfig,
    ResilienceLayer,
    RetryConfig,
)
from diarybot.services.store import DiaryStore, SqlDiaryStore
from diarybot.services.summary_cache import SummaryCacheService
from diarybot.services.tiered_analysis import TierBudgets, TieredAnalysisOrchestrator


@dataclass
class ServiceContainer:
    settings: Settings
    resilience: ResilienceLayer
    monitor: PerformanceMonitor
    registry: InFlightRegistry
    store: DiaryStore
    llm: LLMClient
    messaging: MessagingClient
    summary_cache: SummaryCacheService
    orchestrator: TieredAnalysisOrchestrator
    dispatcher: AsyncAnalysisDispatcher
    diary: DiaryService
    maintenance: MaintenanceService
    http: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()


def build_resilience(settings: Settings) -> ResilienceLayer:
    def policy(max_retries: int) -> RetryConfig:
        return RetryConfig(
            max_retries=max_retries,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
        )

    return ResilienceLayer(
        CircuitBreakerConfig(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            reset_timeout=settings.CIRCUIT_RESET_TIMEOUT_SECONDS,
        ),
        default_retry=policy(settings.LLM_MAX_RETRIES),
        retry_policies={
            CIRCUIT_DATABASE: policy(settings.DB_MAX_RETRIES),
            CIRCUIT_LLM: policy(settings.LLM_MAX_RETRIES),
            CIRCUIT_MESSAGING: policy(settings.MESSAGING_MAX_RETRIES),
        },
    )


def build_container(
    settings: Settings,
    *,
    store: Optional[DiaryStore] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    llm: Optional[LLMClient] = None,
    messaging: Optional[MessagingClient] = None,
    resilience: Optional[ResilienceLayer] = None,
) -> ServiceContainer:
    """
    Wire the service graph from settings. Any collaborator may be passed in
    to replace the default (tests pass fakes for store, llm and messaging).
    """
    http: Optional[httpx.AsyncClient] = None
    if llm is None or messaging is None:
        http = httpx.AsyncClient()
    if llm is None:
        llm = OpenAIChatClient(
            http, settings.OPENAI_API_KEY, settings.OPENAI_BASE_URL,
            timeout=settings.OPENAI_HTTP_TIMEOUT_SECONDS,
        )
    if messaging is None:
        messaging = LineMessagingClient(
            http, settings.LINE_CHANNEL_ACCESS_TOKEN, settings.LINE_API_BASE_URL,
            timeout=settings.LINE_HTTP_TIMEOUT_SECONDS,
        )
    if store is None:
        store = SqlDiaryStore(session_factory or SessionLocal)

    resilience = resilience or build_resilience(settings)
    monitor = PerformanceMonitor(
        max_samples=settings.PERFORMANCE_MAX_SAMPLES,
        thresholds=HealthThresholds(
            p95_critical_ms=settings.HEALTH_P95_CRITICAL_MS,
            p95_warning_ms=settings.HEALTH_P95_WARNING_MS,
            success_critical_pct=settings.HEALTH_SUCCESS_CRITICAL_PCT,
            success_warning_pct=settings.HEALTH_SUCCESS_WARNING_PCT,
            level3_critical_pct=settings.HEALTH_LEVEL3_CRITICAL_PCT,
            level3_warning_pct=settings.HEALTH_LEVEL3_WARNING_PCT,
        ),
        trend_window_minutes=settings.PERFORMANCE_TREND_WINDOW_MINUTES,
    )
    registry = InFlightRegistry()

    summary_cache = SummaryCacheService(
        store, llm, resilience, registry,
        model=settings.OPENAI_MODEL,
        max_tokens=settings.SUMMARY_MAX_TOKENS,
        temperature=settings.SUMMARY_TEMPERATURE,
        ttl=timedelta(hours=settings.SUMMARY_CACHE_TTL_HOURS),
        window_days=settings.SUMMARY_WINDOW_DAYS,
        min_entries=settings.SUMMARY_MIN_ENTRIES,
        entry_max_chars=settings.SUMMARY_ENTRY_MAX_CHARS,
        max_entries=settings.SUMMARY_MAX_ENTRIES,
    )
    orchestrator = TieredAnalysisOrchestrator(
        store, llm, resilience, summary_cache, LightAnalyzer(), monitor,
        model=settings.OPENAI_MODEL,
        max_tokens=settings.ANALYSIS_MAX_TOKENS,
        temperature=settings.ANALYSIS_TEMPERATURE,
        budgets=TierBudgets(
            level1_ms=settings.LEVEL_1_BUDGET_MS,
            level3_ms=settings.LEVEL_3_BUDGET_MS,
            llm_timeout_seconds=settings.TIER1_LLM_TIMEOUT_SECONDS,
        ),
    )
    dispatcher = AsyncAnalysisDispatcher(
        store, llm, messaging, summary_cache, resilience,
        model=settings.OPENAI_MODEL,
        max_tokens=settings.ANALYSIS_MAX_TOKENS,
        temperature=settings.ANALYSIS_TEMPERATURE,
        summary_timeout=settings.ASYNC_SUMMARY_TIMEOUT_SECONDS,
        typing_seconds=settings.LINE_TYPING_SECONDS,
    )
    diary = DiaryService(
        orchestrator, dispatcher, store, resilience,
        deferred_mode=settings.deferred_mode,
        enrich_degraded=settings.ENRICH_DEGRADED_RESULTS,
    )
    maintenance = MaintenanceService(
        store, summary_cache, resilience,
        batch_size=settings.MAINTENANCE_BATCH_SIZE,
        entry_retention_days=settings.ENTRY_RETENTION_DAYS,
        summary_retention_days=settings.SUMMARY_RETENTION_DAYS,
        batch_pause_seconds=settings.MAINTENANCE_BATCH_PAUSE_SECONDS,
        inactive_user_days=settings.INACTIVE_USER_DAYS,
        orphaned_summary_min_age_days=settings.ORPHANED_SUMMARY_MIN_AGE_DAYS,
        alert_total_entries=settings.USAGE_ALERT_TOTAL_ENTRIES,
        alert_active_users=settings.USAGE_ALERT_ACTIVE_USERS,
    )

    return ServiceContainer(
        settings=settings,
        resilience=resilience,
        monitor=monitor,
        registry=registry,
        store=store,
        llm=llm,
        messaging=messaging,
        summary_cache=summary_cache,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        diary=diary,
        maintenance=maintenance,
        http=http,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
