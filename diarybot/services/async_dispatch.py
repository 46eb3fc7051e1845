"""
Background LLM enrichment.

The user gets a cheap reply straight away; the full LLM analysis runs after
the HTTP response through a deferred-work registrar (FastAPI's
`BackgroundTasks.add_task` in production) and is pushed as a follow-up.

Rules:
- The background pass never raises. On failure it logs and tries to push
  an apology, itself best-effort.
- The summary lookup is bounded by summary_timeout; on timeout the pass
  carries on without history.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from diarybot.core import messages
from diarybot.models.analysis import LEVEL_ENRICHMENT
from diarybot.models.entry import Entry
from diarybot.services.llm import LLMClient, extract_text
from diarybot.services.messaging import MessagingClient
from diarybot.services.prompts import build_analysis_messages
from diarybot.services.resilience import (
    CIRCUIT_DATABASE,
    CIRCUIT_LLM,
    CIRCUIT_MESSAGING,
    ResilienceLayer,
)
from diarybot.services.response_parser import AnalysisFields, format_analysis_for_user, parse_analysis
from diarybot.services.store import DiaryStore
from diarybot.services.summary_cache import SummaryCacheService

logger = logging.getLogger(__name__)

# Same shape as BackgroundTasks.add_task(func, *args).
DeferredWorkRegistrar = Callable[..., Any]


class AsyncAnalysisDispatcher:
    def __init__(
        self,
        store: DiaryStore,
        llm: LLMClient,
        messaging: MessagingClient,
        summary_cache: SummaryCacheService,
        resilience: ResilienceLayer,
        *,
        model: str,
        max_tokens: int = 300,
        temperature: float = 0.3,
        summary_timeout: float = 5.0,
        typing_seconds: int = 20,
    ):
        self._store = store
        self._llm = llm
        self._messaging = messaging
        self._summary_cache = summary_cache
        self._resilience = resilience
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.summary_timeout = summary_timeout
        self.typing_seconds = typing_seconds

    def dispatch(self, entry: Entry, text: str, defer: DeferredWorkRegistrar) -> str:
        """Schedule enrichment and return the immediate "analysis pending" reply."""
        self.schedule_enrichment(entry, text, defer)
        return messages.ANALYSIS_PENDING

    def schedule_enrichment(self, entry: Entry, text: str, defer: DeferredWorkRegistrar) -> None:
        defer(self.run_enrichment, entry.id, entry.user_id, text)
        logger.debug("Enrichment scheduled", extra={"entry_id": entry.id, "user_id": entry.user_id})

    # -----------------------------------------------------------------------
    # Background pass
    # -----------------------------------------------------------------------

    async def run_enrichment(self, entry_id: int, user_id: str, text: str) -> bool:
        await self._show_typing(user_id)
        try:
            summary = await self._summary_with_timeout(user_id)
            fields = await self._analyze(text, summary)
            await self._resilience.execute_with_protection(
                lambda: self._store.create_analysis(entry_id, user_id, LEVEL_ENRICHMENT, fields.as_dict()),
                CIRCUIT_DATABASE,
                "analyses.create.enrichment",
            )
            await self._resilience.execute_with_protection(
                lambda: self._messaging.push(
                    user_id, [format_analysis_for_user(fields, header=messages.ENRICHMENT_DONE_HEADER)]
                ),
                CIRCUIT_MESSAGING,
                "messaging.push.enrichment",
            )
        except Exception as exc:
            logger.error(
                f"Background enrichment failed: {exc}",
                extra={"entry_id": entry_id, "user_id": user_id, "error_type": type(exc).__name__},
            )
            await self._push_apology(user_id)
            return False

        logger.info("Background enrichment delivered", extra={"entry_id": entry_id, "user_id": user_id})
        return True

    async def _summary_with_timeout(self, user_id: str) -> Optional[str]:
        try:
            return await asyncio.wait_for(
                self._summary_cache.get_or_create_summary(user_id),
                timeout=self.summary_timeout,
            )
        except asyncio.TimeoutError:
            logger.info(f"Summary lookup exceeded {self.summary_timeout}s, analysing without history")
            return None

    async def _analyze(self, text: str, summary: Optional[str]) -> AnalysisFields:
        response = await self._resilience.execute_with_protection(
            lambda: self._llm.complete(
                build_analysis_messages(text, summary),
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            ),
            CIRCUIT_LLM,
            "enrichment.llm",
        )
        return parse_analysis(extract_text(response))

    async def _show_typing(self, user_id: str) -> None:
        try:
            await self._messaging.show_typing(user_id, self.typing_seconds)
        except Exception as exc:
            logger.debug(f"Typing indicator skipped: {exc}")

    async def _push_apology(self, user_id: str) -> None:
        try:
            await self._messaging.push(user_id, [messages.ENRICHMENT_FAILED])
        except Exception as exc:
            logger.warning(f"Apology push failed: {exc}", extra={"user_id": user_id})
