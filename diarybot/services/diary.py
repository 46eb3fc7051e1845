"""
Single entry point for an incoming diary message.

Callers see only `handle_incoming_diary`; which tier answered and whether
a background pass was scheduled are details of the returned DiaryReply.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from diarybot.core import messages
from diarybot.core.errors import DiaryInputError
from diarybot.services.async_dispatch import AsyncAnalysisDispatcher, DeferredWorkRegistrar
from diarybot.services.resilience import CIRCUIT_DATABASE, ResilienceLayer
from diarybot.services.store import DiaryStore
from diarybot.services.tiered_analysis import LEVEL_1, TieredAnalysisOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class DiaryReply:
    reply_text: str
    entry_id: int
    level: Optional[int] = None
    enrichment_scheduled: bool = False


class DiaryService:
    def __init__(
        self,
        orchestrator: TieredAnalysisOrchestrator,
        dispatcher: AsyncAnalysisDispatcher,
        store: DiaryStore,
        resilience: ResilienceLayer,
        *,
        deferred_mode: bool = False,
        enrich_degraded: bool = True,
    ):
        self._orchestrator = orchestrator
        self._dispatcher = dispatcher
        self._store = store
        self._resilience = resilience
        self.deferred_mode = deferred_mode
        self.enrich_degraded = enrich_degraded

    async def handle_incoming_diary(
        self,
        user_id: str,
        text: str,
        defer: Optional[DeferredWorkRegistrar] = None,
    ) -> DiaryReply:
        # Without a registrar nothing would keep a background pass alive.
        if self.deferred_mode and defer is not None:
            return await self._handle_deferred(user_id, text, defer)

        result = await self._orchestrator.process(user_id, text)
        reply = DiaryReply(reply_text=result.reply_text, entry_id=result.entry.id, level=result.level)

        if result.level != LEVEL_1 and defer is not None and self.enrich_degraded:
            self._dispatcher.schedule_enrichment(result.entry, text, defer)
            reply.enrichment_scheduled = True
            reply.reply_text = f"{result.reply_text}\n\n{messages.ENRICHMENT_PENDING_NOTE}"
        return reply

    async def _handle_deferred(self, user_id: str, text: str, defer: DeferredWorkRegistrar) -> DiaryReply:
        if not user_id:
            raise DiaryInputError("user_id is required.", field="user_id")
        if not text or not text.strip():
            raise DiaryInputError("Diary text is empty.", field="text")

        entry = await self._resilience.execute_with_protection(
            lambda: self._store.create_entry(user_id, text.strip()),
            CIRCUIT_DATABASE,
            "entries.create",
        )
        reply_text = self._dispatcher.dispatch(entry, text, defer)
        return DiaryReply(reply_text=reply_text, entry_id=entry.id, enrichment_scheduled=True)
