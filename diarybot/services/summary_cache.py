"""
Rolling-window summary of a user's recent diary entries.

The summary gives the LLM context about the past week. It is optional
context: every failure in here degrades to "no summary" and is logged,
never raised to the caller.

Rules:
- Window is [today - window_days, today] in UTC calendar dates.
- A stored summary is a cache row, fresh while now - updated_at <= TTL.
- Expired rows are deleted outright (never overwritten with blank text).
- Concurrent requests for the same (user, window) share one generation.

Public API
----------
SummaryCacheService.get_or_create_summary(user_id) -> str | None
SummaryCacheService.refresh_summary(user_id)       -> str | None
SummaryCacheService.get_summary_stats(user_id)     -> dict
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

from diarybot.models.entry import utcnow
from diarybot.services.inflight import InFlightRegistry
from diarybot.services.llm import LLMClient, extract_text
from diarybot.services.prompts import build_summary_messages
from diarybot.services.resilience import CIRCUIT_DATABASE, CIRCUIT_LLM, ResilienceLayer
from diarybot.services.store import DiaryStore, as_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SummaryCacheService:
    def __init__(
        self,
        store: DiaryStore,
        llm: LLMClient,
        resilience: ResilienceLayer,
        registry: InFlightRegistry,
        *,
        model: str,
        max_tokens: int = 150,
        temperature: float = 0.2,
        ttl: timedelta = timedelta(hours=24),
        window_days: int = 7,
        min_entries: int = 2,
        entry_max_chars: int = 300,
        max_entries: int = 20,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._llm = llm
        self._resilience = resilience
        self._registry = registry
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.ttl = ttl
        self.window_days = window_days
        self.min_entries = min_entries
        self.entry_max_chars = entry_max_chars
        self.max_entries = max_entries
        self._clock = clock

    def current_window(self) -> tuple[date, date]:
        today = self._clock().date()
        return today - timedelta(days=self.window_days), today

    def is_fresh(self, updated_at: datetime) -> bool:
        return self._clock() - as_utc(updated_at) <= self.ttl

    async def _db(self, operation: Callable[[], Awaitable[T]], context: str) -> T:
        return await self._resilience.execute_with_protection(operation, CIRCUIT_DATABASE, context)

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def get_or_create_summary(self, user_id: str) -> Optional[str]:
        start, end = self.current_window()
        return await self._registry.run(
            ("summary", user_id, start, end),
            lambda: self._load_or_generate(user_id, start, end),
        )

    async def refresh_summary(self, user_id: str) -> Optional[str]:
        """Drop the current window's row and build a new one."""
        start, end = self.current_window()
        try:
            await self._db(lambda: self._store.delete_summary(user_id, start, end), "summaries.refresh")
        except Exception as exc:
            logger.warning(f"Could not clear summary for {user_id}: {exc}", extra={"user_id": user_id})
            return None
        return await self.get_or_create_summary(user_id)

    async def get_summary_stats(self, user_id: str) -> dict[str, Any]:
        start, end = self.current_window()
        summary = await self._db(lambda: self._store.get_summary(user_id, start, end), "summaries.stats")
        since = self._clock() - timedelta(days=self.window_days)
        entry_count = await self._db(
            lambda: self._store.count_recent_entries(user_id, since), "entries.count_recent"
        )
        return {
            "user_id": user_id,
            "start_date": start,
            "end_date": end,
            "has_summary": summary is not None,
            "is_fresh": summary is not None and self.is_fresh(summary.updated_at),
            "updated_at": as_utc(summary.updated_at) if summary is not None else None,
            "entry_count": entry_count,
        }

    # -----------------------------------------------------------------------
    # Generation
    # -----------------------------------------------------------------------

    async def _load_or_generate(self, user_id: str, start: date, end: date) -> Optional[str]:
        try:
            cached = await self._db(lambda: self._store.get_summary(user_id, start, end), "summaries.get")
            if cached is not None:
                if cached.summary_content and self.is_fresh(cached.updated_at):
                    return cached.summary_content
                await self._db(lambda: self._store.delete_summary(user_id, start, end), "summaries.delete_expired")

            entries = await self._db(
                lambda: self._store.get_recent_entries(user_id, self.window_days), "entries.recent"
            )
            if len(entries) < self.min_entries:
                logger.debug(f"Not enough entries for a summary ({len(entries)})", extra={"user_id": user_id})
                return None

            texts = [entry.content[: self.entry_max_chars] for entry in entries[: self.max_entries]]
            response = await self._resilience.execute_with_protection(
                lambda: self._llm.complete(
                    build_summary_messages(texts),
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                ),
                CIRCUIT_LLM,
                "summary.generate",
            )
            content = extract_text(response)

            await self._db(
                lambda: self._store.upsert_summary(user_id, start, end, content), "summaries.upsert"
            )
            logger.info(
                f"Summary generated from {len(texts)} entries",
                extra={"user_id": user_id, "summary_length": len(content)},
            )
            return content
        except Exception as exc:
            logger.warning(
                f"Summary unavailable, continuing without it: {exc}",
                extra={"user_id": user_id, "error_type": type(exc).__name__},
            )
            return None
