"""
Periodic housekeeping, triggered by an external scheduler through
POST /maintenance/run.

1. Refresh the rolling summary of every user active inside the summary
   window, batch_size users at a time (each batch concurrently, with a short
   pause between batches).
2. Delete entries (with their analyses) older than entry_retention_days.
3. Delete summaries whose window ended more than summary_retention_days ago.
4. Prune summaries nobody will read: rows repeating the text of a newer row
   for the same user, and rows of users silent for inactive_user_days.
5. Count rows and users; log a warning when a usage threshold is crossed.

A failure for one user is counted and logged; it never stops the run. A
failing step is recorded in `errors` and the next step still runs.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from diarybot.models.entry import utcnow
from diarybot.services.resilience import CIRCUIT_DATABASE, ResilienceLayer
from diarybot.services.store import DiaryStore
from diarybot.services.summary_cache import SummaryCacheService

logger = logging.getLogger(__name__)

ALERT_TOTAL_ENTRIES = "total_entries"
ALERT_ACTIVE_USERS = "active_users"


@dataclass
class MaintenanceReport:
    started_at: datetime
    active_users: int = 0
    summaries_refreshed: int = 0
    summaries_skipped: int = 0
    refresh_failures: int = 0
    entries_deleted: int = 0
    summaries_deleted: int = 0
    duplicate_summaries_deleted: int = 0
    orphaned_summaries_deleted: int = 0
    total_entries: int = 0
    total_summaries: int = 0
    total_analyses: int = 0
    total_users: int = 0
    recently_active_users: int = 0
    alerts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class MaintenanceService:
    def __init__(
        self,
        store: DiaryStore,
        summary_cache: SummaryCacheService,
        resilience: ResilienceLayer,
        *,
        batch_size: int = 50,
        entry_retention_days: int = 90,
        summary_retention_days: int = 30,
        batch_pause_seconds: float = 0.1,
        inactive_user_days: int = 30,
        orphaned_summary_min_age_days: int = 7,
        alert_total_entries: int = 100_000,
        alert_active_users: int = 1000,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._summary_cache = summary_cache
        self._resilience = resilience
        self.batch_size = max(1, batch_size)
        self.entry_retention_days = entry_retention_days
        self.summary_retention_days = summary_retention_days
        self.batch_pause_seconds = batch_pause_seconds
        self.inactive_user_days = inactive_user_days
        self.orphaned_summary_min_age_days = orphaned_summary_min_age_days
        self.alert_total_entries = alert_total_entries
        self.alert_active_users = alert_active_users
        self._clock = clock
        self._sleep = sleep

    async def run(self) -> MaintenanceReport:
        report = MaintenanceReport(started_at=self._clock())
        await self.refresh_active_summaries(report)
        await self.cleanup(report)
        await self.prune_summaries(report)
        await self.collect_usage(report)
        logger.info(
            f"Maintenance finished: {report.summaries_refreshed} summaries refreshed, "
            f"{report.entries_deleted} entries and "
            f"{report.summaries_deleted + report.duplicate_summaries_deleted + report.orphaned_summaries_deleted} "
            f"summaries deleted",
            extra={"refresh_failures": report.refresh_failures, "errors": len(report.errors)},
        )
        return report

    async def _db(self, operation: str, call: Callable[[], Awaitable]):
        return await self._resilience.execute_with_protection(call, CIRCUIT_DATABASE, f"maintenance.{operation}")

    async def refresh_active_summaries(self, report: MaintenanceReport) -> None:
        since = self._clock() - timedelta(days=self._summary_cache.window_days)
        try:
            user_ids = await self._db("active_users", lambda: self._store.active_user_ids(since))
        except Exception as exc:
            logger.error(f"Could not list active users: {exc}")
            report.errors.append(f"active_users: {exc}")
            return

        report.active_users = len(user_ids)
        for start in range(0, len(user_ids), self.batch_size):
            if start and self.batch_pause_seconds > 0:
                await self._sleep(self.batch_pause_seconds)
            batch = user_ids[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self._summary_cache.refresh_summary(user_id) for user_id in batch),
                return_exceptions=True,
            )
            for user_id, result in zip(batch, results):
                if isinstance(result, Exception):
                    report.refresh_failures += 1
                    logger.warning(f"Summary refresh failed for {user_id}: {result}")
                elif result is None:
                    report.summaries_skipped += 1
                else:
                    report.summaries_refreshed += 1

    async def cleanup(self, report: MaintenanceReport) -> None:
        now = self._clock()
        entry_cutoff = now - timedelta(days=self.entry_retention_days)
        summary_cutoff = (now - timedelta(days=self.summary_retention_days)).date()
        try:
            report.entries_deleted = await self._db(
                "entries", lambda: self._store.delete_entries_before(entry_cutoff)
            )
            report.summaries_deleted = await self._db(
                "summaries", lambda: self._store.delete_summaries_before(summary_cutoff)
            )
        except Exception as exc:
            logger.error(f"Cleanup failed: {exc}")
            report.errors.append(f"cleanup: {exc}")

    async def prune_summaries(self, report: MaintenanceReport) -> None:
        now = self._clock()
        inactive_since = now - timedelta(days=self.inactive_user_days)
        created_before = now - timedelta(days=self.orphaned_summary_min_age_days)
        try:
            report.duplicate_summaries_deleted = await self._db(
                "duplicate_summaries", self._store.delete_duplicate_summaries
            )
            report.orphaned_summaries_deleted = await self._db(
                "orphaned_summaries",
                lambda: self._store.delete_orphaned_summaries(inactive_since, created_before),
            )
        except Exception as exc:
            logger.error(f"Summary pruning failed: {exc}")
            report.errors.append(f"prune: {exc}")

    async def collect_usage(self, report: MaintenanceReport) -> None:
        active_since = self._clock() - timedelta(days=self._summary_cache.window_days)
        try:
            totals = await self._db("usage", lambda: self._store.usage_totals(active_since))
        except Exception as exc:
            logger.error(f"Usage totals unavailable: {exc}")
            report.errors.append(f"usage: {exc}")
            return

        report.total_entries = totals.entries
        report.total_summaries = totals.summaries
        report.total_analyses = totals.analyses
        report.total_users = totals.users
        report.recently_active_users = totals.active_users

        if totals.entries > self.alert_total_entries:
            logger.warning(
                f"Usage alert: {totals.entries} entries stored (threshold {self.alert_total_entries})",
                extra={"total_entries": totals.entries},
            )
            report.alerts.append(ALERT_TOTAL_ENTRIES)
        if totals.active_users > self.alert_active_users:
            logger.warning(
                f"Usage alert: {totals.active_users} active users (threshold {self.alert_active_users})",
                extra={"active_users": totals.active_users},
            )
            report.alerts.append(ALERT_ACTIVE_USERS)
