"""
Persistence adapter.

The analysis pipeline talks to storage only through the `DiaryStore`
protocol. `SqlDiaryStore` implements it on the synchronous SQLAlchemy
session: each call opens its own session, runs in the threadpool, commits,
and returns detached ORM objects with their columns loaded.

Rules:
- Every SQLAlchemyError is re-raised as StoreError so the resilience layer
  can classify it by message.
- Summary upsert only bumps updated_at when the content actually changes.

Public API
----------
DiaryStore (protocol)
SqlDiaryStore(session_factory)
UsageTotals             row counts for the maintenance report
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol, TypeVar

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from diarybot.core.errors import StoreError
from diarybot.models.analysis import Analysis
from diarybot.models.entry import Entry, utcnow
from diarybot.models.summary import Summary

T = TypeVar("T")


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class UsageTotals:
    entries: int
    summaries: int
    analyses: int
    users: int
    active_users: int


class DiaryStore(Protocol):
    async def create_entry(self, user_id: str, content: str) -> Entry: ...

    async def get_recent_entries(self, user_id: str, days: int) -> list[Entry]: ...

    async def count_recent_entries(self, user_id: str, since: datetime) -> int: ...

    async def get_summary(self, user_id: str, start: date, end: date) -> Optional[Summary]: ...

    async def upsert_summary(self, user_id: str, start: date, end: date, content: str) -> Summary: ...

    async def delete_summary(self, user_id: str, start: date, end: date) -> None: ...

    async def create_analysis(self, entry_id: int, user_id: str, level: int, fields: dict[str, str]) -> Analysis: ...

    async def list_analyses(self, entry_id: int) -> list[Analysis]: ...

    async def active_user_ids(self, since: datetime) -> list[str]: ...

    async def delete_entries_before(self, cutoff: datetime) -> int: ...

    async def delete_summaries_before(self, cutoff: date) -> int: ...

    async def delete_duplicate_summaries(self) -> int: ...

    async def delete_orphaned_summaries(self, inactive_since: datetime, created_before: datetime) -> int: ...

    async def usage_totals(self, active_since: datetime) -> UsageTotals: ...


class SqlDiaryStore:
    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    async def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        return await run_in_threadpool(self._run_sync, operation, work)

    def _run_sync(self, operation: str, work: Callable[[Session], T]) -> T:
        db = self._session_factory()
        # Callers use the returned objects after the session closes.
        db.expire_on_commit = False
        try:
            result = work(db)
            db.commit()
            return result
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError(f"{operation} failed: {exc}", operation=operation) from exc
        finally:
            db.close()

    # -----------------------------------------------------------------------
    # Entries
    # -----------------------------------------------------------------------

    async def create_entry(self, user_id: str, content: str) -> Entry:
        def work(db: Session) -> Entry:
            entry = Entry(user_id=user_id, content=content, created_at=self._clock())
            db.add(entry)
            db.flush()
            db.refresh(entry)
            return entry

        return await self._run("create_entry", work)

    async def get_recent_entries(self, user_id: str, days: int) -> list[Entry]:
        since = self._clock() - timedelta(days=days)

        def work(db: Session) -> list[Entry]:
            stmt = (
                select(Entry)
                .where(Entry.user_id == user_id, Entry.created_at >= since)
                .order_by(Entry.created_at.desc(), Entry.id.desc())
            )
            return list(db.scalars(stmt))

        return await self._run("get_recent_entries", work)

    async def count_recent_entries(self, user_id: str, since: datetime) -> int:
        def work(db: Session) -> int:
            stmt = select(func.count(Entry.id)).where(
                Entry.user_id == user_id, Entry.created_at >= since
            )
            return int(db.scalar(stmt) or 0)

        return await self._run("count_recent_entries", work)

    # -----------------------------------------------------------------------
    # Summaries
    # -----------------------------------------------------------------------

    @staticmethod
    def _summary_stmt(user_id: str, start: date, end: date):
        return select(Summary).where(
            Summary.user_id == user_id,
            Summary.start_date == start,
            Summary.end_date == end,
        )

    async def get_summary(self, user_id: str, start: date, end: date) -> Optional[Summary]:
        def work(db: Session) -> Optional[Summary]:
            return db.scalars(self._summary_stmt(user_id, start, end)).first()

        return await self._run("get_summary", work)

    async def upsert_summary(self, user_id: str, start: date, end: date, content: str) -> Summary:
        def work(db: Session) -> Summary:
            summary = db.scalars(self._summary_stmt(user_id, start, end)).first()
            now = self._clock()
            if summary is None:
                summary = Summary(
                    user_id=user_id,
                    start_date=start,
                    end_date=end,
                    summary_content=content,
                    created_at=now,
                    updated_at=now,
                )
                db.add(summary)
            elif summary.summary_content != content:
                summary.summary_content = content
                summary.updated_at = now
            db.flush()
            db.refresh(summary)
            return summary

        return await self._run("upsert_summary", work)

    async def delete_summary(self, user_id: str, start: date, end: date) -> None:
        def work(db: Session) -> None:
            db.execute(
                delete(Summary).where(
                    Summary.user_id == user_id,
                    Summary.start_date == start,
                    Summary.end_date == end,
                )
            )

        await self._run("delete_summary", work)

    # -----------------------------------------------------------------------
    # Analyses
    # -----------------------------------------------------------------------

    async def create_analysis(self, entry_id: int, user_id: str, level: int, fields: dict[str, str]) -> Analysis:
        def work(db: Session) -> Analysis:
            analysis = Analysis(
                entry_id=entry_id,
                user_id=user_id,
                level=level,
                emotion=fields["emotion"],
                themes=fields["themes"],
                patterns=fields["patterns"],
                positive_points=fields["positive_points"],
                created_at=self._clock(),
            )
            db.add(analysis)
            db.flush()
            db.refresh(analysis)
            return analysis

        return await self._run("create_analysis", work)

    async def list_analyses(self, entry_id: int) -> list[Analysis]:
        def work(db: Session) -> list[Analysis]:
            stmt = select(Analysis).where(Analysis.entry_id == entry_id).order_by(Analysis.id)
            return list(db.scalars(stmt))

        return await self._run("list_analyses", work)

    # -----------------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------------

    async def active_user_ids(self, since: datetime) -> list[str]:
        def work(db: Session) -> list[str]:
            stmt = (
                select(Entry.user_id)
                .distinct()
                .where(Entry.created_at >= since)
                .order_by(Entry.user_id)
            )
            return list(db.scalars(stmt))

        return await self._run("active_user_ids", work)

    async def delete_entries_before(self, cutoff: datetime) -> int:
        def work(db: Session) -> int:
            old_ids = select(Entry.id).where(Entry.created_at < cutoff)
            db.execute(delete(Analysis).where(Analysis.entry_id.in_(old_ids)))
            result: Any = db.execute(delete(Entry).where(Entry.created_at < cutoff))
            return result.rowcount or 0

        return await self._run("delete_entries_before", work)

    async def delete_summaries_before(self, cutoff: date) -> int:
        def work(db: Session) -> int:
            result: Any = db.execute(delete(Summary).where(Summary.end_date < cutoff))
            return result.rowcount or 0

        return await self._run("delete_summaries_before", work)

    async def delete_duplicate_summaries(self) -> int:
        """Keep only the newest row among a user's summaries with identical text."""
        def work(db: Session) -> int:
            keep = select(func.max(Summary.id)).group_by(Summary.user_id, Summary.summary_content)
            result: Any = db.execute(delete(Summary).where(Summary.id.not_in(keep)))
            return result.rowcount or 0

        return await self._run("delete_duplicate_summaries", work)

    async def delete_orphaned_summaries(self, inactive_since: datetime, created_before: datetime) -> int:
        """Drop summaries of users who have written nothing since `inactive_since`."""
        def work(db: Session) -> int:
            writers = select(Entry.user_id).where(Entry.created_at >= inactive_since).distinct()
            result: Any = db.execute(
                delete(Summary).where(
                    Summary.user_id.not_in(writers),
                    Summary.created_at < created_before,
                )
            )
            return result.rowcount or 0

        return await self._run("delete_orphaned_summaries", work)

    async def usage_totals(self, active_since: datetime) -> UsageTotals:
        def work(db: Session) -> UsageTotals:
            def count(stmt) -> int:
                return int(db.scalar(stmt) or 0)

            return UsageTotals(
                entries=count(select(func.count(Entry.id))),
                summaries=count(select(func.count(Summary.id))),
                analyses=count(select(func.count(Analysis.id))),
                users=count(select(func.count(distinct(Entry.user_id)))),
                active_users=count(
                    select(func.count(distinct(Entry.user_id))).where(Entry.created_at >= active_since)
                ),
            )

        return await self._run("usage_totals", work)
