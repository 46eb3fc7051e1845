"""
Maintenance response schemas.

POST /maintenance/run                → MaintenanceReportResponse
GET  /maintenance/summaries/{user_id} → SummaryStatsResponse
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class MaintenanceReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    started_at: datetime
    active_users: int
    summaries_refreshed: int
    summaries_skipped: int = Field(description="Active users without enough entries for a summary.")
    refresh_failures: int
    entries_deleted: int
    summaries_deleted: int
    duplicate_summaries_deleted: int = Field(description="Rows repeating the text of a newer summary for the same user.")
    orphaned_summaries_deleted: int = Field(description="Summaries of users with no recent entries.")
    total_entries: int
    total_summaries: int
    total_analyses: int
    total_users: int
    recently_active_users: int
    alerts: list[str] = Field(description="Usage thresholds crossed during this run.")
    errors: list[str]


class SummaryStatsResponse(BaseModel):
    user_id: str
    start_date: date
    end_date: date
    has_summary: bool
    is_fresh: bool
    updated_at: Optional[datetime] = None
    entry_count: int = Field(description="Entries inside the current summary window.")
