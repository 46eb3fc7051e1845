"""
Maintenance router (admin only).

POST /maintenance/run                  — refresh active summaries, purge old data
GET  /maintenance/summaries/{user_id}  — summary cache state for one user
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from diarybot.core.admin import require_admin
from diarybot.core.container import ServiceContainer, get_container
from diarybot.schemas.common import ErrorResponse
from diarybot.schemas.maintenance import MaintenanceReportResponse, SummaryStatsResponse

router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_admin)],
    responses={403: {"model": ErrorResponse, "description": "Admin token missing, invalid or not configured."}},
)


@router.post("/run", response_model=MaintenanceReportResponse, summary="Run scheduled maintenance")
async def run_maintenance(container: ServiceContainer = Depends(get_container)):
    """
    Meant to be called by an external scheduler (cron, Railway cron job).

    - Refreshes the rolling summary of every user active in the summary
      window, in batches of `MAINTENANCE_BATCH_SIZE`.
    - Deletes entries older than `ENTRY_RETENTION_DAYS` with their analyses.
    - Deletes summaries whose window ended before `SUMMARY_RETENTION_DAYS`.
    - Prunes duplicate summaries and those of users inactive for
      `INACTIVE_USER_DAYS`.
    - Reports row totals and flags usage alerts.
    """
    report = await container.maintenance.run()
    return MaintenanceReportResponse.model_validate(report)


@router.get(
    "/summaries/{user_id}",
    response_model=SummaryStatsResponse,
    summary="Summary cache state for a user",
)
async def summary_stats(user_id: str, container: ServiceContainer = Depends(get_container)):
    return await container.summary_cache.get_summary_stats(user_id)
