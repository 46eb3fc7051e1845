"""
Pipeline observability.

GET    /performance/stats                 — latency percentiles and tier counts
GET    /performance/trend                 — recent latency trend
GET    /performance/health                — verdict + recommendations (503 when critical)
GET    /performance/export                — raw samples as CSV
DELETE /performance/metrics               — clear samples (admin)
GET    /performance/circuits              — circuit breaker states
POST   /performance/circuits/{key}/reset  — close a circuit by hand (admin)
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from diarybot.core.admin import require_admin
from diarybot.core.container import ServiceContainer, get_container
from diarybot.core.errors import UnknownCircuitError
from diarybot.schemas.common import ErrorResponse
from diarybot.schemas.performance import (
    CircuitStatusResponse,
    ClearedResponse,
    HealthStatusResponse,
    PerformanceStatsResponse,
    RecentTrendResponse,
)
from diarybot.services.performance import CRITICAL

router = APIRouter(prefix="/performance", tags=["performance"])

_ADMIN_ERRORS = {403: {"model": ErrorResponse, "description": "Admin token missing, invalid or not configured."}}


@router.get("/stats", response_model=PerformanceStatsResponse, summary="Latency and tier statistics")
async def get_stats(container: ServiceContainer = Depends(get_container)):
    """p95/p99 use index floor(n × q) over ascending latencies (0-indexed)."""
    return PerformanceStatsResponse.model_validate(container.monitor.get_stats())


@router.get("/trend", response_model=RecentTrendResponse, summary="Recent latency trend")
async def get_trend(
    window_minutes: Optional[int] = Query(default=None, ge=1, le=24 * 60),
    container: ServiceContainer = Depends(get_container),
):
    return RecentTrendResponse.model_validate(container.monitor.get_recent_trend(window_minutes))


@router.get(
    "/health",
    response_model=HealthStatusResponse,
    summary="Pipeline health verdict",
    responses={503: {"description": "Pipeline is in critical state."}},
)
async def get_health(container: ServiceContainer = Depends(get_container)):
    health = container.monitor.get_health_status()
    body = HealthStatusResponse.model_validate(health)
    if health.status == CRITICAL:
        return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
    return body


@router.get("/export", response_class=PlainTextResponse, summary="Export samples as CSV")
async def export_csv(container: ServiceContainer = Depends(get_container)):
    return PlainTextResponse(
        container.monitor.export_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="diary-performance.csv"'},
    )


@router.delete(
    "/metrics",
    response_model=ClearedResponse,
    summary="Clear performance samples",
    dependencies=[Depends(require_admin)],
    responses=_ADMIN_ERRORS,
)
async def clear_metrics(container: ServiceContainer = Depends(get_container)):
    return ClearedResponse(cleared=container.monitor.clear_history())


@router.get(
    "/circuits",
    response_model=dict[str, CircuitStatusResponse],
    summary="Circuit breaker states",
)
async def get_circuits(container: ServiceContainer = Depends(get_container)):
    return container.resilience.all_circuit_status()


@router.post(
    "/circuits/{key}/reset",
    response_model=CircuitStatusResponse,
    summary="Reset a circuit breaker to closed",
    dependencies=[Depends(require_admin)],
    responses={**_ADMIN_ERRORS, 404: {"model": ErrorResponse, "description": "Unknown circuit."}},
)
async def reset_circuit(key: str, container: ServiceContainer = Depends(get_container)):
    if not container.resilience.reset_circuit(key):
        raise UnknownCircuitError(key)
    return container.resilience.circuit_status(key)
