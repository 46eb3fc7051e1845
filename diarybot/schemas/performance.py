"""
Performance and circuit-breaker response schemas.

GET /performance/stats    → PerformanceStatsResponse
GET /performance/trend    → RecentTrendResponse
GET /performance/health   → HealthStatusResponse
GET /performance/circuits → dict[str, CircuitStatusResponse]
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PerformanceStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_requests: int
    average_processing_time_ms: float
    level1_count: int
    level2_count: int
    level3_count: int
    success_rate: float = Field(description="Percentage of successful requests, 0-100.")
    p95_processing_time_ms: float
    p99_processing_time_ms: float


class RecentTrendResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    window_minutes: int
    sample_count: int
    average_processing_time_ms: float
    level3_rate: float = Field(description="Percentage of recent requests answered at level 3.")
    trend: str = Field(description='"improving", "stable" or "degrading".', examples=["stable"])


class HealthStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str = Field(description='"healthy", "warning" or "critical".')
    message: str
    recommendations: list[str]
    stats: PerformanceStatsResponse
    recent: RecentTrendResponse


class CircuitStatusResponse(BaseModel):
    circuit: str
    state: str = Field(description='"closed", "open" or "half_open".')
    failure_count: int
    seconds_since_last_failure: Optional[float] = None
    retry_in_seconds: Optional[float] = None


class ClearedResponse(BaseModel):
    cleared: int
