"""
In-memory latency / outcome monitor for the tiered pipeline.

The buffer is bounded: once it holds max_samples, the oldest half is
dropped before the next sample is appended.

Percentiles use index floor(n * q) over latencies sorted ascending,
0-indexed and clamped to n - 1. For latencies 1..100 that gives
p95 = 96 and p99 = 100.

Public API
----------
PerformanceMonitor.record(sample)
PerformanceMonitor.get_stats()                      -> PerformanceStats
PerformanceMonitor.get_recent_trend(window_minutes) -> RecentTrend
PerformanceMonitor.get_health_status()              -> HealthStatus
PerformanceMonitor.clear_history()
PerformanceMonitor.export_csv()                     -> str
"""
from __future__ import annotations

import csv
import io
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from diarybot.models.entry import utcnow

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"

TREND_IMPROVING = "improving"
TREND_STABLE = "stable"
TREND_DEGRADING = "degrading"
TREND_THRESHOLD = 0.1


@dataclass
class PerformanceSample:
    user_id: str
    total_processing_time_ms: float
    level: int
    entry_length: int
    success: bool
    error_type: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class PerformanceStats:
    total_requests: int = 0
    average_processing_time_ms: float = 0.0
    level1_count: int = 0
    level2_count: int = 0
    level3_count: int = 0
    success_rate: float = 0.0
    p95_processing_time_ms: float = 0.0
    p99_processing_time_ms: float = 0.0


@dataclass
class RecentTrend:
    window_minutes: int
    sample_count: int
    average_processing_time_ms: float
    level3_rate: float
    trend: str


@dataclass
class HealthThresholds:
    p95_critical_ms: float = 10.0
    p95_warning_ms: float = 8.0
    success_critical_pct: float = 80.0
    success_warning_pct: float = 95.0
    level3_critical_pct: float = 50.0
    level3_warning_pct: float = 20.0


@dataclass
class HealthStatus:
    status: str
    message: str
    recommendations: list[str]
    stats: PerformanceStats
    recent: RecentTrend


def percentile(sorted_values: list[float], q: float) -> float:
    if not sorted_values:
        return 0.0
    index = min(len(sorted_values) - 1, math.floor(len(sorted_values) * q))
    return sorted_values[index]


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class PerformanceMonitor:
    def __init__(
        self,
        max_samples: int = 1000,
        thresholds: Optional[HealthThresholds] = None,
        trend_window_minutes: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.max_samples = max_samples
        self.thresholds = thresholds or HealthThresholds()
        self.trend_window_minutes = trend_window_minutes
        self._clock = clock
        self._samples: list[PerformanceSample] = []

    def __len__(self) -> int:
        return len(self._samples)

    def record(self, sample: PerformanceSample) -> None:
        if len(self._samples) >= self.max_samples:
            self._samples = self._samples[-(self.max_samples // 2):] if self.max_samples > 1 else []
        self._samples.append(sample)

        if sample.total_processing_time_ms > self.thresholds.p95_warning_ms:
            logger.warning(
                f"Slow diary request: {sample.total_processing_time_ms:.1f}ms at level {sample.level}",
                extra={"user_id": sample.user_id, "level": sample.level},
            )
        if sample.level == 3:
            logger.warning(
                "Emergency tier used",
                extra={"user_id": sample.user_id, "success": sample.success, "error_type": sample.error_type},
            )

    def get_stats(self) -> PerformanceStats:
        samples = self._samples
        if not samples:
            return PerformanceStats()

        latencies = sorted(s.total_processing_time_ms for s in samples)
        successes = sum(1 for s in samples if s.success)
        return PerformanceStats(
            total_requests=len(samples),
            average_processing_time_ms=_mean(latencies),
            level1_count=sum(1 for s in samples if s.level == 1),
            level2_count=sum(1 for s in samples if s.level == 2),
            level3_count=sum(1 for s in samples if s.level == 3),
            success_rate=successes / len(samples) * 100,
            p95_processing_time_ms=percentile(latencies, 0.95),
            p99_processing_time_ms=percentile(latencies, 0.99),
        )

    def get_recent_trend(self, window_minutes: Optional[int] = None) -> RecentTrend:
        window = window_minutes or self.trend_window_minutes
        cutoff = self._clock() - timedelta(minutes=window)
        recent = [s for s in self._samples if s.timestamp >= cutoff]
        if not recent:
            return RecentTrend(window, 0, 0.0, 0.0, TREND_STABLE)

        latencies = [s.total_processing_time_ms for s in recent]
        level3_rate = sum(1 for s in recent if s.level == 3) / len(recent) * 100

        trend = TREND_STABLE
        half = len(latencies) // 2
        if half:
            first = _mean(latencies[:half])
            second = _mean(latencies[half:])
            if first > 0:
                change = (first - second) / first
                if change > TREND_THRESHOLD:
                    trend = TREND_IMPROVING
                elif change < -TREND_THRESHOLD:
                    trend = TREND_DEGRADING

        return RecentTrend(window, len(recent), _mean(latencies), level3_rate, trend)

    def get_health_status(self) -> HealthStatus:
        stats = self.get_stats()
        recent = self.get_recent_trend()
        t = self.thresholds

        if stats.total_requests == 0:
            return HealthStatus(HEALTHY, "No requests recorded yet.", ["Collect traffic before tuning budgets."], stats, recent)

        if (
            stats.p95_processing_time_ms > t.p95_critical_ms
            or stats.success_rate < t.success_critical_pct
            or recent.level3_rate > t.level3_critical_pct
        ):
            recommendations = []
            if stats.p95_processing_time_ms > t.p95_critical_ms:
                recommendations.append("Raise LEVEL_1_BUDGET_MS or shorten TIER1_LLM_TIMEOUT_SECONDS.")
                recommendations.append("Check database latency; entry persistence alone may exhaust the budget.")
            if stats.success_rate < t.success_critical_pct:
                recommendations.append("Inspect error logs and circuit breaker states for a failing dependency.")
            if recent.level3_rate > t.level3_critical_pct:
                recommendations.append("Emergency tier dominates recent traffic; review LEVEL_3_BUDGET_MS and database health.")
            return HealthStatus(CRITICAL, "Diary pipeline is degraded.", recommendations, stats, recent)

        if (
            stats.p95_processing_time_ms > t.p95_warning_ms
            or stats.success_rate < t.success_warning_pct
            or recent.level3_rate > t.level3_warning_pct
        ):
            recommendations = []
            if stats.p95_processing_time_ms > t.p95_warning_ms:
                recommendations.append("Latency is close to budget; consider enabling deferred analysis mode.")
            if stats.success_rate < t.success_warning_pct:
                recommendations.append("Error rate is rising; watch the llm and database circuits.")
            if recent.level3_rate > t.level3_warning_pct:
                recommendations.append("Emergency tier usage is elevated; monitor summary cache hit rate.")
            return HealthStatus(WARNING, "Diary pipeline is under pressure.", recommendations, stats, recent)

        return HealthStatus(HEALTHY, "Diary pipeline is healthy.", ["No action needed; keep current budgets."], stats, recent)

    def clear_history(self) -> int:
        cleared = len(self._samples)
        self._samples = []
        logger.info(f"Performance history cleared ({cleared} samples)")
        return cleared

    def export_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["timestamp", "user_id", "processing_time_ms", "level", "entry_length", "success", "error_type"])
        for s in self._samples:
            writer.writerow([
                s.timestamp.isoformat(),
                s.user_id,
                f"{s.total_processing_time_ms:.3f}",
                s.level,
                s.entry_length,
                "true" if s.success else "false",
                s.error_type or "",
            ])
        return buffer.getvalue()
