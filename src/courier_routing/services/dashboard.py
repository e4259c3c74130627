"""Aggregated figures for the route optimization dashboard."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Callable

from ..config import settings
from ..models.batching import BatchStatus
from ..models.domain import parse_datetime, utcnow
from ..models.monitoring import (
    BatchStatistics,
    DateRange,
    DriverUtilizationRates,
    RealtimeMetrics,
    RouteEfficiencyMetrics,
    RouteOptimizationDashboardData,
    SystemPerformanceIndicators,
    TSPPerformanceMetric,
)
from ..persistence.store import DispatchStore
from .batching import BATCHES_TABLE, DRIVERS_TABLE
from .monitoring import TSPPerformanceMonitoringService, compare_algorithms
from .routing.engine import ROUTE_OPTIMIZATIONS_TABLE

logger = logging.getLogger(__name__)


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _rate(part: int, whole: int) -> float:
    return part / whole * 100.0 if whole else 0.0


def calculation_time_score(avg_calculation_time_ms: float) -> float:
    if avg_calculation_time_ms < 1000:
        return 100.0
    if avg_calculation_time_ms < 5000:
        return 80.0
    return 60.0


def system_load() -> float:
    """One-minute load average per CPU, or 0 where the platform has none."""
    if not hasattr(os, "getloadavg"):
        return 0.0
    try:
        load, _, _ = os.getloadavg()
    except OSError:
        return 0.0
    return round(load / (os.cpu_count() or 1), 3)


def batch_statistics(batches: list[dict]) -> BatchStatistics:
    total = len(batches)
    by_status: dict[str, int] = {}
    for batch in batches:
        by_status[batch.get("status")] = by_status.get(batch.get("status"), 0) + 1
    active = sum(by_status.get(status.value, 0) for status in BatchStatus if status.is_open)
    completed = by_status.get(BatchStatus.COMPLETED.value, 0)
    sizes = [len(batch.get("metadata", {}).get("order_ids") or []) for batch in batches]
    return BatchStatistics(
        total_batches=total,
        completed_batches=completed,
        active_batches=active,
        cancelled_batches=by_status.get(BatchStatus.CANCELLED.value, 0),
        completion_rate=round(_rate(completed, total), 2),
        avg_orders_per_batch=round(_mean([float(size) for size in sizes if size]), 2),
        avg_optimization_score=round(_mean([float(b.get("optimization_score") or 0.0) for b in batches]), 2),
    )


def route_efficiency(optimizations: list[dict]) -> RouteEfficiencyMetrics:
    distance_saved = sum(
        max(0.0, float(row.get("baseline_distance_km") or 0.0) - float(row.get("total_distance_km") or 0.0))
        for row in optimizations
    )
    minutes_saved = sum(
        max(0.0, float(row.get("baseline_duration_min") or 0.0) - float(row.get("total_duration_min") or 0.0))
        for row in optimizations
    )
    return RouteEfficiencyMetrics(
        total_optimizations=len(optimizations),
        avg_distance_km=round(_mean([float(row.get("total_distance_km") or 0.0) for row in optimizations]), 3),
        avg_duration_hours=round(
            _mean([float(row.get("total_duration_min") or 0.0) for row in optimizations]) / 60.0, 3
        ),
        avg_optimization_score=round(_mean([float(row.get("optimization_score") or 0.0) for row in optimizations]), 2),
        avg_improvement_percentage=round(
            _mean([float(row.get("improvement_percentage") or 0.0) for row in optimizations]), 2
        ),
        total_distance_saved_km=round(distance_saved, 3),
        total_time_saved_hours=round(minutes_saved / 60.0, 3),
    )


def driver_utilization(drivers: list[dict], batches: list[dict]) -> DriverUtilizationRates:
    active_drivers = [driver for driver in drivers if driver.get("is_active", True)]
    busy = {
        batch.get("driver_id")
        for batch in batches
        if batch.get("driver_id") and BatchStatus(batch["status"]).is_open
    }
    assigned = [batch for batch in batches if batch.get("driver_id")]
    per_driver = len(assigned) / len({batch["driver_id"] for batch in assigned}) if assigned else 0.0
    completion_hours = []
    for batch in batches:
        started = parse_datetime(batch.get("started_at"))
        completed = parse_datetime(batch.get("completed_at"))
        if started is not None and completed is not None and completed >= started:
            completion_hours.append((completed - started).total_seconds() / 3600.0)
    return DriverUtilizationRates(
        total_drivers=len(drivers),
        active_drivers=len(active_drivers),
        utilization_rate=round(_rate(len(busy), len(active_drivers)), 2),
        avg_batches_per_driver=round(per_driver, 2),
        avg_completion_time_hours=round(_mean(completion_hours), 3),
    )


def system_performance(metrics: list[TSPPerformanceMetric]) -> SystemPerformanceIndicators:
    avg_time = _mean([metric.calculation_time_ms for metric in metrics])
    success = _rate(sum(1 for metric in metrics if metric.convergence_achieved), len(metrics)) if metrics else 100.0
    return SystemPerformanceIndicators(
        total_calculations=len(metrics),
        avg_calculation_time_ms=round(avg_time, 3),
        slow_calculations=sum(
            1 for metric in metrics if metric.calculation_time_ms > settings.slow_calculation_threshold_ms
        ),
        success_rate=round(success, 2),
        avg_memory_usage_mb=round(_mean([metric.memory_usage_mb for metric in metrics]), 3),
        system_health_score=round((calculation_time_score(avg_time) + success) / 2.0, 2),
    )


class RouteOptimizationDashboardService:
    def __init__(
        self,
        store: DispatchStore,
        monitor: TSPPerformanceMonitoringService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.monitor = monitor
        self.clock = clock

    def get_dashboard_data(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> RouteOptimizationDashboardData:
        now = self.clock()
        start, end = parse_datetime(start), parse_datetime(end)
        if start is None:
            period = DateRange.last(end or now)
        else:
            period = DateRange(start=start, end=end or now)
        batches = self.store.select_between(BATCHES_TABLE, "created_at", period.start, period.end)
        optimizations = self.store.select_between(ROUTE_OPTIMIZATIONS_TABLE, "created_at", period.start, period.end)
        drivers = self.store.select(DRIVERS_TABLE)
        metrics = self.monitor.list_metrics(period.start, period.end)
        logger.debug(
            f"Dashboard {period.start.isoformat()}..{period.end.isoformat()}: "
            f"{len(batches)} batches, {len(optimizations)} optimizations, {len(metrics)} metrics"
        )

        open_statuses = [status.value for status in BatchStatus if status.is_open]
        hour_ago = now - timedelta(hours=1)
        recent = self.store.select_between(ROUTE_OPTIMIZATIONS_TABLE, "created_at", hour_ago, now)
        realtime = RealtimeMetrics(
            active_batches=len(self.store.select(BATCHES_TABLE, status=open_statuses)),
            recent_optimizations=len(recent),
            system_load=system_load(),
            last_updated=now,
        )
        return RouteOptimizationDashboardData(
            batch_statistics=batch_statistics(batches),
            route_efficiency=route_efficiency(optimizations),
            driver_utilization=driver_utilization(drivers, batches),
            system_performance=system_performance(metrics),
            algorithm_comparison=compare_algorithms(metrics),
            realtime_metrics=realtime,
            period=period,
            generated_at=now,
        )
