"""Performance and dashboard response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from ..models.monitoring import AlertSeverity, AlertType, OptimizationAlgorithm


class _FromDomain(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class DateRangeModel(_FromDomain):
    start: datetime
    end: datetime


class AlgorithmStatsModel(_FromDomain):
    algorithm: OptimizationAlgorithm
    total_executions: int
    avg_calculation_time_ms: float
    median_calculation_time_ms: float
    avg_optimization_score: float
    avg_route_quality: float
    success_rate: float
    overall_score: float


class AlgorithmComparisonModel(_FromDomain):
    rank: int
    algorithm: OptimizationAlgorithm
    stats: AlgorithmStatsModel


class PerformanceAlertModel(_FromDomain):
    type: AlertType
    algorithm: OptimizationAlgorithm
    message: str
    severity: AlertSeverity
    batch_id: str
    value: float
    threshold: float
    timestamp: datetime


class PerformanceDashboardModel(_FromDomain):
    total_optimizations: int
    average_calculation_time_ms: float
    average_optimization_score: float
    alert_count: int
    period: DateRangeModel
    algorithm_comparison: List[AlgorithmComparisonModel]


class BatchStatisticsModel(_FromDomain):
    total_batches: int
    completed_batches: int
    active_batches: int
    cancelled_batches: int
    completion_rate: float
    avg_orders_per_batch: float
    avg_optimization_score: float


class RouteEfficiencyModel(_FromDomain):
    total_optimizations: int
    avg_distance_km: float
    avg_duration_hours: float
    avg_optimization_score: float
    avg_improvement_percentage: float
    total_distance_saved_km: float
    total_time_saved_hours: float


class DriverUtilizationModel(_FromDomain):
    total_drivers: int
    active_drivers: int
    utilization_rate: float
    avg_batches_per_driver: float
    avg_completion_time_hours: float


class SystemPerformanceModel(_FromDomain):
    total_calculations: int
    avg_calculation_time_ms: float
    slow_calculations: int
    success_rate: float
    avg_memory_usage_mb: float
    system_health_score: float


class RealtimeMetricsModel(_FromDomain):
    active_batches: int
    recent_optimizations: int
    system_load: float
    last_updated: datetime


class OptimizationOverviewModel(_FromDomain):
    batch_statistics: BatchStatisticsModel
    route_efficiency: RouteEfficiencyModel
    driver_utilization: DriverUtilizationModel
    system_performance: SystemPerformanceModel
    algorithm_comparison: List[AlgorithmComparisonModel]
    realtime_metrics: RealtimeMetricsModel
    period: DateRangeModel
    generated_at: Optional[datetime] = None
