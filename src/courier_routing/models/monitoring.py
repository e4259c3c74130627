"""Algorithm performance and dashboard shapes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from .routing import OptimizedRoute


class OptimizationAlgorithm(str, Enum):
    EXACT = "exact"
    NEAREST_NEIGHBOR = "nearest_neighbor"
    ENHANCED_NEAREST = "enhanced_nearest"
    GENETIC_ALGORITHM = "genetic_algorithm"
    SIMULATED_ANNEALING = "simulated_annealing"
    OR_TOOLS = "or_tools"
    HYBRID_MULTI = "hybrid_multi"

    @classmethod
    def parse(cls, value: "str | OptimizationAlgorithm") -> "OptimizationAlgorithm":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError as exc:
            choices = ", ".join(item.value for item in cls)
            raise ValueError(f"Unknown optimization algorithm '{value}'. Expected one of: {choices}.") from exc


class AlertType(str, Enum):
    SLOW_CALCULATION = "slow_calculation"
    LOW_OPTIMIZATION_SCORE = "low_optimization_score"
    HIGH_MEMORY_USAGE = "high_memory_usage"
    ALGORITHM_FAILURE = "algorithm_failure"
    SYSTEM_OVERLOAD = "system_overload"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(slots=True)
class TSPPerformanceMetric:
    id: str
    batch_id: str
    algorithm: OptimizationAlgorithm
    calculation_time_ms: float
    optimization_score: float
    route_quality_score: float
    waypoint_count: int
    memory_usage_mb: float
    iterations: int
    convergence_achieved: bool
    created_at: datetime
    metadata: dict = field(default_factory=dict)


@dataclass(slots=True)
class TSPPerformanceAlert:
    type: AlertType
    algorithm: OptimizationAlgorithm
    message: str
    severity: AlertSeverity
    batch_id: str
    value: float
    threshold: float
    timestamp: datetime


@dataclass(slots=True)
class TSPAlgorithmStats:
    algorithm: OptimizationAlgorithm
    total_executions: int
    avg_calculation_time_ms: float
    median_calculation_time_ms: float
    avg_optimization_score: float
    avg_route_quality: float
    success_rate: float
    overall_score: float

    @classmethod
    def empty(cls, algorithm: OptimizationAlgorithm) -> "TSPAlgorithmStats":
        return cls(
            algorithm=algorithm,
            total_executions=0,
            avg_calculation_time_ms=0.0,
            median_calculation_time_ms=0.0,
            avg_optimization_score=0.0,
            avg_route_quality=0.0,
            success_rate=0.0,
            overall_score=0.0,
        )


@dataclass(slots=True)
class TSPAlgorithmComparison:
    algorithm: OptimizationAlgorithm
    stats: TSPAlgorithmStats
    rank: int


@dataclass(slots=True, frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("Date range end must not precede its start.")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, at: datetime) -> bool:
        return self.start <= at <= self.end

    @classmethod
    def last(cls, now: datetime, *, hours: float = 24.0) -> "DateRange":
        return cls(start=now - timedelta(hours=hours), end=now)


@dataclass(slots=True)
class TSPPerformanceDashboard:
    total_optimizations: int
    average_calculation_time_ms: float
    average_optimization_score: float
    alert_count: int
    period: DateRange
    algorithm_comparison: List[TSPAlgorithmComparison] = field(default_factory=list)


@dataclass(slots=True)
class RouteOptimizationResult:
    id: str
    batch_id: str
    optimized_route: OptimizedRoute
    optimization_score: float
    algorithm: OptimizationAlgorithm
    calculation_time_ms: float
    created_at: datetime
    metadata: dict = field(default_factory=dict)


@dataclass(slots=True)
class BatchStatistics:
    total_batches: int
    completed_batches: int
    active_batches: int
    cancelled_batches: int
    completion_rate: float
    avg_orders_per_batch: float
    avg_optimization_score: float


@dataclass(slots=True)
class RouteEfficiencyMetrics:
    total_optimizations: int
    avg_distance_km: float
    avg_duration_hours: float
    avg_optimization_score: float
    avg_improvement_percentage: float
    total_distance_saved_km: float
    total_time_saved_hours: float


@dataclass(slots=True)
class DriverUtilizationRates:
    total_drivers: int
    active_drivers: int
    utilization_rate: float
    avg_batches_per_driver: float
    avg_completion_time_hours: float


@dataclass(slots=True)
class SystemPerformanceIndicators:
    total_calculations: int
    avg_calculation_time_ms: float
    slow_calculations: int
    success_rate: float
    avg_memory_usage_mb: float
    system_health_score: float


@dataclass(slots=True)
class RealtimeMetrics:
    active_batches: int
    recent_optimizations: int
    system_load: float
    last_updated: datetime


@dataclass(slots=True)
class RouteOptimizationDashboardData:
    batch_statistics: BatchStatistics
    route_efficiency: RouteEfficiencyMetrics
    driver_utilization: DriverUtilizationRates
    system_performance: SystemPerformanceIndicators
    algorithm_comparison: List[TSPAlgorithmComparison]
    realtime_metrics: RealtimeMetrics
    period: DateRange
    generated_at: Optional[datetime] = None
