"""Performance tracking and alerting for the sequencing algorithms."""

from __future__ import annotations

import logging
import threading
import time
import tracemalloc
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator, Optional

import numpy as np

from ..config import settings
from ..models.domain import parse_datetime, utcnow
from ..models.monitoring import (
    AlertSeverity,
    AlertType,
    DateRange,
    OptimizationAlgorithm,
    TSPAlgorithmComparison,
    TSPAlgorithmStats,
    TSPPerformanceAlert,
    TSPPerformanceDashboard,
    TSPPerformanceMetric,
)
from ..persistence.store import DispatchStore

logger = logging.getLogger(__name__)

METRICS_TABLE = "tsp_performance_metrics"
ALERTS_TABLE = "tsp_performance_alerts"

AlertListener = Callable[[TSPPerformanceAlert], None]


def calculate_route_quality_score(optimization_score: float, calculation_time_ms: float, waypoint_count: int) -> float:
    """Optimization score adjusted for how fast the route was found for its size."""
    expected_ms = max(1.0, waypoint_count * waypoint_count * 10.0)
    quality = optimization_score
    if calculation_time_ms > expected_ms:
        quality -= min(20.0, (calculation_time_ms - expected_ms) / expected_ms * 10.0)
    elif calculation_time_ms < expected_ms * 0.5:
        quality += min(5.0, (expected_ms * 0.5 - calculation_time_ms) / expected_ms * 10.0)
    return max(0.0, min(100.0, quality))


def overall_algorithm_score(avg_score: float, avg_quality: float, avg_time_ms: float) -> float:
    speed_score = max(0.0, 100.0 - avg_time_ms / 1000.0 * 10.0)
    return avg_score * 0.4 + avg_quality * 0.3 + speed_score * 0.3


@dataclass(slots=True)
class OperationTracker:
    """Filled in by the monitored code, read when the operation finishes."""

    batch_id: str
    algorithm: OptimizationAlgorithm
    waypoint_count: int
    optimization_score: float = 0.0
    iterations: int = 0
    converged: bool = True
    metadata: dict = field(default_factory=dict)
    calculation_time_ms: float = 0.0
    memory_usage_mb: float = 0.0
    metric_id: Optional[str] = None


class TSPPerformanceMonitoringService:
    def __init__(self, store: DispatchStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock
        self._listeners: list[AlertListener] = []
        self._active_operations = 0
        self._owns_tracing = False
        self._lock = threading.Lock()

    def subscribe_alerts(self, listener: AlertListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def record_performance(
        self,
        *,
        batch_id: str,
        algorithm: OptimizationAlgorithm,
        calculation_time_ms: float,
        optimization_score: float,
        waypoint_count: int,
        memory_usage_mb: float = 0.0,
        iterations: int = 0,
        convergence_achieved: bool = True,
        metadata: dict | None = None,
    ) -> str:
        metric = TSPPerformanceMetric(
            id=str(uuid.uuid4()),
            batch_id=batch_id,
            algorithm=algorithm,
            calculation_time_ms=calculation_time_ms,
            optimization_score=optimization_score,
            route_quality_score=calculate_route_quality_score(optimization_score, calculation_time_ms, waypoint_count),
            waypoint_count=waypoint_count,
            memory_usage_mb=memory_usage_mb,
            iterations=iterations,
            convergence_achieved=convergence_achieved,
            created_at=self.clock(),
            metadata=dict(metadata or {}),
        )
        self.store.insert(METRICS_TABLE, _metric_to_record(metric))
        for alert in self.check_thresholds(metric):
            self.raise_alert(alert)
        return metric.id

    def check_thresholds(self, metric: TSPPerformanceMetric) -> list[TSPPerformanceAlert]:
        alerts = []
        slow = settings.slow_calculation_threshold_ms
        if metric.calculation_time_ms > slow:
            alerts.append(
                self._alert(
                    metric,
                    AlertType.SLOW_CALCULATION,
                    f"TSP calculation took {metric.calculation_time_ms:.0f}ms (threshold {slow:.0f}ms)",
                    AlertSeverity.CRITICAL if metric.calculation_time_ms > slow * 2 else AlertSeverity.WARNING,
                    metric.calculation_time_ms,
                    slow,
                )
            )
        low = settings.low_score_threshold
        if metric.optimization_score < low:
            alerts.append(
                self._alert(
                    metric,
                    AlertType.LOW_OPTIMIZATION_SCORE,
                    f"Optimization score {metric.optimization_score:.1f} below threshold {low:.1f}",
                    AlertSeverity.CRITICAL if metric.optimization_score < low * 0.8 else AlertSeverity.WARNING,
                    metric.optimization_score,
                    low,
                )
            )
        memory = settings.high_memory_threshold_mb
        if metric.memory_usage_mb > memory:
            alerts.append(
                self._alert(
                    metric,
                    AlertType.HIGH_MEMORY_USAGE,
                    f"TSP calculation used {metric.memory_usage_mb:.1f}MB (threshold {memory:.1f}MB)",
                    AlertSeverity.CRITICAL if metric.memory_usage_mb > memory * 1.5 else AlertSeverity.WARNING,
                    metric.memory_usage_mb,
                    memory,
                )
            )
        return alerts

    def _alert(self, metric, alert_type, message, severity, value, threshold) -> TSPPerformanceAlert:
        return TSPPerformanceAlert(
            type=alert_type,
            algorithm=metric.algorithm,
            message=message,
            severity=severity,
            batch_id=metric.batch_id,
            value=value,
            threshold=threshold,
            timestamp=metric.created_at,
        )

    def raise_alert(self, alert: TSPPerformanceAlert) -> None:
        log = logger.error if alert.severity == AlertSeverity.CRITICAL else logger.warning
        log(f"TSP performance alert [{alert.type.value}] {alert.algorithm.value}: {alert.message}")
        self.store.insert(ALERTS_TABLE, _alert_to_record(alert))
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(alert)
            except Exception:
                logger.exception("Alert listener failed")

    @contextmanager
    def monitor_operation(
        self, batch_id: str, algorithm: OptimizationAlgorithm, waypoint_count: int
    ) -> Iterator[OperationTracker]:
        """Time an algorithm run, measure its peak memory and record the outcome.

        The caller fills ``optimization_score``/``iterations``/``converged`` on the
        yielded tracker. Failures raise an ``algorithm_failure`` alert and propagate.

        ``memory_usage_mb`` comes from tracemalloc, which traces the whole process: it is
        the peak growth over the run, including allocations made by concurrent runs.
        Tracing stays on while any run is active and is only stopped if it was started here.
        """
        tracker = OperationTracker(batch_id=batch_id, algorithm=algorithm, waypoint_count=waypoint_count)
        with self._lock:
            self._active_operations += 1
            active = self._active_operations
            if not tracemalloc.is_tracing():
                tracemalloc.start()
                self._owns_tracing = True
            tracemalloc.reset_peak()
            baseline, _ = tracemalloc.get_traced_memory()
        if active > settings.overload_concurrency:
            self.raise_alert(
                TSPPerformanceAlert(
                    type=AlertType.SYSTEM_OVERLOAD,
                    algorithm=algorithm,
                    message=f"{active} route optimizations running concurrently",
                    severity=AlertSeverity.WARNING,
                    batch_id=batch_id,
                    value=float(active),
                    threshold=float(settings.overload_concurrency),
                    timestamp=self.clock(),
                )
            )

        started = time.perf_counter()
        try:
            yield tracker
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            self.raise_alert(
                TSPPerformanceAlert(
                    type=AlertType.ALGORITHM_FAILURE,
                    algorithm=algorithm,
                    message=f"{algorithm.value} failed after {elapsed_ms:.0f}ms: {exc}",
                    severity=AlertSeverity.CRITICAL,
                    batch_id=batch_id,
                    value=elapsed_ms,
                    threshold=0.0,
                    timestamp=self.clock(),
                )
            )
            raise
        else:
            tracker.calculation_time_ms = (time.perf_counter() - started) * 1000.0
            _, peak = tracemalloc.get_traced_memory()
            tracker.memory_usage_mb = max(0, peak - baseline) / (1024 * 1024)
            tracker.metric_id = self.record_performance(
                batch_id=batch_id,
                algorithm=algorithm,
                calculation_time_ms=tracker.calculation_time_ms,
                optimization_score=tracker.optimization_score,
                waypoint_count=waypoint_count,
                memory_usage_mb=tracker.memory_usage_mb,
                iterations=tracker.iterations,
                convergence_achieved=tracker.converged,
                metadata=tracker.metadata,
            )
        finally:
            with self._lock:
                self._active_operations -= 1
                if self._active_operations == 0 and self._owns_tracing:
                    tracemalloc.stop()
                    self._owns_tracing = False

    def list_metrics(
        self,
        start: datetime,
        end: datetime,
        algorithm: OptimizationAlgorithm | None = None,
    ) -> list[TSPPerformanceMetric]:
        filters = {"algorithm": algorithm.value} if algorithm is not None else {}
        rows = self.store.select_between(METRICS_TABLE, "created_at", start, end, **filters)
        return [_metric_from_record(row) for row in rows]

    def get_algorithm_stats(
        self,
        algorithm: OptimizationAlgorithm,
        start: datetime | None = None,
        end: datetime | None = None,
        min_waypoints: int | None = None,
        max_waypoints: int | None = None,
    ) -> TSPAlgorithmStats:
        period = self._period(start, end)
        metrics = [
            metric
            for metric in self.list_metrics(period.start, period.end, algorithm)
            if (min_waypoints is None or metric.waypoint_count >= min_waypoints)
            and (max_waypoints is None or metric.waypoint_count <= max_waypoints)
        ]
        return build_algorithm_stats(algorithm, metrics)

    def get_algorithm_comparison(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[TSPAlgorithmComparison]:
        period = self._period(start, end)
        metrics = self.list_metrics(period.start, period.end)
        return compare_algorithms(metrics)

    def get_dashboard(self, start: datetime | None = None, end: datetime | None = None) -> TSPPerformanceDashboard:
        period = self._period(start, end)
        metrics = self.list_metrics(period.start, period.end)
        alerts = self.store.select_between(ALERTS_TABLE, "timestamp", period.start, period.end)
        return TSPPerformanceDashboard(
            total_optimizations=len(metrics),
            average_calculation_time_ms=_mean([m.calculation_time_ms for m in metrics]),
            average_optimization_score=_mean([m.optimization_score for m in metrics]),
            alert_count=len(alerts),
            period=period,
            algorithm_comparison=compare_algorithms(metrics),
        )

    def get_alerts(
        self, since: datetime | None = None, severity: AlertSeverity | None = None
    ) -> list[TSPPerformanceAlert]:
        period = self._period(since, None)
        filters = {"severity": severity.value} if severity is not None else {}
        rows = self.store.select_between(ALERTS_TABLE, "timestamp", period.start, period.end, **filters)
        alerts = [_alert_from_record(row) for row in rows]
        return sorted(alerts, key=lambda alert: alert.timestamp, reverse=True)

    def _period(self, start: datetime | None, end: datetime | None) -> DateRange:
        end = parse_datetime(end) or self.clock()
        if start is None:
            return DateRange.last(end)
        return DateRange(start=parse_datetime(start), end=end)


def _mean(values: list[float]) -> float:
    return float(np.mean(values)) if values else 0.0


def build_algorithm_stats(algorithm: OptimizationAlgorithm, metrics: list[TSPPerformanceMetric]) -> TSPAlgorithmStats:
    if not metrics:
        return TSPAlgorithmStats.empty(algorithm)
    times = [metric.calculation_time_ms for metric in metrics]
    avg_time = _mean(times)
    avg_score = _mean([metric.optimization_score for metric in metrics])
    avg_quality = _mean([metric.route_quality_score for metric in metrics])
    converged = sum(1 for metric in metrics if metric.convergence_achieved)
    return TSPAlgorithmStats(
        algorithm=algorithm,
        total_executions=len(metrics),
        avg_calculation_time_ms=avg_time,
        median_calculation_time_ms=float(np.median(times)),
        avg_optimization_score=avg_score,
        avg_route_quality=avg_quality,
        success_rate=converged / len(metrics) * 100.0,
        overall_score=overall_algorithm_score(avg_score, avg_quality, avg_time),
    )


def compare_algorithms(metrics: list[TSPPerformanceMetric]) -> list[TSPAlgorithmComparison]:
    grouped: dict[OptimizationAlgorithm, list[TSPPerformanceMetric]] = {}
    for metric in metrics:
        grouped.setdefault(metric.algorithm, []).append(metric)
    stats = [build_algorithm_stats(algorithm, items) for algorithm, items in grouped.items()]
    stats.sort(key=lambda item: item.overall_score, reverse=True)
    return [
        TSPAlgorithmComparison(algorithm=item.algorithm, stats=item, rank=rank)
        for rank, item in enumerate(stats, start=1)
    ]


def _metric_to_record(metric: TSPPerformanceMetric) -> dict:
    return {
        "id": metric.id,
        "batch_id": metric.batch_id,
        "algorithm": metric.algorithm.value,
        "calculation_time_ms": metric.calculation_time_ms,
        "optimization_score": metric.optimization_score,
        "route_quality_score": metric.route_quality_score,
        "waypoint_count": metric.waypoint_count,
        "memory_usage_mb": metric.memory_usage_mb,
        "iterations": metric.iterations,
        "convergence_achieved": metric.convergence_achieved,
        "created_at": metric.created_at.isoformat(),
        "metadata": metric.metadata,
    }


def _metric_from_record(record: dict) -> TSPPerformanceMetric:
    return TSPPerformanceMetric(
        id=str(record["id"]),
        batch_id=str(record.get("batch_id") or ""),
        algorithm=OptimizationAlgorithm(record["algorithm"]),
        calculation_time_ms=float(record.get("calculation_time_ms") or 0.0),
        optimization_score=float(record.get("optimization_score") or 0.0),
        route_quality_score=float(record.get("route_quality_score") or 0.0),
        waypoint_count=int(record.get("waypoint_count") or 0),
        memory_usage_mb=float(record.get("memory_usage_mb") or 0.0),
        iterations=int(record.get("iterations") or 0),
        convergence_achieved=bool(record.get("convergence_achieved")),
        created_at=parse_datetime(record["created_at"]),
        metadata=dict(record.get("metadata") or {}),
    )


def _alert_to_record(alert: TSPPerformanceAlert) -> dict:
    return {
        "type": alert.type.value,
        "algorithm": alert.algorithm.value,
        "message": alert.message,
        "severity": alert.severity.value,
        "batch_id": alert.batch_id,
        "value": alert.value,
        "threshold": alert.threshold,
        "timestamp": alert.timestamp.isoformat(),
    }


def _alert_from_record(record: dict) -> TSPPerformanceAlert:
    return TSPPerformanceAlert(
        type=AlertType(record["type"]),
        algorithm=OptimizationAlgorithm(record["algorithm"]),
        message=record.get("message") or "",
        severity=AlertSeverity(record["severity"]),
        batch_id=str(record.get("batch_id") or ""),
        value=float(record.get("value") or 0.0),
        threshold=float(record.get("threshold") or 0.0),
        timestamp=parse_datetime(record["timestamp"]),
    )
