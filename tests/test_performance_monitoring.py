import threading
import tracemalloc
from datetime import datetime, timedelta, timezone

import pytest

from src.courier_routing.models.monitoring import AlertSeverity, AlertType, OptimizationAlgorithm
from src.courier_routing.persistence.store import InMemoryStore
from src.courier_routing.services.dashboard import (
    RouteOptimizationDashboardService,
    batch_statistics,
    calculation_time_score,
    driver_utilization,
    route_efficiency,
)
from src.courier_routing.services.monitoring import (
    ALERTS_TABLE,
    TSPPerformanceMonitoringService,
    calculate_route_quality_score,
)

NOW = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)


def _monitor(store=None) -> TSPPerformanceMonitoringService:
    return TSPPerformanceMonitoringService(store or InMemoryStore(), clock=lambda: NOW)


def _record(monitor, algorithm=OptimizationAlgorithm.EXACT, **overrides):
    values = dict(
        batch_id="batch_1",
        algorithm=algorithm,
        calculation_time_ms=100.0,
        optimization_score=85.0,
        waypoint_count=6,
    )
    values.update(overrides)
    return monitor.record_performance(**values)


def test_quality_score_rewards_fast_and_penalizes_slow():
    assert calculate_route_quality_score(80.0, 10.0, 6) > 80.0
    assert calculate_route_quality_score(80.0, 10_000.0, 6) == pytest.approx(60.0)
    assert calculate_route_quality_score(99.0, 1.0, 6) == 100.0


def test_healthy_run_raises_no_alert():
    store = InMemoryStore()
    _record(_monitor(store))

    assert store.select(ALERTS_TABLE) == []


@pytest.mark.parametrize(
    "overrides, alert_type, severity",
    [
        ({"calculation_time_ms": 6000.0}, AlertType.SLOW_CALCULATION, AlertSeverity.WARNING),
        ({"calculation_time_ms": 12000.0}, AlertType.SLOW_CALCULATION, AlertSeverity.CRITICAL),
        ({"optimization_score": 65.0}, AlertType.LOW_OPTIMIZATION_SCORE, AlertSeverity.WARNING),
        ({"optimization_score": 40.0}, AlertType.LOW_OPTIMIZATION_SCORE, AlertSeverity.CRITICAL),
        ({"memory_usage_mb": 120.0}, AlertType.HIGH_MEMORY_USAGE, AlertSeverity.WARNING),
    ],
)
def test_threshold_alerts(overrides, alert_type, severity):
    monitor = _monitor()
    received = []
    monitor.subscribe_alerts(received.append)

    _record(monitor, **overrides)

    assert [(alert.type, alert.severity) for alert in received] == [(alert_type, severity)]
    assert monitor.get_alerts()[0].type == alert_type


def test_unsubscribed_listener_gets_nothing():
    monitor = _monitor()
    received = []
    unsubscribe = monitor.subscribe_alerts(received.append)
    unsubscribe()

    _record(monitor, optimization_score=10.0)

    assert received == []


def test_monitor_operation_records_metric():
    monitor = _monitor()
    with monitor.monitor_operation("batch_1", OptimizationAlgorithm.GENETIC_ALGORITHM, 8) as tracker:
        tracker.optimization_score = 91.0
        tracker.iterations = 12

    stats = monitor.get_algorithm_stats(OptimizationAlgorithm.GENETIC_ALGORITHM)
    assert tracker.metric_id is not None
    assert stats.total_executions == 1
    assert stats.avg_optimization_score == pytest.approx(91.0)
    assert stats.success_rate == 100.0


def test_monitor_operation_alerts_and_reraises_failures():
    monitor = _monitor()

    with pytest.raises(RuntimeError):
        with monitor.monitor_operation("batch_1", OptimizationAlgorithm.OR_TOOLS, 4):
            raise RuntimeError("solver crashed")

    alerts = monitor.get_alerts(severity=AlertSeverity.CRITICAL)
    assert [alert.type for alert in alerts] == [AlertType.ALGORITHM_FAILURE]
    assert monitor.get_algorithm_stats(OptimizationAlgorithm.OR_TOOLS).total_executions == 0


def test_overlapping_operations_keep_memory_tracing_on():
    monitor = _monitor()
    was_tracing = tracemalloc.is_tracing()
    short_entered = threading.Event()
    long_entered = threading.Event()
    short_done = threading.Event()
    trackers = {}

    def short_run():
        with monitor.monitor_operation("batch_short", OptimizationAlgorithm.NEAREST_NEIGHBOR, 2) as tracker:
            short_entered.set()
            long_entered.wait(timeout=5)
        trackers["short"] = tracker
        short_done.set()

    def long_run():
        short_entered.wait(timeout=5)
        with monitor.monitor_operation("batch_long", OptimizationAlgorithm.EXACT, 8) as tracker:
            long_entered.set()
            short_done.wait(timeout=5)
            assert tracemalloc.is_tracing()
            buffer = bytearray(20 * 1024 * 1024)
            del buffer
        trackers["long"] = tracker

    threads = [threading.Thread(target=short_run), threading.Thread(target=long_run)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert set(trackers) == {"short", "long"}
    assert trackers["long"].memory_usage_mb >= 15
    assert tracemalloc.is_tracing() == was_tracing
    assert monitor._active_operations == 0


def test_algorithm_stats_filters_by_waypoints():
    monitor = _monitor()
    _record(monitor, waypoint_count=4)
    _record(monitor, waypoint_count=10, convergence_achieved=False)

    all_runs = monitor.get_algorithm_stats(OptimizationAlgorithm.EXACT)
    small = monitor.get_algorithm_stats(OptimizationAlgorithm.EXACT, max_waypoints=6)

    assert all_runs.total_executions == 2
    assert all_runs.success_rate == 50.0
    assert small.total_executions == 1


def test_algorithm_comparison_ranks_by_overall_score():
    monitor = _monitor()
    _record(monitor, OptimizationAlgorithm.EXACT, optimization_score=95.0)
    _record(monitor, OptimizationAlgorithm.NEAREST_NEIGHBOR, optimization_score=72.0)

    comparison = monitor.get_algorithm_comparison()

    assert [item.algorithm for item in comparison] == [
        OptimizationAlgorithm.EXACT,
        OptimizationAlgorithm.NEAREST_NEIGHBOR,
    ]
    assert [item.rank for item in comparison] == [1, 2]


def test_dashboard_accepts_naive_dates():
    monitor = _monitor()
    _record(monitor)

    dashboard = monitor.get_dashboard(start=datetime(2024, 5, 6, 0, 0), end=datetime(2024, 5, 7, 0, 0))

    assert dashboard.total_optimizations == 1
    assert dashboard.average_optimization_score == pytest.approx(85.0)


def test_calculation_time_score_bands():
    assert calculation_time_score(500) == 100.0
    assert calculation_time_score(2000) == 80.0
    assert calculation_time_score(9000) == 60.0


def test_batch_statistics():
    batches = [
        {"status": "completed", "optimization_score": 90, "metadata": {"order_ids": ["A", "B"]}},
        {"status": "active", "optimization_score": 80, "metadata": {"order_ids": ["C"]}},
        {"status": "cancelled", "optimization_score": 70, "metadata": {"order_ids": ["D", "E", "F"]}},
    ]
    stats = batch_statistics(batches)

    assert stats.total_batches == 3
    assert stats.completed_batches == 1
    assert stats.active_batches == 1
    assert stats.cancelled_batches == 1
    assert stats.completion_rate == pytest.approx(33.33)
    assert stats.avg_orders_per_batch == 2.0
    assert stats.avg_optimization_score == 80.0


def test_route_efficiency_totals_savings():
    rows = [
        {"total_distance_km": 10, "baseline_distance_km": 14, "total_duration_min": 30, "baseline_duration_min": 42},
        {"total_distance_km": 8, "baseline_distance_km": 7, "total_duration_min": 20, "baseline_duration_min": 20},
    ]
    efficiency = route_efficiency(rows)

    assert efficiency.total_distance_saved_km == 4.0
    assert efficiency.total_time_saved_hours == pytest.approx(0.2)
    assert efficiency.avg_distance_km == 9.0


def test_driver_utilization():
    drivers = [{"id": "D1", "is_active": True}, {"id": "D2", "is_active": True}, {"id": "D3", "is_active": False}]
    batches = [
        {
            "driver_id": "D1",
            "status": "completed",
            "started_at": NOW.isoformat(),
            "completed_at": (NOW + timedelta(minutes=90)).isoformat(),
        },
        {"driver_id": "D1", "status": "active"},
    ]
    utilization = driver_utilization(drivers, batches)

    assert utilization.active_drivers == 2
    assert utilization.utilization_rate == 50.0
    assert utilization.avg_batches_per_driver == 2.0
    assert utilization.avg_completion_time_hours == 1.5


def test_dashboard_service_combines_sources():
    store = InMemoryStore()
    monitor = _monitor(store)
    _record(monitor)
    store.insert(
        "order_batches",
        {
            "id": "B1",
            "driver_id": "D1",
            "status": "active",
            "optimization_score": 88.0,
            "created_at": (NOW - timedelta(minutes=10)).isoformat(),
            "metadata": {"order_ids": ["A", "B"]},
        },
    )
    store.insert(
        "route_optimizations",
        {
            "id": "R1",
            "total_distance_km": 12.0,
            "baseline_distance_km": 15.0,
            "optimization_score": 88.0,
            "created_at": (NOW - timedelta(minutes=10)).isoformat(),
        },
    )
    store.insert("drivers", {"id": "D1", "is_active": True})

    data = RouteOptimizationDashboardService(store, monitor, clock=lambda: NOW).get_dashboard_data()

    assert data.batch_statistics.total_batches == 1
    assert data.route_efficiency.total_distance_saved_km == 3.0
    assert data.driver_utilization.utilization_rate == 100.0
    assert data.system_performance.total_calculations == 1
    assert data.system_performance.system_health_score == 100.0
    assert data.realtime_metrics.active_batches == 1
    assert data.realtime_metrics.recent_optimizations == 1
    assert data.algorithm_comparison[0].algorithm == OptimizationAlgorithm.EXACT
    assert data.generated_at == NOW
