from datetime import datetime, timedelta, timezone

import pytest

from src.courier_routing.models.domain import GeoPoint, Order, OrderStatus
from src.courier_routing.models.monitoring import OptimizationAlgorithm
from src.courier_routing.models.routing import (
    OptimizationCriteria,
    RouteEvent,
    RouteEventType,
    RouteProgress,
    RouteUpdateReason,
    TrafficCondition,
)
from src.courier_routing.persistence.store import InMemoryStore
from src.courier_routing.services.monitoring import METRICS_TABLE, TSPPerformanceMonitoringService
from src.courier_routing.services.routing.engine import ROUTE_OPTIMIZATIONS_TABLE, RouteOptimizationEngine
from src.courier_routing.services.routing.matrix import haversine_matrix
from src.courier_routing.services.routing.objective import RouteEvaluator

NOW = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)
DRIVER = GeoPoint(21.50, 39.20)


def _order(oid: str, pickup: tuple[float, float], delivery: tuple[float, float], **kwargs) -> Order:
    return Order(
        id=oid,
        vendor_id=kwargs.pop("vendor_id", f"V{oid}"),
        pickup_location=GeoPoint(*pickup),
        delivery_location=GeoPoint(*delivery),
        **kwargs,
    )


def _orders():
    return [
        _order("A", (21.51, 39.20), (21.52, 39.20)),
        _order("B", (21.60, 39.20), (21.61, 39.20)),
    ]


def _engine(**kwargs) -> RouteOptimizationEngine:
    return RouteOptimizationEngine(matrix_builder=haversine_matrix, clock=lambda: NOW, **kwargs)


def _zigzag_route(engine: RouteOptimizationEngine, orders):
    """Route visiting B's pickup first and bouncing between the two orders."""
    problem = engine.build_problem(orders, DRIVER, OptimizationCriteria.balanced(), NOW)
    evaluation = RouteEvaluator(problem).evaluate([2, 0, 3, 1])
    return engine.build_route(problem, evaluation, batch_id="batch_1", route_id="route_1")


def _event(event_type: RouteEventType, **data) -> RouteEvent:
    return RouteEvent(id=f"evt_{event_type.value}", route_id="route_1", type=event_type, timestamp=NOW, data=data)


def test_optimize_orders_waypoints_pickup_before_delivery():
    store = InMemoryStore()
    result = _engine(store=store).optimize(_orders(), DRIVER, batch_id="batch_1", departure_time=NOW)
    route = result.optimized_route

    assert result.algorithm == OptimizationAlgorithm.EXACT
    assert [wp.sequence for wp in route.waypoints] == [1, 2, 3, 4]
    for order_id in ("A", "B"):
        pickup, delivery = sorted(route.waypoints_for_order(order_id), key=lambda wp: wp.sequence)
        assert pickup.is_pickup and delivery.is_delivery
        assert pickup.estimated_arrival_time < delivery.estimated_arrival_time
    assert [wp.order_id for wp in route.waypoints] == ["A", "A", "B", "B"]
    assert route.waypoints[0].id == "pickup_A_1"
    assert route.overall_traffic_condition == TrafficCondition.LIGHT
    assert 0 < route.optimization_score <= 100
    assert result.metadata["improvement_percentage"] >= 0
    assert store.select(ROUTE_OPTIMIZATIONS_TABLE, batch_id="batch_1")


def test_optimize_beats_zigzag_baseline():
    orders = [_orders()[1], _orders()[0]]
    result = _engine().optimize(orders, DRIVER, departure_time=NOW)

    assert result.optimized_route.total_distance_km < result.metadata["baseline_distance_km"]
    assert result.metadata["improvement_percentage"] > 0
    assert result.batch_id.startswith("adhoc_")


@pytest.mark.parametrize(
    "orders, criteria",
    [
        ([], None),
        ([_order("A", (21.51, 39.20), (21.52, 39.20))] * 2, None),
        ([_order("A", (21.51, 39.20), (21.52, 39.20), status=OrderStatus.CANCELLED)], None),
        (_orders(), OptimizationCriteria(distance_weight=0.9, preparation_time_weight=0.3)),
    ],
)
def test_optimize_validates_inputs(orders, criteria):
    with pytest.raises(ValueError):
        _engine().optimize(orders, DRIVER, criteria=criteria)


def test_optimize_records_performance_metric():
    store = InMemoryStore()
    monitor = TSPPerformanceMonitoringService(store, clock=lambda: NOW)
    _engine(monitor=monitor).optimize(_orders(), DRIVER, algorithm="nearest_neighbor", batch_id="batch_1")

    rows = store.select(METRICS_TABLE)
    assert len(rows) == 1
    assert rows[0]["algorithm"] == "nearest_neighbor"
    assert rows[0]["waypoint_count"] == 4


def test_compare_algorithms_sorts_best_first():
    results = _engine().compare_algorithms(
        _orders(), DRIVER, ["nearest_neighbor", "exact", "or_tools"], departure_time=NOW
    )

    assert len(results) == 3
    scores = [result.optimization_score for result in results]
    assert scores == sorted(scores, reverse=True)
    exact = next(result for result in results if result.algorithm == OptimizationAlgorithm.EXACT)
    assert exact.optimization_score == scores[0]

    with pytest.raises(ValueError):
        _engine().compare_algorithms(_orders(), DRIVER, [])


def test_determine_update_reason_prefers_cancellation():
    engine = _engine()

    assert engine.determine_update_reason([]) is None
    assert engine.determine_update_reason([_event(RouteEventType.TRAFFIC_INCIDENT, severity="light")]) is None
    assert (
        engine.determine_update_reason([_event(RouteEventType.TRAFFIC_INCIDENT, severity="severe")])
        == RouteUpdateReason.TRAFFIC_CHANGE
    )
    assert engine.determine_update_reason([_event(RouteEventType.PREPARATION_DELAY, delay_minutes=10)]) is None
    assert (
        engine.determine_update_reason([_event(RouteEventType.ORDER_READY, order_id="A", minutes_early=12)])
        == RouteUpdateReason.PREPARATION_DELAY
    )
    events = [
        _event(RouteEventType.CUSTOMER_REQUEST, order_id="A"),
        _event(RouteEventType.ORDER_CANCELLED, order_id="B"),
    ]
    assert engine.determine_update_reason(events) == RouteUpdateReason.ORDER_CANCELLATION


def test_reoptimize_without_trigger_returns_none():
    engine = _engine()
    route = _zigzag_route(engine, _orders())
    progress = RouteProgress.from_route(route, [], NOW)

    assert engine.reoptimize_route(route, _orders(), progress, [], DRIVER, now=NOW) is None


def test_reoptimize_resequences_zigzag_route():
    engine = _engine()
    route = _zigzag_route(engine, _orders())
    progress = RouteProgress.from_route(route, [], NOW)

    update = engine.reoptimize_route(
        route, _orders(), progress, [_event(RouteEventType.CUSTOMER_REQUEST, order_id="A")], DRIVER, now=NOW
    )

    assert update is not None
    assert update.reason == RouteUpdateReason.DRIVER_REQUEST
    assert update.changes["new_order_sequence"] == ["P:A", "D:A", "P:B", "D:B"]
    assert update.changes["distance_saving_km"] > 30
    assert update.changes["score_improvement"] >= 5
    assert update.new_optimization_score > route.optimization_score


def test_reoptimize_keeps_route_below_threshold():
    engine = _engine()
    route = engine.optimize(_orders(), DRIVER, batch_id="batch_1", departure_time=NOW).optimized_route
    progress = RouteProgress.from_route(route, [], NOW)

    update = engine.reoptimize_route(
        route, _orders(), progress, [_event(RouteEventType.CUSTOMER_REQUEST, order_id="A")], DRIVER, now=NOW
    )

    assert update is None


def test_reoptimize_drops_cancelled_order_and_keeps_completed_stops():
    engine = _engine()
    route = engine.optimize(_orders(), DRIVER, batch_id="batch_1", departure_time=NOW).optimized_route
    first = route.waypoints[0]
    progress = RouteProgress.from_route(route, [first.id], NOW)

    update = engine.reoptimize_route(
        route,
        _orders(),
        progress,
        [_event(RouteEventType.ORDER_CANCELLED, order_id="B")],
        first.location,
        now=NOW,
    )

    assert update is not None
    assert update.reason == RouteUpdateReason.ORDER_CANCELLATION
    assert update.changes["removed_orders"] == ["B"]
    assert [(wp.order_id, wp.type.value) for wp in update.updated_waypoints] == [("A", "delivery")]
    assert update.updated_waypoints[0].sequence == 2

    later = NOW + timedelta(minutes=3)
    rebuilt = engine.apply_update(route, update, progress, later)
    assert [wp.id for wp in rebuilt.waypoints] == [first.id, update.updated_waypoints[0].id]
    assert rebuilt.calculated_at == later
    assert rebuilt.metadata["last_update_reason"] == "order_cancellation"
    assert rebuilt.order_ids == ["A"]


def test_reoptimize_all_cancelled_route_empties_waypoints():
    engine = _engine()
    orders = _orders()
    route = engine.optimize(orders, DRIVER, batch_id="batch_1", departure_time=NOW).optimized_route
    progress = RouteProgress.from_route(route, [], NOW)
    cancelled = [
        Order(
            id=order.id,
            vendor_id=order.vendor_id,
            pickup_location=order.pickup_location,
            delivery_location=order.delivery_location,
            status=OrderStatus.CANCELLED,
        )
        for order in orders
    ]

    update = engine.reoptimize_route(
        route, cancelled, progress, [], DRIVER, now=NOW, reason=RouteUpdateReason.ORDER_CANCELLATION
    )

    assert update.updated_waypoints == []
    assert sorted(update.changes["removed_orders"]) == ["A", "B"]


def test_reoptimize_requires_all_route_orders():
    engine = _engine()
    route = _zigzag_route(engine, _orders())
    progress = RouteProgress.from_route(route, [], NOW)

    with pytest.raises(ValueError):
        engine.reoptimize_route(
            route, _orders()[:1], progress, [], DRIVER, now=NOW, reason=RouteUpdateReason.DRIVER_REQUEST
        )
