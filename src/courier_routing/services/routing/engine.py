"""Multi-criteria route optimization for pickup/delivery batches."""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Sequence

from ...config import settings
from ...models.domain import GeoPoint, Order, OrderStatus, parse_datetime, utcnow
from ...models.monitoring import OptimizationAlgorithm, RouteOptimizationResult
from ...models.routing import (
    OptimizationCriteria,
    OptimizedRoute,
    PreparationWindow,
    RouteEvent,
    RouteEventType,
    RouteProgress,
    RouteUpdate,
    RouteUpdateReason,
    RouteWaypoint,
    TrafficCondition,
    WaypointType,
)
from ...persistence.store import DispatchStore
from ..monitoring import TSPPerformanceMonitoringService
from ..preparation import PreparationTimeService
from .algorithms import make_rng, run_algorithm, select_algorithm
from .heuristics import SolverOutcome
from .matrix import TravelMatrix, build_travel_matrix
from .objective import RouteEvaluation, RouteEvaluator, RoutingProblem
from .traffic import TrafficService

logger = logging.getLogger(__name__)

TRAFFIC_TRIGGER_CONDITIONS = frozenset({TrafficCondition.HEAVY, TrafficCondition.SEVERE})
PREPARATION_DELAY_TRIGGER_MIN = 15.0
EARLY_READY_TRIGGER_MIN = 10.0
ROUTE_OPTIMIZATIONS_TABLE = "route_optimizations"


def _validate_inputs(orders: Sequence[Order], criteria: OptimizationCriteria) -> None:
    if not criteria.is_valid:
        raise ValueError(
            f"Invalid optimization criteria: weights must be non-negative and sum to 1.0 "
            f"(got {criteria.total_weight:.3f})."
        )
    if not orders:
        raise ValueError("Orders list cannot be empty.")
    ids = [order.id for order in orders]
    if len(ids) != len(set(ids)):
        raise ValueError("Orders list contains duplicate order ids.")
    cancelled = [order.id for order in orders if order.status == OrderStatus.CANCELLED]
    if cancelled:
        raise ValueError(f"Cannot route cancelled orders: {', '.join(cancelled)}.")


class RouteOptimizationEngine:
    def __init__(
        self,
        preparation_service: PreparationTimeService | None = None,
        traffic_service: TrafficService | None = None,
        monitor: TSPPerformanceMonitoringService | None = None,
        store: DispatchStore | None = None,
        matrix_builder: Callable[[Sequence[GeoPoint]], TravelMatrix] = build_travel_matrix,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.preparation_service = preparation_service
        self.traffic_service = traffic_service or TrafficService(clock=clock)
        self.monitor = monitor
        self.store = store
        self.matrix_builder = matrix_builder
        self.clock = clock

    def build_problem(
        self,
        orders: Sequence[Order],
        driver_location: GeoPoint,
        criteria: OptimizationCriteria,
        departure_time: datetime,
        preparation_windows: dict[str, PreparationWindow] | None = None,
        picked_up: Iterable[str] = (),
    ) -> RoutingProblem:
        on_board = frozenset(picked_up)
        windows = preparation_windows
        if windows is None and self.preparation_service is not None:
            pending = [order for order in orders if order.id not in on_board]
            windows = self.preparation_service.predict_preparation_windows(pending, departure_time)
        return RoutingProblem.build(
            orders=orders,
            start=driver_location,
            departure_time=departure_time,
            matrix_builder=self.matrix_builder,
            criteria=criteria,
            preparation_windows=windows or {},
            traffic_lookup=self.traffic_service.conditions_for,
            picked_up=on_board,
        )

    def _solve(
        self, problem: RoutingProblem, algorithm: OptimizationAlgorithm, batch_id: str
    ) -> tuple[SolverOutcome, RouteEvaluator, float]:
        evaluator = RouteEvaluator(problem)
        rng = make_rng()
        if self.monitor is None:
            started = time.perf_counter()
            outcome = run_algorithm(algorithm, problem, evaluator, rng)
            return outcome, evaluator, (time.perf_counter() - started) * 1000.0

        with self.monitor.monitor_operation(batch_id, algorithm, problem.size) as tracker:
            outcome = run_algorithm(algorithm, problem, evaluator, rng)
            tracker.optimization_score = outcome.evaluation.optimization_score
            tracker.iterations = outcome.iterations
            tracker.converged = outcome.converged
            tracker.metadata = {"order_count": problem.order_count, "matrix_source": problem.matrix.source}
        return outcome, evaluator, tracker.calculation_time_ms

    def optimize(
        self,
        orders: Sequence[Order],
        driver_location: GeoPoint,
        criteria: OptimizationCriteria | None = None,
        preparation_windows: dict[str, PreparationWindow] | None = None,
        algorithm: str | OptimizationAlgorithm | None = None,
        batch_id: str | None = None,
        departure_time: datetime | None = None,
    ) -> RouteOptimizationResult:
        """Sequence the orders' pickups and deliveries for a driver and report how."""
        criteria = criteria or OptimizationCriteria.balanced()
        _validate_inputs(orders, criteria)
        departure = departure_time or self.clock()
        batch_id = batch_id or f"adhoc_{uuid.uuid4().hex[:8]}"

        problem = self.build_problem(orders, driver_location, criteria, departure, preparation_windows)
        chosen = select_algorithm(problem.order_count, algorithm)
        outcome, evaluator, elapsed_ms = self._solve(problem, chosen, batch_id)
        route = self.build_route(problem, outcome.evaluation, batch_id=batch_id)
        route.metadata.update(
            {
                "algorithm": chosen.value,
                "iterations": outcome.iterations,
                "converged": outcome.converged,
                "solver": outcome.metadata,
            }
        )

        baseline = evaluator.evaluate(problem.baseline_sequence())
        improvement = _improvement_percentage(baseline.total_distance_km, outcome.evaluation.total_distance_km)
        result = RouteOptimizationResult(
            id=str(uuid.uuid4()),
            batch_id=batch_id,
            optimized_route=route,
            optimization_score=route.optimization_score,
            algorithm=chosen,
            calculation_time_ms=elapsed_ms,
            created_at=self.clock(),
            metadata={
                "baseline_distance_km": round(baseline.total_distance_km, 3),
                "baseline_duration_min": round(baseline.duration_in_traffic_min, 2),
                "baseline_score": round(baseline.optimization_score, 2),
                "improvement_percentage": round(improvement, 2),
            },
        )
        logger.info(
            f"Optimized {len(orders)} orders for batch {batch_id} with {chosen.value}: "
            f"score={route.optimization_score:.1f} distance={route.total_distance_km:.2f}km "
            f"({improvement:.1f}% shorter than in-order baseline) in {elapsed_ms:.0f}ms"
        )
        self._record_optimization(result, baseline)
        return result

    def calculate_optimal_route(
        self,
        orders: Sequence[Order],
        driver_location: GeoPoint,
        criteria: OptimizationCriteria | None = None,
        preparation_windows: dict[str, PreparationWindow] | None = None,
        algorithm: str | OptimizationAlgorithm | None = None,
        batch_id: str | None = None,
        departure_time: datetime | None = None,
    ) -> OptimizedRoute:
        return self.optimize(
            orders,
            driver_location,
            criteria=criteria,
            preparation_windows=preparation_windows,
            algorithm=algorithm,
            batch_id=batch_id,
            departure_time=departure_time,
        ).optimized_route

    def compare_algorithms(
        self,
        orders: Sequence[Order],
        driver_location: GeoPoint,
        algorithms: Sequence[str | OptimizationAlgorithm],
        criteria: OptimizationCriteria | None = None,
        preparation_windows: dict[str, PreparationWindow] | None = None,
        batch_id: str | None = None,
        departure_time: datetime | None = None,
    ) -> list[RouteOptimizationResult]:
        """Solve one problem with each algorithm; best score first."""
        if not algorithms:
            raise ValueError("At least one algorithm is required for a comparison.")
        criteria = criteria or OptimizationCriteria.balanced()
        _validate_inputs(orders, criteria)
        departure = departure_time or self.clock()
        batch_id = batch_id or f"compare_{uuid.uuid4().hex[:8]}"
        problem = self.build_problem(orders, driver_location, criteria, departure, preparation_windows)

        results = []
        for requested in algorithms:
            chosen = select_algorithm(problem.order_count, requested)
            outcome, _, elapsed_ms = self._solve(problem, chosen, batch_id)
            route = self.build_route(problem, outcome.evaluation, batch_id=batch_id)
            route.metadata.update({"algorithm": chosen.value, "iterations": outcome.iterations})
            results.append(
                RouteOptimizationResult(
                    id=str(uuid.uuid4()),
                    batch_id=batch_id,
                    optimized_route=route,
                    optimization_score=route.optimization_score,
                    algorithm=chosen,
                    calculation_time_ms=elapsed_ms,
                    created_at=self.clock(),
                    metadata={"converged": outcome.converged, **outcome.metadata},
                )
            )
        results.sort(key=lambda result: (-result.optimization_score, result.calculation_time_ms))
        return results

    def build_route(
        self,
        problem: RoutingProblem,
        evaluation: RouteEvaluation,
        *,
        batch_id: str,
        route_id: str | None = None,
        sequence_offset: int = 0,
    ) -> OptimizedRoute:
        departure = problem.departure_time
        waypoints: list[RouteWaypoint] = []
        for position, visit in enumerate(evaluation.visits, start=1):
            stop = problem.stops[visit.stop]
            sequence = sequence_offset + position
            metadata = {
                "wait_minutes": round(visit.wait_min, 2),
                "traffic_condition": visit.traffic.value,
                "travel_minutes": round(visit.leg_traffic_min, 2),
            }
            window = problem.preparation_windows.get(stop.order_id)
            if stop.is_pickup and window is not None:
                metadata["ready_at"] = window.estimated_completion_time.isoformat()
                metadata["preparation_confidence"] = round(window.confidence, 3)
            if not stop.is_pickup and stop.deadline_offset_min is not None:
                metadata["deliver_by"] = (departure + timedelta(minutes=stop.deadline_offset_min)).isoformat()
            waypoints.append(
                RouteWaypoint(
                    id=RouteWaypoint.make_id(stop.order_id, stop.type, sequence),
                    order_id=stop.order_id,
                    type=stop.type,
                    location=stop.location,
                    address=stop.address,
                    sequence=sequence,
                    estimated_arrival_time=departure + timedelta(minutes=visit.arrival_min),
                    estimated_duration_min=stop.service_min,
                    distance_from_previous_km=round(visit.leg_km, 3),
                    metadata=metadata,
                )
            )
        return OptimizedRoute(
            id=route_id or f"route_{uuid.uuid4().hex[:12]}",
            batch_id=batch_id,
            waypoints=waypoints,
            total_distance_km=round(evaluation.total_distance_km, 3),
            total_duration_min=round(evaluation.total_duration_min, 2),
            duration_in_traffic_min=round(evaluation.duration_in_traffic_min, 2),
            optimization_score=round(evaluation.optimization_score, 2),
            criteria=problem.criteria,
            calculated_at=self.clock(),
            overall_traffic_condition=TrafficCondition.from_score(evaluation.traffic_score),
            metadata={
                "component_scores": evaluation.component_scores(),
                "matrix_source": problem.matrix.source,
                "wait_minutes": round(evaluation.wait_min, 2),
                "departure_time": departure.isoformat(),
            },
        )

    def _record_optimization(self, result: RouteOptimizationResult, baseline: RouteEvaluation) -> None:
        if self.store is None:
            return
        route = result.optimized_route
        self.store.insert(
            ROUTE_OPTIMIZATIONS_TABLE,
            {
                "id": result.id,
                "batch_id": result.batch_id,
                "route_id": route.id,
                "algorithm": result.algorithm.value,
                "optimization_score": result.optimization_score,
                "total_distance_km": route.total_distance_km,
                "total_duration_min": route.duration_in_traffic_min,
                "baseline_distance_km": baseline.total_distance_km,
                "baseline_duration_min": baseline.duration_in_traffic_min,
                "improvement_percentage": result.metadata["improvement_percentage"],
                "calculation_time_ms": result.calculation_time_ms,
                "created_at": result.created_at.isoformat(),
            },
        )

    def determine_update_reason(
        self,
        events: Sequence[RouteEvent],
        preparation_windows: dict[str, PreparationWindow] | None = None,
    ) -> Optional[RouteUpdateReason]:
        """Strongest reason among the events to rebuild the route, if any."""
        reasons: list[RouteUpdateReason] = []
        for event in events:
            data = event.data
            if event.type == RouteEventType.ORDER_CANCELLED:
                reasons.append(RouteUpdateReason.ORDER_CANCELLATION)
            elif event.type == RouteEventType.TRAFFIC_INCIDENT:
                severity = TrafficCondition(data.get("severity", TrafficCondition.UNKNOWN.value))
                if severity in TRAFFIC_TRIGGER_CONDITIONS:
                    reasons.append(RouteUpdateReason.TRAFFIC_CHANGE)
            elif event.type == RouteEventType.PREPARATION_DELAY:
                if float(data.get("delay_minutes") or 0.0) > PREPARATION_DELAY_TRIGGER_MIN:
                    reasons.append(RouteUpdateReason.PREPARATION_DELAY)
            elif event.type == RouteEventType.ORDER_READY:
                if _minutes_early(event, preparation_windows or {}) > EARLY_READY_TRIGGER_MIN:
                    reasons.append(RouteUpdateReason.PREPARATION_DELAY)
            elif event.type == RouteEventType.CUSTOMER_REQUEST:
                reasons.append(RouteUpdateReason.DRIVER_REQUEST)
        if not reasons:
            return None
        return min(reasons, key=_REASON_PRIORITY.index)

    def reoptimize_route(
        self,
        current_route: OptimizedRoute,
        orders: Sequence[Order],
        progress: RouteProgress,
        events: Sequence[RouteEvent],
        driver_location: GeoPoint,
        now: datetime | None = None,
        criteria: OptimizationCriteria | None = None,
        preparation_windows: dict[str, PreparationWindow] | None = None,
        algorithm: str | OptimizationAlgorithm | None = None,
        reason: RouteUpdateReason | None = None,
    ) -> Optional[RouteUpdate]:
        """Rebuild the unfinished part of a route when the events justify it.

        Returns ``None`` when nothing triggers a change or the re-solved sequence is
        not better than the current one by ``improvement_threshold`` score points.
        Cancelled orders always produce an update that drops their stops.
        """
        now = now or self.clock()
        criteria = criteria or current_route.criteria
        reason = reason or self.determine_update_reason(events, preparation_windows)
        if reason is None:
            return None

        orders_by_id = {order.id: order for order in orders}
        completed = set(progress.completed_waypoints)
        cancelled = {
            str(event.data.get("order_id")) for event in events if event.type == RouteEventType.ORDER_CANCELLED
        }
        cancelled |= {order.id for order in orders if order.status == OrderStatus.CANCELLED}

        remaining: list[Order] = []
        picked_up: set[str] = set()
        removed: list[str] = []
        for order_id in current_route.order_ids:
            waypoints = current_route.waypoints_for_order(order_id)
            if any(wp.is_delivery and wp.id in completed for wp in waypoints):
                continue
            if order_id in cancelled:
                removed.append(order_id)
                continue
            order = orders_by_id.get(order_id)
            if order is None:
                raise ValueError(f"Order '{order_id}' on route {current_route.id} was not provided.")
            if any(wp.is_pickup and wp.id in completed for wp in waypoints):
                picked_up.add(order_id)
            remaining.append(order)

        if not remaining:
            if not removed:
                return None
            return RouteUpdate(
                route_id=current_route.id,
                updated_waypoints=[],
                new_optimization_score=0.0,
                reason=reason,
                updated_at=now,
                changes={"removed_orders": removed, "remaining_stops": 0},
            )
        if len(remaining) <= 1 and not removed:
            logger.debug(f"Route {current_route.id} has a single order left; nothing to resequence")
            return None

        problem = self.build_problem(remaining, driver_location, criteria, now, preparation_windows, picked_up)
        evaluator = RouteEvaluator(problem)
        current_sequence = _current_sequence(problem, current_route, completed)
        current = evaluator.evaluate(current_sequence)
        chosen = select_algorithm(problem.order_count, algorithm)
        outcome = run_algorithm(chosen, problem, evaluator, make_rng())
        candidate = outcome.evaluation

        score_gain = candidate.optimization_score - current.optimization_score
        if not removed and score_gain < settings.improvement_threshold:
            logger.info(
                f"Reoptimization of route {current_route.id} ({reason.value}) rejected: "
                f"gain {score_gain:.2f} below threshold {settings.improvement_threshold:.2f}"
            )
            return None
        best = candidate if candidate.total_score >= current.total_score else current

        offset = progress.current_waypoint_sequence
        rebuilt = self.build_route(problem, best, batch_id=current_route.batch_id, sequence_offset=offset)
        logger.info(
            f"Route {current_route.id} reoptimized ({reason.value}): score "
            f"{current.optimization_score:.1f} -> {best.optimization_score:.1f}, removed={removed}"
        )
        return RouteUpdate(
            route_id=current_route.id,
            updated_waypoints=rebuilt.waypoints,
            new_optimization_score=rebuilt.optimization_score,
            reason=reason,
            updated_at=now,
            changes={
                "algorithm": chosen.value,
                "previous_order_sequence": _order_sequence(problem, current.sequence),
                "new_order_sequence": _order_sequence(problem, best.sequence),
                "previous_score": round(current.optimization_score, 2),
                "score_improvement": round(best.optimization_score - current.optimization_score, 2),
                "distance_saving_km": round(current.total_distance_km - best.total_distance_km, 3),
                "time_saving_min": round(current.duration_in_traffic_min - best.duration_in_traffic_min, 2),
                "remaining_distance_km": round(best.total_distance_km, 3),
                "remaining_duration_min": round(best.total_duration_min, 2),
                "remaining_duration_in_traffic_min": round(best.duration_in_traffic_min, 2),
                "removed_orders": removed,
                "remaining_stops": len(rebuilt.waypoints),
            },
        )

    def apply_update(
        self, route: OptimizedRoute, update: RouteUpdate, progress: RouteProgress, now: datetime | None = None
    ) -> OptimizedRoute:
        """Route made of the completed waypoints followed by the updated ones."""
        now = now or self.clock()
        completed_ids = set(progress.completed_waypoints)
        done = [wp for wp in route.waypoints if wp.id in completed_ids]
        waypoints = sorted([*done, *update.updated_waypoints], key=lambda wp: wp.sequence)
        elapsed_min = max(0.0, (now - route.calculated_at).total_seconds() / 60.0)
        changes = update.changes
        metadata = dict(route.metadata)
        metadata["last_update_reason"] = update.reason.value
        metadata["updates"] = int(metadata.get("updates", 0)) + 1
        return OptimizedRoute(
            id=route.id,
            batch_id=route.batch_id,
            waypoints=waypoints,
            total_distance_km=round(
                sum(wp.distance_from_previous_km for wp in done) + float(changes.get("remaining_distance_km", 0.0)), 3
            ),
            total_duration_min=round(elapsed_min + float(changes.get("remaining_duration_min", 0.0)), 2),
            duration_in_traffic_min=round(
                elapsed_min + float(changes.get("remaining_duration_in_traffic_min", 0.0)), 2
            ),
            optimization_score=update.new_optimization_score,
            criteria=route.criteria,
            calculated_at=now,
            overall_traffic_condition=route.overall_traffic_condition,
            metadata=metadata,
        )


_REASON_PRIORITY = [
    RouteUpdateReason.ORDER_CANCELLATION,
    RouteUpdateReason.TRAFFIC_CHANGE,
    RouteUpdateReason.PREPARATION_DELAY,
    RouteUpdateReason.DRIVER_REQUEST,
    RouteUpdateReason.SYSTEM_OPTIMIZATION,
]


def _improvement_percentage(baseline_km: float, optimized_km: float) -> float:
    if baseline_km <= 0:
        return 0.0
    return (baseline_km - optimized_km) / baseline_km * 100.0


def _minutes_early(event: RouteEvent, windows: dict[str, PreparationWindow]) -> float:
    if event.data.get("minutes_early") is not None:
        return float(event.data["minutes_early"])
    window = windows.get(str(event.data.get("order_id")))
    if window is None:
        return 0.0
    ready_at = parse_datetime(event.data.get("ready_at")) or event.timestamp
    return (window.estimated_completion_time - ready_at).total_seconds() / 60.0


def _current_sequence(problem: RoutingProblem, route: OptimizedRoute, completed: set[str]) -> list[int]:
    """Stop indices in the order the current route would still visit them."""
    index_by_key = {(stop.order_id, stop.type): index for index, stop in enumerate(problem.stops)}
    sequence = []
    for wp in sorted(route.waypoints, key=lambda item: item.sequence):
        if wp.id in completed:
            continue
        index = index_by_key.get((wp.order_id, wp.type))
        if index is not None and index not in sequence:
            sequence.append(index)
    # stops the old route never had (should not happen) go last
    sequence.extend(index for index in range(problem.size) if index not in sequence)
    return problem.repair(sequence)


def _order_sequence(problem: RoutingProblem, sequence: Sequence[int]) -> list[str]:
    labels = []
    for index in sequence:
        stop = problem.stops[index]
        prefix = "P" if stop.type == WaypointType.PICKUP else "D"
        labels.append(f"{prefix}:{stop.order_id}")
    return labels
