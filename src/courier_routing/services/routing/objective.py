"""Routing problem definition and the weighted multi-criteria route objective.

A problem holds a driver start position and a list of stops. Every order contributes a
pickup stop and a delivery stop, except orders already on board which only contribute
their delivery. Sequences are lists of stop indices; matrix index ``i + 1`` belongs to
stop ``i`` and matrix index ``0`` to the driver start.

Each candidate sequence is simulated in minutes from departure. A leg's travel time is
its free-flow duration times the traffic multiplier at the destination, and a driver
arriving at a pickup before the food is ready waits for it. Four sub-scores in [0, 1]
are combined with the ``OptimizationCriteria`` weights:

* distance: ``1 - total_km / distance_normalization_km``
* preparation: per pickup, ``confidence * (1 - (wait + excess_idle) / 30)``
* traffic: leg-distance-weighted mean of the destination traffic scores
* delivery window: per delivery, ``1 - lateness / 30`` against its deadline
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence

from ...config import settings
from ...models.domain import GeoPoint, Order
from ...models.routing import OptimizationCriteria, PreparationWindow, TrafficCondition, WaypointType
from .matrix import TravelMatrix

PENALTY_HORIZON_MIN = 30.0
IDLE_GRACE_MIN = 10.0
NO_WINDOW_PREPARATION_SCORE = 0.5
NO_DEADLINE_DELIVERY_SCORE = 0.8


def _minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0


@dataclass(slots=True)
class RouteStop:
    order_id: str
    type: WaypointType
    location: GeoPoint
    address: str
    service_min: float
    pickup_stop: Optional[int] = None
    ready_offset_min: Optional[float] = None
    ready_confidence: float = 1.0
    deadline_offset_min: Optional[float] = None

    @property
    def is_pickup(self) -> bool:
        return self.type == WaypointType.PICKUP


@dataclass(slots=True)
class RoutingProblem:
    start: GeoPoint
    departure_time: datetime
    stops: list[RouteStop]
    matrix: TravelMatrix
    traffic: list[TrafficCondition]
    criteria: OptimizationCriteria
    preparation_windows: dict[str, PreparationWindow] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        *,
        orders: Sequence[Order],
        start: GeoPoint,
        departure_time: datetime,
        matrix_builder,
        criteria: OptimizationCriteria,
        preparation_windows: dict[str, PreparationWindow] | None = None,
        traffic_lookup=None,
        picked_up: set[str] | frozenset[str] = frozenset(),
    ) -> "RoutingProblem":
        """Assemble stops, matrix and traffic for the given orders.

        ``matrix_builder`` is called with the list of points (start first).
        ``traffic_lookup`` takes (points, at) and returns one condition per point.
        """
        if not orders:
            raise ValueError("At least one order is required to build a routing problem.")
        windows = dict(preparation_windows or {})
        stops: list[RouteStop] = []
        for order in orders:
            pickup_index: Optional[int] = None
            if order.id not in picked_up:
                window = windows.get(order.id)
                ready_offset = None
                confidence = 1.0
                if window is not None:
                    ready_offset = _minutes_between(departure_time, window.estimated_completion_time)
                    confidence = window.confidence
                stops.append(
                    RouteStop(
                        order_id=order.id,
                        type=WaypointType.PICKUP,
                        location=order.pickup_location,
                        address=order.pickup_address,
                        service_min=settings.pickup_service_minutes,
                        ready_offset_min=ready_offset,
                        ready_confidence=confidence,
                    )
                )
                pickup_index = len(stops) - 1
            stops.append(
                RouteStop(
                    order_id=order.id,
                    type=WaypointType.DELIVERY,
                    location=order.delivery_location,
                    address=order.delivery_address,
                    service_min=settings.delivery_service_minutes,
                    pickup_stop=pickup_index,
                    deadline_offset_min=_deadline_offset(order, departure_time),
                )
            )

        points = [start, *(stop.location for stop in stops)]
        matrix = matrix_builder(points)
        if traffic_lookup is None:
            traffic = [TrafficCondition.UNKNOWN] * len(stops)
        else:
            traffic = list(traffic_lookup([stop.location for stop in stops], departure_time))
        return cls(
            start=start,
            departure_time=departure_time,
            stops=stops,
            matrix=matrix,
            traffic=traffic,
            criteria=criteria,
            preparation_windows=windows,
        )

    @property
    def size(self) -> int:
        return len(self.stops)

    @property
    def order_count(self) -> int:
        return len({stop.order_id for stop in self.stops})

    def leg_km(self, origin: Optional[int], destination: int) -> float:
        return float(self.matrix.distance_km[_matrix_index(origin), destination + 1])

    def leg_minutes(self, origin: Optional[int], destination: int) -> float:
        return float(self.matrix.duration_min[_matrix_index(origin), destination + 1])

    def is_feasible(self, sequence: Sequence[int]) -> bool:
        if len(sequence) != self.size or set(sequence) != set(range(self.size)):
            return False
        seen: set[int] = set()
        for index in sequence:
            pickup = self.stops[index].pickup_stop
            if pickup is not None and pickup not in seen:
                return False
            seen.add(index)
        return True

    def available_stops(self, visited: set[int]) -> list[int]:
        """Stops that may come next once ``visited`` have been served."""
        return [
            index
            for index, stop in enumerate(self.stops)
            if index not in visited and (stop.pickup_stop is None or stop.pickup_stop in visited)
        ]

    def repair(self, sequence: Sequence[int]) -> list[int]:
        """Move any delivery that precedes its pickup to directly after that pickup."""
        placed: set[int] = set()
        deferred: dict[int, int] = {}
        repaired: list[int] = []
        for index in sequence:
            pickup = self.stops[index].pickup_stop
            if pickup is not None and pickup not in placed:
                deferred[pickup] = index
                continue
            repaired.append(index)
            placed.add(index)
            if index in deferred:
                delivery = deferred.pop(index)
                repaired.append(delivery)
                placed.add(delivery)
        return repaired

    def random_sequence(self, rng: random.Random) -> list[int]:
        visited: set[int] = set()
        sequence: list[int] = []
        while len(sequence) < self.size:
            choice = rng.choice(self.available_stops(visited))
            sequence.append(choice)
            visited.add(choice)
        return sequence

    def baseline_sequence(self) -> list[int]:
        """Orders served one after another in input order, pickup then delivery."""
        return list(range(self.size))


def _matrix_index(stop: Optional[int]) -> int:
    return 0 if stop is None else stop + 1


def _deadline_offset(order: Order, departure_time: datetime) -> Optional[float]:
    if order.delivery_window_end is not None:
        return _minutes_between(departure_time, order.delivery_window_end)
    if order.created_at is not None:
        promised = order.created_at + timedelta(minutes=settings.target_delivery_minutes)
        return _minutes_between(departure_time, promised)
    return None


@dataclass(slots=True)
class StopVisit:
    stop: int
    arrival_min: float
    wait_min: float
    departure_min: float
    leg_km: float
    leg_free_flow_min: float
    leg_traffic_min: float
    traffic: TrafficCondition


@dataclass(slots=True)
class RouteEvaluation:
    sequence: tuple[int, ...]
    visits: list[StopVisit]
    total_distance_km: float
    free_flow_travel_min: float
    traffic_travel_min: float
    wait_min: float
    service_min: float
    distance_score: float
    preparation_score: float
    traffic_score: float
    delivery_window_score: float
    total_score: float

    @property
    def optimization_score(self) -> float:
        return self.total_score * 100.0

    @property
    def total_duration_min(self) -> float:
        return self.free_flow_travel_min + self.service_min

    @property
    def duration_in_traffic_min(self) -> float:
        return self.traffic_travel_min + self.service_min + self.wait_min

    def component_scores(self) -> dict[str, float]:
        return {
            "distance": round(self.distance_score, 4),
            "preparation": round(self.preparation_score, 4),
            "traffic": round(self.traffic_score, 4),
            "delivery_window": round(self.delivery_window_score, 4),
        }


class RouteEvaluator:
    """Scores sequences for one problem, memoizing repeated candidates."""

    def __init__(self, problem: RoutingProblem) -> None:
        self.problem = problem
        self._cache: dict[tuple[int, ...], RouteEvaluation] = {}
        self.evaluations = 0

    def schedule(self, sequence: Sequence[int]) -> list[StopVisit]:
        problem = self.problem
        visits: list[StopVisit] = []
        clock = 0.0
        previous: Optional[int] = None
        for index in sequence:
            stop = problem.stops[index]
            condition = problem.traffic[index]
            free_flow = problem.leg_minutes(previous, index)
            in_traffic = free_flow * condition.travel_multiplier
            arrival = clock + in_traffic
            wait = 0.0
            if stop.is_pickup and stop.ready_offset_min is not None:
                wait = max(0.0, stop.ready_offset_min - arrival)
            departure = arrival + wait + stop.service_min
            visits.append(
                StopVisit(
                    stop=index,
                    arrival_min=arrival,
                    wait_min=wait,
                    departure_min=departure,
                    leg_km=problem.leg_km(previous, index),
                    leg_free_flow_min=free_flow,
                    leg_traffic_min=in_traffic,
                    traffic=condition,
                )
            )
            clock = departure
            previous = index
        return visits

    def evaluate(self, sequence: Sequence[int]) -> RouteEvaluation:
        key = tuple(sequence)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        if not self.problem.is_feasible(key):
            raise ValueError(f"Sequence {list(key)} violates pickup-before-delivery ordering.")
        evaluation = self._score(key, self.schedule(key))
        self._cache[key] = evaluation
        self.evaluations += 1
        return evaluation

    def score(self, sequence: Sequence[int]) -> float:
        return self.evaluate(sequence).total_score

    def _score(self, key: tuple[int, ...], visits: list[StopVisit]) -> RouteEvaluation:
        problem = self.problem
        criteria = problem.criteria
        total_km = sum(visit.leg_km for visit in visits)

        distance_score = max(0.0, 1.0 - total_km / settings.distance_normalization_km)

        pickup_scores = []
        delivery_scores = []
        for visit in visits:
            stop = problem.stops[visit.stop]
            if stop.is_pickup:
                if stop.ready_offset_min is None:
                    pickup_scores.append(NO_WINDOW_PREPARATION_SCORE)
                    continue
                served_at = visit.arrival_min + visit.wait_min
                idle = max(0.0, served_at - stop.ready_offset_min)
                penalty = visit.wait_min + max(0.0, idle - IDLE_GRACE_MIN)
                alignment = max(0.0, 1.0 - penalty / PENALTY_HORIZON_MIN)
                pickup_scores.append(stop.ready_confidence * alignment)
            else:
                if stop.deadline_offset_min is None:
                    delivery_scores.append(NO_DEADLINE_DELIVERY_SCORE)
                    continue
                lateness = max(0.0, visit.arrival_min - stop.deadline_offset_min)
                delivery_scores.append(max(0.0, 1.0 - lateness / PENALTY_HORIZON_MIN))

        preparation_score = sum(pickup_scores) / len(pickup_scores) if pickup_scores else 1.0
        delivery_window_score = sum(delivery_scores) / len(delivery_scores) if delivery_scores else 1.0

        if visits and total_km > 0:
            traffic_score = sum(visit.traffic.score * visit.leg_km for visit in visits) / total_km
        elif visits:
            traffic_score = sum(visit.traffic.score for visit in visits) / len(visits)
        else:
            traffic_score = 1.0

        total = (
            criteria.distance_weight * distance_score
            + criteria.preparation_time_weight * preparation_score
            + criteria.traffic_weight * traffic_score
            + criteria.delivery_window_weight * delivery_window_score
        )
        return RouteEvaluation(
            sequence=key,
            visits=visits,
            total_distance_km=total_km,
            free_flow_travel_min=sum(visit.leg_free_flow_min for visit in visits),
            traffic_travel_min=sum(visit.leg_traffic_min for visit in visits),
            wait_min=sum(visit.wait_min for visit in visits),
            service_min=sum(problem.stops[visit.stop].service_min for visit in visits),
            distance_score=distance_score,
            preparation_score=preparation_score,
            traffic_score=traffic_score,
            delivery_window_score=delivery_window_score,
            total_score=max(0.0, min(1.0, total)),
        )
