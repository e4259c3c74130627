"""Route optimization contract models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from .domain import GeoPoint

WEIGHT_TOLERANCE = 0.001


@dataclass(slots=True, frozen=True)
class OptimizationCriteria:
    """Relative weights of the four route objectives. Weights must sum to 1."""

    distance_weight: float = 0.4
    preparation_time_weight: float = 0.3
    traffic_weight: float = 0.2
    delivery_window_weight: float = 0.1

    @property
    def total_weight(self) -> float:
        return (
            self.distance_weight
            + self.preparation_time_weight
            + self.traffic_weight
            + self.delivery_window_weight
        )

    @property
    def is_valid(self) -> bool:
        weights = (
            self.distance_weight,
            self.preparation_time_weight,
            self.traffic_weight,
            self.delivery_window_weight,
        )
        if any(weight < 0 for weight in weights):
            return False
        return abs(self.total_weight - 1.0) < WEIGHT_TOLERANCE

    @classmethod
    def balanced(cls) -> "OptimizationCriteria":
        return cls(0.4, 0.3, 0.2, 0.1)

    @classmethod
    def distance_focused(cls) -> "OptimizationCriteria":
        return cls(0.6, 0.2, 0.15, 0.05)

    @classmethod
    def time_focused(cls) -> "OptimizationCriteria":
        return cls(0.2, 0.4, 0.3, 0.1)

    @classmethod
    def from_preset(cls, name: str) -> "OptimizationCriteria":
        presets = {
            "balanced": cls.balanced,
            "distance_focused": cls.distance_focused,
            "time_focused": cls.time_focused,
        }
        try:
            return presets[name]()
        except KeyError as exc:
            raise ValueError(f"Unknown criteria preset '{name}'. Expected one of {sorted(presets)}.") from exc

    def to_dict(self) -> dict:
        return {
            "distance_weight": self.distance_weight,
            "preparation_time_weight": self.preparation_time_weight,
            "traffic_weight": self.traffic_weight,
            "delivery_window_weight": self.delivery_window_weight,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OptimizationCriteria":
        return cls(
            distance_weight=float(data["distance_weight"]),
            preparation_time_weight=float(data["preparation_time_weight"]),
            traffic_weight=float(data["traffic_weight"]),
            delivery_window_weight=float(data["delivery_window_weight"]),
        )


class PreparationStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY = "ready"


@dataclass(slots=True)
class PreparationWindow:
    """Predicted span during which a vendor prepares an order."""

    order_id: str
    vendor_id: str
    estimated_start_time: datetime
    estimated_completion_time: datetime
    estimated_duration_min: float
    confidence: float = 0.8
    metadata: dict = field(default_factory=dict)

    def is_ready_by(self, at: datetime) -> bool:
        return at >= self.estimated_completion_time

    def remaining_minutes(self, at: datetime) -> float:
        if self.is_ready_by(at):
            return 0.0
        return (self.estimated_completion_time - at).total_seconds() / 60.0

    def status_at(self, at: datetime) -> PreparationStatus:
        if at < self.estimated_start_time:
            return PreparationStatus.NOT_STARTED
        if at < self.estimated_completion_time:
            return PreparationStatus.IN_PROGRESS
        return PreparationStatus.READY

    def delayed_by(self, minutes: float) -> "PreparationWindow":
        metadata = dict(self.metadata)
        metadata["delay_minutes"] = metadata.get("delay_minutes", 0.0) + minutes
        return PreparationWindow(
            order_id=self.order_id,
            vendor_id=self.vendor_id,
            estimated_start_time=self.estimated_start_time,
            estimated_completion_time=self.estimated_completion_time + timedelta(minutes=minutes),
            estimated_duration_min=self.estimated_duration_min + minutes,
            confidence=self.confidence,
            metadata=metadata,
        )


class WaypointType(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


@dataclass(slots=True)
class RouteWaypoint:
    id: str
    order_id: str
    type: WaypointType
    location: GeoPoint
    address: str
    sequence: int
    estimated_arrival_time: datetime
    estimated_duration_min: float
    distance_from_previous_km: float
    metadata: dict = field(default_factory=dict)

    @property
    def is_pickup(self) -> bool:
        return self.type == WaypointType.PICKUP

    @property
    def is_delivery(self) -> bool:
        return self.type == WaypointType.DELIVERY

    @staticmethod
    def make_id(order_id: str, waypoint_type: WaypointType, sequence: int) -> str:
        return f"{waypoint_type.value}_{order_id}_{sequence}"


class TrafficCondition(str, Enum):
    CLEAR = "clear"
    LIGHT = "light"
    MODERATE = "moderate"
    HEAVY = "heavy"
    SEVERE = "severe"
    UNKNOWN = "unknown"

    @property
    def score(self) -> float:
        return _TRAFFIC_SCORES[self]

    @property
    def travel_multiplier(self) -> float:
        return _TRAFFIC_MULTIPLIERS[self]

    @property
    def severity_rank(self) -> int:
        return _TRAFFIC_RANKS[self]

    @classmethod
    def from_score(cls, score: float) -> "TrafficCondition":
        if score >= 0.8:
            return cls.CLEAR
        if score >= 0.6:
            return cls.LIGHT
        if score >= 0.4:
            return cls.MODERATE
        return cls.HEAVY


_TRAFFIC_SCORES = {
    TrafficCondition.CLEAR: 1.0,
    TrafficCondition.LIGHT: 0.8,
    TrafficCondition.MODERATE: 0.6,
    TrafficCondition.HEAVY: 0.4,
    TrafficCondition.SEVERE: 0.2,
    TrafficCondition.UNKNOWN: 0.6,
}

_TRAFFIC_MULTIPLIERS = {
    TrafficCondition.CLEAR: 1.0,
    TrafficCondition.LIGHT: 1.1,
    TrafficCondition.MODERATE: 1.25,
    TrafficCondition.HEAVY: 1.5,
    TrafficCondition.SEVERE: 2.0,
    TrafficCondition.UNKNOWN: 1.25,
}

# unknown ranks with moderate so it never masks a reported incident
_TRAFFIC_RANKS = {
    TrafficCondition.CLEAR: 0,
    TrafficCondition.LIGHT: 1,
    TrafficCondition.UNKNOWN: 2,
    TrafficCondition.MODERATE: 2,
    TrafficCondition.HEAVY: 3,
    TrafficCondition.SEVERE: 4,
}


@dataclass(slots=True)
class OptimizedRoute:
    """Ordered pickup/delivery waypoints with ETAs for one driver."""

    id: str
    batch_id: str
    waypoints: List[RouteWaypoint]
    total_distance_km: float
    total_duration_min: float
    duration_in_traffic_min: float
    optimization_score: float
    criteria: OptimizationCriteria
    calculated_at: datetime
    overall_traffic_condition: TrafficCondition = TrafficCondition.UNKNOWN
    metadata: dict = field(default_factory=dict)

    @property
    def pickup_waypoints(self) -> List[RouteWaypoint]:
        return [wp for wp in self.waypoints if wp.is_pickup]

    @property
    def delivery_waypoints(self) -> List[RouteWaypoint]:
        return [wp for wp in self.waypoints if wp.is_delivery]

    @property
    def order_ids(self) -> List[str]:
        """Order ids in the order their first waypoint is visited."""
        seen: list[str] = []
        for wp in self.waypoints:
            if wp.order_id not in seen:
                seen.append(wp.order_id)
        return seen

    def waypoints_for_order(self, order_id: str) -> List[RouteWaypoint]:
        return [wp for wp in self.waypoints if wp.order_id == order_id]

    def next_waypoint(self, current_sequence: int) -> Optional[RouteWaypoint]:
        for wp in sorted(self.waypoints, key=lambda item: item.sequence):
            if wp.sequence > current_sequence:
                return wp
        return None

    @property
    def traffic_delay_min(self) -> float:
        return max(0.0, self.duration_in_traffic_min - self.total_duration_min)

    @property
    def has_traffic_delay(self) -> bool:
        return self.traffic_delay_min > 0.0

    @property
    def formatted_distance(self) -> str:
        if self.total_distance_km < 1.0:
            return f"{round(self.total_distance_km * 1000)}m"
        return f"{self.total_distance_km:.1f}km"

    @property
    def formatted_duration(self) -> str:
        return format_minutes(self.total_duration_min)

    @property
    def formatted_duration_in_traffic(self) -> str:
        return format_minutes(self.duration_in_traffic_min)


def format_minutes(minutes: float) -> str:
    total = int(round(minutes))
    hours, mins = divmod(total, 60)
    if hours > 0:
        return f"{hours}h {mins}min"
    return f"{mins}min"


class RouteUpdateReason(str, Enum):
    TRAFFIC_CHANGE = "traffic_change"
    PREPARATION_DELAY = "preparation_delay"
    ORDER_CANCELLATION = "order_cancellation"
    DRIVER_REQUEST = "driver_request"
    SYSTEM_OPTIMIZATION = "system_optimization"


@dataclass(slots=True)
class RouteUpdate:
    route_id: str
    updated_waypoints: List[RouteWaypoint]
    new_optimization_score: float
    reason: RouteUpdateReason
    updated_at: datetime
    changes: dict = field(default_factory=dict)


@dataclass(slots=True)
class RouteProgress:
    route_id: str
    current_waypoint_sequence: int
    completed_waypoints: List[str]
    progress_percentage: float
    last_updated: datetime

    @classmethod
    def from_route(cls, route: OptimizedRoute, completed_ids: set[str] | list[str], at: datetime) -> "RouteProgress":
        completed = set(completed_ids)
        ordered = sorted(route.waypoints, key=lambda wp: wp.sequence)
        done = [wp.id for wp in ordered if wp.id in completed]
        current = 0
        for wp in ordered:
            if wp.id in completed:
                current = wp.sequence
        percentage = (len(done) / len(ordered) * 100.0) if ordered else 100.0
        return cls(
            route_id=route.id,
            current_waypoint_sequence=current,
            completed_waypoints=done,
            progress_percentage=percentage,
            last_updated=at,
        )

    @property
    def is_complete(self) -> bool:
        return self.progress_percentage >= 100.0


class RouteEventType(str, Enum):
    TRAFFIC_INCIDENT = "traffic_incident"
    PREPARATION_DELAY = "preparation_delay"
    ORDER_READY = "order_ready"
    ORDER_CANCELLED = "order_cancelled"
    WAYPOINT_COMPLETED = "waypoint_completed"
    DRIVER_LOCATION_UPDATE = "driver_location_update"
    CUSTOMER_REQUEST = "customer_request"
    ORDER_STATUS_CHANGED = "order_status_changed"


@dataclass(slots=True)
class RouteEvent:
    id: str
    route_id: str
    type: RouteEventType
    timestamp: datetime
    data: dict = field(default_factory=dict)


class AdjustmentStatus(str, Enum):
    NO_ADJUSTMENT_NEEDED = "no_adjustment_needed"
    ADJUSTMENT_CALCULATED = "adjustment_calculated"
    ERROR = "error"


@dataclass(slots=True)
class RouteAdjustmentResult:
    status: AdjustmentStatus
    message: str
    update: Optional[RouteUpdate] = None
    error: Optional[str] = None

    @classmethod
    def no_adjustment(cls, message: str) -> "RouteAdjustmentResult":
        return cls(status=AdjustmentStatus.NO_ADJUSTMENT_NEEDED, message=message)

    @classmethod
    def calculated(cls, update: RouteUpdate, message: str = "Route adjustment calculated") -> "RouteAdjustmentResult":
        return cls(status=AdjustmentStatus.ADJUSTMENT_CALCULATED, message=message, update=update)

    @classmethod
    def failed(cls, error: str) -> "RouteAdjustmentResult":
        return cls(status=AdjustmentStatus.ERROR, message="Route adjustment failed", error=error)

    @property
    def is_success(self) -> bool:
        return self.status != AdjustmentStatus.ERROR

    @property
    def no_adjustment_needed(self) -> bool:
        return self.status == AdjustmentStatus.NO_ADJUSTMENT_NEEDED

    @property
    def has_error(self) -> bool:
        return self.status == AdjustmentStatus.ERROR
