"""State and result shapes for live route reoptimization."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .domain import GeoPoint, Order
from .routing import OptimizedRoute, RouteEvent, RouteProgress, RouteUpdate

MAX_RECENT_EVENTS = 10


class ReoptimizationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(slots=True)
class ReoptimizationAnalysis:
    is_recommended: bool
    reason: str
    confidence: float = 0.0
    estimated_time_saving_min: float = 0.0
    priority: ReoptimizationPriority = ReoptimizationPriority.LOW
    metadata: dict = field(default_factory=dict)

    @classmethod
    def not_recommended(cls, reason: str, **metadata) -> "ReoptimizationAnalysis":
        return cls(is_recommended=False, reason=reason, metadata=dict(metadata))


@dataclass(slots=True)
class RouteImprovement:
    time_saving_min: float
    distance_saving_km: float
    score_improvement: float
    is_significant: bool


@dataclass(slots=True)
class RouteReoptimizationState:
    """Everything the live pipeline knows about one monitored route."""

    route_id: str
    driver_id: str
    current_route: OptimizedRoute
    orders: dict[str, Order]
    progress: RouteProgress
    started_at: datetime
    last_reoptimization: Optional[datetime] = None
    reoptimization_count: int = 0
    reoptimization_history: List[datetime] = field(default_factory=list)
    is_monitoring: bool = True
    recent_event_ids: List[str] = field(default_factory=list)
    driver_location: Optional[GeoPoint] = None
    metadata: dict = field(default_factory=dict)

    def copy_with(self, **changes) -> "RouteReoptimizationState":
        return replace(self, **changes)

    def remember_event(self, event_id: str) -> List[str]:
        recent = [*self.recent_event_ids, event_id]
        return recent[-MAX_RECENT_EVENTS:]

    def reoptimizations_since(self, since: datetime) -> int:
        return sum(1 for stamp in self.reoptimization_history if stamp >= since)


@dataclass(slots=True)
class RouteReoptimizationEvent:
    route_id: str
    trigger_event: RouteEvent
    analysis: ReoptimizationAnalysis
    timestamp: datetime
    applied: bool = False
    update: Optional[RouteUpdate] = None
    improvement: Optional[RouteImprovement] = None


class DriverNotificationType(str, Enum):
    ROUTE_REOPTIMIZED = "route_reoptimized"
    TRAFFIC_INCIDENT = "traffic_incident"
    PREPARATION_DELAY = "preparation_delay"
    ORDER_READY = "order_ready"
    CUSTOMER_REQUEST = "customer_request"
    SYSTEM_ALERT = "system_alert"


@dataclass(slots=True)
class DriverNotification:
    id: str
    driver_id: str
    route_id: str
    type: DriverNotificationType
    title: str
    message: str
    timestamp: datetime
    is_urgent: bool = False
    data: dict = field(default_factory=dict)
