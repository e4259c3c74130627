"""Live reoptimization request/response schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from ..models.domain import OrderStatus
from ..models.reoptimization import DriverNotification, RouteReoptimizationEvent, RouteReoptimizationState
from ..models.routing import RouteAdjustmentResult, TrafficCondition
from ..services.outputs.route_formatter import optimized_route_to_json, route_update_to_json
from .routing import GeoPointModel, OrderModel


class StartMonitoringRequest(BaseModel):
    """Either a full route with its orders, or nothing to load the stored route by id."""

    driver_id: Optional[str] = None
    route: Optional[dict] = None
    orders: Optional[List[OrderModel]] = None
    driver_location: Optional[GeoPointModel] = None
    completed_waypoints: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _route_with_orders(self) -> "StartMonitoringRequest":
        if (self.route is None) != (self.orders is None):
            raise ValueError("route and orders must be provided together.")
        if self.route is not None and not self.driver_id:
            raise ValueError("driver_id is required when the route is provided inline.")
        return self


class EventKind(str, Enum):
    ORDER_STATUS = "order_status"
    TRAFFIC_INCIDENT = "traffic_incident"
    PREPARATION_DELAY = "preparation_delay"
    KITCHEN_STATUS = "kitchen_status"
    DRIVER_LOCATION = "driver_location"
    CUSTOMER_REQUEST = "customer_request"
    WAYPOINT_COMPLETED = "waypoint_completed"


_REQUIRED_FIELDS = {
    EventKind.ORDER_STATUS: ("order_id", "new_status"),
    EventKind.TRAFFIC_INCIDENT: ("location", "severity", "delay_minutes"),
    EventKind.PREPARATION_DELAY: ("order_id", "delay_minutes"),
    EventKind.KITCHEN_STATUS: ("vendor_id", "kitchen_load"),
    EventKind.DRIVER_LOCATION: ("location",),
    EventKind.CUSTOMER_REQUEST: ("order_id", "request_type"),
    EventKind.WAYPOINT_COMPLETED: ("waypoint_id",),
}


class RouteEventRequest(BaseModel):
    kind: EventKind
    order_id: Optional[str] = None
    new_status: Optional[OrderStatus] = None
    waypoint_id: Optional[str] = None
    location: Optional[GeoPointModel] = None
    severity: Optional[TrafficCondition] = None
    delay_minutes: Optional[float] = Field(None, gt=0)
    radius_km: float = Field(2.0, gt=0)
    duration_minutes: Optional[float] = Field(None, gt=0, description="How long a traffic incident lasts.")
    description: str = ""
    vendor_id: Optional[str] = None
    kitchen_load: Optional[float] = Field(None, ge=0, le=1)
    staff_count: Optional[int] = Field(None, ge=0)
    request_type: Optional[str] = None
    details: dict = Field(default_factory=dict)

    @model_validator(mode="after")
    def _required_for_kind(self) -> "RouteEventRequest":
        missing = [name for name in _REQUIRED_FIELDS[self.kind] if getattr(self, name) is None]
        if missing:
            raise ValueError(f"{self.kind.value} events require: {', '.join(missing)}.")
        return self


class ReoptimizationEventResponse(BaseModel):
    event_id: str
    event_type: str
    is_recommended: bool
    reason: str
    priority: str
    confidence: float
    estimated_time_saving_min: float
    applied: bool
    analysis_metadata: dict = Field(default_factory=dict)
    improvement: Optional[dict] = None
    update: Optional[dict] = None

    @classmethod
    def from_domain(cls, outcome: RouteReoptimizationEvent) -> "ReoptimizationEventResponse":
        analysis = outcome.analysis
        improvement = None
        if outcome.improvement is not None:
            improvement = {
                "time_saving_min": outcome.improvement.time_saving_min,
                "distance_saving_km": outcome.improvement.distance_saving_km,
                "score_improvement": outcome.improvement.score_improvement,
                "is_significant": outcome.improvement.is_significant,
            }
        return cls(
            event_id=outcome.trigger_event.id,
            event_type=outcome.trigger_event.type.value,
            is_recommended=analysis.is_recommended,
            reason=analysis.reason,
            priority=analysis.priority.value,
            confidence=analysis.confidence,
            estimated_time_saving_min=analysis.estimated_time_saving_min,
            applied=outcome.applied,
            analysis_metadata=dict(analysis.metadata),
            improvement=improvement,
            update=route_update_to_json(outcome.update) if outcome.update is not None else None,
        )


class MonitoringStateResponse(BaseModel):
    route_id: str
    driver_id: str
    is_monitoring: bool
    started_at: datetime
    last_reoptimization: Optional[datetime] = None
    reoptimization_count: int
    progress_percentage: float
    completed_waypoints: List[str]
    driver_location: Optional[GeoPointModel] = None
    route: dict

    @classmethod
    def from_domain(cls, state: RouteReoptimizationState) -> "MonitoringStateResponse":
        location = None
        if state.driver_location is not None:
            location = GeoPointModel(
                latitude=state.driver_location.latitude, longitude=state.driver_location.longitude
            )
        return cls(
            route_id=state.route_id,
            driver_id=state.driver_id,
            is_monitoring=state.is_monitoring,
            started_at=state.started_at,
            last_reoptimization=state.last_reoptimization,
            reoptimization_count=state.reoptimization_count,
            progress_percentage=state.progress.progress_percentage,
            completed_waypoints=list(state.progress.completed_waypoints),
            driver_location=location,
            route=optimized_route_to_json(state.current_route),
        )


class AdjustmentResponse(BaseModel):
    status: str
    message: str
    error: Optional[str] = None
    update: Optional[dict] = None

    @classmethod
    def from_domain(cls, result: RouteAdjustmentResult) -> "AdjustmentResponse":
        return cls(
            status=result.status.value,
            message=result.message,
            error=result.error,
            update=route_update_to_json(result.update) if result.update is not None else None,
        )


class DriverNotificationModel(BaseModel):
    id: str
    route_id: str
    type: str
    title: str
    message: str
    timestamp: datetime
    is_urgent: bool
    data: dict

    @classmethod
    def from_domain(cls, notification: DriverNotification) -> "DriverNotificationModel":
        return cls(
            id=notification.id,
            route_id=notification.route_id,
            type=notification.type.value,
            title=notification.title,
            message=notification.message,
            timestamp=notification.timestamp,
            is_urgent=notification.is_urgent,
            data=dict(notification.data),
        )
