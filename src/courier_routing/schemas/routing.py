"""Routing request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ..models.domain import Driver, GeoPoint, Order, OrderStatus
from ..models.routing import OptimizationCriteria, RouteEvent, RouteEventType


class GeoPointModel(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def to_domain(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)


class OrderModel(BaseModel):
    id: str
    vendor_id: str
    pickup_location: GeoPointModel
    delivery_location: GeoPointModel
    status: OrderStatus = OrderStatus.READY
    customer_id: Optional[str] = None
    pickup_address: str = ""
    delivery_address: str = ""
    item_count: int = Field(1, ge=1)
    created_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    delivery_window_start: Optional[datetime] = None
    delivery_window_end: Optional[datetime] = None
    metadata: dict = Field(default_factory=dict)

    def to_domain(self) -> Order:
        return Order(
            id=self.id,
            vendor_id=self.vendor_id,
            pickup_location=self.pickup_location.to_domain(),
            delivery_location=self.delivery_location.to_domain(),
            status=self.status,
            customer_id=self.customer_id,
            pickup_address=self.pickup_address,
            delivery_address=self.delivery_address,
            item_count=self.item_count,
            created_at=self.created_at,
            ready_at=self.ready_at,
            delivery_window_start=self.delivery_window_start,
            delivery_window_end=self.delivery_window_end,
            metadata=dict(self.metadata),
        )


class DriverModel(BaseModel):
    id: str
    name: str = ""
    is_active: bool = True
    current_location: Optional[GeoPointModel] = None

    def to_domain(self) -> Driver:
        return Driver(
            id=self.id,
            name=self.name,
            is_active=self.is_active,
            current_location=self.current_location.to_domain() if self.current_location else None,
        )


class CriteriaModel(BaseModel):
    """Explicit weights, or a named preset (balanced, distance_focused, time_focused)."""

    preset: Optional[str] = None
    distance_weight: Optional[float] = Field(None, ge=0)
    preparation_time_weight: Optional[float] = Field(None, ge=0)
    traffic_weight: Optional[float] = Field(None, ge=0)
    delivery_window_weight: Optional[float] = Field(None, ge=0)

    def to_domain(self) -> OptimizationCriteria:
        if self.preset:
            return OptimizationCriteria.from_preset(self.preset)
        base = OptimizationCriteria.balanced()
        return OptimizationCriteria(
            distance_weight=base.distance_weight if self.distance_weight is None else self.distance_weight,
            preparation_time_weight=(
                base.preparation_time_weight if self.preparation_time_weight is None else self.preparation_time_weight
            ),
            traffic_weight=base.traffic_weight if self.traffic_weight is None else self.traffic_weight,
            delivery_window_weight=(
                base.delivery_window_weight if self.delivery_window_weight is None else self.delivery_window_weight
            ),
        )


class OptimizeRouteRequest(BaseModel):
    orders: List[OrderModel] = Field(..., min_length=1)
    driver_location: GeoPointModel
    criteria: Optional[CriteriaModel] = None
    algorithm: Optional[str] = Field(default=None, description="Solver to use; picked by batch size when omitted.")
    batch_id: Optional[str] = None
    departure_time: Optional[datetime] = None
    persist: bool = Field(default=False, description="Write summary.json and waypoints.csv under the data root.")


class CompareAlgorithmsRequest(BaseModel):
    orders: List[OrderModel] = Field(..., min_length=1)
    driver_location: GeoPointModel
    algorithms: List[str] = Field(..., min_length=1)
    criteria: Optional[CriteriaModel] = None
    departure_time: Optional[datetime] = None


class RouteEventModel(BaseModel):
    id: Optional[str] = None
    type: RouteEventType
    timestamp: Optional[datetime] = None
    data: Dict[str, object] = Field(default_factory=dict)

    def to_domain(self, route_id: str, default_id: str, now: datetime) -> RouteEvent:
        return RouteEvent(
            id=self.id or default_id,
            route_id=route_id,
            type=self.type,
            timestamp=self.timestamp or now,
            data=dict(self.data),
        )


class ReoptimizeRouteRequest(BaseModel):
    route: dict = Field(..., description="Optimized route as returned by /routes/optimize.")
    orders: List[OrderModel] = Field(..., min_length=1)
    driver_location: GeoPointModel
    completed_waypoints: List[str] = Field(default_factory=list)
    events: List[RouteEventModel] = Field(default_factory=list)
    algorithm: Optional[str] = None


class RouteOptimizationResponse(BaseModel):
    id: str
    batch_id: str
    algorithm: str
    optimization_score: float
    calculation_time_ms: float
    created_at: datetime
    metadata: dict
    route: dict
    output_directory: Optional[str] = None


class ReoptimizeRouteResponse(BaseModel):
    updated: bool
    update: Optional[dict] = None
    route: Optional[dict] = None

    @model_validator(mode="after")
    def _route_with_update(self) -> "ReoptimizeRouteResponse":
        if self.updated and self.update is None:
            raise ValueError("An applied update must include its details.")
        return self
