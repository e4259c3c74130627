"""Delivery batch models and lifecycle rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .domain import format_datetime, parse_datetime
from .routing import OptimizedRoute


class BatchStatus(str, Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "BatchStatus") -> bool:
        return target in ALLOWED_TRANSITIONS.get(self, frozenset())

    @property
    def is_open(self) -> bool:
        return self in (BatchStatus.PLANNED, BatchStatus.ACTIVE, BatchStatus.PAUSED)


ALLOWED_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PLANNED: frozenset({BatchStatus.ACTIVE, BatchStatus.CANCELLED}),
    BatchStatus.ACTIVE: frozenset({BatchStatus.PAUSED, BatchStatus.COMPLETED, BatchStatus.CANCELLED}),
    BatchStatus.PAUSED: frozenset({BatchStatus.ACTIVE, BatchStatus.COMPLETED, BatchStatus.CANCELLED}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.CANCELLED: frozenset(),
}


class StopStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class DeliveryBatch:
    id: str
    batch_number: str
    driver_id: str
    status: BatchStatus
    max_orders: int
    max_deviation_km: float
    total_distance_km: float
    estimated_duration_min: float
    optimization_score: float
    created_at: datetime
    route_id: Optional[str] = None
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "batch_number": self.batch_number,
            "driver_id": self.driver_id,
            "status": self.status.value,
            "max_orders": self.max_orders,
            "max_deviation_km": self.max_deviation_km,
            "total_distance_km": self.total_distance_km,
            "estimated_duration_min": self.estimated_duration_min,
            "optimization_score": self.optimization_score,
            "route_id": self.route_id,
            "created_at": format_datetime(self.created_at),
            "started_at": format_datetime(self.started_at),
            "paused_at": format_datetime(self.paused_at),
            "completed_at": format_datetime(self.completed_at),
            "cancelled_at": format_datetime(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, record: dict) -> "DeliveryBatch":
        return cls(
            id=str(record["id"]),
            batch_number=str(record["batch_number"]),
            driver_id=str(record["driver_id"]),
            status=BatchStatus(record["status"]),
            max_orders=int(record["max_orders"]),
            max_deviation_km=float(record["max_deviation_km"]),
            total_distance_km=float(record.get("total_distance_km") or 0.0),
            estimated_duration_min=float(record.get("estimated_duration_min") or 0.0),
            optimization_score=float(record.get("optimization_score") or 0.0),
            route_id=record.get("route_id"),
            created_at=parse_datetime(record["created_at"]),
            started_at=parse_datetime(record.get("started_at")),
            paused_at=parse_datetime(record.get("paused_at")),
            completed_at=parse_datetime(record.get("completed_at")),
            cancelled_at=parse_datetime(record.get("cancelled_at")),
            cancellation_reason=record.get("cancellation_reason"),
            metadata=dict(record.get("metadata") or {}),
        )


@dataclass(slots=True)
class BatchOrder:
    batch_id: str
    order_id: str
    pickup_sequence: int
    delivery_sequence: int
    pickup_status: StopStatus = StopStatus.PENDING
    delivery_status: StopStatus = StopStatus.PENDING
    estimated_pickup_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    actual_pickup_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.batch_id}:{self.order_id}"

    def to_record(self) -> dict:
        return {
            "id": self.key,
            "batch_id": self.batch_id,
            "order_id": self.order_id,
            "pickup_sequence": self.pickup_sequence,
            "delivery_sequence": self.delivery_sequence,
            "pickup_status": self.pickup_status.value,
            "delivery_status": self.delivery_status.value,
            "estimated_pickup_time": format_datetime(self.estimated_pickup_time),
            "estimated_delivery_time": format_datetime(self.estimated_delivery_time),
            "actual_pickup_time": format_datetime(self.actual_pickup_time),
            "actual_delivery_time": format_datetime(self.actual_delivery_time),
        }

    @classmethod
    def from_record(cls, record: dict) -> "BatchOrder":
        return cls(
            batch_id=str(record["batch_id"]),
            order_id=str(record["order_id"]),
            pickup_sequence=int(record["pickup_sequence"]),
            delivery_sequence=int(record["delivery_sequence"]),
            pickup_status=StopStatus(record.get("pickup_status") or StopStatus.PENDING.value),
            delivery_status=StopStatus(record.get("delivery_status") or StopStatus.PENDING.value),
            estimated_pickup_time=parse_datetime(record.get("estimated_pickup_time")),
            estimated_delivery_time=parse_datetime(record.get("estimated_delivery_time")),
            actual_pickup_time=parse_datetime(record.get("actual_pickup_time")),
            actual_delivery_time=parse_datetime(record.get("actual_delivery_time")),
        )


@dataclass(slots=True)
class BatchCreationResult:
    batch: DeliveryBatch
    batch_orders: List[BatchOrder]
    route: OptimizedRoute


@dataclass(slots=True)
class BatchOperationResult:
    batch: DeliveryBatch
    message: str
    metadata: dict = field(default_factory=dict)
