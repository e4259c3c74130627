"""Domain models for orders, drivers and vendors."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO strings coming back from the datastore into aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(slots=True, frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude out of range: {self.longitude}")

    def as_tuple(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)

    def to_dict(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, data: dict) -> "GeoPoint":
        return cls(latitude=float(data["latitude"]), longitude=float(data["longitude"]))


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class Order:
    """A customer order with a vendor pickup and a customer drop-off."""

    id: str
    vendor_id: str
    pickup_location: GeoPoint
    delivery_location: GeoPoint
    status: OrderStatus = OrderStatus.READY
    customer_id: Optional[str] = None
    pickup_address: str = ""
    delivery_address: str = ""
    item_count: int = 1
    created_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    delivery_window_start: Optional[datetime] = None
    delivery_window_end: Optional[datetime] = None
    assigned_driver_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        return self.status == OrderStatus.READY

    @property
    def is_unassigned(self) -> bool:
        return self.assigned_driver_id is None

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "customer_id": self.customer_id,
            "status": self.status.value,
            "pickup_latitude": self.pickup_location.latitude,
            "pickup_longitude": self.pickup_location.longitude,
            "pickup_address": self.pickup_address,
            "delivery_latitude": self.delivery_location.latitude,
            "delivery_longitude": self.delivery_location.longitude,
            "delivery_address": self.delivery_address,
            "item_count": self.item_count,
            "created_at": format_datetime(self.created_at),
            "ready_at": format_datetime(self.ready_at),
            "delivery_window_start": format_datetime(self.delivery_window_start),
            "delivery_window_end": format_datetime(self.delivery_window_end),
            "assigned_driver_id": self.assigned_driver_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, record: dict) -> "Order":
        return cls(
            id=str(record["id"]),
            vendor_id=str(record["vendor_id"]),
            customer_id=record.get("customer_id"),
            status=OrderStatus(record.get("status") or OrderStatus.READY.value),
            pickup_location=GeoPoint(float(record["pickup_latitude"]), float(record["pickup_longitude"])),
            pickup_address=record.get("pickup_address") or "",
            delivery_location=GeoPoint(float(record["delivery_latitude"]), float(record["delivery_longitude"])),
            delivery_address=record.get("delivery_address") or "",
            item_count=int(record.get("item_count") or 1),
            created_at=parse_datetime(record.get("created_at")),
            ready_at=parse_datetime(record.get("ready_at")),
            delivery_window_start=parse_datetime(record.get("delivery_window_start")),
            delivery_window_end=parse_datetime(record.get("delivery_window_end")),
            assigned_driver_id=record.get("assigned_driver_id"),
            metadata=dict(record.get("metadata") or {}),
        )


@dataclass(slots=True)
class Driver:
    """A courier who can carry a batch of orders."""

    id: str
    name: str = ""
    is_active: bool = True
    current_location: Optional[GeoPoint] = None
    location_updated_at: Optional[datetime] = None

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "current_latitude": self.current_location.latitude if self.current_location else None,
            "current_longitude": self.current_location.longitude if self.current_location else None,
            "location_updated_at": format_datetime(self.location_updated_at),
        }

    @classmethod
    def from_record(cls, record: dict) -> "Driver":
        lat = record.get("current_latitude")
        lon = record.get("current_longitude")
        location = GeoPoint(float(lat), float(lon)) if lat is not None and lon is not None else None
        return cls(
            id=str(record["id"]),
            name=record.get("name") or "",
            is_active=bool(record.get("is_active", True)),
            current_location=location,
            location_updated_at=parse_datetime(record.get("location_updated_at")),
        )
