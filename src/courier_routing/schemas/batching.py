"""Batch request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.batching import BatchOperationResult, BatchOrder, DeliveryBatch, StopStatus
from .routing import CriteriaModel


class CreateBatchRequest(BaseModel):
    driver_id: str
    order_ids: List[str] = Field(..., min_length=1)
    max_orders: Optional[int] = Field(None, ge=1)
    max_deviation_km: Optional[float] = Field(None, gt=0)
    criteria: Optional[CriteriaModel] = None
    algorithm: Optional[str] = None


class SuggestBatchesRequest(BaseModel):
    driver_id: str
    max_orders: Optional[int] = Field(None, ge=1)
    max_deviation_km: Optional[float] = Field(None, gt=0)


class CancelBatchRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class StopStatusRequest(BaseModel):
    status: StopStatus = StopStatus.COMPLETED


class BatchModel(BaseModel):
    id: str
    batch_number: str
    driver_id: str
    status: str
    max_orders: int
    max_deviation_km: float
    total_distance_km: float
    estimated_duration_min: float
    optimization_score: float
    route_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    metadata: dict = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, batch: DeliveryBatch) -> "BatchModel":
        return cls(
            id=batch.id,
            batch_number=batch.batch_number,
            driver_id=batch.driver_id,
            status=batch.status.value,
            max_orders=batch.max_orders,
            max_deviation_km=batch.max_deviation_km,
            total_distance_km=batch.total_distance_km,
            estimated_duration_min=batch.estimated_duration_min,
            optimization_score=batch.optimization_score,
            route_id=batch.route_id,
            created_at=batch.created_at,
            started_at=batch.started_at,
            paused_at=batch.paused_at,
            completed_at=batch.completed_at,
            cancelled_at=batch.cancelled_at,
            cancellation_reason=batch.cancellation_reason,
            metadata=dict(batch.metadata),
        )


class BatchOrderModel(BaseModel):
    order_id: str
    pickup_sequence: int
    delivery_sequence: int
    pickup_status: str
    delivery_status: str
    estimated_pickup_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    actual_pickup_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None

    @classmethod
    def from_domain(cls, item: BatchOrder) -> "BatchOrderModel":
        return cls(
            order_id=item.order_id,
            pickup_sequence=item.pickup_sequence,
            delivery_sequence=item.delivery_sequence,
            pickup_status=item.pickup_status.value,
            delivery_status=item.delivery_status.value,
            estimated_pickup_time=item.estimated_pickup_time,
            estimated_delivery_time=item.estimated_delivery_time,
            actual_pickup_time=item.actual_pickup_time,
            actual_delivery_time=item.actual_delivery_time,
        )


class BatchResponse(BaseModel):
    batch: BatchModel
    orders: List[BatchOrderModel]
    route: Optional[dict] = None


class BatchOperationResponse(BaseModel):
    batch: BatchModel
    message: str
    metadata: dict = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, result: BatchOperationResult) -> "BatchOperationResponse":
        return cls(batch=BatchModel.from_domain(result.batch), message=result.message, metadata=result.metadata)


class SuggestedBatchModel(BaseModel):
    order_ids: List[str]
    vendor_ids: List[str]
