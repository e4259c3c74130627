"""Multi-order batch formation and batch lifecycle."""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime
from typing import Callable, Optional, Sequence

from sklearn.cluster import KMeans

from ..config import settings
from ..errors import BatchStateError, BatchValidationError, NotFoundError
from ..models.batching import (
    BatchCreationResult,
    BatchOperationResult,
    BatchOrder,
    BatchStatus,
    DeliveryBatch,
    StopStatus,
)
from ..models.domain import Driver, GeoPoint, Order, OrderStatus, utcnow
from ..models.routing import OptimizationCriteria
from ..persistence.store import DispatchStore
from .geospatial import centroid, distance_km, max_pairwise_km, project_to_km
from .outputs.route_formatter import optimized_route_to_json
from .routing.engine import RouteOptimizationEngine

logger = logging.getLogger(__name__)

BATCHES_TABLE = "order_batches"
BATCH_ORDERS_TABLE = "batch_orders"
ORDERS_TABLE = "orders"
DRIVERS_TABLE = "drivers"
ROUTES_TABLE = "optimized_routes"

OPEN_STATUSES = [BatchStatus.PLANNED.value, BatchStatus.ACTIVE.value, BatchStatus.PAUSED.value]


def batch_spread(orders: Sequence[Order]) -> tuple[float, float]:
    """(max pickup-to-pickup km, max delivery-to-delivery km) within a group of orders."""
    return (
        max_pairwise_km([order.pickup_location for order in orders]),
        max_pairwise_km([order.delivery_location for order in orders]),
    )


def is_compatible(
    orders: Sequence[Order],
    max_deviation_km: float,
    max_vendor_distance_km: float | None = None,
) -> bool:
    vendor_spread, delivery_spread = batch_spread(orders)
    vendor_limit = max_vendor_distance_km if max_vendor_distance_km is not None else settings.max_vendor_distance_km
    return vendor_spread <= vendor_limit and delivery_spread <= max_deviation_km


def form_batches(
    orders: Sequence[Order],
    driver_location: GeoPoint | None,
    max_orders: int | None = None,
    max_deviation_km: float | None = None,
    max_vendor_distance_km: float | None = None,
) -> list[list[Order]]:
    """Group orders into batches that respect size and spread limits.

    Seeds are taken nearest-pickup-first from the driver (oldest first when the
    driver position is unknown). Each seed then absorbs the compatible candidate
    that adds the least combined pickup and delivery spread, until the batch is
    full or nothing fits.
    """
    max_orders = max_orders or settings.max_orders_per_batch
    max_deviation_km = max_deviation_km or settings.max_deviation_km
    if max_orders < 1:
        raise ValueError("max_orders must be at least 1.")

    if driver_location is not None:
        pool = sorted(orders, key=lambda order: (distance_km(driver_location, order.pickup_location), order.id))
    else:
        pool = sorted(orders, key=lambda order: (order.created_at is None, order.created_at, order.id))

    batches: list[list[Order]] = []
    while pool:
        batch = [pool.pop(0)]
        while len(batch) < max_orders:
            best: Optional[tuple[float, Order]] = None
            for candidate in pool:
                grouped = [*batch, candidate]
                if not is_compatible(grouped, max_deviation_km, max_vendor_distance_km):
                    continue
                spread = sum(batch_spread(grouped))
                if best is None or spread < best[0]:
                    best = (spread, candidate)
            if best is None:
                break
            batch.append(best[1])
            pool.remove(best[1])
        batches.append(batch)
    return batches


def cluster_orders(orders: Sequence[Order], max_orders: int) -> list[list[Order]]:
    """Split orders into pickup-location clusters of roughly ``max_orders`` each with K-Means."""
    if len(orders) <= max_orders:
        return [list(orders)]
    pickups = [order.pickup_location for order in orders]
    coordinates = project_to_km(pickups, centroid(pickups))
    n_clusters = min(len(orders), math.ceil(len(orders) / max_orders))
    kmeans = KMeans(n_clusters=n_clusters, random_state=settings.random_seed, n_init="auto")
    labels = kmeans.fit_predict(coordinates)

    groups: dict[int, list[Order]] = {}
    for order, label in zip(orders, labels):
        groups.setdefault(int(label), []).append(order)
    return [groups[label] for label in sorted(groups)]


class MultiOrderBatchService:
    def __init__(
        self,
        store: DispatchStore,
        engine: RouteOptimizationEngine,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.engine = engine
        self.clock = clock

    # lookups

    def get_order(self, order_id: str) -> Order:
        record = self.store.get(ORDERS_TABLE, order_id)
        if record is None:
            raise NotFoundError(f"Order '{order_id}' not found.")
        return Order.from_record(record)

    def get_driver(self, driver_id: str) -> Driver:
        record = self.store.get(DRIVERS_TABLE, driver_id)
        if record is None:
            raise NotFoundError(f"Driver '{driver_id}' not found.")
        return Driver.from_record(record)

    def get_batch(self, batch_id: str) -> DeliveryBatch:
        record = self.store.get(BATCHES_TABLE, batch_id)
        if record is None:
            raise NotFoundError(f"Batch '{batch_id}' not found.")
        return DeliveryBatch.from_record(record)

    def get_batch_orders(self, batch_id: str) -> list[BatchOrder]:
        rows = self.store.select(BATCH_ORDERS_TABLE, batch_id=batch_id)
        return sorted((BatchOrder.from_record(row) for row in rows), key=lambda item: item.pickup_sequence)

    def get_active_batch_for_driver(self, driver_id: str) -> Optional[DeliveryBatch]:
        rows = self.store.select(BATCHES_TABLE, driver_id=driver_id, status=OPEN_STATUSES)
        if not rows:
            return None
        batches = sorted((DeliveryBatch.from_record(row) for row in rows), key=lambda b: b.created_at, reverse=True)
        return batches[0]

    # creation

    def validate_batch(
        self,
        driver: Driver,
        orders: Sequence[Order],
        max_orders: int,
        max_deviation_km: float,
    ) -> None:
        if not orders:
            raise BatchValidationError("Order list cannot be empty.")
        if len(orders) > max_orders:
            raise BatchValidationError(f"Too many orders: {len(orders)} exceeds the batch limit of {max_orders}.")
        if not driver.is_active:
            raise BatchValidationError(f"Driver '{driver.id}' is not active.")
        if self.get_active_batch_for_driver(driver.id) is not None:
            raise BatchValidationError(f"Driver '{driver.id}' already has an open batch.")
        for order in orders:
            if not order.is_ready:
                raise BatchValidationError(f"Order '{order.id}' is not ready for pickup (status {order.status.value}).")
            if not order.is_unassigned:
                raise BatchValidationError(f"Order '{order.id}' is already assigned to a driver.")
        vendor_spread, delivery_spread = batch_spread(orders)
        if vendor_spread > settings.max_vendor_distance_km:
            raise BatchValidationError(
                f"Vendors are {vendor_spread:.1f}km apart (limit {settings.max_vendor_distance_km:.1f}km)."
            )
        if delivery_spread > max_deviation_km:
            raise BatchValidationError(
                f"Delivery locations are {delivery_spread:.1f}km apart (limit {max_deviation_km:.1f}km)."
            )
        if driver.current_location is None:
            raise BatchValidationError(f"Location of driver '{driver.id}' is unknown.")

    def create_optimized_batch(
        self,
        driver_id: str,
        order_ids: Sequence[str],
        max_orders: int | None = None,
        max_deviation_km: float | None = None,
        criteria: OptimizationCriteria | None = None,
        algorithm: str | None = None,
    ) -> BatchCreationResult:
        max_orders = max_orders or settings.max_orders_per_batch
        max_deviation_km = max_deviation_km or settings.max_deviation_km
        if len(set(order_ids)) != len(order_ids):
            raise BatchValidationError("Order list contains duplicate ids.")

        driver = self.get_driver(driver_id)
        orders = [self.get_order(order_id) for order_id in order_ids]
        self.validate_batch(driver, orders, max_orders, max_deviation_km)

        now = self.clock()
        batch_id = f"batch_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"
        result = self.engine.optimize(
            orders,
            driver.current_location,
            criteria=criteria,
            algorithm=algorithm,
            batch_id=batch_id,
            departure_time=now,
        )
        route = result.optimized_route

        batch = DeliveryBatch(
            id=batch_id,
            batch_number=self._next_batch_number(now),
            driver_id=driver.id,
            status=BatchStatus.PLANNED,
            max_orders=max_orders,
            max_deviation_km=max_deviation_km,
            total_distance_km=route.total_distance_km,
            estimated_duration_min=route.duration_in_traffic_min,
            optimization_score=route.optimization_score,
            route_id=route.id,
            created_at=now,
            metadata={"algorithm": result.algorithm.value, "order_ids": list(order_ids)},
        )
        self.store.insert(BATCHES_TABLE, batch.to_record())
        self.store.upsert(ROUTES_TABLE, {"id": route.id, "batch_id": batch.id, "route": optimized_route_to_json(route)})

        batch_orders = []
        for order in orders:
            pickup = next(wp for wp in route.waypoints_for_order(order.id) if wp.is_pickup)
            delivery = next(wp for wp in route.waypoints_for_order(order.id) if wp.is_delivery)
            batch_order = BatchOrder(
                batch_id=batch.id,
                order_id=order.id,
                pickup_sequence=pickup.sequence,
                delivery_sequence=delivery.sequence,
                estimated_pickup_time=pickup.estimated_arrival_time,
                estimated_delivery_time=delivery.estimated_arrival_time,
            )
            self.store.insert(BATCH_ORDERS_TABLE, batch_order.to_record())
            self.store.update(
                ORDERS_TABLE,
                order.id,
                {"status": OrderStatus.ASSIGNED.value, "assigned_driver_id": driver.id},
            )
            batch_orders.append(batch_order)

        logger.info(
            f"Created batch {batch.batch_number} ({batch.id}) for driver {driver.id} with {len(orders)} orders, "
            f"score {batch.optimization_score:.1f}"
        )
        return BatchCreationResult(batch=batch, batch_orders=batch_orders, route=route)

    def suggest_batches(
        self,
        driver_id: str,
        max_orders: int | None = None,
        max_deviation_km: float | None = None,
    ) -> list[list[Order]]:
        """Candidate batches from all ready, unassigned orders around the driver."""
        driver = self.get_driver(driver_id)
        rows = self.store.select(ORDERS_TABLE, status=OrderStatus.READY.value)
        orders = [order for order in (Order.from_record(row) for row in rows) if order.is_unassigned]
        max_orders = max_orders or settings.max_orders_per_batch
        if len(orders) < settings.batch_cluster_min_orders:
            return form_batches(orders, driver.current_location, max_orders, max_deviation_km)

        batches: list[list[Order]] = []
        for group in cluster_orders(orders, max_orders):
            batches.extend(form_batches(group, driver.current_location, max_orders, max_deviation_km))
        logger.debug(f"Suggested {len(batches)} batches from {len(orders)} ready orders")
        if driver.current_location is not None:
            batches.sort(key=lambda batch: min(distance_km(driver.current_location, o.pickup_location) for o in batch))
        return batches

    def _next_batch_number(self, now: datetime) -> str:
        prefix = f"B{now.strftime('%Y%m%d')}-"
        today = [row for row in self.store.select(BATCHES_TABLE) if str(row.get("batch_number", "")).startswith(prefix)]
        return f"{prefix}{len(today) + 1:04d}"

    # lifecycle

    def _transition(self, batch_id: str, target: BatchStatus, **changes) -> DeliveryBatch:
        batch = self.get_batch(batch_id)
        if not batch.status.can_transition_to(target):
            raise BatchStateError(
                f"Cannot change batch {batch_id} from {batch.status.value} to {target.value}."
            )
        record = self.store.update(BATCHES_TABLE, batch_id, {"status": target.value, **changes})
        logger.info(f"Batch {batch_id}: {batch.status.value} -> {target.value}")
        return DeliveryBatch.from_record(record)

    def start_batch(self, batch_id: str) -> BatchOperationResult:
        batch = self._transition(batch_id, BatchStatus.ACTIVE, started_at=self.clock().isoformat())
        return BatchOperationResult(batch=batch, message="Batch started")

    def pause_batch(self, batch_id: str) -> BatchOperationResult:
        batch = self._transition(batch_id, BatchStatus.PAUSED, paused_at=self.clock().isoformat())
        return BatchOperationResult(batch=batch, message="Batch paused")

    def resume_batch(self, batch_id: str) -> BatchOperationResult:
        batch = self._transition(batch_id, BatchStatus.ACTIVE, paused_at=None)
        return BatchOperationResult(batch=batch, message="Batch resumed")

    def complete_batch(self, batch_id: str) -> BatchOperationResult:
        pending = [item.order_id for item in self.get_batch_orders(batch_id) if item.delivery_status != StopStatus.COMPLETED]
        if pending:
            raise BatchStateError(f"Batch {batch_id} still has undelivered orders: {', '.join(pending)}.")
        batch = self._transition(batch_id, BatchStatus.COMPLETED, completed_at=self.clock().isoformat())
        return BatchOperationResult(batch=batch, message="Batch completed")

    def cancel_batch(self, batch_id: str, reason: str) -> BatchOperationResult:
        if not reason or not reason.strip():
            raise ValueError("A cancellation reason is required.")
        batch = self._transition(
            batch_id,
            BatchStatus.CANCELLED,
            cancelled_at=self.clock().isoformat(),
            cancellation_reason=reason.strip(),
        )
        released = []
        for item in self.get_batch_orders(batch_id):
            if item.delivery_status == StopStatus.COMPLETED:
                continue
            self.store.update(
                ORDERS_TABLE,
                item.order_id,
                {"status": OrderStatus.READY.value, "assigned_driver_id": None},
            )
            released.append(item.order_id)
        return BatchOperationResult(batch=batch, message="Batch cancelled", metadata={"released_orders": released})

    def _batch_order(self, batch_id: str, order_id: str) -> BatchOrder:
        record = self.store.get(BATCH_ORDERS_TABLE, f"{batch_id}:{order_id}")
        if record is None:
            raise NotFoundError(f"Order '{order_id}' is not part of batch '{batch_id}'.")
        return BatchOrder.from_record(record)

    def _require_in_progress(self, batch: DeliveryBatch) -> None:
        if batch.status != BatchStatus.ACTIVE:
            raise BatchStateError(f"Batch {batch.id} is {batch.status.value}; stop updates need an active batch.")

    def update_pickup_status(self, batch_id: str, order_id: str, status: StopStatus) -> BatchOperationResult:
        batch = self.get_batch(batch_id)
        self._require_in_progress(batch)
        item = self._batch_order(batch_id, order_id)
        changes: dict = {"pickup_status": status.value}
        if status == StopStatus.COMPLETED:
            changes["actual_pickup_time"] = self.clock().isoformat()
            self.store.update(ORDERS_TABLE, order_id, {"status": OrderStatus.PICKED_UP.value})
        record = self.store.update(BATCH_ORDERS_TABLE, item.key, changes)
        return BatchOperationResult(batch=batch, message=f"Pickup {status.value}", metadata={"batch_order": record})

    def update_delivery_status(self, batch_id: str, order_id: str, status: StopStatus) -> BatchOperationResult:
        batch = self.get_batch(batch_id)
        self._require_in_progress(batch)
        item = self._batch_order(batch_id, order_id)
        if status == StopStatus.COMPLETED and item.pickup_status != StopStatus.COMPLETED:
            raise BatchStateError(f"Order '{order_id}' cannot be delivered before it is picked up.")
        changes: dict = {"delivery_status": status.value}
        if status == StopStatus.COMPLETED:
            changes["actual_delivery_time"] = self.clock().isoformat()
            self.store.update(ORDERS_TABLE, order_id, {"status": OrderStatus.DELIVERED.value})
        elif status == StopStatus.IN_PROGRESS:
            self.store.update(ORDERS_TABLE, order_id, {"status": OrderStatus.IN_TRANSIT.value})
        record = self.store.update(BATCH_ORDERS_TABLE, item.key, changes)

        auto_completed = False
        if status == StopStatus.COMPLETED:
            remaining = [bo for bo in self.get_batch_orders(batch_id) if bo.delivery_status != StopStatus.COMPLETED]
            if not remaining:
                batch = self.complete_batch(batch_id).batch
                auto_completed = True
        return BatchOperationResult(
            batch=batch,
            message=f"Delivery {status.value}",
            metadata={"batch_order": record, "auto_completed": auto_completed},
        )
