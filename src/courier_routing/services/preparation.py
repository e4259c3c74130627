"""Vendor preparation-time prediction."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

import numpy as np

from ..config import settings
from ..models.domain import Order, OrderStatus, parse_datetime, utcnow
from ..models.routing import PreparationWindow
from ..persistence.store import DispatchStore

logger = logging.getLogger(__name__)

QUEUE_DELAY_MINUTES = 5.0
OVERLAP_RATIO = 0.3
MIN_HISTORY_SAMPLES = 3
STATS_TTL = timedelta(minutes=15)
KITCHEN_STATUS_TTL = timedelta(minutes=30)
FALLBACK_BASE_MINUTES = 20.0
FALLBACK_PER_ITEM_MINUTES = 5.0
FALLBACK_QUEUE_MINUTES = 10.0
FALLBACK_CONFIDENCE = 0.6

COLLECTED_STATUSES = frozenset(
    {OrderStatus.READY, OrderStatus.ASSIGNED, OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED}
)
# a recorded delay no longer applies once the order leaves the kitchen
DELAY_SETTLED_STATUSES = COLLECTED_STATUSES | {OrderStatus.CANCELLED}


@dataclass(slots=True)
class VendorPreparationStats:
    vendor_id: str
    avg_preparation_min: float
    variance_min: float
    complexity_factor: float
    peak_multiplier: float
    efficiency: float
    orders_analyzed: int
    computed_at: datetime

    @classmethod
    def defaults(cls, vendor_id: str, at: datetime) -> "VendorPreparationStats":
        return cls(
            vendor_id=vendor_id,
            avg_preparation_min=settings.default_preparation_minutes,
            variance_min=settings.default_preparation_variance_minutes,
            complexity_factor=settings.default_complexity_factor,
            peak_multiplier=settings.peak_multiplier,
            efficiency=settings.default_kitchen_efficiency,
            orders_analyzed=0,
            computed_at=at,
        )


def prediction_confidence(stats: VendorPreparationStats, item_count: int) -> float:
    confidence = 0.8
    if stats.orders_analyzed > 50:
        confidence += 0.1
    elif stats.orders_analyzed < 10:
        confidence -= 0.2
    if stats.variance_min < 30:
        confidence += 0.1
    elif stats.variance_min > 60:
        confidence -= 0.1
    if item_count > 5:
        confidence -= 0.05
    return max(0.0, min(1.0, confidence))


class PreparationTimeService:
    def __init__(self, store: DispatchStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock
        self._stats_cache: dict[str, VendorPreparationStats] = {}
        self._delays: dict[str, float] = {}
        self._lock = threading.Lock()

    def record_delay(self, order_id: str, minutes: float) -> None:
        """Push an order's predicted completion later by ``minutes``."""
        with self._lock:
            self._delays[order_id] = self._delays.get(order_id, 0.0) + minutes

    def clear_delay(self, order_id: str) -> None:
        with self._lock:
            self._delays.pop(order_id, None)

    def update_kitchen_status(
        self, vendor_id: str, load: float, staff_count: int | None = None, at: datetime | None = None
    ) -> Optional[float]:
        """Store the vendor's kitchen load (0-1) and return the previous load if known."""
        if not 0.0 <= load <= 1.0:
            raise ValueError(f"Kitchen load must be between 0 and 1, got {load}.")
        previous = self.kitchen_load(vendor_id)
        self.store.upsert(
            "kitchen_status",
            {
                "id": vendor_id,
                "vendor_id": vendor_id,
                "kitchen_load": load,
                "staff_count": staff_count,
                "updated_at": (at or self.clock()).isoformat(),
            },
        )
        return previous

    def kitchen_load(self, vendor_id: str, now: datetime | None = None) -> Optional[float]:
        record = self.store.get("kitchen_status", vendor_id)
        if not record or record.get("kitchen_load") is None:
            return None
        updated_at = parse_datetime(record.get("updated_at"))
        if updated_at is not None and (now or self.clock()) - updated_at > KITCHEN_STATUS_TTL:
            return None
        return float(record["kitchen_load"])

    def vendor_stats(self, vendor_id: str, now: datetime | None = None) -> VendorPreparationStats:
        now = now or self.clock()
        with self._lock:
            cached = self._stats_cache.get(vendor_id)
        if cached is not None and now - cached.computed_at < STATS_TTL:
            return cached

        stats = self._stats_from_analytics(vendor_id, now) or self._stats_from_history(vendor_id, now)
        if stats is None:
            stats = VendorPreparationStats.defaults(vendor_id, now)
        with self._lock:
            self._stats_cache[vendor_id] = stats
        return stats

    def _stats_from_analytics(self, vendor_id: str, now: datetime) -> Optional[VendorPreparationStats]:
        rows = self.store.select("order_preparation_analytics", vendor_id=vendor_id)
        if not rows:
            return None
        row = rows[0]
        return VendorPreparationStats(
            vendor_id=vendor_id,
            avg_preparation_min=float(row.get("avg_preparation_minutes") or settings.default_preparation_minutes),
            variance_min=float(row.get("variance_minutes") or settings.default_preparation_variance_minutes),
            complexity_factor=float(row.get("complexity_factor") or settings.default_complexity_factor),
            peak_multiplier=float(row.get("peak_multiplier") or settings.peak_multiplier),
            efficiency=float(row.get("kitchen_efficiency") or settings.default_kitchen_efficiency),
            orders_analyzed=int(row.get("orders_analyzed") or 0),
            computed_at=now,
        )

    def _stats_from_history(self, vendor_id: str, now: datetime) -> Optional[VendorPreparationStats]:
        durations = []
        for row in self.store.select("orders", vendor_id=vendor_id):
            created_at = parse_datetime(row.get("created_at"))
            ready_at = parse_datetime(row.get("ready_at"))
            if created_at is None or ready_at is None or ready_at < created_at:
                continue
            durations.append((ready_at - created_at).total_seconds() / 60.0)
        if len(durations) < MIN_HISTORY_SAMPLES:
            return None
        samples = np.asarray(durations, dtype=float)
        stats = VendorPreparationStats.defaults(vendor_id, now)
        stats.avg_preparation_min = float(samples.mean())
        stats.variance_min = float(samples.std())
        stats.orders_analyzed = len(durations)
        return stats

    def estimate_duration(
        self, stats: VendorPreparationStats, item_count: int, at: datetime, kitchen_load: float | None = None
    ) -> float:
        duration = stats.avg_preparation_min * (1 + (max(1, item_count) - 1) * stats.complexity_factor)
        if at.hour in settings.peak_hours:
            duration *= stats.peak_multiplier
        if kitchen_load is not None:
            duration *= 1 + 0.5 * max(0.0, kitchen_load - 0.5)
        return max(settings.min_preparation_minutes, duration)

    def predict_preparation_windows(
        self, orders: Sequence[Order], now: datetime | None = None
    ) -> dict[str, PreparationWindow]:
        """Predict when each order's food will be ready, vendor by vendor."""
        now = now or self.clock()
        by_vendor: dict[str, list[Order]] = {}
        for order in orders:
            by_vendor.setdefault(order.vendor_id, []).append(order)

        windows: dict[str, PreparationWindow] = {}
        for vendor_id, vendor_orders in by_vendor.items():
            try:
                stats = self.vendor_stats(vendor_id, now)
                load = self.kitchen_load(vendor_id, now)
            except Exception as e:
                logger.warning(f"Preparation stats unavailable for vendor {vendor_id}: {e}. Using fallback estimates.")
                windows.update(self.fallback_windows(vendor_orders, now))
                continue
            windows.update(self._predict_vendor(vendor_orders, stats, load, now))

        finished = {order.id for order in orders if order.status in DELAY_SETTLED_STATUSES}
        with self._lock:
            for order_id in finished:
                self._delays.pop(order_id, None)
            delays = dict(self._delays)
        for order_id, minutes in delays.items():
            if order_id in windows and not windows[order_id].metadata.get("already_ready"):
                windows[order_id] = windows[order_id].delayed_by(minutes)
        return windows

    def _predict_vendor(
        self,
        orders: Sequence[Order],
        stats: VendorPreparationStats,
        kitchen_load: float | None,
        now: datetime,
    ) -> dict[str, PreparationWindow]:
        windows: dict[str, PreparationWindow] = {}
        queue = sorted(orders, key=lambda order: (order.created_at or now, order.id))
        previous: Optional[PreparationWindow] = None
        position = 0
        for order in queue:
            if order.status in COLLECTED_STATUSES:
                ready_at = order.ready_at or now
                windows[order.id] = PreparationWindow(
                    order_id=order.id,
                    vendor_id=order.vendor_id,
                    estimated_start_time=order.created_at or ready_at,
                    estimated_completion_time=ready_at,
                    estimated_duration_min=0.0,
                    confidence=1.0,
                    metadata={"already_ready": True},
                )
                continue

            duration = self.estimate_duration(stats, order.item_count, now, kitchen_load)
            start = order.created_at or now
            if previous is not None:
                overlap_start = previous.estimated_start_time + timedelta(
                    minutes=previous.estimated_duration_min * (1 - OVERLAP_RATIO)
                )
                start = max(start, overlap_start)
            start += timedelta(minutes=QUEUE_DELAY_MINUTES * (2 - stats.efficiency) * position)
            completion = start + timedelta(minutes=duration)
            confidence = prediction_confidence(stats, order.item_count)
            metadata = {
                "queue_position": position,
                "orders_analyzed": stats.orders_analyzed,
                "kitchen_load": kitchen_load,
            }
            if completion < now:
                # overdue: expect it any minute but trust the estimate less
                completion = now
                confidence *= 0.8
                metadata["overdue"] = True
            window = PreparationWindow(
                order_id=order.id,
                vendor_id=order.vendor_id,
                estimated_start_time=start,
                estimated_completion_time=completion,
                estimated_duration_min=duration,
                confidence=confidence,
                metadata=metadata,
            )
            windows[order.id] = window
            previous = window
            position += 1
        return windows

    def fallback_windows(self, orders: Sequence[Order], now: datetime) -> dict[str, PreparationWindow]:
        windows = {}
        for position, order in enumerate(orders):
            duration = FALLBACK_BASE_MINUTES + FALLBACK_PER_ITEM_MINUTES * max(1, order.item_count)
            start = now + timedelta(minutes=FALLBACK_QUEUE_MINUTES * position)
            windows[order.id] = PreparationWindow(
                order_id=order.id,
                vendor_id=order.vendor_id,
                estimated_start_time=start,
                estimated_completion_time=start + timedelta(minutes=duration),
                estimated_duration_min=duration,
                confidence=FALLBACK_CONFIDENCE,
                metadata={"fallback": True},
            )
        return windows
