from datetime import datetime, timedelta, timezone

import pytest

from src.courier_routing.models.domain import GeoPoint, Order, OrderStatus
from src.courier_routing.persistence.store import InMemoryStore
from src.courier_routing.services.preparation import PreparationTimeService, VendorPreparationStats

NOW = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)
PEAK = datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc)


def _order(oid: str, vendor_id: str = "V1", **kwargs) -> Order:
    return Order(
        id=oid,
        vendor_id=vendor_id,
        pickup_location=GeoPoint(21.50, 39.20),
        delivery_location=GeoPoint(21.52, 39.22),
        **kwargs,
    )


def _service(store=None) -> PreparationTimeService:
    return PreparationTimeService(store or InMemoryStore(), clock=lambda: NOW)


def test_vendor_stats_default_without_history():
    stats = _service().vendor_stats("V1")

    assert stats.avg_preparation_min == 25.0
    assert stats.orders_analyzed == 0


def test_vendor_stats_from_order_history():
    store = InMemoryStore()
    for index, minutes in enumerate([10, 20, 30]):
        created = NOW - timedelta(hours=2)
        store.insert(
            "orders",
            _order(
                f"H{index}",
                status=OrderStatus.DELIVERED,
                created_at=created,
                ready_at=created + timedelta(minutes=minutes),
            ).to_record(),
        )

    stats = _service(store).vendor_stats("V1")

    assert stats.orders_analyzed == 3
    assert stats.avg_preparation_min == pytest.approx(20.0)


def test_vendor_stats_prefer_analytics_rows():
    store = InMemoryStore()
    store.insert("order_preparation_analytics", {"vendor_id": "V1", "avg_preparation_minutes": 12, "orders_analyzed": 80})

    stats = _service(store).vendor_stats("V1")

    assert stats.avg_preparation_min == 12.0
    assert stats.orders_analyzed == 80


def test_estimate_duration_applies_peak_and_minimum():
    service = _service()
    stats = VendorPreparationStats.defaults("V1", NOW)

    assert service.estimate_duration(stats, 1, NOW) == pytest.approx(25.0)
    assert service.estimate_duration(stats, 1, PEAK) == pytest.approx(30.0)
    assert service.estimate_duration(stats, 3, NOW) == pytest.approx(30.0)
    assert service.estimate_duration(stats, 1, NOW, kitchen_load=1.0) == pytest.approx(31.25)

    stats.avg_preparation_min = 2.0
    assert service.estimate_duration(stats, 1, NOW) == 10.0


def test_ready_orders_are_already_ready():
    windows = _service().predict_preparation_windows([_order("A", status=OrderStatus.READY)])

    window = windows["A"]
    assert window.metadata["already_ready"] is True
    assert window.estimated_completion_time == NOW
    assert window.confidence == 1.0


def test_queued_orders_complete_later():
    orders = [
        _order("A", status=OrderStatus.PREPARING, created_at=NOW),
        _order("B", status=OrderStatus.PREPARING, created_at=NOW + timedelta(minutes=1)),
    ]
    windows = _service().predict_preparation_windows(orders)

    assert windows["A"].estimated_completion_time == NOW + timedelta(minutes=25)
    assert windows["B"].estimated_completion_time > windows["A"].estimated_completion_time
    assert windows["B"].metadata["queue_position"] == 1


def test_recorded_delay_pushes_completion():
    service = _service()
    order = _order("A", status=OrderStatus.PREPARING, created_at=NOW)
    before = service.predict_preparation_windows([order])["A"].estimated_completion_time

    service.record_delay("A", 20)
    after = service.predict_preparation_windows([order])["A"].estimated_completion_time

    assert after - before == timedelta(minutes=20)


@pytest.mark.parametrize("settled", [OrderStatus.READY, OrderStatus.CANCELLED])
def test_recorded_delay_dropped_once_order_leaves_kitchen(settled):
    service = _service()
    preparing = _order("A", status=OrderStatus.PREPARING, created_at=NOW)
    before = service.predict_preparation_windows([preparing])["A"].estimated_completion_time

    service.record_delay("A", 20)
    service.predict_preparation_windows([_order("A", status=settled, created_at=NOW, ready_at=NOW)])
    after = service.predict_preparation_windows([preparing])["A"].estimated_completion_time

    assert after == before
    assert service._delays == {}


def test_clear_delay_forgets_order():
    service = _service()
    service.record_delay("A", 20)
    service.record_delay("B", 5)

    service.clear_delay("A")
    service.clear_delay("missing")

    assert service._delays == {"B": 5}


def test_kitchen_status_returns_previous_load_and_validates():
    service = _service()

    assert service.update_kitchen_status("V1", 0.3) is None
    assert service.update_kitchen_status("V1", 0.9, staff_count=4) == pytest.approx(0.3)
    assert service.kitchen_load("V1") == pytest.approx(0.9)
    assert service.kitchen_load("V1", now=NOW + timedelta(hours=1)) is None

    with pytest.raises(ValueError):
        service.update_kitchen_status("V1", 1.5)


def test_fallback_windows_when_stats_lookup_fails(monkeypatch):
    service = _service()

    def broken(vendor_id, now=None):
        raise RuntimeError("analytics unavailable")

    monkeypatch.setattr(service, "vendor_stats", broken)
    windows = service.predict_preparation_windows([_order("A", status=OrderStatus.PREPARING, item_count=2)])

    assert windows["A"].metadata["fallback"] is True
    assert windows["A"].estimated_duration_min == 30.0
