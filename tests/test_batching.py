from datetime import datetime, timezone

import pytest

from src.courier_routing.errors import BatchStateError, BatchValidationError, NotFoundError
from src.courier_routing.models.batching import BatchStatus, StopStatus
from src.courier_routing.models.domain import Driver, GeoPoint, Order, OrderStatus
from src.courier_routing.persistence.store import InMemoryStore
from src.courier_routing.services.batching import (
    BATCHES_TABLE,
    ORDERS_TABLE,
    ROUTES_TABLE,
    MultiOrderBatchService,
    cluster_orders,
    form_batches,
    is_compatible,
)
from src.courier_routing.services.routing.engine import RouteOptimizationEngine
from src.courier_routing.services.routing.matrix import haversine_matrix

NOW = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)
DRIVER = GeoPoint(21.50, 39.20)


def _order(oid: str, pickup: tuple[float, float], delivery: tuple[float, float], **kwargs) -> Order:
    return Order(
        id=oid,
        vendor_id=kwargs.pop("vendor_id", f"V{oid}"),
        pickup_location=GeoPoint(*pickup),
        delivery_location=GeoPoint(*delivery),
        **kwargs,
    )


def _nearby_orders():
    return [
        _order("A", (21.501, 39.201), (21.520, 39.220)),
        _order("B", (21.502, 39.202), (21.522, 39.221)),
        _order("C", (21.503, 39.200), (21.521, 39.223)),
    ]


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.insert("drivers", Driver(id="D1", name="Driver One", current_location=DRIVER).to_record())
    for order in _nearby_orders():
        store.insert(ORDERS_TABLE, order.to_record())
    return store


@pytest.fixture
def service(store) -> MultiOrderBatchService:
    engine = RouteOptimizationEngine(matrix_builder=haversine_matrix, store=store, clock=lambda: NOW)
    return MultiOrderBatchService(store, engine, clock=lambda: NOW)


def _active_batch(service: MultiOrderBatchService, order_ids=("A", "B")):
    created = service.create_optimized_batch("D1", list(order_ids))
    service.start_batch(created.batch.id)
    return created


def test_form_batches_groups_compatible_orders():
    far = _order("F", (21.90, 39.60), (21.91, 39.61))
    batches = form_batches([*_nearby_orders(), far], DRIVER, max_orders=2, max_deviation_km=5.0)

    assert [len(batch) for batch in batches] == [2, 1, 1]
    assert batches[-1] == [far]
    assert sorted(order.id for batch in batches for order in batch) == ["A", "B", "C", "F"]


def test_is_compatible_checks_delivery_spread():
    a, b, _ = _nearby_orders()
    distant_delivery = _order("X", (21.501, 39.201), (21.70, 39.40))

    assert is_compatible([a, b], max_deviation_km=5.0)
    assert not is_compatible([a, distant_delivery], max_deviation_km=5.0)


def test_form_batches_rejects_invalid_size():
    with pytest.raises(ValueError):
        form_batches(_nearby_orders(), DRIVER, max_orders=-1)


def test_cluster_orders_separates_distant_groups():
    west = [_order(f"W{i}", (21.50 + i * 0.001, 39.10), (21.51, 39.10)) for i in range(3)]
    east = [_order(f"E{i}", (21.50 + i * 0.001, 39.40), (21.51, 39.40)) for i in range(3)]

    clusters = cluster_orders([*west, *east], max_orders=3)

    assert len(clusters) == 2
    assert sorted(sorted(order.id for order in cluster) for cluster in clusters) == [
        ["E0", "E1", "E2"],
        ["W0", "W1", "W2"],
    ]
    assert cluster_orders(west, max_orders=3) == [west]


def test_create_optimized_batch_assigns_orders(service, store):
    created = service.create_optimized_batch("D1", ["A", "B"])
    batch = created.batch

    assert batch.status == BatchStatus.PLANNED
    assert batch.batch_number == "B20240506-0001"
    assert batch.route_id == created.route.id
    assert store.get(ROUTES_TABLE, created.route.id)["batch_id"] == batch.id
    assert {item.order_id for item in created.batch_orders} == {"A", "B"}
    for item in created.batch_orders:
        assert item.pickup_sequence < item.delivery_sequence
        order = store.get(ORDERS_TABLE, item.order_id)
        assert order["status"] == OrderStatus.ASSIGNED.value
        assert order["assigned_driver_id"] == "D1"
    assert service.get_active_batch_for_driver("D1").id == batch.id


@pytest.mark.parametrize(
    "order_ids, max_orders",
    [
        ([], None),
        (["A", "A"], None),
        (["A", "B", "C"], 2),
    ],
)
def test_create_optimized_batch_validation(service, order_ids, max_orders):
    with pytest.raises(BatchValidationError):
        service.create_optimized_batch("D1", order_ids, max_orders=max_orders)


def test_create_rejects_second_open_batch_and_unready_orders(service, store):
    service.create_optimized_batch("D1", ["A"])
    with pytest.raises(BatchValidationError):
        service.create_optimized_batch("D1", ["B"])

    store.insert("drivers", Driver(id="D2", current_location=DRIVER).to_record())
    store.update(ORDERS_TABLE, "C", {"status": OrderStatus.PREPARING.value})
    with pytest.raises(BatchValidationError):
        service.create_optimized_batch("D2", ["C"])
    with pytest.raises(BatchValidationError):
        service.create_optimized_batch("D2", ["A"])


def test_unknown_driver_or_order_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.create_optimized_batch("nobody", ["A"])
    with pytest.raises(NotFoundError):
        service.create_optimized_batch("D1", ["missing"])
    with pytest.raises(NotFoundError):
        service.get_batch("missing")


def test_lifecycle_transitions(service):
    created = service.create_optimized_batch("D1", ["A"])
    batch_id = created.batch.id

    with pytest.raises(BatchStateError):
        service.pause_batch(batch_id)
    assert service.start_batch(batch_id).batch.status == BatchStatus.ACTIVE
    assert service.pause_batch(batch_id).batch.status == BatchStatus.PAUSED
    resumed = service.resume_batch(batch_id).batch
    assert resumed.status == BatchStatus.ACTIVE
    assert resumed.paused_at is None
    assert resumed.started_at == NOW


def test_stop_updates_require_active_batch_and_pickup_first(service):
    created = service.create_optimized_batch("D1", ["A"])
    batch_id = created.batch.id

    with pytest.raises(BatchStateError):
        service.update_pickup_status(batch_id, "A", StopStatus.COMPLETED)
    service.start_batch(batch_id)
    with pytest.raises(BatchStateError):
        service.update_delivery_status(batch_id, "A", StopStatus.COMPLETED)
    with pytest.raises(NotFoundError):
        service.update_pickup_status(batch_id, "B", StopStatus.COMPLETED)


def test_delivering_last_order_completes_batch(service, store):
    created = _active_batch(service)
    batch_id = created.batch.id

    with pytest.raises(BatchStateError):
        service.complete_batch(batch_id)

    service.update_pickup_status(batch_id, "A", StopStatus.COMPLETED)
    assert store.get(ORDERS_TABLE, "A")["status"] == OrderStatus.PICKED_UP.value
    first = service.update_delivery_status(batch_id, "A", StopStatus.COMPLETED)
    assert first.metadata["auto_completed"] is False
    assert store.get(ORDERS_TABLE, "A")["status"] == OrderStatus.DELIVERED.value

    service.update_pickup_status(batch_id, "B", StopStatus.COMPLETED)
    service.update_delivery_status(batch_id, "B", StopStatus.IN_PROGRESS)
    assert store.get(ORDERS_TABLE, "B")["status"] == OrderStatus.IN_TRANSIT.value
    last = service.update_delivery_status(batch_id, "B", StopStatus.COMPLETED)

    assert last.metadata["auto_completed"] is True
    assert last.batch.status == BatchStatus.COMPLETED
    assert service.get_active_batch_for_driver("D1") is None


def test_cancel_releases_undelivered_orders(service, store):
    created = _active_batch(service)
    batch_id = created.batch.id
    service.update_pickup_status(batch_id, "A", StopStatus.COMPLETED)
    service.update_delivery_status(batch_id, "A", StopStatus.COMPLETED)

    with pytest.raises(ValueError):
        service.cancel_batch(batch_id, "  ")
    result = service.cancel_batch(batch_id, "vehicle breakdown")

    assert result.batch.status == BatchStatus.CANCELLED
    assert result.batch.cancellation_reason == "vehicle breakdown"
    assert result.metadata["released_orders"] == ["B"]
    assert store.get(ORDERS_TABLE, "B")["status"] == OrderStatus.READY.value
    assert store.get(ORDERS_TABLE, "B")["assigned_driver_id"] is None
    assert store.get(ORDERS_TABLE, "A")["status"] == OrderStatus.DELIVERED.value
    with pytest.raises(BatchStateError):
        service.start_batch(batch_id)


def test_suggest_batches_uses_ready_unassigned_orders(service):
    service.create_optimized_batch("D1", ["C"])

    suggestions = service.suggest_batches("D1")

    assert [[order.id for order in batch] for batch in suggestions] == [["A", "B"]]


def test_suggest_batches_clusters_large_pools(service, store, monkeypatch):
    from src.courier_routing.config import settings

    monkeypatch.setattr(settings, "batch_cluster_min_orders", 4)
    for i in range(3):
        store.insert(ORDERS_TABLE, _order(f"E{i}", (21.50 + i * 0.001, 39.40), (21.51, 39.40)).to_record())

    suggestions = service.suggest_batches("D1")
    groups = [sorted(order.id for order in batch) for batch in suggestions]

    assert groups[0] == ["A", "B", "C"]
    assert ["E0", "E1", "E2"] in groups
    assert store.select(BATCHES_TABLE) == []
