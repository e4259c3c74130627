import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.courier_routing.models.domain import GeoPoint, Order
from src.courier_routing.persistence.filesystem import FileStorage
from src.courier_routing.persistence.store import InMemoryStore
from src.courier_routing.services.routing.engine import RouteOptimizationEngine
from src.courier_routing.services.routing.matrix import haversine_matrix


def test_file_storage_creates_run_directory(tmp_path: Path) -> None:
    storage = FileStorage(root=tmp_path)
    run_dir = storage.make_run_directory(prefix="route_batch_1")

    assert run_dir.exists()
    assert run_dir.is_dir()
    assert run_dir.parent == tmp_path / "outputs"
    assert run_dir.name.startswith("route_batch_1_")


def test_file_storage_writes_json_and_csv(tmp_path: Path) -> None:
    storage = FileStorage(root=tmp_path)
    run_dir = storage.make_run_directory()

    summary_path = run_dir / "summary.json"
    waypoints_path = run_dir / "waypoints.csv"

    storage.write_json(summary_path, {"hello": "world"})
    storage.write_csv(waypoints_path, "a,b\n1,2\n")

    assert summary_path.read_text(encoding="utf-8") == '{\n  "hello": "world"\n}'
    assert waypoints_path.read_text(encoding="utf-8") == "a,b\n1,2\n"


def test_file_storage_serializes_datetimes(tmp_path: Path) -> None:
    storage = FileStorage(root=tmp_path)
    path = tmp_path / "stamp.json"
    storage.write_json(path, {"at": datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)}, indent=0)

    assert "2024-05-06 15:00:00+00:00" in path.read_text(encoding="utf-8")


def test_file_storage_writes_run_layout(tmp_path: Path) -> None:
    orders = [
        Order(id="A", vendor_id="VA", pickup_location=GeoPoint(21.51, 39.20), delivery_location=GeoPoint(21.52, 39.20)),
        Order(id="B", vendor_id="VB", pickup_location=GeoPoint(21.60, 39.20), delivery_location=GeoPoint(21.61, 39.20)),
    ]
    engine = RouteOptimizationEngine(matrix_builder=haversine_matrix)
    result = engine.optimize(orders, GeoPoint(21.50, 39.20), batch_id="batch_1")

    run_dir = FileStorage(root=tmp_path).write_run(result)

    assert run_dir.parent == tmp_path.resolve() / "outputs"
    assert run_dir.name.startswith("route_batch_1_")
    summary = json.loads((run_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["batch_id"] == "batch_1"
    assert summary["route"]["id"] == result.optimized_route.id
    lines = (run_dir / "waypoints.csv").read_text(encoding="utf-8").strip().splitlines()
    assert lines[0].startswith("route_id,batch_id,sequence,waypoint_id")
    assert len(lines) == 5


def test_in_memory_store_insert_rejects_duplicates() -> None:
    store = InMemoryStore()
    store.insert("orders", {"id": "O1", "status": "ready"})

    with pytest.raises(ValueError):
        store.insert("orders", {"id": "O1", "status": "ready"})


def test_in_memory_store_returns_copies() -> None:
    store = InMemoryStore()
    row = store.insert("orders", {"id": "O1", "metadata": {"a": 1}})
    row["metadata"]["a"] = 2

    assert store.get("orders", "O1")["metadata"] == {"a": 1}


def test_in_memory_store_upsert_update_and_delete() -> None:
    store = InMemoryStore()
    store.upsert("drivers", {"id": "D1", "name": "First"})
    store.upsert("drivers", {"id": "D1", "is_active": False})

    assert store.get("drivers", "D1") == {"id": "D1", "name": "First", "is_active": False}
    assert store.update("drivers", "D1", {"name": "Renamed"})["name"] == "Renamed"
    assert store.update("drivers", "missing", {"name": "x"}) is None
    assert store.delete("drivers", "D1") is True
    assert store.delete("drivers", "D1") is False
    assert store.get("drivers", "D1") is None


def test_in_memory_store_select_filters_with_lists() -> None:
    store = InMemoryStore()
    store.insert("order_batches", {"id": "B1", "status": "planned", "driver_id": "D1"})
    store.insert("order_batches", {"id": "B2", "status": "completed", "driver_id": "D1"})
    store.insert("order_batches", {"id": "B3", "status": "active", "driver_id": "D2"})

    open_for_d1 = store.select("order_batches", driver_id="D1", status=["planned", "active", "paused"])

    assert [row["id"] for row in open_for_d1] == ["B1"]


def test_in_memory_store_select_between_parses_timestamps() -> None:
    store = InMemoryStore()
    now = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)
    store.insert("metrics", {"id": "old", "created_at": (now - timedelta(days=2)).isoformat()})
    store.insert("metrics", {"id": "new", "created_at": (now - timedelta(minutes=5)).isoformat()})
    store.insert("metrics", {"id": "undated"})

    rows = store.select_between("metrics", "created_at", now - timedelta(hours=1), now)

    assert [row["id"] for row in rows] == ["new"]
