from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from src.courier_routing.main import create_app


def _point(lat: float, lon: float) -> dict:
    return {"latitude": lat, "longitude": lon}


def _order(oid: str, pickup: tuple[float, float], delivery: tuple[float, float]) -> dict:
    return {
        "id": oid,
        "vendor_id": f"V{oid}",
        "pickup_location": _point(*pickup),
        "delivery_location": _point(*delivery),
    }


ORDERS = [
    _order("A", (21.51, 39.20), (21.52, 39.20)),
    _order("B", (21.60, 39.20), (21.61, 39.20)),
]
NEARBY_ORDERS = [
    _order("A", (21.501, 39.201), (21.520, 39.220)),
    _order("B", (21.502, 39.202), (21.522, 39.221)),
]
DRIVER = _point(21.50, 39.20)


@pytest.fixture
def api_client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    from src.courier_routing.api import dependencies
    from src.courier_routing.api.routes import routes
    from src.courier_routing.config import settings
    from src.courier_routing.db.supabase import get_supabase_client
    from src.courier_routing.persistence.filesystem import FileStorage

    # straight-line matrices and the in-memory store
    monkeypatch.setattr(settings, "osrm_base_url", None)
    monkeypatch.setattr(settings, "supabase_url", None)
    monkeypatch.setattr(settings, "supabase_key", None)
    monkeypatch.setattr(routes, "FileStorage", lambda: FileStorage(root=tmp_path))
    get_supabase_client.cache_clear()
    dependencies.reset_services()

    yield TestClient(create_app())

    dependencies.reset_services()
    get_supabase_client.cache_clear()


def _register(client: TestClient) -> None:
    for order in NEARBY_ORDERS:
        assert client.post("/api/orders", json=order).status_code == 201
    response = client.post("/api/drivers", json={"id": "D1", "name": "Driver One", "current_location": DRIVER})
    assert response.status_code == 201


def test_health(api_client: TestClient):
    assert api_client.get("/api/health").json() == {"status": "ok"}
    database = api_client.get("/api/health/database").json()
    assert database["configured"] is False
    assert database["backend"] == "memory"


def test_optimize_route_persists_outputs(api_client: TestClient, tmp_path: Path):
    response = api_client.post(
        "/api/routes/optimize",
        json={"orders": ORDERS, "driver_location": DRIVER, "batch_id": "batch_1", "persist": True},
    )
    assert response.status_code == 200
    body = response.json()

    assert body["algorithm"] == "exact"
    assert [wp["order_id"] for wp in body["route"]["waypoints"]] == ["A", "A", "B", "B"]
    output_dir = Path(body["output_directory"])
    assert output_dir.parent == (tmp_path / "outputs").resolve()
    assert (output_dir / "summary.json").exists()
    assert (output_dir / "waypoints.csv").exists()

    route_id = body["route"]["id"]
    stored = api_client.get(f"/api/routes/{route_id}")
    assert stored.status_code == 200
    assert stored.json()["id"] == route_id

    csv_response = api_client.get(f"/api/routes/{route_id}", params={"format": "csv"})
    assert csv_response.headers["content-type"].startswith("text/csv")
    lines = csv_response.text.strip().splitlines()
    assert lines[0].startswith("route_id,batch_id,sequence,waypoint_id")
    assert len(lines) == 5


def test_optimize_rejects_bad_input(api_client: TestClient):
    duplicate = api_client.post("/api/routes/optimize", json={"orders": [ORDERS[0], ORDERS[0]], "driver_location": DRIVER})
    unknown = api_client.post(
        "/api/routes/optimize", json={"orders": ORDERS, "driver_location": DRIVER, "algorithm": "quantum"}
    )
    empty = api_client.post("/api/routes/optimize", json={"orders": [], "driver_location": DRIVER})

    assert duplicate.status_code == 400
    assert unknown.status_code == 400
    assert empty.status_code == 422
    assert api_client.get("/api/routes/missing").status_code == 404


def test_compare_algorithms(api_client: TestClient):
    response = api_client.post(
        "/api/routes/compare",
        json={"orders": ORDERS, "driver_location": DRIVER, "algorithms": ["nearest_neighbor", "exact"]},
    )
    assert response.status_code == 200
    body = response.json()

    scores = [result["optimization_score"] for result in body["results"]]
    assert scores == sorted(scores, reverse=True)
    assert body["best_algorithm"] == body["results"][0]["algorithm"]


def test_batch_lifecycle(api_client: TestClient):
    _register(api_client)

    created = api_client.post("/api/batches", json={"driver_id": "D1", "order_ids": ["A", "B"]})
    assert created.status_code == 201
    batch = created.json()["batch"]
    assert batch["status"] == "planned"
    assert {item["order_id"] for item in created.json()["orders"]} == {"A", "B"}

    batch_id = batch["id"]
    conflict = api_client.post(f"/api/batches/{batch_id}/orders/A/pickup", json={"status": "completed"})
    assert conflict.status_code == 409
    assert api_client.post(f"/api/batches/{batch_id}/start").json()["batch"]["status"] == "active"

    active = api_client.get("/api/batches/driver/D1/active").json()
    assert active["id"] == batch_id

    for order_id in ("A", "B"):
        assert api_client.post(f"/api/batches/{batch_id}/orders/{order_id}/pickup", json={}).status_code == 200
    api_client.post(f"/api/batches/{batch_id}/orders/A/delivery", json={})
    last = api_client.post(f"/api/batches/{batch_id}/orders/B/delivery", json={}).json()

    assert last["batch"]["status"] == "completed"
    assert last["metadata"]["auto_completed"] is True
    assert api_client.get("/api/batches/missing").status_code == 404
    assert api_client.post("/api/batches", json={"driver_id": "nobody", "order_ids": ["A"]}).status_code == 404


def test_monitor_batch_route_and_handle_events(api_client: TestClient):
    _register(api_client)
    created = api_client.post("/api/batches", json={"driver_id": "D1", "order_ids": ["A", "B"]}).json()
    route_id = created["batch"]["route_id"]

    monitored = api_client.post(f"/api/reoptimization/routes/{route_id}/monitor", json={})
    assert monitored.status_code == 201
    assert monitored.json()["driver_id"] == "D1"
    assert monitored.json()["progress_percentage"] == 0.0

    first_waypoint = monitored.json()["route"]["waypoints"][0]["id"]
    completed = api_client.post(
        f"/api/reoptimization/routes/{route_id}/events",
        json={"kind": "waypoint_completed", "waypoint_id": first_waypoint},
    )
    assert completed.status_code == 200
    assert completed.json()["applied"] is False
    state = api_client.get(f"/api/reoptimization/routes/{route_id}").json()
    assert state["completed_waypoints"] == [first_waypoint]

    missing_fields = api_client.post(f"/api/reoptimization/routes/{route_id}/events", json={"kind": "order_status"})
    assert missing_fields.status_code == 422

    check = api_client.post(f"/api/reoptimization/routes/{route_id}/check")
    assert check.status_code == 200

    notifications = api_client.get("/api/reoptimization/drivers/D1/notifications")
    assert notifications.status_code == 200
    assert isinstance(notifications.json(), list)

    assert api_client.delete(f"/api/reoptimization/routes/{route_id}/monitor").status_code == 200
    assert api_client.get(f"/api/reoptimization/routes/{route_id}").status_code == 404
    assert api_client.delete(f"/api/reoptimization/routes/{route_id}/monitor").status_code == 404


def test_performance_endpoints(api_client: TestClient):
    api_client.post("/api/routes/optimize", json={"orders": ORDERS, "driver_location": DRIVER})

    stats = api_client.get("/api/performance/algorithms/exact")
    assert stats.status_code == 200
    assert stats.json()["total_executions"] == 1

    comparison = api_client.get("/api/performance/comparison").json()
    assert [item["algorithm"] for item in comparison] == ["exact"]

    dashboard = api_client.get("/api/performance/dashboard").json()
    assert dashboard["total_optimizations"] == 1

    assert api_client.get("/api/performance/alerts").status_code == 200
    assert api_client.get("/api/performance/overview").status_code == 200
    assert api_client.get("/api/performance/algorithms/quantum").status_code == 400


def test_order_status_events_follow_stop_order(api_client: TestClient):
    _register(api_client)
    route_id = api_client.post("/api/batches", json={"driver_id": "D1", "order_ids": ["A", "B"]}).json()["batch"]["route_id"]
    api_client.post(f"/api/reoptimization/routes/{route_id}/monitor", json={})
    events = f"/api/reoptimization/routes/{route_id}/events"

    early = api_client.post(events, json={"kind": "order_status", "order_id": "A", "new_status": "delivered"})
    in_transit = api_client.post(events, json={"kind": "order_status", "order_id": "A", "new_status": "in_transit"})

    assert early.status_code == 400
    assert "before its pickup" in early.json()["detail"]
    assert in_transit.status_code == 200
    assert api_client.get(f"/api/reoptimization/routes/{route_id}").json()["completed_waypoints"] == []
