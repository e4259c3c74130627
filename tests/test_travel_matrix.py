from datetime import datetime, timedelta, timezone

import httpx
import pytest

from src.courier_routing.models.domain import GeoPoint
from src.courier_routing.models.routing import TrafficCondition
from src.courier_routing.services.geospatial import distance_to_path_km, haversine_km, max_pairwise_km
from src.courier_routing.services.routing.matrix import build_travel_matrix, haversine_matrix
from src.courier_routing.services.routing.osrm_client import OSRMClient
from src.courier_routing.services.routing.traffic import TrafficIncident, TrafficService, baseline_condition

POINTS = [GeoPoint(21.50, 39.20), GeoPoint(21.51, 39.20), GeoPoint(21.52, 39.21)]


class DummyOSRM:
    def __init__(self, table=None, error: Exception | None = None):
        self._table = table
        self._error = error
        self.calls = 0

    def table(self, coordinates):
        self.calls += 1
        if self._error is not None:
            raise self._error
        if self._table is not None:
            return self._table
        count = len(coordinates)
        durations = [[0 if i == j else 600 for j in range(count)] for i in range(count)]
        distances = [[0 if i == j else 1000 for j in range(count)] for i in range(count)]
        return {"durations": durations, "distances": distances}


def test_haversine_matrix_applies_road_factor():
    matrix = haversine_matrix(POINTS[:2])
    straight = haversine_km(21.50, 39.20, 21.51, 39.20)

    assert matrix.source == "haversine"
    assert matrix.distance_km[0, 1] == pytest.approx(straight * 1.3)
    assert matrix.distance_km[1, 0] == matrix.distance_km[0, 1]
    assert matrix.duration_min[0, 1] == pytest.approx(straight * 1.3 / 40.0 * 60.0)
    assert matrix.distance_km[0, 0] == 0


def test_build_travel_matrix_uses_osrm_table():
    matrix = build_travel_matrix(POINTS, client=DummyOSRM())

    assert matrix.source == "osrm"
    assert matrix.distance_km[0, 2] == pytest.approx(1.0)
    assert matrix.duration_min[0, 2] == pytest.approx(10.0)


@pytest.mark.parametrize(
    "error",
    [ConnectionError("down"), ValueError("bad response"), httpx.ReadTimeout("slow")],
)
def test_build_travel_matrix_falls_back_on_osrm_errors(error):
    matrix = build_travel_matrix(POINTS, client=DummyOSRM(error=error))

    assert matrix.source == "haversine"


def test_build_travel_matrix_falls_back_on_size_mismatch():
    table = {"durations": [[0, 60], [60, 0]], "distances": [[0, 100], [100, 0]]}

    assert build_travel_matrix(POINTS, client=DummyOSRM(table=table)).source == "haversine"


def test_build_travel_matrix_falls_back_when_mostly_unreachable():
    table = {
        "durations": [[0, None, None], [None, 0, None], [None, 60, 0]],
        "distances": [[0, None, None], [None, 0, None], [None, 100, 0]],
    }

    assert build_travel_matrix(POINTS, client=DummyOSRM(table=table)).source == "haversine"


def test_build_travel_matrix_fills_isolated_gaps_with_haversine():
    table = {
        "durations": [[0, 60, 120], [60, 0, None], [120, 60, 0]],
        "distances": [[0, 1000, 2000], [1000, 0, None], [2000, 1000, 0]],
    }
    matrix = build_travel_matrix(POINTS, client=DummyOSRM(table=table))
    fallback = haversine_matrix(POINTS)

    assert matrix.source == "osrm"
    assert matrix.distance_km[1, 2] == pytest.approx(fallback.distance_km[1, 2])
    assert matrix.distance_km[0, 1] == pytest.approx(1.0)


def test_build_travel_matrix_skips_osrm_without_base_url(monkeypatch):
    from src.courier_routing.config import settings

    monkeypatch.setattr(settings, "osrm_base_url", None)

    assert build_travel_matrix(POINTS).source == "haversine"


def test_osrm_client_requires_base_url(monkeypatch):
    from src.courier_routing.config import settings

    monkeypatch.setattr(settings, "osrm_base_url", None)

    with pytest.raises(ValueError):
        OSRMClient()


def test_distance_to_path_and_spread():
    path = [GeoPoint(21.50, 39.20), GeoPoint(21.60, 39.20)]

    assert distance_to_path_km(GeoPoint(21.55, 39.20), path) == pytest.approx(0.0, abs=1e-6)
    assert distance_to_path_km(GeoPoint(21.55, 39.30), path) == pytest.approx(10.35, rel=0.02)
    assert max_pairwise_km(path) == pytest.approx(haversine_km(21.50, 39.20, 21.60, 39.20))
    assert max_pairwise_km(path[:1]) == 0.0


@pytest.mark.parametrize(
    "hour, expected",
    [
        (8, TrafficCondition.HEAVY),
        (12, TrafficCondition.MODERATE),
        (15, TrafficCondition.LIGHT),
        (23, TrafficCondition.CLEAR),
    ],
)
def test_baseline_traffic_by_hour(hour, expected):
    assert baseline_condition(datetime(2024, 5, 6, hour, 0, tzinfo=timezone.utc)) == expected


def test_incident_worsens_nearby_conditions_while_active():
    now = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)
    service = TrafficService(clock=lambda: now)
    service.report_incident(
        TrafficIncident(
            id="incident_1",
            location=GeoPoint(21.50, 39.20),
            severity=TrafficCondition.SEVERE,
            delay_minutes=25,
            reported_at=now,
            radius_km=2.0,
            expires_at=now + timedelta(minutes=30),
        )
    )

    assert service.condition_at(GeoPoint(21.505, 39.20), now) == TrafficCondition.SEVERE
    assert service.condition_at(GeoPoint(21.70, 39.20), now) == TrafficCondition.LIGHT
    assert service.condition_at(GeoPoint(21.505, 39.20), now + timedelta(hours=1)) == TrafficCondition.LIGHT
    assert service.clear_incident("incident_1") is True
    assert service.active_incidents(now) == []


@pytest.mark.parametrize(
    "severity, clearance",
    [
        (TrafficCondition.LIGHT, timedelta(minutes=15)),
        (TrafficCondition.MODERATE, timedelta(minutes=30)),
        (TrafficCondition.HEAVY, timedelta(hours=1)),
        (TrafficCondition.SEVERE, timedelta(hours=2)),
        (TrafficCondition.UNKNOWN, timedelta(minutes=45)),
    ],
)
def test_incident_without_expiry_gets_clearance_estimate(severity, clearance):
    now = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)
    incident = TrafficIncident(
        id="incident_1", location=GeoPoint(21.50, 39.20), severity=severity, delay_minutes=10, reported_at=now
    )

    assert incident.expires_at == now + clearance


def test_incident_without_expiry_clears_and_is_pruned():
    now = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)
    clock = {"now": now}
    service = TrafficService(clock=lambda: clock["now"])
    spot = GeoPoint(21.505, 39.20)
    service.report_incident(
        TrafficIncident(
            id="incident_1",
            location=GeoPoint(21.50, 39.20),
            severity=TrafficCondition.SEVERE,
            delay_minutes=25,
            reported_at=now,
        )
    )
    month_later = (now + timedelta(days=30)).replace(hour=3)

    assert service.condition_at(spot, now) == TrafficCondition.SEVERE
    assert service.condition_at(spot, month_later) == TrafficCondition.CLEAR

    clock["now"] = now + timedelta(hours=2)
    assert service.active_incidents(now + timedelta(hours=1)) == []
    assert service.clear_incident("incident_1") is False
