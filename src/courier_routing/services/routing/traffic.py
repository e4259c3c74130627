"""Traffic conditions from a time-of-day baseline and reported incidents."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from ...models.domain import GeoPoint, utcnow
from ...models.routing import TrafficCondition
from ..geospatial import distance_km

logger = logging.getLogger(__name__)

RUSH_HOURS = frozenset({7, 8, 17, 18})
LUNCH_HOURS = frozenset({11, 12, 13})
NIGHT_HOURS = frozenset({22, 23, 0, 1, 2, 3, 4, 5})

# expected time for an incident to clear when the reporter gives no expiry
CLEARANCE_MINUTES = {
    TrafficCondition.CLEAR: 15,
    TrafficCondition.LIGHT: 15,
    TrafficCondition.MODERATE: 30,
    TrafficCondition.HEAVY: 60,
    TrafficCondition.SEVERE: 120,
}
DEFAULT_CLEARANCE_MINUTES = 45


@dataclass(slots=True)
class TrafficIncident:
    id: str
    location: GeoPoint
    severity: TrafficCondition
    delay_minutes: float
    reported_at: datetime
    radius_km: float = 2.0
    expires_at: Optional[datetime] = None
    description: str = ""

    def __post_init__(self) -> None:
        if self.expires_at is None:
            self.expires_at = self.reported_at + estimate_clearance(self.severity)

    def is_active(self, at: datetime) -> bool:
        if at < self.reported_at:
            return False
        return at < self.expires_at

    def affects(self, point: GeoPoint) -> bool:
        return distance_km(self.location, point) <= self.radius_km


def estimate_clearance(severity: TrafficCondition) -> timedelta:
    return timedelta(minutes=CLEARANCE_MINUTES.get(severity, DEFAULT_CLEARANCE_MINUTES))


def baseline_condition(at: datetime) -> TrafficCondition:
    """Typical congestion for the hour of ``at`` (read in the timestamp's own timezone)."""
    hour = at.hour
    if hour in RUSH_HOURS:
        return TrafficCondition.HEAVY
    if hour in LUNCH_HOURS:
        return TrafficCondition.MODERATE
    if hour in NIGHT_HOURS:
        return TrafficCondition.CLEAR
    return TrafficCondition.LIGHT


def worse(a: TrafficCondition, b: TrafficCondition) -> TrafficCondition:
    return a if a.severity_rank >= b.severity_rank else b


class TrafficService:
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock
        self._incidents: dict[str, TrafficIncident] = {}
        self._lock = threading.Lock()

    def _prune(self) -> None:
        now = self.clock()
        with self._lock:
            expired = [key for key, incident in self._incidents.items() if incident.expires_at <= now]
            for key in expired:
                del self._incidents[key]
        if expired:
            logger.info(f"Dropped {len(expired)} expired traffic incident(s)")

    def report_incident(self, incident: TrafficIncident) -> None:
        self._prune()
        with self._lock:
            self._incidents[incident.id] = incident
        logger.info(
            f"Traffic incident {incident.id} reported: {incident.severity.value}, "
            f"+{incident.delay_minutes:.0f} min within {incident.radius_km:.1f} km"
        )

    def clear_incident(self, incident_id: str) -> bool:
        with self._lock:
            return self._incidents.pop(incident_id, None) is not None

    def active_incidents(self, at: datetime) -> list[TrafficIncident]:
        self._prune()
        with self._lock:
            incidents = list(self._incidents.values())
        return [incident for incident in incidents if incident.is_active(at)]

    def condition_at(self, location: GeoPoint, at: datetime) -> TrafficCondition:
        condition = baseline_condition(at)
        for incident in self.active_incidents(at):
            if incident.affects(location):
                condition = worse(condition, incident.severity)
        return condition

    def conditions_for(self, points: Sequence[GeoPoint], at: datetime) -> list[TrafficCondition]:
        return [self.condition_at(point, at) for point in points]
