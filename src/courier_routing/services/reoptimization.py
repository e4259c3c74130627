"""Event-driven reoptimization of routes that are being driven."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from ..config import settings
from ..errors import NotFoundError
from ..models.domain import GeoPoint, Order, OrderStatus, utcnow
from ..models.reoptimization import (
    DriverNotification,
    DriverNotificationType,
    ReoptimizationAnalysis,
    ReoptimizationPriority,
    RouteImprovement,
    RouteReoptimizationEvent,
    RouteReoptimizationState,
)
from ..models.routing import (
    OptimizedRoute,
    RouteAdjustmentResult,
    RouteEvent,
    RouteEventType,
    RouteProgress,
    RouteUpdate,
    RouteUpdateReason,
    RouteWaypoint,
    TrafficCondition,
)
from ..persistence.store import DispatchStore
from .batching import BATCHES_TABLE, ORDERS_TABLE, ROUTES_TABLE
from .geospatial import distance_to_path_km
from .outputs.route_formatter import optimized_route_from_json, optimized_route_to_json, route_update_to_json
from .routing.engine import RouteOptimizationEngine
from .routing.traffic import TrafficIncident

logger = logging.getLogger(__name__)

EVENTS_TABLE = "route_reoptimization_events"
NOTIFICATIONS_TABLE = "driver_notifications"

KITCHEN_CHANGE_IGNORED_BELOW = 0.2
ORDER_READY_SAVING_MIN = 8.0
CANCELLED_STOP_SAVING_MIN = 5.0

EVENT_REASONS = {
    RouteEventType.TRAFFIC_INCIDENT: RouteUpdateReason.TRAFFIC_CHANGE,
    RouteEventType.PREPARATION_DELAY: RouteUpdateReason.PREPARATION_DELAY,
    RouteEventType.ORDER_READY: RouteUpdateReason.PREPARATION_DELAY,
    RouteEventType.ORDER_CANCELLED: RouteUpdateReason.ORDER_CANCELLATION,
    RouteEventType.CUSTOMER_REQUEST: RouteUpdateReason.DRIVER_REQUEST,
    RouteEventType.DRIVER_LOCATION_UPDATE: RouteUpdateReason.SYSTEM_OPTIMIZATION,
    RouteEventType.WAYPOINT_COMPLETED: RouteUpdateReason.SYSTEM_OPTIMIZATION,
}

ORDER_STATUS_EVENTS = {
    OrderStatus.READY: RouteEventType.ORDER_READY,
    OrderStatus.CANCELLED: RouteEventType.ORDER_CANCELLED,
    OrderStatus.PREPARING: RouteEventType.PREPARATION_DELAY,
}
STOP_COMPLETING_STATUSES = frozenset({OrderStatus.PICKED_UP, OrderStatus.DELIVERED})

ReoptimizationListener = Callable[[RouteReoptimizationEvent], None]
NotificationListener = Callable[[DriverNotification], None]


def calculate_route_improvement(update: RouteUpdate) -> RouteImprovement:
    changes = update.changes
    time_saving = float(changes.get("time_saving_min", 0.0))
    distance_saving = float(changes.get("distance_saving_km", 0.0))
    score_improvement = float(changes.get("score_improvement", 0.0))
    significant = (
        time_saving > settings.significant_time_saving_minutes
        or distance_saving > settings.significant_distance_saving_km
        or score_improvement > settings.significant_score_improvement
    )
    return RouteImprovement(
        time_saving_min=time_saving,
        distance_saving_km=distance_saving,
        score_improvement=score_improvement,
        is_significant=significant,
    )


def _pending_waypoints(state: RouteReoptimizationState) -> list[RouteWaypoint]:
    completed = set(state.progress.completed_waypoints)
    return [
        wp
        for wp in sorted(state.current_route.waypoints, key=lambda item: item.sequence)
        if wp.id not in completed
    ]


def _has_pending_pickup(state: RouteReoptimizationState, order_id: str) -> bool:
    return any(wp.is_pickup and wp.order_id == order_id for wp in _pending_waypoints(state))


def _stop_to_complete(state: RouteReoptimizationState, order_id: str, pickup: bool) -> Optional[RouteWaypoint]:
    pending = [wp for wp in _pending_waypoints(state) if wp.order_id == order_id]
    if not pickup and any(wp.is_pickup for wp in pending):
        raise ValueError(f"Order {order_id} cannot be delivered before its pickup is completed.")
    return next((wp for wp in pending if wp.is_pickup == pickup), None)


def _current_position(state: RouteReoptimizationState) -> Optional[GeoPoint]:
    if state.driver_location is not None:
        return state.driver_location
    completed = set(state.progress.completed_waypoints)
    done = [wp for wp in state.current_route.waypoints if wp.id in completed]
    if done:
        return max(done, key=lambda wp: wp.sequence).location
    pending = _pending_waypoints(state)
    return pending[0].location if pending else None


def _remaining_path(state: RouteReoptimizationState) -> list[GeoPoint]:
    path = [wp.location for wp in _pending_waypoints(state)]
    position = _current_position(state)
    if position is not None:
        path.insert(0, position)
    return path


class DynamicRouteReoptimizationService:
    def __init__(
        self,
        engine: RouteOptimizationEngine,
        store: DispatchStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.store = store
        self.clock = clock
        self._states: dict[str, RouteReoptimizationState] = {}
        self._listeners: list[ReoptimizationListener] = []
        self._notification_listeners: list[NotificationListener] = []
        # guards the dicts and listener lists only; solves run under the per-route locks
        self._lock = threading.RLock()
        self._route_locks: dict[str, threading.Lock] = {}

    # monitoring lifecycle

    def start_monitoring(
        self,
        driver_id: str,
        route: OptimizedRoute,
        orders: Sequence[Order],
        driver_location: GeoPoint | None = None,
        completed_waypoints: Sequence[str] = (),
    ) -> RouteReoptimizationState:
        now = self.clock()
        missing = set(route.order_ids) - {order.id for order in orders}
        if missing:
            raise ValueError(f"Orders missing for route {route.id}: {', '.join(sorted(missing))}.")
        state = RouteReoptimizationState(
            route_id=route.id,
            driver_id=driver_id,
            current_route=route,
            orders={order.id: order for order in orders if order.id in route.order_ids},
            progress=RouteProgress.from_route(route, list(completed_waypoints), now),
            started_at=now,
            driver_location=driver_location,
        )
        with self._lock:
            self._states[route.id] = state
        logger.info(f"Started monitoring route {route.id} for driver {driver_id}")
        return state

    def start_monitoring_stored(
        self,
        route_id: str,
        driver_id: str | None = None,
        driver_location: GeoPoint | None = None,
        completed_waypoints: Sequence[str] = (),
    ) -> RouteReoptimizationState:
        """Monitor a route saved by batch creation, loading its orders and driver."""
        record = self.store.get(ROUTES_TABLE, route_id)
        if record is None:
            raise NotFoundError(f"Route '{route_id}' not found.")
        route = optimized_route_from_json(record["route"])
        if driver_id is None:
            batch = self.store.get(BATCHES_TABLE, route.batch_id)
            if batch is None or not batch.get("driver_id"):
                raise ValueError(f"Route {route_id} has no batch driver; pass driver_id explicitly.")
            driver_id = str(batch["driver_id"])
        orders = []
        for order_id in route.order_ids:
            row = self.store.get(ORDERS_TABLE, order_id)
            if row is None:
                raise NotFoundError(f"Order '{order_id}' not found.")
            orders.append(Order.from_record(row))
        return self.start_monitoring(driver_id, route, orders, driver_location, completed_waypoints)

    def _route_lock(self, route_id: str) -> threading.Lock:
        with self._lock:
            return self._route_locks.setdefault(route_id, threading.Lock())

    def stop_monitoring(self, route_id: str) -> bool:
        with self._lock:
            state = self._states.pop(route_id, None)
            self._route_locks.pop(route_id, None)
        if state is None:
            return False
        logger.info(f"Stopped monitoring route {route_id}")
        return True

    def get_state(self, route_id: str) -> RouteReoptimizationState:
        with self._lock:
            state = self._states.get(route_id)
        if state is None:
            raise NotFoundError(f"Route '{route_id}' is not being monitored.")
        return state

    def monitored_routes(self) -> list[str]:
        with self._lock:
            return list(self._states)

    def dispose(self) -> None:
        with self._lock:
            self._states.clear()
            self._route_locks.clear()
            self._listeners.clear()
            self._notification_listeners.clear()

    def subscribe(self, listener: ReoptimizationListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)
        return lambda: self._unsubscribe(self._listeners, listener)

    def subscribe_notifications(self, listener: NotificationListener) -> Callable[[], None]:
        with self._lock:
            self._notification_listeners.append(listener)
        return lambda: self._unsubscribe(self._notification_listeners, listener)

    def _unsubscribe(self, listeners: list, listener) -> None:
        with self._lock:
            if listener in listeners:
                listeners.remove(listener)

    def _save(self, state: RouteReoptimizationState) -> None:
        with self._lock:
            if state.route_id in self._states:
                self._states[state.route_id] = state

    # event intake

    def _event(self, route_id: str, event_type: RouteEventType, data: dict) -> RouteEvent:
        return RouteEvent(
            id=str(uuid.uuid4()),
            route_id=route_id,
            type=event_type,
            timestamp=self.clock(),
            data=data,
        )

    def handle_order_status_change(self, route_id: str, order_id: str, new_status: str) -> RouteReoptimizationEvent:
        """Feed an order status update into the route.

        ``picked_up`` completes the order's pickup stop and ``delivered`` its delivery stop.
        Statuses without a route meaning of their own only update the monitored order.
        """
        status = OrderStatus(new_status)
        data: dict = {"order_id": order_id, "new_status": status.value}
        if status in STOP_COMPLETING_STATUSES:
            event_type = RouteEventType.WAYPOINT_COMPLETED
            stop = _stop_to_complete(self.get_state(route_id), order_id, pickup=status == OrderStatus.PICKED_UP)
            if stop is not None:
                data["waypoint_id"] = stop.id
        else:
            event_type = ORDER_STATUS_EVENTS.get(status, RouteEventType.ORDER_STATUS_CHANGED)
        return self.process_event(self._event(route_id, event_type, data))

    def handle_traffic_incident(self, route_id: str, incident: TrafficIncident) -> RouteReoptimizationEvent:
        self.engine.traffic_service.report_incident(incident)
        data = {
            "incident_id": incident.id,
            "latitude": incident.location.latitude,
            "longitude": incident.location.longitude,
            "severity": incident.severity.value,
            "delay_minutes": incident.delay_minutes,
            "radius_km": incident.radius_km,
            "description": incident.description,
        }
        return self.process_event(self._event(route_id, RouteEventType.TRAFFIC_INCIDENT, data))

    def handle_preparation_delay(self, route_id: str, order_id: str, delay_minutes: float) -> RouteReoptimizationEvent:
        if delay_minutes <= 0:
            raise ValueError("delay_minutes must be positive.")
        if self.engine.preparation_service is not None:
            self.engine.preparation_service.record_delay(order_id, delay_minutes)
        data = {"order_id": order_id, "delay_minutes": delay_minutes}
        return self.process_event(self._event(route_id, RouteEventType.PREPARATION_DELAY, data))

    def handle_kitchen_status_update(
        self, route_id: str, vendor_id: str, kitchen_load: float, staff_count: int | None = None
    ) -> RouteReoptimizationEvent:
        previous = None
        if self.engine.preparation_service is not None:
            previous = self.engine.preparation_service.update_kitchen_status(vendor_id, kitchen_load, staff_count)
        data = {"vendor_id": vendor_id, "kitchen_load": kitchen_load, "previous_load": previous}
        return self.process_event(self._event(route_id, RouteEventType.PREPARATION_DELAY, data))

    def handle_driver_location(self, route_id: str, location: GeoPoint) -> RouteReoptimizationEvent:
        data = {"latitude": location.latitude, "longitude": location.longitude}
        return self.process_event(self._event(route_id, RouteEventType.DRIVER_LOCATION_UPDATE, data))

    def handle_customer_request(
        self, route_id: str, order_id: str, request_type: str, details: dict | None = None
    ) -> RouteReoptimizationEvent:
        data = {"order_id": order_id, "request_type": request_type, "details": dict(details or {})}
        return self.process_event(self._event(route_id, RouteEventType.CUSTOMER_REQUEST, data))

    def handle_waypoint_completed(self, route_id: str, waypoint_id: str) -> RouteReoptimizationEvent:
        state = self.get_state(route_id)
        waypoint = next((wp for wp in state.current_route.waypoints if wp.id == waypoint_id), None)
        if waypoint is None:
            raise ValueError(f"Waypoint '{waypoint_id}' is not on route {route_id}.")
        if waypoint.is_delivery:
            _stop_to_complete(state, waypoint.order_id, pickup=False)
        event = self._event(route_id, RouteEventType.WAYPOINT_COMPLETED, {"waypoint_id": waypoint_id})
        return self.process_event(event)

    # pipeline

    def process_event(self, event: RouteEvent) -> RouteReoptimizationEvent:
        with self._route_lock(event.route_id):
            state = self.get_state(event.route_id)
            now = self.clock()
            if not state.is_monitoring:
                analysis = ReoptimizationAnalysis.not_recommended("Route is not being monitored")
                return self._finish(state, event, analysis, now)
            if event.id in state.recent_event_ids:
                analysis = ReoptimizationAnalysis.not_recommended("Duplicate event")
                return self._finish(state, event, analysis, now, remember=False)

            state = self._apply_event(state, event, now)
            analysis = self.analyze_reoptimization_need(state, event)
            if analysis.is_recommended:
                analysis = self._gate(state, analysis, now)
            if not analysis.is_recommended:
                return self._finish(state, event, analysis, now)

            reason = EVENT_REASONS[event.type]
            update = self.engine.reoptimize_route(
                state.current_route,
                list(state.orders.values()),
                state.progress,
                [event],
                driver_location=_current_position(state),
                now=now,
                reason=reason,
            )
            if update is None:
                return self._finish(state, event, analysis, now)
            improvement = calculate_route_improvement(update)
            if not improvement.is_significant and not update.changes.get("removed_orders"):
                logger.info(f"Route {state.route_id}: improvement not significant, keeping current route")
                return self._finish(state, event, analysis, now, update=update, improvement=improvement)
            state = self._apply_update(state, update, improvement, now)
            return self._finish(state, event, analysis, now, update=update, improvement=improvement, applied=True)

    def _apply_event(self, state: RouteReoptimizationState, event: RouteEvent, now: datetime) -> RouteReoptimizationState:
        data = event.data
        if event.type == RouteEventType.DRIVER_LOCATION_UPDATE:
            return state.copy_with(driver_location=GeoPoint(float(data["latitude"]), float(data["longitude"])))
        status = data.get("new_status")
        if event.type == RouteEventType.ORDER_READY:
            status = OrderStatus.READY.value
        elif event.type == RouteEventType.ORDER_CANCELLED:
            status = OrderStatus.CANCELLED.value
        order = state.orders.get(str(data.get("order_id")))
        if status is not None and order is not None:
            ready_at = event.timestamp if status == OrderStatus.READY.value else None
            state = state.copy_with(orders={**state.orders, order.id: _with_status(order, OrderStatus(status), ready_at)})
        if event.type == RouteEventType.ORDER_CANCELLED:
            self._clear_preparation_delay(str(data.get("order_id")))

        if event.type == RouteEventType.WAYPOINT_COMPLETED and data.get("waypoint_id"):
            completed = [*state.progress.completed_waypoints, data["waypoint_id"]]
            waypoint = next((wp for wp in state.current_route.waypoints if wp.id == data["waypoint_id"]), None)
            if waypoint is not None and waypoint.is_pickup:
                self._clear_preparation_delay(waypoint.order_id)
            progress = RouteProgress.from_route(state.current_route, completed, now)
            state = state.copy_with(progress=progress)
            if progress.is_complete:
                logger.info(f"Route {state.route_id} completed; monitoring stops")
                state = state.copy_with(is_monitoring=False)
        return state

    def _clear_preparation_delay(self, order_id: str) -> None:
        if self.engine.preparation_service is not None:
            self.engine.preparation_service.clear_delay(order_id)

    def _gate(
        self, state: RouteReoptimizationState, analysis: ReoptimizationAnalysis, now: datetime
    ) -> ReoptimizationAnalysis:
        if analysis.priority == ReoptimizationPriority.CRITICAL:
            return analysis
        cooldown = timedelta(minutes=settings.reoptimization_cooldown_minutes)
        if state.last_reoptimization is not None and now - state.last_reoptimization < cooldown:
            return ReoptimizationAnalysis.not_recommended(
                "Reoptimization cooldown active", suppressed=analysis.reason
            )
        if state.reoptimizations_since(now - timedelta(hours=1)) >= settings.max_reoptimizations_per_hour:
            return ReoptimizationAnalysis.not_recommended(
                "Hourly reoptimization limit reached", suppressed=analysis.reason
            )
        return analysis

    def analyze_reoptimization_need(
        self, state: RouteReoptimizationState, event: RouteEvent
    ) -> ReoptimizationAnalysis:
        if not _pending_waypoints(state):
            return ReoptimizationAnalysis.not_recommended("Route has no remaining waypoints")
        handlers = {
            RouteEventType.TRAFFIC_INCIDENT: self._analyze_traffic,
            RouteEventType.PREPARATION_DELAY: self._analyze_preparation,
            RouteEventType.ORDER_READY: self._analyze_order_ready,
            RouteEventType.ORDER_CANCELLED: self._analyze_cancellation,
            RouteEventType.DRIVER_LOCATION_UPDATE: self._analyze_location,
            RouteEventType.CUSTOMER_REQUEST: self._analyze_customer_request,
        }
        handler = handlers.get(event.type)
        if handler is None:
            return ReoptimizationAnalysis.not_recommended("Progress update only")
        return handler(state, event)

    def _analyze_traffic(self, state, event) -> ReoptimizationAnalysis:
        data = event.data
        incident = GeoPoint(float(data["latitude"]), float(data["longitude"]))
        severity = TrafficCondition(data.get("severity", TrafficCondition.UNKNOWN.value))
        delay = float(data.get("delay_minutes") or 0.0)
        radius = settings.incident_impact_radius_km
        distance = distance_to_path_km(incident, _remaining_path(state))
        impact = max(0.0, min(1.0, (radius - distance) / radius))
        metadata = {"route_impact": round(impact, 3), "distance_to_route_km": round(distance, 3)}

        if severity == TrafficCondition.SEVERE and delay > 20 and impact > 0.7:
            return ReoptimizationAnalysis(
                True, "Severe traffic incident on route", 0.9, delay * 0.6, ReoptimizationPriority.HIGH, metadata
            )
        if severity == TrafficCondition.HEAVY and delay > 15 and impact > 0.5:
            return ReoptimizationAnalysis(
                True, "Heavy traffic on route", 0.7, delay * 0.4, ReoptimizationPriority.MEDIUM, metadata
            )
        if delay > 30 and impact > 0.3:
            return ReoptimizationAnalysis(
                True, "Significant traffic delay near route", 0.6, delay * 0.3, ReoptimizationPriority.MEDIUM, metadata
            )
        return ReoptimizationAnalysis.not_recommended("Traffic impact below threshold", **metadata)

    def _analyze_preparation(self, state, event) -> ReoptimizationAnalysis:
        data = event.data
        if data.get("delay_minutes") is not None:
            order_id = str(data.get("order_id"))
            delay = float(data["delay_minutes"])
            if not _has_pending_pickup(state, order_id):
                return ReoptimizationAnalysis.not_recommended("Delayed order is already picked up or not on route")
            if delay > 15:
                return ReoptimizationAnalysis(
                    True,
                    f"Preparation of order {order_id} delayed by {delay:.0f} min",
                    0.7,
                    delay * 0.5,
                    ReoptimizationPriority.MEDIUM,
                    {"order_id": order_id, "delay_minutes": delay},
                )
            return ReoptimizationAnalysis.not_recommended("Preparation delay too small", delay_minutes=delay)

        vendor_id = data.get("vendor_id")
        pending_vendor = any(
            wp.is_pickup and state.orders.get(wp.order_id) is not None and state.orders[wp.order_id].vendor_id == vendor_id
            for wp in _pending_waypoints(state)
        )
        if not pending_vendor:
            return ReoptimizationAnalysis.not_recommended("No pending pickups at this vendor")
        previous = data.get("previous_load")
        if previous is None:
            return ReoptimizationAnalysis.not_recommended("No previous kitchen load to compare")
        load = float(data["kitchen_load"])
        change = load - float(previous)
        metadata = {"vendor_id": vendor_id, "load_change": round(change, 3)}
        if abs(change) < KITCHEN_CHANGE_IGNORED_BELOW:
            return ReoptimizationAnalysis.not_recommended("Kitchen load change too small", **metadata)
        if change > 0.3 and load > 0.8:
            return ReoptimizationAnalysis(
                True, "Kitchen load increased significantly", 0.6, change * 20, ReoptimizationPriority.MEDIUM, metadata
            )
        if change < -0.3 and load < 0.4:
            return ReoptimizationAnalysis(
                True, "Kitchen load decreased significantly", 0.5, abs(change) * 15, ReoptimizationPriority.LOW, metadata
            )
        return ReoptimizationAnalysis.not_recommended("Kitchen load change not actionable", **metadata)

    def _analyze_order_ready(self, state, event) -> ReoptimizationAnalysis:
        order_id = str(event.data.get("order_id"))
        if not _has_pending_pickup(state, order_id):
            return ReoptimizationAnalysis.not_recommended("Order pickup is not pending on this route")
        return ReoptimizationAnalysis(
            True,
            f"Order {order_id} is ready for pickup",
            0.7,
            ORDER_READY_SAVING_MIN,
            ReoptimizationPriority.MEDIUM,
            {"order_id": order_id},
        )

    def _analyze_cancellation(self, state, event) -> ReoptimizationAnalysis:
        order_id = str(event.data.get("order_id"))
        stops = [wp for wp in _pending_waypoints(state) if wp.order_id == order_id]
        if not stops:
            return ReoptimizationAnalysis.not_recommended("Cancelled order has no remaining stops")
        return ReoptimizationAnalysis(
            True,
            f"Order {order_id} was cancelled",
            1.0,
            CANCELLED_STOP_SAVING_MIN * len(stops),
            ReoptimizationPriority.CRITICAL,
            {"order_id": order_id, "removed_stops": len(stops)},
        )

    def _analyze_location(self, state, event) -> ReoptimizationAnalysis:
        location = state.driver_location
        path = [wp.location for wp in _pending_waypoints(state)]
        if location is None or not path:
            return ReoptimizationAnalysis.not_recommended("Location update recorded")
        deviation = distance_to_path_km(location, path)
        if deviation > settings.off_route_threshold_km:
            return ReoptimizationAnalysis(
                True,
                f"Driver is {deviation:.1f}km away from the planned route",
                0.6,
                deviation / settings.average_speed_kmh * 60.0,
                ReoptimizationPriority.MEDIUM,
                {"deviation_km": round(deviation, 3)},
            )
        return ReoptimizationAnalysis.not_recommended("Location update recorded", deviation_km=round(deviation, 3))

    def _analyze_customer_request(self, state, event) -> ReoptimizationAnalysis:
        return ReoptimizationAnalysis(
            True,
            f"Customer request: {event.data.get('request_type', 'unspecified')}",
            0.5,
            0.0,
            ReoptimizationPriority.LOW,
            {"order_id": event.data.get("order_id")},
        )

    # applying results

    def _apply_update(
        self,
        state: RouteReoptimizationState,
        update: RouteUpdate,
        improvement: RouteImprovement,
        now: datetime,
    ) -> RouteReoptimizationState:
        new_route = self.engine.apply_update(state.current_route, update, state.progress, now)
        removed = set(update.changes.get("removed_orders") or [])
        hour_ago = now - timedelta(hours=1)
        state = state.copy_with(
            current_route=new_route,
            orders={order_id: order for order_id, order in state.orders.items() if order_id not in removed},
            progress=RouteProgress.from_route(new_route, state.progress.completed_waypoints, now),
            last_reoptimization=now,
            reoptimization_count=state.reoptimization_count + 1,
            reoptimization_history=[*(stamp for stamp in state.reoptimization_history if stamp >= hour_ago), now],
        )
        self._save(state)
        self.store.upsert(
            ROUTES_TABLE,
            {"id": new_route.id, "batch_id": new_route.batch_id, "route": optimized_route_to_json(new_route)},
        )
        self._notify_driver(state, update, improvement, now)
        return state

    def _notify_driver(
        self,
        state: RouteReoptimizationState,
        update: RouteUpdate,
        improvement: RouteImprovement,
        now: datetime,
    ) -> DriverNotification:
        removed = update.changes.get("removed_orders") or []
        if removed:
            message = f"Order(s) {', '.join(removed)} cancelled and removed from your route."
        else:
            message = (
                f"Your route was updated ({update.reason.value.replace('_', ' ')}). "
                f"Estimated time saving: {max(0.0, improvement.time_saving_min):.0f} min."
            )
        notification = DriverNotification(
            id=str(uuid.uuid4()),
            driver_id=state.driver_id,
            route_id=state.route_id,
            type=DriverNotificationType.ROUTE_REOPTIMIZED,
            title="Route Optimized",
            message=message,
            timestamp=now,
            is_urgent=improvement.time_saving_min > settings.urgent_time_saving_minutes or bool(removed),
            data={
                "reason": update.reason.value,
                "new_optimization_score": update.new_optimization_score,
                "time_saving_min": improvement.time_saving_min,
                "distance_saving_km": improvement.distance_saving_km,
            },
        )
        self.store.insert(
            NOTIFICATIONS_TABLE,
            {
                "id": notification.id,
                "driver_id": notification.driver_id,
                "route_id": notification.route_id,
                "type": notification.type.value,
                "title": notification.title,
                "message": notification.message,
                "timestamp": notification.timestamp.isoformat(),
                "is_urgent": notification.is_urgent,
                "data": notification.data,
            },
        )
        with self._lock:
            listeners = list(self._notification_listeners)
        for listener in listeners:
            try:
                listener(notification)
            except Exception:
                logger.exception("Driver notification listener failed")
        return notification

    def _finish(
        self,
        state: RouteReoptimizationState,
        event: RouteEvent,
        analysis: ReoptimizationAnalysis,
        now: datetime,
        *,
        update: RouteUpdate | None = None,
        improvement: RouteImprovement | None = None,
        applied: bool = False,
        remember: bool = True,
    ) -> RouteReoptimizationEvent:
        if remember:
            state = state.copy_with(recent_event_ids=state.remember_event(event.id))
            self._save(state)
        outcome = RouteReoptimizationEvent(
            route_id=state.route_id,
            trigger_event=event,
            analysis=analysis,
            timestamp=now,
            applied=applied,
            update=update,
            improvement=improvement,
        )
        self.store.insert(
            EVENTS_TABLE,
            {
                "id": str(uuid.uuid4()),
                "route_id": state.route_id,
                "driver_id": state.driver_id,
                "event_id": event.id,
                "event_type": event.type.value,
                "is_recommended": analysis.is_recommended,
                "reason": analysis.reason,
                "priority": analysis.priority.value,
                "confidence": analysis.confidence,
                "applied": applied,
                "update": route_update_to_json(update) if update is not None else None,
                "timestamp": now.isoformat(),
            },
        )
        if applied:
            with self._lock:
                listeners = list(self._listeners)
            for listener in listeners:
                try:
                    listener(outcome)
                except Exception:
                    logger.exception("Reoptimization listener failed")
        return outcome

    def perform_periodic_check(self, route_id: str) -> RouteAdjustmentResult:
        """Re-solve the remaining route under current conditions."""
        with self._route_lock(route_id):
            state = self.get_state(route_id)
            now = self.clock()
            if not state.is_monitoring:
                return RouteAdjustmentResult.no_adjustment("Route is not being monitored")
            if not _pending_waypoints(state):
                return RouteAdjustmentResult.no_adjustment("Route has no remaining waypoints")
            gate = self._gate(
                state,
                ReoptimizationAnalysis(True, "Periodic check", priority=ReoptimizationPriority.LOW),
                now,
            )
            if not gate.is_recommended:
                return RouteAdjustmentResult.no_adjustment(gate.reason)
            try:
                update = self.engine.reoptimize_route(
                    state.current_route,
                    list(state.orders.values()),
                    state.progress,
                    [],
                    driver_location=_current_position(state),
                    now=now,
                    reason=RouteUpdateReason.SYSTEM_OPTIMIZATION,
                )
            except Exception as exc:
                logger.exception(f"Periodic check failed for route {route_id}: {exc}")
                return RouteAdjustmentResult.failed(str(exc))
            if update is None:
                return RouteAdjustmentResult.no_adjustment("Current route is still the best option")
            improvement = calculate_route_improvement(update)
            if not improvement.is_significant:
                return RouteAdjustmentResult.no_adjustment("Improvement is not significant")
            self._apply_update(state, update, improvement, now)
            return RouteAdjustmentResult.calculated(update)

    def get_driver_notifications(self, driver_id: str) -> list[DriverNotification]:
        rows = self.store.select(NOTIFICATIONS_TABLE, driver_id=driver_id)
        notifications = [
            DriverNotification(
                id=row["id"],
                driver_id=row["driver_id"],
                route_id=row["route_id"],
                type=DriverNotificationType(row["type"]),
                title=row["title"],
                message=row["message"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                is_urgent=bool(row.get("is_urgent")),
                data=dict(row.get("data") or {}),
            )
            for row in rows
        ]
        return sorted(notifications, key=lambda item: item.timestamp, reverse=True)


def _with_status(order: Order, status: OrderStatus, ready_at: datetime | None = None) -> Order:
    return Order(
        id=order.id,
        vendor_id=order.vendor_id,
        pickup_location=order.pickup_location,
        delivery_location=order.delivery_location,
        status=status,
        customer_id=order.customer_id,
        pickup_address=order.pickup_address,
        delivery_address=order.delivery_address,
        item_count=order.item_count,
        created_at=order.created_at,
        ready_at=ready_at or order.ready_at,
        delivery_window_start=order.delivery_window_start,
        delivery_window_end=order.delivery_window_end,
        assigned_driver_id=order.assigned_driver_id,
        metadata=dict(order.metadata),
    )
