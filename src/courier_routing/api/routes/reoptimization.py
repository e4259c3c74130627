"""Live route monitoring and reoptimization endpoints."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Callable, List

from fastapi import APIRouter, HTTPException, status

from ...errors import NotFoundError
from ...models.domain import utcnow
from ...schemas.reoptimization import (
    AdjustmentResponse,
    DriverNotificationModel,
    EventKind,
    MonitoringStateResponse,
    ReoptimizationEventResponse,
    RouteEventRequest,
    StartMonitoringRequest,
)
from ...services.outputs.route_formatter import optimized_route_from_json
from ...services.reoptimization import DynamicRouteReoptimizationService
from ...services.routing.traffic import TrafficIncident
from .. import dependencies

router = APIRouter(prefix="/reoptimization", tags=["reoptimization"])


def _run(action: str, operation: Callable):
    try:
        return operation()
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error trying to {action}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action}: {str(exc)}",
        ) from exc


@router.post("/routes/{route_id}/monitor", response_model=MonitoringStateResponse, status_code=status.HTTP_201_CREATED)
def start_monitoring(route_id: str, payload: StartMonitoringRequest) -> MonitoringStateResponse:
    def operation() -> MonitoringStateResponse:
        service = dependencies.reoptimization_service()
        location = payload.driver_location.to_domain() if payload.driver_location else None
        if payload.route is None:
            state = service.start_monitoring_stored(
                route_id, payload.driver_id, location, payload.completed_waypoints
            )
        else:
            try:
                route = optimized_route_from_json(payload.route)
            except (KeyError, TypeError) as exc:
                raise ValueError(f"Malformed route payload: missing {exc}") from exc
            if route.id != route_id:
                raise ValueError(f"Route id {route.id} does not match path id {route_id}.")
            state = service.start_monitoring(
                payload.driver_id,
                route,
                [order.to_domain() for order in payload.orders or []],
                location,
                payload.completed_waypoints,
            )
        return MonitoringStateResponse.from_domain(state)

    return _run("start monitoring", operation)


@router.delete("/routes/{route_id}/monitor", status_code=status.HTTP_200_OK)
def stop_monitoring(route_id: str) -> dict:
    stopped = dependencies.reoptimization_service().stop_monitoring(route_id)
    if not stopped:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Route '{route_id}' is not being monitored.")
    return {"success": True, "message": f"Stopped monitoring route {route_id}"}


@router.get("/routes/{route_id}", response_model=MonitoringStateResponse, status_code=status.HTTP_200_OK)
def monitoring_state(route_id: str) -> MonitoringStateResponse:
    return _run(
        "load monitoring state",
        lambda: MonitoringStateResponse.from_domain(dependencies.reoptimization_service().get_state(route_id)),
    )


def _dispatch(service: DynamicRouteReoptimizationService, route_id: str, payload: RouteEventRequest):
    if payload.kind == EventKind.ORDER_STATUS:
        return service.handle_order_status_change(route_id, payload.order_id, payload.new_status.value)
    if payload.kind == EventKind.TRAFFIC_INCIDENT:
        now = utcnow()
        incident = TrafficIncident(
            id=f"incident_{uuid.uuid4().hex[:8]}",
            location=payload.location.to_domain(),
            severity=payload.severity,
            delay_minutes=payload.delay_minutes,
            reported_at=now,
            radius_km=payload.radius_km,
            expires_at=now + timedelta(minutes=payload.duration_minutes) if payload.duration_minutes else None,
            description=payload.description,
        )
        return service.handle_traffic_incident(route_id, incident)
    if payload.kind == EventKind.PREPARATION_DELAY:
        return service.handle_preparation_delay(route_id, payload.order_id, payload.delay_minutes)
    if payload.kind == EventKind.KITCHEN_STATUS:
        return service.handle_kitchen_status_update(route_id, payload.vendor_id, payload.kitchen_load, payload.staff_count)
    if payload.kind == EventKind.DRIVER_LOCATION:
        return service.handle_driver_location(route_id, payload.location.to_domain())
    if payload.kind == EventKind.CUSTOMER_REQUEST:
        return service.handle_customer_request(route_id, payload.order_id, payload.request_type, payload.details)
    return service.handle_waypoint_completed(route_id, payload.waypoint_id)


@router.post("/routes/{route_id}/events", response_model=ReoptimizationEventResponse, status_code=status.HTTP_200_OK)
def submit_event(route_id: str, payload: RouteEventRequest) -> ReoptimizationEventResponse:
    """Feed one live event into the route's reoptimization pipeline."""
    return _run(
        "process route event",
        lambda: ReoptimizationEventResponse.from_domain(
            _dispatch(dependencies.reoptimization_service(), route_id, payload)
        ),
    )


@router.post("/routes/{route_id}/check", response_model=AdjustmentResponse, status_code=status.HTTP_200_OK)
def periodic_check(route_id: str) -> AdjustmentResponse:
    return _run(
        "check route",
        lambda: AdjustmentResponse.from_domain(dependencies.reoptimization_service().perform_periodic_check(route_id)),
    )


@router.get(
    "/drivers/{driver_id}/notifications",
    response_model=List[DriverNotificationModel],
    status_code=status.HTTP_200_OK,
)
def driver_notifications(driver_id: str) -> List[DriverNotificationModel]:
    return _run(
        "load driver notifications",
        lambda: [
            DriverNotificationModel.from_domain(item)
            for item in dependencies.reoptimization_service().get_driver_notifications(driver_id)
        ],
    )
