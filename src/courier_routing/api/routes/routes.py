"""Routing endpoints."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import PlainTextResponse

from ...errors import NotFoundError
from ...models.domain import utcnow
from ...models.routing import RouteProgress
from ...persistence.filesystem import FileStorage
from ...schemas.routing import (
    CompareAlgorithmsRequest,
    OptimizeRouteRequest,
    ReoptimizeRouteRequest,
    ReoptimizeRouteResponse,
    RouteOptimizationResponse,
)
from ...services.batching import ROUTES_TABLE
from ...services.outputs.route_formatter import (
    optimization_result_to_json,
    optimized_route_from_json,
    optimized_route_to_json,
    route_update_to_json,
    waypoints_to_csv,
)
from .. import dependencies

router = APIRouter(prefix="/routes", tags=["routes"])


@router.post("/optimize", response_model=RouteOptimizationResponse, status_code=status.HTTP_200_OK)
def optimize(payload: OptimizeRouteRequest) -> RouteOptimizationResponse:
    try:
        result = dependencies.optimization_engine().optimize(
            [order.to_domain() for order in payload.orders],
            payload.driver_location.to_domain(),
            criteria=payload.criteria.to_domain() if payload.criteria else None,
            algorithm=payload.algorithm,
            batch_id=payload.batch_id,
            departure_time=payload.departure_time,
        )
        route = result.optimized_route
        dependencies.store().upsert(
            ROUTES_TABLE, {"id": route.id, "batch_id": route.batch_id, "route": optimized_route_to_json(route)}
        )
        body = optimization_result_to_json(result)
        if payload.persist:
            body["output_directory"] = str(FileStorage().write_run(result))
        return RouteOptimizationResponse(**body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error optimizing route: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to optimize route: {str(exc)}",
        ) from exc


@router.post("/compare", status_code=status.HTTP_200_OK)
def compare(payload: CompareAlgorithmsRequest) -> dict:
    """Solve the same orders with several algorithms, best score first."""
    try:
        results = dependencies.optimization_engine().compare_algorithms(
            [order.to_domain() for order in payload.orders],
            payload.driver_location.to_domain(),
            payload.algorithms,
            criteria=payload.criteria.to_domain() if payload.criteria else None,
            departure_time=payload.departure_time,
        )
        return {
            "best_algorithm": results[0].algorithm.value,
            "results": [optimization_result_to_json(result) for result in results],
        }
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error comparing algorithms: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to compare algorithms: {str(exc)}",
        ) from exc


@router.post("/reoptimize", response_model=ReoptimizeRouteResponse, status_code=status.HTTP_200_OK)
def reoptimize(payload: ReoptimizeRouteRequest) -> ReoptimizeRouteResponse:
    """One-off re-solve of a route in progress given the events since it was planned."""
    engine = dependencies.optimization_engine()
    try:
        try:
            route = optimized_route_from_json(payload.route)
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Malformed route payload: missing {exc}") from exc
        now = utcnow()
        progress = RouteProgress.from_route(route, payload.completed_waypoints, now)
        events = [
            event.to_domain(route.id, default_id=str(uuid.uuid4()), now=now) for event in payload.events
        ]
        update = engine.reoptimize_route(
            route,
            [order.to_domain() for order in payload.orders],
            progress,
            events,
            driver_location=payload.driver_location.to_domain(),
            now=now,
            algorithm=payload.algorithm,
        )
        if update is None:
            return ReoptimizeRouteResponse(updated=False)
        updated_route = engine.apply_update(route, update, progress, now)
        return ReoptimizeRouteResponse(
            updated=True,
            update=route_update_to_json(update),
            route=optimized_route_to_json(updated_route),
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error reoptimizing route: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to reoptimize route: {str(exc)}",
        ) from exc


@router.get("/{route_id}", status_code=status.HTTP_200_OK)
def get_route(
    route_id: str,
    format: str = Query(default="json", pattern="^(json|csv)$", description="json or csv waypoint listing"),
):
    try:
        record = dependencies.store().get(ROUTES_TABLE, route_id)
        if record is None:
            raise NotFoundError(f"Route '{route_id}' not found.")
        if format == "csv":
            return PlainTextResponse(waypoints_to_csv(optimized_route_from_json(record["route"])), media_type="text/csv")
        return record["route"]
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error loading route {route_id}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to load route: {str(exc)}",
        ) from exc
