"""Serializers for optimized routes and route updates."""

from __future__ import annotations

import csv
import io
from typing import Sequence

from ...models.domain import GeoPoint, parse_datetime
from ...models.monitoring import RouteOptimizationResult, TSPAlgorithmComparison, TSPAlgorithmStats
from ...models.routing import (
    OptimizationCriteria,
    OptimizedRoute,
    RouteUpdate,
    RouteWaypoint,
    TrafficCondition,
    WaypointType,
)


def waypoint_to_json(waypoint: RouteWaypoint) -> dict:
    return {
        "id": waypoint.id,
        "order_id": waypoint.order_id,
        "type": waypoint.type.value,
        "location": waypoint.location.to_dict(),
        "address": waypoint.address,
        "sequence": waypoint.sequence,
        "estimated_arrival_time": waypoint.estimated_arrival_time.isoformat(),
        "estimated_duration_min": waypoint.estimated_duration_min,
        "distance_from_previous_km": waypoint.distance_from_previous_km,
        "metadata": waypoint.metadata,
    }


def waypoint_from_json(data: dict) -> RouteWaypoint:
    return RouteWaypoint(
        id=data["id"],
        order_id=data["order_id"],
        type=WaypointType(data["type"]),
        location=GeoPoint.from_dict(data["location"]),
        address=data.get("address") or "",
        sequence=int(data["sequence"]),
        estimated_arrival_time=parse_datetime(data["estimated_arrival_time"]),
        estimated_duration_min=float(data.get("estimated_duration_min") or 0.0),
        distance_from_previous_km=float(data.get("distance_from_previous_km") or 0.0),
        metadata=dict(data.get("metadata") or {}),
    )


def optimized_route_to_json(route: OptimizedRoute) -> dict:
    return {
        "id": route.id,
        "batch_id": route.batch_id,
        "waypoints": [waypoint_to_json(wp) for wp in route.waypoints],
        "total_distance_km": route.total_distance_km,
        "total_duration_min": route.total_duration_min,
        "duration_in_traffic_min": route.duration_in_traffic_min,
        "optimization_score": route.optimization_score,
        "criteria": route.criteria.to_dict(),
        "calculated_at": route.calculated_at.isoformat(),
        "overall_traffic_condition": route.overall_traffic_condition.value,
        "formatted_distance": route.formatted_distance,
        "formatted_duration": route.formatted_duration,
        "formatted_duration_in_traffic": route.formatted_duration_in_traffic,
        "metadata": route.metadata,
    }


def optimized_route_from_json(data: dict) -> OptimizedRoute:
    return OptimizedRoute(
        id=data["id"],
        batch_id=data["batch_id"],
        waypoints=[waypoint_from_json(item) for item in data.get("waypoints") or []],
        total_distance_km=float(data["total_distance_km"]),
        total_duration_min=float(data["total_duration_min"]),
        duration_in_traffic_min=float(data["duration_in_traffic_min"]),
        optimization_score=float(data["optimization_score"]),
        criteria=OptimizationCriteria.from_dict(data["criteria"]),
        calculated_at=parse_datetime(data["calculated_at"]),
        overall_traffic_condition=TrafficCondition(data.get("overall_traffic_condition") or "unknown"),
        metadata=dict(data.get("metadata") or {}),
    )


def route_update_to_json(update: RouteUpdate) -> dict:
    return {
        "route_id": update.route_id,
        "updated_waypoints": [waypoint_to_json(wp) for wp in update.updated_waypoints],
        "new_optimization_score": update.new_optimization_score,
        "reason": update.reason.value,
        "updated_at": update.updated_at.isoformat(),
        "changes": update.changes,
    }


def optimization_result_to_json(result: RouteOptimizationResult) -> dict:
    return {
        "id": result.id,
        "batch_id": result.batch_id,
        "algorithm": result.algorithm.value,
        "optimization_score": result.optimization_score,
        "calculation_time_ms": round(result.calculation_time_ms, 3),
        "created_at": result.created_at.isoformat(),
        "metadata": result.metadata,
        "route": optimized_route_to_json(result.optimized_route),
    }


def algorithm_stats_to_json(stats: TSPAlgorithmStats) -> dict:
    return {
        "algorithm": stats.algorithm.value,
        "total_executions": stats.total_executions,
        "avg_calculation_time_ms": round(stats.avg_calculation_time_ms, 3),
        "median_calculation_time_ms": round(stats.median_calculation_time_ms, 3),
        "avg_optimization_score": round(stats.avg_optimization_score, 2),
        "avg_route_quality": round(stats.avg_route_quality, 2),
        "success_rate": round(stats.success_rate, 2),
        "overall_score": round(stats.overall_score, 2),
    }


def comparison_to_json(comparison: Sequence[TSPAlgorithmComparison]) -> list[dict]:
    return [
        {"rank": item.rank, "algorithm": item.algorithm.value, "stats": algorithm_stats_to_json(item.stats)}
        for item in comparison
    ]


def waypoints_to_csv(route: OptimizedRoute) -> str:
    buffer = io.StringIO()
    fieldnames = [
        "route_id",
        "batch_id",
        "sequence",
        "waypoint_id",
        "order_id",
        "type",
        "latitude",
        "longitude",
        "address",
        "estimated_arrival_time",
        "estimated_duration_min",
        "distance_from_previous_km",
    ]
    writer = csv.DictWriter(buffer, fieldnames=fieldnames)
    writer.writeheader()
    for wp in sorted(route.waypoints, key=lambda item: item.sequence):
        writer.writerow(
            {
                "route_id": route.id,
                "batch_id": route.batch_id,
                "sequence": wp.sequence,
                "waypoint_id": wp.id,
                "order_id": wp.order_id,
                "type": wp.type.value,
                "latitude": wp.location.latitude,
                "longitude": wp.location.longitude,
                "address": wp.address,
                "estimated_arrival_time": wp.estimated_arrival_time.isoformat(),
                "estimated_duration_min": wp.estimated_duration_min,
                "distance_from_previous_km": wp.distance_from_previous_km,
            }
        )
    return buffer.getvalue()
