"""Shared service instances for the API routers."""

from __future__ import annotations

from functools import lru_cache

from ..persistence.store import DispatchStore, get_store
from ..services.batching import MultiOrderBatchService
from ..services.dashboard import RouteOptimizationDashboardService
from ..services.monitoring import TSPPerformanceMonitoringService
from ..services.preparation import PreparationTimeService
from ..services.reoptimization import DynamicRouteReoptimizationService
from ..services.routing.engine import RouteOptimizationEngine
from ..services.routing.traffic import TrafficService


def store() -> DispatchStore:
    return get_store()


@lru_cache()
def traffic_service() -> TrafficService:
    return TrafficService()


@lru_cache()
def preparation_service() -> PreparationTimeService:
    return PreparationTimeService(store())


@lru_cache()
def performance_monitor() -> TSPPerformanceMonitoringService:
    return TSPPerformanceMonitoringService(store())


@lru_cache()
def optimization_engine() -> RouteOptimizationEngine:
    return RouteOptimizationEngine(
        preparation_service=preparation_service(),
        traffic_service=traffic_service(),
        monitor=performance_monitor(),
        store=store(),
    )


@lru_cache()
def batch_service() -> MultiOrderBatchService:
    return MultiOrderBatchService(store(), optimization_engine())


@lru_cache()
def reoptimization_service() -> DynamicRouteReoptimizationService:
    return DynamicRouteReoptimizationService(optimization_engine(), store())


@lru_cache()
def dashboard_service() -> RouteOptimizationDashboardService:
    return RouteOptimizationDashboardService(store(), performance_monitor())


def reset_services() -> None:
    """Drop cached services so the next request builds fresh ones (tests, config reloads)."""
    for factory in (
        traffic_service,
        preparation_service,
        performance_monitor,
        optimization_engine,
        batch_service,
        reoptimization_service,
        dashboard_service,
        get_store,
    ):
        factory.cache_clear()
