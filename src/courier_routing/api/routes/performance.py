"""Algorithm performance and dashboard endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from ...models.monitoring import AlertSeverity, OptimizationAlgorithm
from ...schemas.monitoring import (
    AlgorithmComparisonModel,
    AlgorithmStatsModel,
    OptimizationOverviewModel,
    PerformanceAlertModel,
    PerformanceDashboardModel,
)
from .. import dependencies

router = APIRouter(prefix="/performance", tags=["performance"])


def _run(action: str, operation: Callable):
    try:
        return operation()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error trying to {action}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action}: {str(exc)}",
        ) from exc


@router.get("/algorithms/{algorithm}", response_model=AlgorithmStatsModel, status_code=status.HTTP_200_OK)
def algorithm_stats(
    algorithm: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    min_waypoints: Optional[int] = Query(default=None, ge=0),
    max_waypoints: Optional[int] = Query(default=None, ge=0),
) -> AlgorithmStatsModel:
    def operation() -> AlgorithmStatsModel:
        stats = dependencies.performance_monitor().get_algorithm_stats(
            OptimizationAlgorithm.parse(algorithm), start, end, min_waypoints, max_waypoints
        )
        return AlgorithmStatsModel.model_validate(stats)

    return _run("load algorithm stats", operation)


@router.get("/comparison", response_model=List[AlgorithmComparisonModel], status_code=status.HTTP_200_OK)
def algorithm_comparison(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
) -> List[AlgorithmComparisonModel]:
    return _run(
        "compare algorithms",
        lambda: [
            AlgorithmComparisonModel.model_validate(item)
            for item in dependencies.performance_monitor().get_algorithm_comparison(start, end)
        ],
    )


@router.get("/dashboard", response_model=PerformanceDashboardModel, status_code=status.HTTP_200_OK)
def performance_dashboard(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
) -> PerformanceDashboardModel:
    return _run(
        "load performance dashboard",
        lambda: PerformanceDashboardModel.model_validate(dependencies.performance_monitor().get_dashboard(start, end)),
    )


@router.get("/alerts", response_model=List[PerformanceAlertModel], status_code=status.HTTP_200_OK)
def performance_alerts(
    since: Optional[datetime] = Query(default=None),
    severity: Optional[AlertSeverity] = Query(default=None),
) -> List[PerformanceAlertModel]:
    return _run(
        "load performance alerts",
        lambda: [
            PerformanceAlertModel.model_validate(alert)
            for alert in dependencies.performance_monitor().get_alerts(since, severity)
        ],
    )


@router.get("/overview", response_model=OptimizationOverviewModel, status_code=status.HTTP_200_OK)
def optimization_overview(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
) -> OptimizationOverviewModel:
    """Batch, route, driver and system figures for the dashboard."""
    return _run(
        "load optimization overview",
        lambda: OptimizationOverviewModel.model_validate(dependencies.dashboard_service().get_dashboard_data(start, end)),
    )
