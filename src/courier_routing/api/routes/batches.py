"""Multi-order batch endpoints."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from fastapi import APIRouter, HTTPException, status

from ...errors import BatchStateError, NotFoundError
from ...schemas.batching import (
    BatchModel,
    BatchOperationResponse,
    BatchOrderModel,
    BatchResponse,
    CancelBatchRequest,
    CreateBatchRequest,
    StopStatusRequest,
    SuggestBatchesRequest,
    SuggestedBatchModel,
)
from ...services.batching import ROUTES_TABLE
from ...services.outputs.route_formatter import optimized_route_to_json
from .. import dependencies

router = APIRouter(prefix="/batches", tags=["batches"])


def _run(action: str, operation: Callable):
    try:
        return operation()
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BatchStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error trying to {action}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action}: {str(exc)}",
        ) from exc


@router.post("", response_model=BatchResponse, status_code=status.HTTP_201_CREATED)
def create_batch(payload: CreateBatchRequest) -> BatchResponse:
    def operation() -> BatchResponse:
        result = dependencies.batch_service().create_optimized_batch(
            payload.driver_id,
            payload.order_ids,
            max_orders=payload.max_orders,
            max_deviation_km=payload.max_deviation_km,
            criteria=payload.criteria.to_domain() if payload.criteria else None,
            algorithm=payload.algorithm,
        )
        return BatchResponse(
            batch=BatchModel.from_domain(result.batch),
            orders=[BatchOrderModel.from_domain(item) for item in result.batch_orders],
            route=optimized_route_to_json(result.route),
        )

    return _run("create batch", operation)


@router.post("/suggest", response_model=List[SuggestedBatchModel], status_code=status.HTTP_200_OK)
def suggest_batches(payload: SuggestBatchesRequest) -> List[SuggestedBatchModel]:
    """Group the ready, unassigned orders into batches this driver could take."""

    def operation() -> List[SuggestedBatchModel]:
        groups = dependencies.batch_service().suggest_batches(
            payload.driver_id, max_orders=payload.max_orders, max_deviation_km=payload.max_deviation_km
        )
        return [
            SuggestedBatchModel(
                order_ids=[order.id for order in group],
                vendor_ids=sorted({order.vendor_id for order in group}),
            )
            for group in groups
        ]

    return _run("suggest batches", operation)


@router.get("/driver/{driver_id}/active", response_model=Optional[BatchModel], status_code=status.HTTP_200_OK)
def active_batch(driver_id: str) -> Optional[BatchModel]:
    def operation() -> Optional[BatchModel]:
        batch = dependencies.batch_service().get_active_batch_for_driver(driver_id)
        return BatchModel.from_domain(batch) if batch is not None else None

    return _run("load active batch", operation)


@router.get("/{batch_id}", response_model=BatchResponse, status_code=status.HTTP_200_OK)
def get_batch(batch_id: str) -> BatchResponse:
    def operation() -> BatchResponse:
        service = dependencies.batch_service()
        batch = service.get_batch(batch_id)
        route = None
        if batch.route_id:
            record = dependencies.store().get(ROUTES_TABLE, batch.route_id)
            route = record["route"] if record else None
        return BatchResponse(
            batch=BatchModel.from_domain(batch),
            orders=[BatchOrderModel.from_domain(item) for item in service.get_batch_orders(batch_id)],
            route=route,
        )

    return _run("load batch", operation)


@router.post("/{batch_id}/start", response_model=BatchOperationResponse)
def start_batch(batch_id: str) -> BatchOperationResponse:
    return _run("start batch", lambda: BatchOperationResponse.from_domain(dependencies.batch_service().start_batch(batch_id)))


@router.post("/{batch_id}/pause", response_model=BatchOperationResponse)
def pause_batch(batch_id: str) -> BatchOperationResponse:
    return _run("pause batch", lambda: BatchOperationResponse.from_domain(dependencies.batch_service().pause_batch(batch_id)))


@router.post("/{batch_id}/resume", response_model=BatchOperationResponse)
def resume_batch(batch_id: str) -> BatchOperationResponse:
    return _run(
        "resume batch", lambda: BatchOperationResponse.from_domain(dependencies.batch_service().resume_batch(batch_id))
    )


@router.post("/{batch_id}/complete", response_model=BatchOperationResponse)
def complete_batch(batch_id: str) -> BatchOperationResponse:
    return _run(
        "complete batch",
        lambda: BatchOperationResponse.from_domain(dependencies.batch_service().complete_batch(batch_id)),
    )


@router.post("/{batch_id}/cancel", response_model=BatchOperationResponse)
def cancel_batch(batch_id: str, payload: CancelBatchRequest) -> BatchOperationResponse:
    return _run(
        "cancel batch",
        lambda: BatchOperationResponse.from_domain(dependencies.batch_service().cancel_batch(batch_id, payload.reason)),
    )


@router.post("/{batch_id}/orders/{order_id}/pickup", response_model=BatchOperationResponse)
def update_pickup(batch_id: str, order_id: str, payload: StopStatusRequest) -> BatchOperationResponse:
    return _run(
        "update pickup",
        lambda: BatchOperationResponse.from_domain(
            dependencies.batch_service().update_pickup_status(batch_id, order_id, payload.status)
        ),
    )


@router.post("/{batch_id}/orders/{order_id}/delivery", response_model=BatchOperationResponse)
def update_delivery(batch_id: str, order_id: str, payload: StopStatusRequest) -> BatchOperationResponse:
    return _run(
        "update delivery",
        lambda: BatchOperationResponse.from_domain(
            dependencies.batch_service().update_delivery_status(batch_id, order_id, payload.status)
        ),
    )
