"""Order and driver registration endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from ...models.domain import utcnow
from ...schemas.routing import DriverModel, OrderModel
from ...services.batching import DRIVERS_TABLE, ORDERS_TABLE
from .. import dependencies

router = APIRouter(tags=["records"])


@router.post("/orders", status_code=status.HTTP_201_CREATED)
def register_order(payload: OrderModel) -> dict:
    """Create or replace an order so it can be batched."""
    try:
        order = payload.to_domain()
        if order.created_at is None:
            order.created_at = utcnow()
        return dependencies.store().upsert(ORDERS_TABLE, order.to_record())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error registering order {payload.id}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to register order: {str(exc)}",
        ) from exc


@router.post("/drivers", status_code=status.HTTP_201_CREATED)
def register_driver(payload: DriverModel) -> dict:
    try:
        driver = payload.to_domain()
        if driver.current_location is not None:
            driver.location_updated_at = utcnow()
        return dependencies.store().upsert(DRIVERS_TABLE, driver.to_record())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error registering driver {payload.id}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to register driver: {str(exc)}",
        ) from exc
