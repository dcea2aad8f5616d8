r"""backend\inventory_intel\api\v1\accuracy.py

Score past forecasts against what actually sold."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, status

from . import dependencies
from ...core.errors import InventoryIntelligenceError
from ...models import schemas

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.post("/accuracy/{store_id}/{product_id}", response_model=schemas.AccuracyResponse)
def record_accuracy(
    store_id: str,
    product_id: str,
    horizon: int = Query(7, description="Horizon of the cached forecast to score"),
) -> schemas.AccuracyResponse:
    """Score the last forecast for ``horizon`` against the recorded sales."""

    dependencies.require_product(store_id, product_id)
    forecast = dependencies.forecast_service.snapshot(store_id, product_id, horizon)
    if forecast is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=dependencies.error_payload(
                "forecast_not_found",
                f"No {horizon}-day forecast has been generated for '{product_id}' in store '{store_id}'.",
            ),
        )

    actuals = dependencies.repository.get_history(store_id, product_id)
    try:
        outcome = dependencies.forecast_service.record_accuracy(store_id, product_id, forecast, actuals)
    except InventoryIntelligenceError as exc:
        LOGGER.warning("Accuracy scoring rejected for %s/%s: %s", store_id, product_id, exc)
        raise dependencies.http_error(exc) from exc

    dependencies.outbox.publish(outcome.events)
    return schemas.AccuracyResponse(
        record=outcome.record,
        uncertainty_multiplier=outcome.uncertainty_multiplier,
        low_accuracy=bool(outcome.events),
    )


@router.get("/accuracy/{store_id}/{product_id}", response_model=schemas.AccuracyTrendResponse)
def accuracy_trend(store_id: str, product_id: str) -> schemas.AccuracyTrendResponse:
    return schemas.AccuracyTrendResponse(
        store_id=store_id,
        product_id=product_id,
        records=list(dependencies.tracker.accuracy_trend(store_id, product_id)),
        uncertainty_multiplier=dependencies.forecast_service.uncertainty_multiplier(store_id, product_id),
    )
