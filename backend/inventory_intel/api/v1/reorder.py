r"""backend\inventory_intel\api\v1\reorder.py

Reorder point and quantity recommendations."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from . import dependencies
from ...core.errors import InventoryIntelligenceError
from ...models import schemas

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.get("/reorder/{store_id}/{product_id}", response_model=schemas.ReorderRecommendation)
def get_reorder(
    store_id: str,
    product_id: str,
    lead_time_days: Optional[int] = Query(None, description="Overrides the product's lead time"),
) -> schemas.ReorderRecommendation:
    """Recommend how much to order so stock covers lead-time demand plus safety stock."""

    stock = dependencies.repository.get_stock(store_id, product_id)
    if stock is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=dependencies.error_payload(
                "stock_not_found", f"No stock position recorded for '{product_id}' in store '{store_id}'."
            ),
        )
    if lead_time_days is not None:
        stock = stock.model_copy(update={"lead_time_days": lead_time_days})

    try:
        batch = dependencies.forecast_service.generate(store_id, product_id)
        if not batch.forecasts:
            raise next(iter(batch.failures.values()))
        recommendation, events = dependencies.reorder_calculator.for_product(
            stock,
            batch.forecasts.values(),
            dependencies.settings.default_lead_time_days,
        )
    except InventoryIntelligenceError as exc:
        LOGGER.warning("Reorder rejected for %s/%s: %s", store_id, product_id, exc)
        raise dependencies.http_error(exc) from exc

    dependencies.outbox.publish(batch.events)
    dependencies.outbox.publish(events)
    return recommendation
