"""Routes for demand forecasting."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from . import dependencies
from ...core.errors import InventoryIntelligenceError
from ...models import schemas

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.get("/forecasts/{store_id}/{product_id}", response_model=schemas.ForecastResponse)
def get_forecasts(
    store_id: str,
    product_id: str,
    horizons: Optional[List[int]] = Query(None, description="Horizons in days (7, 14 or 30)"),
    refresh: bool = Query(False, description="Ignore cached forecasts and refit"),
) -> schemas.ForecastResponse:
    """Return demand forecasts for the requested horizons.

    Horizons without enough history are listed under ``failures``; the rest
    are still returned.
    """

    LOGGER.info(
        "Forecast request received for %s/%s horizons=%s refresh=%s", store_id, product_id, horizons, refresh
    )
    dependencies.require_product(store_id, product_id)

    try:
        batch = dependencies.forecast_service.generate(store_id, product_id, periods=horizons, refresh=refresh)
    except InventoryIntelligenceError as exc:
        LOGGER.warning("Forecasting rejected for %s/%s: %s", store_id, product_id, exc)
        raise dependencies.http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive programming
        LOGGER.exception("Unexpected error while forecasting %s/%s", store_id, product_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=dependencies.error_payload("forecast_failed", "An unexpected error occurred while forecasting."),
        ) from exc

    dependencies.outbox.publish(batch.events)
    return schemas.ForecastResponse(
        store_id=store_id,
        product_id=product_id,
        forecasts=[batch.forecasts[h] for h in sorted(batch.forecasts)],
        failures={h: exc.context() for h, exc in batch.failures.items()},
    )
