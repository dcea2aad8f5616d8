r"""backend\inventory_intel\api\v1\backtest.py

Backtesting routes for forecasting models."""

from __future__ import annotations

import logging

import numpy as np
from fastapi import APIRouter, HTTPException, Query, status

from . import dependencies
from ...core.errors import InventoryIntelligenceError

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.get("/backtest/{store_id}/{product_id}")
def backtest(
    store_id: str,
    product_id: str,
    window: int = Query(56, ge=14, le=365, description="Length of the rolling training window."),
    horizon: int = Query(7, ge=1, le=60, description="Forecast horizon used for evaluation."),
    step: int = Query(7, ge=1, le=28, description="Step size (in days) between backtest windows."),
    detail: bool = Query(False, description="When true, include the per-origin accuracy records."),
) -> dict[str, object]:
    """Return rolling forecast accuracy metrics for the requested product."""

    dependencies.require_product(store_id, product_id)

    try:
        result = dependencies.forecast_service.backtest(
            store_id, product_id, window=window, horizon=horizon, step=step
        )
    except InventoryIntelligenceError as exc:
        LOGGER.warning("Backtest rejected for %s/%s: %s", store_id, product_id, exc)
        raise dependencies.http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive programming
        LOGGER.exception("Unexpected error during backtest for %s/%s", store_id, product_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=dependencies.error_payload(
                "backtest_failed", "An unexpected error occurred while running the backtest."
            ),
        ) from exc

    for metric in ("mape", "rmse", "mae", "coverage"):
        result[metric] = _round_metric(result.get(metric))

    records = result.pop("records", [])
    if detail:
        result["records"] = [record.model_dump(mode="json") for record in records]
    else:
        result.pop("origin_dates", None)
    return result


def _round_metric(value: object) -> float | None:
    if isinstance(value, (int, float, np.floating)):
        return float(np.round(float(value), 6))
    return None
