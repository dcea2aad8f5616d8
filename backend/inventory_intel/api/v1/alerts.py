r"""backend\inventory_intel\api\v1\alerts.py

Stock signals for every product of a store."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from . import dependencies
from ...models import schemas

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.get("/alerts/{store_id}", response_model=list[schemas.StockSignal])
def get_alerts(store_id: str) -> list[schemas.StockSignal]:
    """Return Out, Low and Overstock signals, most urgent first.

    Products whose forecasts cannot be produced are still checked against
    their thresholds; they simply never raise Overstock.
    """

    stocks = dependencies.repository.stock_for_store(store_id)
    result = dependencies.forecast_service.generate_batch(store_id, [s.product_id for s in stocks])
    for product_id, exc in result.errors.items():
        LOGGER.warning("No forecast for alerts on %s/%s: %s", store_id, product_id, exc)

    items = []
    for stock in stocks:
        batch = result.batches.get(stock.product_id)
        forecast = None
        if batch is not None and batch.forecasts:
            forecast = batch.forecasts[max(batch.forecasts)]
        items.append((stock, forecast))

    signals = dependencies.stock_monitor.evaluate(items)
    dependencies.outbox.publish(result.events)
    dependencies.outbox.publish(dependencies.stock_monitor.events(store_id, signals))
    return signals
