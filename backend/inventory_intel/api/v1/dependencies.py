r"""backend\inventory_intel\api\v1\dependencies.py

Shared service instances for the versioned routers.

Routers read these attributes at request time (``dependencies.forecast_service``)
so tests can swap them with ``monkeypatch`` or start over with :func:`reset`.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from ...core.config import load_intelligence_settings
from ...core.errors import InvalidInputError, InventoryIntelligenceError
from ...services.accuracy_tracker import ForecastAccuracyTracker
from ...services.forecasting_service import ForecastService
from ...services.reorder_service import ReorderCalculator
from ...services.repository import EventOutbox, InMemoryRepository
from ...services.stock_monitor import StockMonitor
from ...services.validation_service import ValidationService

LOGGER = logging.getLogger(__name__)

settings = load_intelligence_settings()
repository = InMemoryRepository()
outbox = EventOutbox()
validator = ValidationService()
tracker = ForecastAccuracyTracker()
forecast_service = ForecastService(repository, tracker=tracker, settings=settings)
reorder_calculator = ReorderCalculator()
stock_monitor = StockMonitor(settings.overstock_window_days)


def reset() -> None:
    """Rebuild every shared instance with empty state."""

    global settings, repository, outbox, tracker, forecast_service, reorder_calculator, stock_monitor
    settings = load_intelligence_settings()
    repository = InMemoryRepository()
    outbox = EventOutbox()
    tracker = ForecastAccuracyTracker()
    forecast_service = ForecastService(repository, tracker=tracker, settings=settings)
    reorder_calculator = ReorderCalculator()
    stock_monitor = StockMonitor(settings.overstock_window_days)


def error_payload(code: str, message: str) -> dict[str, str]:
    """Return a standardised error payload."""

    return {"error": code, "message": message}


def http_error(exc: InventoryIntelligenceError) -> HTTPException:
    """Map a core error onto an HTTP error carrying its context."""

    if isinstance(exc, InvalidInputError):
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return HTTPException(status_code=status_code, detail=exc.context())


def require_product(store_id: str, product_id: str) -> None:
    if not repository.has_product(store_id, product_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_payload(
                "product_not_found", f"Product '{product_id}' was not found in store '{store_id}'."
            ),
        )
