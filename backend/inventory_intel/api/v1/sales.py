r"""backend\inventory_intel\api\v1\sales.py

Routes that feed observed sales into the repository."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from . import dependencies
from ...core.errors import InvalidInputError
from ...models import schemas

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sales/{store_id}/{product_id}", status_code=status.HTTP_201_CREATED)
def append_sales(store_id: str, product_id: str, body: schemas.SalesUpload) -> dict[str, object]:
    """Append observations, then mark the product's cached forecasts stale."""

    incoming = schemas.SalesHistory(
        store_id=store_id,
        product_id=product_id,
        observations=tuple(sorted(body.observations, key=lambda obs: obs.date)),
    )
    try:
        dependencies.validator.validate_history(incoming, store_id=store_id, product_id=product_id)
    except InvalidInputError as exc:
        LOGGER.warning("Rejected sales upload for %s/%s: %s", store_id, product_id, exc)
        raise dependencies.http_error(exc) from exc

    history = dependencies.repository.append_sales(store_id, product_id, incoming.observations)
    stale = dependencies.forecast_service.invalidate(store_id, product_id)
    return {
        "store_id": store_id,
        "product_id": product_id,
        "accepted": len(incoming.observations),
        "total_observations": len(history.observations),
        "distinct_days": history.distinct_dates(),
        "stale_forecasts": stale,
    }


@router.delete("/sales/{store_id}/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_product(store_id: str, product_id: str) -> None:
    """Forget a product's sales, stock, forecasts and accuracy history."""

    if not dependencies.repository.delete_product(store_id, product_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=dependencies.error_payload(
                "product_not_found", f"Product '{product_id}' was not found in store '{store_id}'."
            ),
        )
    dependencies.forecast_service.forget(store_id, product_id)
