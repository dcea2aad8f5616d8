r"""backend\inventory_intel\api\v1\inventory.py

Stock positions used by the reorder calculator and the stock monitor."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from . import dependencies
from ...models import schemas

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.put("/inventory/{store_id}/{product_id}", response_model=schemas.ProductStock)
def put_stock(store_id: str, product_id: str, body: schemas.StockUpdate) -> schemas.ProductStock:
    stock = schemas.ProductStock(product_id=product_id, **body.model_dump())
    dependencies.repository.put_stock(store_id, stock)
    LOGGER.info("Stock for %s/%s set to %.1f", store_id, product_id, stock.current_stock)
    return stock


@router.get("/inventory/{store_id}/{product_id}", response_model=schemas.ProductStock)
def get_stock(store_id: str, product_id: str) -> schemas.ProductStock:
    stock = dependencies.repository.get_stock(store_id, product_id)
    if stock is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=dependencies.error_payload(
                "stock_not_found", f"No stock position recorded for '{product_id}' in store '{store_id}'."
            ),
        )
    return stock
