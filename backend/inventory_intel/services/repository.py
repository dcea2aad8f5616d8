r"""backend\inventory_intel\services\repository.py

Collaborator interfaces at the boundary of the core, plus the in-memory
implementations used by the API and the tests.

The core never performs I/O itself: sales histories, stock positions and
snapshot persistence are reached through the small protocols below.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import date
from typing import Any, Dict, Hashable, Iterable, List, Optional, Protocol, Tuple

from ..models.schemas import ProductStock, SalesHistory, SalesObservation

LOGGER = logging.getLogger(__name__)

ForecastKey = Tuple[str, str, int]
AccuracyKey = Tuple[str, str, date]


class SalesHistoryProvider(Protocol):
    def get_history(self, store_id: str, product_id: str) -> SalesHistory:
        ...


class SnapshotStore(Protocol):
    """Simple get/put-by-key persistence for forecasts and accuracy records."""

    def get(self, key: Hashable) -> Optional[Any]:
        ...

    def put(self, key: Hashable, value: Any) -> None:
        ...

    def keys(self) -> Iterable[Hashable]:
        ...

    def delete(self, key: Hashable) -> None:
        ...


class InMemorySnapshotStore:
    """Dictionary backed ``SnapshotStore``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: Dict[Hashable, Any] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            return self._items.get(key)

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._items[key] = value

    def keys(self) -> List[Hashable]:
        with self._lock:
            return list(self._items)

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._items.pop(key, None)


class InMemoryRepository:
    """Sales histories and stock positions keyed by (store_id, product_id)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sales: Dict[Tuple[str, str], List[SalesObservation]] = defaultdict(list)
        self._stock: Dict[Tuple[str, str], ProductStock] = {}

    # ------------------------------------------------------------------
    def get_history(self, store_id: str, product_id: str) -> SalesHistory:
        with self._lock:
            observations = tuple(self._sales.get((store_id, product_id), ()))
        return SalesHistory(store_id=store_id, product_id=product_id, observations=observations)

    def append_sales(
        self, store_id: str, product_id: str, observations: Iterable[SalesObservation]
    ) -> SalesHistory:
        """Record observations, keeping the history ordered by date.

        Observations are immutable; a second observation on an existing date
        is kept alongside the first and summed during aggregation.
        """

        new_items = list(observations)
        with self._lock:
            existing = self._sales[(store_id, product_id)]
            existing.extend(new_items)
            existing.sort(key=lambda obs: obs.date)
        LOGGER.info("Recorded %d observations for %s/%s", len(new_items), store_id, product_id)
        return self.get_history(store_id, product_id)

    def delete_product(self, store_id: str, product_id: str) -> bool:
        with self._lock:
            had_sales = self._sales.pop((store_id, product_id), None) is not None
            had_stock = self._stock.pop((store_id, product_id), None) is not None
        return had_sales or had_stock

    def has_product(self, store_id: str, product_id: str) -> bool:
        with self._lock:
            return (store_id, product_id) in self._sales or (store_id, product_id) in self._stock

    # ------------------------------------------------------------------
    def put_stock(self, store_id: str, stock: ProductStock) -> None:
        with self._lock:
            self._stock[(store_id, stock.product_id)] = stock

    def get_stock(self, store_id: str, product_id: str) -> Optional[ProductStock]:
        with self._lock:
            return self._stock.get((store_id, product_id))

    def stock_for_store(self, store_id: str) -> List[ProductStock]:
        with self._lock:
            return [stock for (store, _), stock in self._stock.items() if store == store_id]

    def products_for_store(self, store_id: str) -> List[str]:
        with self._lock:
            keys = set(self._sales) | set(self._stock)
        return sorted(product for store, product in keys if store == store_id)


class EventOutbox:
    """Collect output events until the alert collaborator drains them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[Any] = []

    def publish(self, events: Iterable[Any]) -> int:
        batch = list(events)
        with self._lock:
            self._events.extend(batch)
        return len(batch)

    def drain(self) -> List[Any]:
        with self._lock:
            events, self._events = self._events, []
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
