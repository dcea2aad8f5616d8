r"""backend\inventory_intel\services\accuracy_tracker.py

Compare past forecasts with realized sales and keep an append-only trend of
accuracy records per (store, product)."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from ..core.errors import NoOverlapError
from ..models.schemas import AccuracyRecord, Forecast, SalesHistory
from .repository import InMemorySnapshotStore, SnapshotStore

LOGGER = logging.getLogger(__name__)


def absolute_percentage_error(actual: float, predicted: float) -> float:
    """Return ``|actual - predicted| / actual`` with the zero-actual conventions.

    Zero actual and zero prediction is a perfect hit (0.0); zero actual with a
    positive prediction counts as a full miss (1.0).
    """

    if actual == 0:
        return 0.0 if predicted == 0 else 1.0
    return abs(actual - predicted) / abs(actual)


def score_pairs(pairs: Sequence[Tuple[float, float]]) -> Tuple[float, float, float]:
    """Return ``(mape, rmse, mae)`` for ``(actual, predicted)`` pairs; MAPE in percent."""

    if not pairs:
        raise ValueError("at least one (actual, predicted) pair is required")

    actual = np.array([a for a, _ in pairs], dtype=float)
    predicted = np.array([p for _, p in pairs], dtype=float)
    errors = actual - predicted

    ape = [absolute_percentage_error(a, p) for a, p in pairs]
    mape = float(np.mean(ape)) * 100.0
    rmse = float(np.sqrt(np.mean(errors**2)))
    mae = float(np.mean(np.abs(errors)))
    return mape, rmse, mae


def realized_by_date(actuals: SalesHistory) -> dict[date, float]:
    totals: dict[date, float] = defaultdict(float)
    for obs in actuals.observations:
        totals[obs.date] += float(obs.quantity)
    return dict(totals)


class AccuracyTrend:
    """Restartable view over the accuracy records of one product.

    Each iteration reads the store afresh, so records appended between two
    iterations show up in the second one.
    """

    def __init__(self, store: SnapshotStore, store_id: str, product_id: str) -> None:
        self._store = store
        self.store_id = store_id
        self.product_id = product_id

    def _keys(self) -> List[Tuple[str, str, date]]:
        return sorted(
            key
            for key in self._store.keys()
            if isinstance(key, tuple)
            and len(key) == 3
            and key[:2] == (self.store_id, self.product_id)
            and isinstance(key[2], date)
        )

    def __iter__(self) -> Iterator[AccuracyRecord]:
        for key in self._keys():
            yield from self._store.get(key) or ()

    def __len__(self) -> int:
        return sum(len(self._store.get(key) or ()) for key in self._keys())


class ForecastAccuracyTracker:
    """Score forecasts against realized sales and remember the results."""

    def __init__(self, store: Optional[SnapshotStore] = None) -> None:
        self.store: SnapshotStore = store if store is not None else InMemorySnapshotStore()

    # ------------------------------------------------------------------
    def score(
        self,
        store_id: str,
        product_id: str,
        past_forecast: Forecast,
        actuals: SalesHistory,
        evaluation_date: Optional[date] = None,
    ) -> AccuracyRecord:
        """Compute an ``AccuracyRecord`` without persisting it."""

        realized = realized_by_date(actuals)
        matched = [
            (prediction.date, realized[prediction.date], prediction.point_estimate)
            for prediction in past_forecast.predictions
            if prediction.date in realized
        ]
        if not matched:
            raise NoOverlapError(
                "forecast and actuals share no dates; accuracy is undefined",
                store_id=store_id,
                product_id=product_id,
                horizon=past_forecast.horizon_days,
            )

        mape, rmse, mae = score_pairs([(actual, predicted) for _, actual, predicted in matched])
        return AccuracyRecord(
            store_id=store_id,
            product_id=product_id,
            evaluation_date=evaluation_date or max(day for day, _, _ in matched),
            mape=mape,
            rmse=rmse,
            mae=mae,
            matched_days=len(matched),
            horizon_days=past_forecast.horizon_days,
        )

    # ------------------------------------------------------------------
    def append(self, record: AccuracyRecord) -> AccuracyRecord:
        key = (record.store_id, record.product_id, record.evaluation_date)
        existing = tuple(self.store.get(key) or ())
        self.store.put(key, existing + (record,))
        return record

    # ------------------------------------------------------------------
    def record_and_score(
        self,
        store_id: str,
        product_id: str,
        past_forecast: Forecast,
        actuals: SalesHistory,
        evaluation_date: Optional[date] = None,
    ) -> AccuracyRecord:
        record = self.score(store_id, product_id, past_forecast, actuals, evaluation_date)
        self.append(record)
        LOGGER.info(
            "Accuracy for %s/%s on %s: mape=%.2f rmse=%.3f mae=%.3f matched=%d",
            store_id,
            product_id,
            record.evaluation_date,
            record.mape,
            record.rmse,
            record.mae,
            record.matched_days,
        )
        return record

    # ------------------------------------------------------------------
    def accuracy_trend(self, store_id: str, product_id: str) -> AccuracyTrend:
        return AccuracyTrend(self.store, store_id, product_id)

    def latest(self, store_id: str, product_id: str, count: int = 2) -> List[AccuracyRecord]:
        """Return up to ``count`` most recent records, oldest first."""

        records: List[AccuracyRecord] = list(self.accuracy_trend(store_id, product_id))
        return records[-count:] if count > 0 else []

    def forget(self, store_id: str, product_id: str) -> int:
        keys = self.accuracy_trend(store_id, product_id)._keys()
        for key in keys:
            self.store.delete(key)
        return len(keys)


def mean_mape(records: Iterable[AccuracyRecord]) -> Optional[float]:
    values = [record.mape for record in records]
    if not values:
        return None
    return float(np.mean(values))
