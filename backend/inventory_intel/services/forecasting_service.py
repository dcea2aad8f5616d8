r"""backend\inventory_intel\services\forecasting_service.py

Forecast orchestration for the 7/14/30 day horizons.

The service sits between the sales-history collaborator and the
``TimeSeriesModel``.  It owns the only shared mutable state in the core:

* a forecast cache (persisted through a ``SnapshotStore``) whose entries
  move through ``NoForecast -> Fresh -> Stale -> NoForecast``;
* an arena of in-flight futures so concurrent requests for the same
  (store, product, horizon) share a single model fit;
* a per-product uncertainty multiplier driven by recorded forecast accuracy,
  used to widen prediction intervals when accuracy degrades.

Output events are returned to the caller rather than delivered; sending them
is the alert collaborator's job.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from ..core.config import SUPPORTED_HORIZONS, IntelligenceSettings, load_intelligence_settings
from ..core.errors import InsufficientDataError, InvalidInputError, InventoryIntelligenceError
from ..core.observability import FORECAST_CACHE
from ..models.schemas import (
    AccuracyRecord,
    DailyPrediction,
    Forecast,
    ForecastGenerated,
    LowAccuracyDetected,
    SalesHistory,
    SalesObservation,
)
from .accuracy_tracker import ForecastAccuracyTracker
from .repository import ForecastKey, InMemorySnapshotStore, SalesHistoryProvider, SnapshotStore
from .time_series_model import TimeSeriesModel, aggregate_daily
from .validation_service import ValidationService

LOGGER = logging.getLogger(__name__)


class ForecastState(str, Enum):
    NO_FORECAST = "no_forecast"
    FRESH = "fresh"
    STALE = "stale"


# ---------------------------------------------------------------------------
# Helper utilities


def next_multiplier(
    current: float,
    previous_mape: Optional[float],
    latest_mape: float,
    ceiling: float = 3.0,
) -> float:
    """Return the uncertainty multiplier after a new accuracy record.

    A degraded MAPE raises the multiplier to ``1 + (1 - mape/100)`` (clamped
    to ``[1, ceiling]``) without ever lowering it; an improved MAPE relaxes it
    halfway back toward 1.0.  The first record only sets the baseline.
    """

    current = min(max(current, 1.0), ceiling)
    if previous_mape is None or math.isclose(latest_mape, previous_mape):
        return current
    if latest_mape > previous_mape:
        candidate = min(max(1.0 + (1.0 - latest_mape / 100.0), 1.0), ceiling)
        return max(current, candidate)
    return max(1.0, 1.0 + (current - 1.0) / 2.0)


def widen_intervals(forecast: Forecast, multiplier: float) -> Forecast:
    """Scale every prediction interval around its point estimate by ``multiplier``."""

    if multiplier == forecast.uncertainty_multiplier == 1.0:
        return forecast

    predictions = tuple(
        DailyPrediction(
            date=p.date,
            point_estimate=p.point_estimate,
            lower_bound=max(p.point_estimate - (p.point_estimate - p.lower_bound) * multiplier, 0.0),
            upper_bound=max(p.point_estimate + (p.upper_bound - p.point_estimate) * multiplier, 0.0),
        )
        for p in forecast.predictions
    )
    return forecast.model_copy(update={"predictions": predictions, "uncertainty_multiplier": multiplier})


# ---------------------------------------------------------------------------
# Result containers


@dataclass
class ForecastBatch:
    """Forecasts for one product; horizons without a forecast are listed in ``failures``."""

    store_id: str
    product_id: str
    forecasts: Dict[int, Forecast] = field(default_factory=dict)
    failures: Dict[int, InventoryIntelligenceError] = field(default_factory=dict)
    events: List[ForecastGenerated] = field(default_factory=list)


@dataclass
class AccuracyOutcome:
    record: AccuracyRecord
    uncertainty_multiplier: float
    events: List[LowAccuracyDetected] = field(default_factory=list)


@dataclass
class BatchResult:
    batches: Dict[str, ForecastBatch] = field(default_factory=dict)
    errors: Dict[str, Exception] = field(default_factory=dict)

    @property
    def events(self) -> List[ForecastGenerated]:
        return [event for batch in self.batches.values() for event in batch.events]


# ---------------------------------------------------------------------------
# Core service implementation


class ForecastService:
    """Generate, cache and adapt per-product demand forecasts."""

    def __init__(
        self,
        history_provider: SalesHistoryProvider,
        model: Optional[TimeSeriesModel] = None,
        tracker: Optional[ForecastAccuracyTracker] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        settings: Optional[IntelligenceSettings] = None,
        config_root: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or load_intelligence_settings(config_root)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.history_provider = history_provider
        self.model = model or TimeSeriesModel(self.settings, clock=self.clock)
        self.tracker = tracker or ForecastAccuracyTracker()
        self.snapshots: SnapshotStore = snapshot_store if snapshot_store is not None else InMemorySnapshotStore()
        self.validator = ValidationService()
        self.ttl = timedelta(hours=self.settings.forecast_ttl_hours)

        self._lock = threading.Lock()
        self._inflight: Dict[ForecastKey, Future] = {}
        self._stale: Set[ForecastKey] = set()
        self._generation: Dict[Tuple[str, str], int] = defaultdict(int)
        self._multipliers: Dict[Tuple[str, str], float] = {}
        self._accuracy_locks: Dict[Tuple[str, str], threading.Lock] = defaultdict(threading.Lock)

    # ------------------------------------------------------------------
    def _accuracy_lock(self, store_id: str, product_id: str) -> threading.Lock:
        """Serialise read-previous / append / update-multiplier per product."""

        with self._lock:
            return self._accuracy_locks[(store_id, product_id)]

    # ------------------------------------------------------------------
    def _validate_periods(self, store_id: str, product_id: str, periods: Iterable[int]) -> List[int]:
        requested = list(periods)
        horizons = sorted({int(h) for h in requested})
        unsupported = [h for h in horizons if h not in SUPPORTED_HORIZONS]
        if not horizons or unsupported:
            raise InvalidInputError(
                f"horizons must be a non-empty subset of {list(SUPPORTED_HORIZONS)}; got {requested}",
                store_id=store_id,
                product_id=product_id,
            )
        return horizons

    # ------------------------------------------------------------------
    def _cached(self, key: ForecastKey) -> Optional[Forecast]:
        """Return a fresh cached forecast or ``None``. Caller holds ``_lock``."""

        forecast = self.snapshots.get(key)
        if forecast is None or key in self._stale:
            return None
        if forecast.is_expired(self.clock(), self.ttl):
            self._stale.add(key)
            return None
        return forecast

    # ------------------------------------------------------------------
    def _load_history(self, store_id: str, product_id: str) -> SalesHistory:
        history = self.history_provider.get_history(store_id, product_id)
        return self.validator.validate_history(history, store_id=store_id, product_id=product_id)

    # ------------------------------------------------------------------
    def _compute(self, store_id: str, product_id: str, horizon: int) -> Forecast:
        history = self._load_history(store_id, product_id)
        forecast = self.model.fit_and_predict(history, horizon, generated_at=self.clock())
        return widen_intervals(forecast, self.uncertainty_multiplier(store_id, product_id))

    # ------------------------------------------------------------------
    def _get_or_compute(
        self,
        store_id: str,
        product_id: str,
        horizon: int,
        refresh: bool,
        timeout: Optional[float],
    ) -> Tuple[Forecast, bool]:
        """Return ``(forecast, computed)`` with single-flight semantics per key."""

        key: ForecastKey = (store_id, product_id, horizon)
        with self._lock:
            if not refresh:
                cached = self._cached(key)
                if cached is not None:
                    FORECAST_CACHE.labels("hit").inc()
                    return cached, False
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
                generation = self._generation[(store_id, product_id)]

        if not owner:
            FORECAST_CACHE.labels("coalesced").inc()
            return future.result(timeout=timeout), False

        FORECAST_CACHE.labels("miss").inc()
        try:
            forecast = self._compute(store_id, product_id, horizon)
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
                if isinstance(exc, InsufficientDataError):
                    self.snapshots.delete(key)
                    self._stale.discard(key)
            future.set_exception(exc)
            raise

        with self._lock:
            self.snapshots.put(key, forecast)
            if self._generation[(store_id, product_id)] != generation:
                # Data changed mid-fit: hand this result to current waiters, recompute next read.
                self._stale.add(key)
            else:
                self._stale.discard(key)
            self._inflight.pop(key, None)
        future.set_result(forecast)
        return forecast, True

    # ------------------------------------------------------------------
    def generate(
        self,
        store_id: str,
        product_id: str,
        periods: Optional[Iterable[int]] = None,
        refresh: bool = False,
        timeout: Optional[float] = None,
    ) -> ForecastBatch:
        """Return forecasts for each requested horizon.

        Horizons that fail with ``InsufficientDataError`` are reported in
        ``failures`` while the others proceed.  A corrupted history raises
        ``InvalidInputError`` for the whole product.
        """

        horizons = self._validate_periods(
            store_id, product_id, periods if periods is not None else self.settings.horizons
        )
        batch = ForecastBatch(store_id=store_id, product_id=product_id)

        for horizon in horizons:
            try:
                forecast, computed = self._get_or_compute(store_id, product_id, horizon, refresh, timeout)
            except InsufficientDataError as exc:
                LOGGER.info("No forecast for %s/%s horizon=%s: %s", store_id, product_id, horizon, exc.reason)
                batch.failures[horizon] = exc
                continue

            batch.forecasts[horizon] = forecast
            if computed:
                batch.events.append(
                    ForecastGenerated(
                        store_id=store_id,
                        product_id=product_id,
                        occurred_at=forecast.generated_at,
                        forecast=forecast,
                    )
                )
        return batch

    # ------------------------------------------------------------------
    def generate_batch(
        self,
        store_id: str,
        product_ids: Iterable[str],
        periods: Optional[Iterable[int]] = None,
        refresh: bool = False,
        max_workers: int = 4,
    ) -> BatchResult:
        """Forecast several products in parallel; one product's failure never aborts the others."""

        result = BatchResult()
        products = list(dict.fromkeys(product_ids))
        if not products:
            return result

        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(products)))) as pool:
            futures = {
                product_id: pool.submit(self.generate, store_id, product_id, periods, refresh)
                for product_id in products
            }
            for product_id, future in futures.items():
                try:
                    result.batches[product_id] = future.result()
                except InventoryIntelligenceError as exc:
                    LOGGER.warning("Forecast batch skipped %s/%s: %s", store_id, product_id, exc)
                    result.errors[product_id] = exc
                except Exception as exc:
                    LOGGER.exception("Unexpected error while forecasting %s/%s", store_id, product_id)
                    result.errors[product_id] = exc
        return result

    # ------------------------------------------------------------------
    def state(self, store_id: str, product_id: str, horizon: int) -> ForecastState:
        key: ForecastKey = (store_id, product_id, horizon)
        with self._lock:
            forecast = self.snapshots.get(key)
            if forecast is None:
                return ForecastState.NO_FORECAST
            if key in self._stale or forecast.is_expired(self.clock(), self.ttl):
                return ForecastState.STALE
            return ForecastState.FRESH

    # ------------------------------------------------------------------
    def snapshot(self, store_id: str, product_id: str, horizon: int) -> Optional[Forecast]:
        """Return the last forecast generated for the key, fresh or not."""

        return self.snapshots.get((store_id, product_id, horizon))

    # ------------------------------------------------------------------
    def invalidate(self, store_id: str, product_id: str) -> int:
        """Mark every cached horizon of the product stale (new sales data arrived)."""

        marked = 0
        with self._lock:
            self._generation[(store_id, product_id)] += 1
            for horizon in SUPPORTED_HORIZONS:
                key = (store_id, product_id, horizon)
                if self.snapshots.get(key) is not None:
                    self._stale.add(key)
                    marked += 1
        LOGGER.info("Invalidated %d cached forecasts for %s/%s", marked, store_id, product_id)
        return marked

    # ------------------------------------------------------------------
    def forget(self, store_id: str, product_id: str) -> None:
        """Drop every forecast, accuracy record and multiplier of a deleted product."""

        with self._lock:
            self._generation[(store_id, product_id)] += 1
            for horizon in SUPPORTED_HORIZONS:
                key = (store_id, product_id, horizon)
                self.snapshots.delete(key)
                self._stale.discard(key)
            self._multipliers.pop((store_id, product_id), None)
        self.tracker.forget(store_id, product_id)
        LOGGER.info("Forgot forecasts and accuracy history for %s/%s", store_id, product_id)

    # ------------------------------------------------------------------
    def uncertainty_multiplier(self, store_id: str, product_id: str) -> float:
        with self._lock:
            return self._multipliers.get((store_id, product_id), 1.0)

    # ------------------------------------------------------------------
    def record_accuracy(
        self,
        store_id: str,
        product_id: str,
        past_forecast: Forecast,
        actuals: SalesHistory,
        evaluation_date: Optional[date] = None,
    ) -> AccuracyOutcome:
        """Score a past forecast, adapt interval widths and report low accuracy."""

        with self._accuracy_lock(store_id, product_id):
            previous = self.tracker.latest(store_id, product_id, count=1)
            record = self.tracker.record_and_score(
                store_id, product_id, past_forecast, actuals, evaluation_date=evaluation_date
            )
            previous_mape = previous[-1].mape if previous else None

            with self._lock:
                current = self._multipliers.get((store_id, product_id), 1.0)
                updated = next_multiplier(
                    current, previous_mape, record.mape, self.settings.max_uncertainty_multiplier
                )
                self._multipliers[(store_id, product_id)] = updated
        if updated != current:
            LOGGER.info(
                "Uncertainty multiplier for %s/%s moved %.3f -> %.3f (mape %s -> %.2f)",
                store_id,
                product_id,
                current,
                updated,
                "n/a" if previous_mape is None else f"{previous_mape:.2f}",
                record.mape,
            )
        self.invalidate(store_id, product_id)

        outcome = AccuracyOutcome(record=record, uncertainty_multiplier=updated)
        if record.accuracy < self.settings.low_accuracy_threshold:
            LOGGER.warning(
                "Low forecast accuracy for %s/%s: mape=%.2f accuracy=%.2f",
                store_id,
                product_id,
                record.mape,
                record.accuracy,
            )
            outcome.events.append(
                LowAccuracyDetected(
                    store_id=store_id,
                    product_id=product_id,
                    occurred_at=self.clock(),
                    mape=record.mape,
                    accuracy=record.accuracy,
                )
            )
        return outcome

    # ------------------------------------------------------------------
    def backtest(
        self,
        store_id: str,
        product_id: str,
        window: int = 56,
        horizon: int = 7,
        step: int = 7,
    ) -> dict[str, object]:
        """Run a rolling-origin backtest for the specified product."""

        if window <= 0 or horizon <= 0 or step <= 0:
            raise InvalidInputError(
                "window, horizon, and step must be positive integers",
                store_id=store_id,
                product_id=product_id,
            )
        if window < self.settings.min_history_days:
            raise InvalidInputError(
                f"window must span at least {self.settings.min_history_days} days",
                store_id=store_id,
                product_id=product_id,
            )

        history = self._load_history(store_id, product_id)
        series = aggregate_daily(history)
        if len(series) < window + horizon:
            raise InsufficientDataError(
                "Insufficient history for the requested window and horizon combination.",
                store_id=store_id,
                product_id=product_id,
                horizon=horizon,
            )

        records: list[AccuracyRecord] = []
        origin_dates: list[str] = []
        coverage_hits = 0
        coverage_total = 0
        model_used: Optional[str] = None

        start_index = window
        last_start = len(series) - horizon
        while start_index <= last_start:
            train_slice = series.iloc[start_index - window : start_index]
            future_slice = series.iloc[start_index : start_index + horizon]

            forecast = self.model.forecast_from_series(
                store_id, product_id, train_slice, horizon, generated_at=self.clock()
            )
            if model_used is None:
                model_used = forecast.model_version

            actuals = SalesHistory(
                store_id=store_id,
                product_id=product_id,
                observations=tuple(
                    SalesObservation(date=ts.date(), quantity=float(value))
                    for ts, value in future_slice.items()
                ),
            )
            records.append(self.tracker.score(store_id, product_id, forecast, actuals))
            origin_dates.append(train_slice.index[-1].date().isoformat())

            for prediction, actual in zip(forecast.predictions, future_slice.to_numpy()):
                coverage_total += 1
                if prediction.lower_bound <= actual <= prediction.upper_bound:
                    coverage_hits += 1

            start_index += step

        return {
            "store_id": store_id,
            "product_id": product_id,
            "origins": len(records),
            "origin_dates": origin_dates,
            "records": records,
            "mape": float(np.mean([r.mape for r in records])),
            "rmse": float(np.mean([r.rmse for r in records])),
            "mae": float(np.mean([r.mae for r in records])),
            "coverage": float(coverage_hits / coverage_total) if coverage_total else 0.0,
            "model_used": model_used,
        }
