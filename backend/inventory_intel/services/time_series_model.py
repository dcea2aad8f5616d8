r"""backend\inventory_intel\services\time_series_model.py

Per-product demand model.

Sales observations are aggregated into a contiguous daily series (missing
days count as zero demand) before fitting.  The primary model is a
Holt-Winters decomposition (damped additive trend plus additive weekly
seasonality) from statsmodels; any numerical failure inside it is recovered
by a trailing moving-average model that cannot fail as long as the series
holds at least one observation.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from statistics import NormalDist
from typing import Callable, Optional, Protocol

import numpy as np
import pandas as pd
from statsmodels.tsa.holtwinters import ExponentialSmoothing

from ..core.config import IntelligenceSettings
from ..core.errors import InsufficientDataError, ModelFitFailure
from ..core.observability import FIT_LATENCY, MODEL_FALLBACKS, MODEL_FITS
from ..models.schemas import DailyPrediction, Forecast, SalesHistory

LOGGER = logging.getLogger(__name__)

WEEKLY_PERIOD = 7
ONE_SIGMA_LEVEL = 100.0 * (2.0 * NormalDist().cdf(1.0) - 1.0)


# ---------------------------------------------------------------------------
# Helper utilities (kept top-level for straightforward unit testing)


def z_for_confidence(confidence_level: float) -> float:
    """Return the two-sided normal quantile for a confidence level given in percent."""

    level = min(max(float(confidence_level), 1.0), 99.99) / 100.0
    return NormalDist().inv_cdf(0.5 + level / 2.0)


def aggregate_daily(history: SalesHistory) -> pd.Series:
    """Return one demand value per calendar day, summing duplicate dates.

    Days without an observation between the first and last recorded date
    are filled with zero demand.
    """

    if not history.observations:
        return pd.Series(dtype=float, name=history.product_id)

    frame = pd.DataFrame(
        {
            "date": pd.to_datetime([obs.date for obs in history.observations]),
            "quantity": [float(obs.quantity) for obs in history.observations],
        }
    )
    daily = frame.groupby("date")["quantity"].sum()
    full_index = pd.date_range(daily.index.min(), daily.index.max(), freq="D", name="date")
    series = daily.reindex(full_index, fill_value=0.0).astype(float)
    series.name = history.product_id
    return series


def trailing_zero_days(series: pd.Series) -> int:
    """Count consecutive zero-demand days at the end of ``series``."""

    count = 0
    for value in reversed(series.to_numpy()):
        if value != 0:
            break
        count += 1
    return count


def future_index(series: pd.Series, horizon_days: int) -> pd.DatetimeIndex:
    start = series.index[-1] + pd.Timedelta(days=1)
    return pd.date_range(start, periods=horizon_days, freq="D", name="date")


def compute_pi(
    mean_forecast: pd.Series,
    spread: float,
    z_value: float,
) -> tuple[pd.Series, pd.Series]:
    """Compute symmetric prediction interval bounds around ``mean_forecast``."""

    if not np.isfinite(spread) or spread < 0.0:
        spread = 0.0
    lower = (mean_forecast - z_value * spread).clip(lower=0.0)
    upper = (mean_forecast + z_value * spread).clip(lower=0.0)
    return lower, upper


def choose_model(history_length: int) -> str:
    """Choose which demand model should be tried first.

    Holt-Winters needs a couple of points to estimate level and trend;
    shorter series go straight to the moving average.
    """
    if history_length >= 2:
        return HoltWintersModel.name
    return MovingAverageModel.name


# ---------------------------------------------------------------------------
# Models


@dataclass(frozen=True)
class ModelOutput:
    mean: pd.Series
    lower: pd.Series
    upper: pd.Series
    confidence_level: float
    model_version: str


class DemandModel(Protocol):
    name: str
    version: str

    def predict(
        self, series: pd.Series, index: pd.DatetimeIndex, confidence_level: float
    ) -> ModelOutput:
        ...


class HoltWintersModel:
    """Damped additive trend with additive weekly seasonality."""

    name = "holt_winters"
    version = "holt_winters-1"

    def predict(
        self, series: pd.Series, index: pd.DatetimeIndex, confidence_level: float
    ) -> ModelOutput:
        if len(series) < 2:
            raise ModelFitFailure("Holt-Winters needs at least two observations")

        seasonal = len(series) >= 2 * WEEKLY_PERIOD
        observed = series.to_numpy(dtype=float)
        if np.ptp(observed) == 0:
            raise ModelFitFailure("series is constant; no level, trend or season to estimate")

        try:
            with np.errstate(all="ignore"):
                model = ExponentialSmoothing(
                    observed,
                    trend="add",
                    damped_trend=True,
                    seasonal="add" if seasonal else None,
                    seasonal_periods=WEEKLY_PERIOD if seasonal else None,
                    initialization_method="estimated",
                )
                fitted = model.fit(optimized=True)
                values = np.asarray(fitted.forecast(len(index)), dtype=float)
                in_sample = np.asarray(fitted.fittedvalues, dtype=float)
        except Exception as exc:
            raise ModelFitFailure(f"Holt-Winters fit failed: {exc}") from exc

        retvals = getattr(fitted, "mle_retvals", None)
        if retvals is not None and not getattr(retvals, "success", True):
            raise ModelFitFailure(
                f"Holt-Winters optimizer did not converge: {getattr(retvals, 'message', 'unknown')}"
            )

        residuals = observed - in_sample
        if not np.all(np.isfinite(values)) or not np.all(np.isfinite(residuals)):
            raise ModelFitFailure("Holt-Winters produced non-finite values")

        spread = float(np.std(residuals, ddof=1)) if len(residuals) > 1 else 0.0
        mean_forecast = pd.Series(values, index=index).clip(lower=0.0)
        lower, upper = compute_pi(mean_forecast, spread, z_for_confidence(confidence_level))
        return ModelOutput(mean_forecast, lower, upper, confidence_level, self.version)


class MovingAverageModel:
    """Trailing moving average with a one-sigma residual interval."""

    name = "moving_average"
    version = "moving_average-1"

    def __init__(self, window: int = 14) -> None:
        if window <= 0:
            raise ValueError("moving_average_window must be a positive integer")
        self.window = int(window)

    def predict(
        self, series: pd.Series, index: pd.DatetimeIndex, confidence_level: float
    ) -> ModelOutput:
        window = min(self.window, len(series))
        if window == 0:
            raise ValueError("Insufficient history to compute moving average forecast")

        recent = series.iloc[-window:].astype(float)
        mean_value = max(float(recent.mean()), 0.0)
        residuals = recent - mean_value
        spread = float(np.std(residuals.to_numpy(), ddof=0))

        mean_forecast = pd.Series([mean_value] * len(index), index=index)
        lower, upper = compute_pi(mean_forecast, spread, 1.0)
        # The interval is +/- one population std-dev, so report the level it actually covers.
        return ModelOutput(mean_forecast, lower, upper, round(ONE_SIGMA_LEVEL, 2), self.version)


# ---------------------------------------------------------------------------
# Core implementation


class TimeSeriesModel:
    """Fit a per-product demand model and produce point + interval predictions."""

    def __init__(
        self,
        settings: Optional[IntelligenceSettings] = None,
        primary: Optional[DemandModel] = None,
        fallback: Optional[MovingAverageModel] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or IntelligenceSettings()
        self.primary: DemandModel = primary or HoltWintersModel()
        self.fallback = fallback or MovingAverageModel(self.settings.moving_average_window)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    def _models_for(self, history_length: int) -> list[DemandModel]:
        if choose_model(history_length) == self.fallback.name:
            return [self.fallback]
        return [self.primary, self.fallback]

    # ------------------------------------------------------------------
    def predict_series(self, series: pd.Series, horizon_days: int, label: str = "") -> ModelOutput:
        """Run the primary model on a daily series, falling back on numerical failure."""

        if series.empty:
            raise InsufficientDataError("sales history is empty", product_id=label or None)

        index = future_index(series, horizon_days)
        level = self.settings.confidence_level
        models = self._models_for(len(series))

        for position, model in enumerate(models):
            started = time.perf_counter()
            try:
                output = model.predict(series, index, level)
            except ModelFitFailure as exc:
                LOGGER.warning("Model %s failed for %s: %s", model.name, label or series.name, exc.reason)
                if position == len(models) - 1:
                    # Only a custom fallback can fail here.
                    raise
                MODEL_FALLBACKS.inc()
                continue
            FIT_LATENCY.labels(model.name).observe(time.perf_counter() - started)
            MODEL_FITS.labels(model.name).inc()
            return output

        raise ValueError("no demand model configured")

    # ------------------------------------------------------------------
    def forecast_from_series(
        self,
        store_id: str,
        product_id: str,
        series: pd.Series,
        horizon_days: int,
        generated_at: Optional[datetime] = None,
    ) -> Forecast:
        if horizon_days <= 0:
            raise ValueError("horizon_days must be a positive integer")

        output = self.predict_series(series, horizon_days, label=product_id)
        discontinued = trailing_zero_days(series) >= self.settings.discontinued_zero_days
        if discontinued:
            LOGGER.info(
                "Product %s/%s has %d trailing zero-demand days; flagging as possibly discontinued",
                store_id,
                product_id,
                trailing_zero_days(series),
            )

        predictions = []
        for ts in output.mean.index:
            point = max(float(output.mean.loc[ts]), 0.0)
            lower = max(min(float(output.lower.loc[ts]), point), 0.0)
            upper = max(float(output.upper.loc[ts]), point)
            predictions.append(
                DailyPrediction(
                    date=ts.date(),
                    point_estimate=point,
                    lower_bound=lower,
                    upper_bound=upper,
                )
            )

        return Forecast(
            store_id=store_id,
            product_id=product_id,
            horizon_days=horizon_days,
            generated_at=generated_at or self.clock(),
            model_version=output.model_version,
            predictions=tuple(predictions),
            confidence_level=output.confidence_level,
            possibly_discontinued=discontinued,
        )

    # ------------------------------------------------------------------
    def fit_and_predict(
        self,
        history: SalesHistory,
        horizon_days: int,
        generated_at: Optional[datetime] = None,
    ) -> Forecast:
        """Return a forecast for ``horizon_days`` days after the last observed date.

        Raises ``InsufficientDataError`` when the history spans fewer than
        ``min_history_days`` distinct sale dates.
        """

        distinct = history.distinct_dates()
        if distinct < self.settings.min_history_days:
            raise InsufficientDataError(
                f"history has {distinct} distinct sale dates; "
                f"{self.settings.min_history_days} required",
                store_id=history.store_id,
                product_id=history.product_id,
                horizon=horizon_days,
            )

        series = aggregate_daily(history)
        LOGGER.info(
            "Forecasting %s/%s horizon=%s days_of_history=%d",
            history.store_id,
            history.product_id,
            horizon_days,
            len(series),
        )
        return self.forecast_from_series(
            history.store_id, history.product_id, series, horizon_days, generated_at=generated_at
        )
