"""Turn a demand forecast plus stock position into a reorder recommendation."""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from ..core.errors import InvalidInputError
from ..models.schemas import (
    Forecast,
    ProductStock,
    ReorderRecommendation,
    ReorderRecommended,
    Urgency,
)
from .time_series_model import z_for_confidence

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
def select_forecast(forecasts: Iterable[Forecast], lead_time_days: int) -> Forecast:
    """Pick the shortest horizon covering the lead time, else the longest one."""

    available = sorted(forecasts, key=lambda f: f.horizon_days)
    if not available:
        raise ValueError("at least one forecast is required")
    for forecast in available:
        if forecast.horizon_days >= lead_time_days:
            return forecast
    return available[-1]


def demand_over(forecast: Forecast, days: int) -> Tuple[float, float]:
    """Return ``(demand, sum of squared interval half-widths)`` over the first ``days`` days.

    Days past the end of the forecast are extrapolated at the forecast's
    per-day average rate and average interval half-width.
    """

    points = forecast.predictions
    if days <= 0 or not points:
        return 0.0, 0.0

    covered = points[:days]
    demand = sum(p.point_estimate for p in covered)
    half_widths = [p.width / 2.0 for p in covered]

    missing = days - len(covered)
    if missing > 0:
        average_rate = sum(p.point_estimate for p in points) / len(points)
        average_half_width = sum(p.width / 2.0 for p in points) / len(points)
        demand += average_rate * missing
        half_widths.extend([average_half_width] * missing)

    return float(demand), float(sum(h * h for h in half_widths))


def calculate_safety_stock(squared_half_widths: float, confidence_level: float) -> Tuple[float, float]:
    """Return ``(safety_stock, lead_time_sigma)``.

    Each day's sigma is recovered from its interval as ``(upper-lower)/(2z)``
    and days are treated as independent, so ``sigma_L = sqrt(sum sigma_d^2)``.
    """

    z_value = z_for_confidence(confidence_level)
    if z_value <= 0 or squared_half_widths <= 0:
        return 0.0, 0.0
    sigma_l = math.sqrt(squared_half_widths) / z_value
    return max(z_value * sigma_l, 0.0), sigma_l


def classify_urgency(current_stock: float, days_to_stockout: Optional[float], lead_time_days: int) -> Urgency:
    if current_stock <= 0:
        return Urgency.CRITICAL
    if days_to_stockout is None:
        return Urgency.LOW
    if days_to_stockout <= lead_time_days * 0.25:
        return Urgency.CRITICAL
    if days_to_stockout <= lead_time_days * 0.5:
        return Urgency.HIGH
    if days_to_stockout <= lead_time_days:
        return Urgency.MEDIUM
    return Urgency.LOW


class ReorderCalculator:
    """Reorder point / quantity engine driven by the forecast's intervals."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    def calculate(
        self,
        product_id: str,
        forecast: Forecast,
        current_stock: float,
        lead_time_days: int,
        today: Optional[date] = None,
    ) -> ReorderRecommendation:
        if lead_time_days is None or int(lead_time_days) <= 0:
            raise InvalidInputError(
                "lead_time_days must be a positive integer",
                store_id=forecast.store_id,
                product_id=product_id,
            )
        if current_stock is None or not math.isfinite(current_stock) or current_stock < 0:
            raise InvalidInputError(
                "current_stock must be a non-negative number",
                store_id=forecast.store_id,
                product_id=product_id,
            )
        lead_time = int(lead_time_days)

        forecasted_demand, squared_half_widths = demand_over(forecast, lead_time)
        safety_stock, sigma_l = calculate_safety_stock(squared_half_widths, forecast.confidence_level)
        reorder_point = forecasted_demand + safety_stock
        reorder_quantity = max(0, math.ceil(reorder_point - current_stock))

        daily_rate = forecasted_demand / lead_time
        days_to_stockout: Optional[float] = None
        stockout_date: Optional[date] = None
        if daily_rate > 0:
            days_to_stockout = current_stock / daily_rate
            start = today or self.clock().date()
            stockout_date = start + timedelta(days=math.floor(days_to_stockout))
        elif current_stock <= 0:
            days_to_stockout = 0.0

        urgency = classify_urgency(current_stock, days_to_stockout if daily_rate > 0 else None, lead_time)
        active = current_stock < reorder_point

        LOGGER.info(
            "Reorder rec for %s: demand=%.2f sigma=%.2f safety=%.2f rop=%.2f stock=%.1f qty=%d urgency=%s active=%s",
            product_id,
            forecasted_demand,
            sigma_l,
            safety_stock,
            reorder_point,
            current_stock,
            reorder_quantity,
            urgency.value,
            active,
        )

        return ReorderRecommendation(
            product_id=product_id,
            current_stock=float(current_stock),
            forecasted_demand=round(forecasted_demand, 6),
            safety_stock=round(safety_stock, 6),
            reorder_point=round(reorder_point, 6),
            reorder_quantity=int(reorder_quantity),
            urgency=urgency,
            active=active,
            lead_time_days=lead_time,
            daily_rate=round(daily_rate, 6),
            days_to_stockout=None if days_to_stockout is None else round(days_to_stockout, 4),
            estimated_stockout_date=stockout_date,
        )

    # ------------------------------------------------------------------
    def actionable(
        self,
        product_id: str,
        forecast: Forecast,
        current_stock: float,
        lead_time_days: int,
        today: Optional[date] = None,
    ) -> Optional[ReorderRecommendation]:
        """Return the recommendation only when stock is below the reorder point."""

        recommendation = self.calculate(product_id, forecast, current_stock, lead_time_days, today)
        return recommendation if recommendation.active else None

    # ------------------------------------------------------------------
    def for_product(
        self,
        stock: ProductStock,
        forecasts: Iterable[Forecast],
        default_lead_time_days: int,
        today: Optional[date] = None,
    ) -> Tuple[ReorderRecommendation, List[ReorderRecommended]]:
        """Recommend for a stock record, choosing the horizon that covers its lead time."""

        lead_time = stock.lead_time_days or default_lead_time_days
        forecast = select_forecast(forecasts, lead_time)
        recommendation = self.calculate(stock.product_id, forecast, stock.current_stock, lead_time, today)
        events: List[ReorderRecommended] = []
        if recommendation.active:
            events.append(
                ReorderRecommended(
                    store_id=forecast.store_id,
                    product_id=stock.product_id,
                    occurred_at=self.clock(),
                    recommendation=recommendation,
                )
            )
        return recommendation, events
