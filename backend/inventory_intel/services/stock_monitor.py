r"""backend\inventory_intel\services\stock_monitor.py

Low-stock, out-of-stock and overstock signals.

The monitor is a pure function of the current stock positions, their
thresholds and the latest forecasts; it keeps no state between calls.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from ..models.schemas import (
    Forecast,
    LowStockSignal,
    OutOfStockSignal,
    OverstockSignal,
    ProductStock,
    StockSignal,
    StockSignalRaised,
)
from .reorder_service import demand_over

LOGGER = logging.getLogger(__name__)

_KIND_ORDER = {"out": 0, "low": 1, "overstock": 2}


def daily_rate(forecast: Optional[Forecast]) -> float:
    if forecast is None or not forecast.predictions:
        return 0.0
    return forecast.total_demand() / len(forecast.predictions)


def sort_signals(signals: Iterable[StockSignal]) -> List[StockSignal]:
    """Out first, then Low, then Overstock; highest priority first, ties by name."""

    return sorted(
        signals,
        key=lambda s: (_KIND_ORDER[s.kind], -s.priority, s.product_name, s.product_id),
    )


class StockMonitor:
    """Evaluate stock positions against thresholds and forecast demand."""

    def __init__(
        self,
        overstock_window_days: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if overstock_window_days <= 0:
            raise ValueError("overstock_window_days must be a positive integer")
        self.overstock_window_days = int(overstock_window_days)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    def check(self, stock: ProductStock, forecast: Optional[Forecast]) -> Optional[StockSignal]:
        """Return the single signal raised by one product, if any.

        Out supersedes Low, and Low supersedes Overstock.
        """

        name = stock.display_name
        current = float(stock.current_stock)
        rate = daily_rate(forecast)

        if current == 0:
            return OutOfStockSignal(
                product_id=stock.product_id,
                product_name=name,
                current_stock=current,
                threshold=stock.minimum_threshold,
                priority=round(rate * stock.unit_price, 6),
            )

        if current < stock.minimum_threshold:
            shortfall = stock.minimum_threshold - current
            return LowStockSignal(
                product_id=stock.product_id,
                product_name=name,
                current_stock=current,
                threshold=stock.minimum_threshold,
                priority=round(shortfall * stock.unit_price, 6),
            )

        if forecast is None:
            return None

        window_demand, _ = demand_over(forecast, self.overstock_window_days)
        if current > window_demand:
            value_at_risk = (current - window_demand) * stock.unit_price
            return OverstockSignal(
                product_id=stock.product_id,
                product_name=name,
                current_stock=current,
                window_demand=round(window_demand, 6),
                days_of_supply=round(current / rate, 4) if rate > 0 else None,
                value_at_risk=round(value_at_risk, 6),
                priority=round(value_at_risk * stock.inventory_age_days, 6),
            )
        return None

    # ------------------------------------------------------------------
    def evaluate(self, items: Iterable[Tuple[ProductStock, Optional[Forecast]]]) -> List[StockSignal]:
        signals: List[StockSignal] = []
        for stock, forecast in items:
            signal = self.check(stock, forecast)
            if signal is not None:
                signals.append(signal)
        ranked = sort_signals(signals)
        LOGGER.info(
            "Stock monitor raised %d signals (out=%d low=%d overstock=%d)",
            len(ranked),
            sum(1 for s in ranked if s.kind == "out"),
            sum(1 for s in ranked if s.kind == "low"),
            sum(1 for s in ranked if s.kind == "overstock"),
        )
        return ranked

    # ------------------------------------------------------------------
    def events(self, store_id: str, signals: Sequence[StockSignal]) -> List[StockSignalRaised]:
        occurred_at = self.clock()
        return [
            StockSignalRaised(
                store_id=store_id,
                product_id=signal.product_id,
                occurred_at=occurred_at,
                signal=signal,
            )
            for signal in signals
        ]
