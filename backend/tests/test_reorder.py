from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import math
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.inventory_intel.core.errors import InvalidInputError
from backend.inventory_intel.models.schemas import DailyPrediction, Forecast, ProductStock, Urgency
from backend.inventory_intel.services.reorder_service import (
    ReorderCalculator,
    calculate_safety_stock,
    classify_urgency,
    demand_over,
    select_forecast,
)

TODAY = date(2024, 6, 1)
Z95 = 1.959964


def _forecast(days: int, rate: float = 10.0, sigma: float = 2.0, horizon: int | None = None) -> Forecast:
    half = Z95 * sigma
    return Forecast(
        store_id="S1",
        product_id="SKU-1",
        horizon_days=horizon or days,
        generated_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
        model_version="test",
        predictions=tuple(
            DailyPrediction(
                date=TODAY + timedelta(days=i + 1),
                point_estimate=rate,
                lower_bound=max(rate - half, 0.0),
                upper_bound=rate + half,
            )
            for i in range(days)
        ),
        confidence_level=95.0,
    )


def test_reorder_point_is_demand_plus_safety_stock():
    calculator = ReorderCalculator()

    rec = calculator.calculate("SKU-1", _forecast(7), current_stock=30, lead_time_days=7, today=TODAY)

    expected_safety = 1.959964 * 2.0 * math.sqrt(7)
    assert rec.forecasted_demand == pytest.approx(70.0)
    assert rec.safety_stock == pytest.approx(expected_safety, rel=1e-4)
    assert rec.reorder_point == pytest.approx(rec.forecasted_demand + rec.safety_stock)
    assert rec.reorder_quantity == math.ceil(rec.reorder_point - 30)
    assert rec.active is True
    assert rec.days_to_stockout == pytest.approx(3.0)
    assert rec.estimated_stockout_date == TODAY + timedelta(days=3)
    assert rec.urgency is Urgency.HIGH


def test_zero_stock_is_critical():
    rec = ReorderCalculator().calculate("SKU-1", _forecast(7), current_stock=0, lead_time_days=7, today=TODAY)

    assert rec.urgency is Urgency.CRITICAL
    assert rec.reorder_quantity == math.ceil(rec.reorder_point)
    assert rec.estimated_stockout_date == TODAY


def test_ample_stock_is_inactive_with_zero_quantity():
    calculator = ReorderCalculator()

    rec = calculator.calculate("SKU-1", _forecast(7), current_stock=100, lead_time_days=7, today=TODAY)

    assert rec.active is False
    assert rec.reorder_quantity == 0
    assert rec.urgency is Urgency.LOW
    assert calculator.actionable("SKU-1", _forecast(7), 100, 7, today=TODAY) is None


def test_lead_time_beyond_horizon_extrapolates_average_rate():
    demand, squared = demand_over(_forecast(7), 10)

    assert demand == pytest.approx(100.0)
    assert squared == pytest.approx(10 * (Z95 * 2.0) ** 2)


def test_zero_demand_has_no_stockout_date():
    rec = ReorderCalculator().calculate(
        "SKU-1", _forecast(7, rate=0.0, sigma=0.0), current_stock=5, lead_time_days=7, today=TODAY
    )

    assert rec.safety_stock == 0.0
    assert rec.reorder_quantity == 0
    assert rec.estimated_stockout_date is None
    assert rec.urgency is Urgency.LOW


@pytest.mark.parametrize(
    "kwargs",
    [
        {"current_stock": 10, "lead_time_days": 0},
        {"current_stock": -1, "lead_time_days": 7},
    ],
)
def test_invalid_inputs_are_rejected(kwargs):
    with pytest.raises(InvalidInputError):
        ReorderCalculator().calculate("SKU-1", _forecast(7), today=TODAY, **kwargs)


def test_safety_stock_recovers_sigma_from_interval():
    safety, sigma_l = calculate_safety_stock(4 * (Z95 * 3.0) ** 2, 95.0)

    assert sigma_l == pytest.approx(6.0, rel=1e-5)
    assert safety == pytest.approx(Z95 * 6.0, rel=1e-5)


def test_classify_urgency_thresholds():
    assert classify_urgency(5, 1.0, 8) is Urgency.CRITICAL
    assert classify_urgency(5, 4.0, 8) is Urgency.HIGH
    assert classify_urgency(5, 8.0, 8) is Urgency.MEDIUM
    assert classify_urgency(5, 9.0, 8) is Urgency.LOW
    assert classify_urgency(5, None, 8) is Urgency.LOW


def test_for_product_picks_shortest_covering_horizon():
    forecasts = [_forecast(7, rate=1.0), _forecast(14, rate=2.0), _forecast(30, rate=3.0)]
    assert select_forecast(forecasts, 10).horizon_days == 14
    assert select_forecast(forecasts, 45).horizon_days == 30

    stock = ProductStock(product_id="SKU-1", name="Widget", current_stock=1, lead_time_days=10)
    rec, events = ReorderCalculator().for_product(stock, forecasts, default_lead_time_days=7, today=TODAY)

    assert rec.lead_time_days == 10
    assert rec.forecasted_demand == pytest.approx(20.0)
    assert [e.event for e in events] == ["reorder_recommended"]
    assert events[0].recommendation == rec
