from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.inventory_intel.core.errors import InvalidInputError
from backend.inventory_intel.models.schemas import SalesHistory, SalesObservation
from backend.inventory_intel.services.validation_service import ValidationService

START = date(2024, 1, 1)


def _history(*observations: SalesObservation) -> SalesHistory:
    return SalesHistory(store_id="S1", product_id="SKU-1", observations=observations)


def test_clean_history_passes_every_check():
    history = _history(
        SalesObservation(date=START, quantity=1, unit_price=2.5),
        SalesObservation(date=START, quantity=0),
        SalesObservation(date=START + timedelta(days=1), quantity=4),
    )

    report = ValidationService().run(history, store_id="S1", product_id="SKU-1")

    assert report["ok"] is True
    assert [c["name"] for c in report["checks"]] == [
        "key_matches",
        "quantities_non_negative",
        "prices_non_negative",
        "dates_non_decreasing",
    ]
    assert ValidationService().validate_history(history) is history


def test_negative_quantity_is_rejected():
    history = _history(SalesObservation(date=START, quantity=-2))

    with pytest.raises(InvalidInputError) as excinfo:
        ValidationService().validate_history(history)

    assert "quantities_non_negative" in excinfo.value.reason
    assert excinfo.value.context()["error"] == "invalid_input"


def test_out_of_order_dates_are_rejected():
    history = _history(
        SalesObservation(date=START + timedelta(days=3), quantity=1),
        SalesObservation(date=START, quantity=1),
    )

    report = ValidationService().run(history)

    assert report["ok"] is False
    failed = [c["name"] for c in report["checks"] if not c["ok"]]
    assert failed == ["dates_non_decreasing"]


def test_mismatched_key_is_rejected():
    history = _history(SalesObservation(date=START, quantity=1))

    with pytest.raises(InvalidInputError, match="key_matches"):
        ValidationService().validate_history(history, store_id="S2")


def test_negative_price_is_rejected():
    history = _history(SalesObservation(date=START, quantity=1, unit_price=-0.5))

    with pytest.raises(InvalidInputError, match="prices_non_negative"):
        ValidationService().validate_history(history)
