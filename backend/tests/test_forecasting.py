from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from pathlib import Path
import sys
import threading
import time
import warnings

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.inventory_intel.core.config import IntelligenceSettings
from backend.inventory_intel.core.errors import InvalidInputError, ModelFitFailure
from backend.inventory_intel.models.schemas import SalesHistory, SalesObservation
from backend.inventory_intel.services.forecasting_service import (
    ForecastService,
    ForecastState,
    next_multiplier,
    widen_intervals,
)
from backend.inventory_intel.services.repository import InMemoryRepository
from backend.inventory_intel.services.time_series_model import TimeSeriesModel

START = date(2024, 1, 1)


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class _BrokenModel:
    name = "broken"
    version = "broken-1"

    def predict(self, series, index, confidence_level):
        raise ModelFitFailure("no convergence")


class _SlowModel(TimeSeriesModel):
    """Counts fits and blocks until released so concurrent callers overlap."""

    def __init__(self, settings) -> None:
        super().__init__(settings, primary=_BrokenModel())
        self.calls = 0
        self.release = threading.Event()
        self._count_lock = threading.Lock()

    def fit_and_predict(self, history, horizon_days, generated_at=None):
        with self._count_lock:
            self.calls += 1
        self.release.wait(timeout=5)
        return super().fit_and_predict(history, horizon_days, generated_at)


def _seed(repository: InMemoryRepository, product_id: str, values, store_id: str = "S1") -> None:
    repository.append_sales(
        store_id,
        product_id,
        [SalesObservation(date=START + timedelta(days=i), quantity=float(v)) for i, v in enumerate(values)],
    )


def _service(repository, clock, model=None, settings=None) -> ForecastService:
    settings = settings or IntelligenceSettings()
    model = model or TimeSeriesModel(settings, primary=_BrokenModel(), clock=clock)
    return ForecastService(repository, model=model, settings=settings, clock=clock)


def test_generate_returns_every_configured_horizon():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [10, 12] * 15)
    clock = _Clock()
    service = _service(repository, clock)

    batch = service.generate("S1", "SKU-1")

    assert sorted(batch.forecasts) == [7, 14, 30]
    assert not batch.failures
    assert [len(batch.forecasts[h].predictions) for h in (7, 14, 30)] == [7, 14, 30]
    assert len(batch.events) == 3
    assert {e.event for e in batch.events} == {"forecast_generated"}


def test_insufficient_history_is_reported_per_horizon():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [3] * 5)
    service = _service(repository, _Clock())

    batch = service.generate("S1", "SKU-1", periods=[7, 30])

    assert batch.forecasts == {}
    assert sorted(batch.failures) == [7, 30]
    assert batch.failures[7].code == "insufficient_data"
    assert service.state("S1", "SKU-1", 7) is ForecastState.NO_FORECAST


def test_unsupported_horizon_is_rejected():
    service = _service(InMemoryRepository(), _Clock())

    with pytest.raises(InvalidInputError):
        service.generate("S1", "SKU-1", periods=[10])


def test_cached_forecast_is_returned_until_it_expires():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [10] * 20)
    clock = _Clock()
    service = _service(repository, clock)

    first = service.generate("S1", "SKU-1", periods=[7])
    second = service.generate("S1", "SKU-1", periods=[7])

    assert second.forecasts[7] is first.forecasts[7]
    assert second.events == []
    assert service.state("S1", "SKU-1", 7) is ForecastState.FRESH

    clock.now += timedelta(hours=24)
    assert service.state("S1", "SKU-1", 7) is ForecastState.STALE

    third = service.generate("S1", "SKU-1", periods=[7])
    assert third.forecasts[7].generated_at == clock.now
    assert service.state("S1", "SKU-1", 7) is ForecastState.FRESH


def test_refit_on_unchanged_data_is_identical():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [4, 9, 6, 11, 5, 7, 8] * 3)
    clock = _Clock()
    service = _service(repository, clock)

    first = service.generate("S1", "SKU-1", periods=[14]).forecasts[14]
    second = service.generate("S1", "SKU-1", periods=[14], refresh=True).forecasts[14]

    assert second == first


def test_new_sales_mark_forecasts_stale():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [10] * 20)
    service = _service(repository, _Clock())
    service.generate("S1", "SKU-1", periods=[7, 14])

    assert service.invalidate("S1", "SKU-1") == 2
    assert service.state("S1", "SKU-1", 7) is ForecastState.STALE
    assert service.snapshot("S1", "SKU-1", 7) is not None

    refreshed = service.generate("S1", "SKU-1", periods=[7])
    assert len(refreshed.events) == 1
    assert service.state("S1", "SKU-1", 7) is ForecastState.FRESH


def test_forget_drops_forecasts_and_multiplier():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [10] * 20)
    service = _service(repository, _Clock())
    forecast = service.generate("S1", "SKU-1", periods=[7]).forecasts[7]
    service.record_accuracy("S1", "SKU-1", forecast, _actuals_for(forecast, 5.0))

    service.forget("S1", "SKU-1")

    assert service.state("S1", "SKU-1", 7) is ForecastState.NO_FORECAST
    assert service.uncertainty_multiplier("S1", "SKU-1") == 1.0
    assert list(service.tracker.accuracy_trend("S1", "SKU-1")) == []


def test_next_multiplier_rules():
    assert next_multiplier(1.0, None, 40.0) == 1.0
    assert next_multiplier(1.0, 10.0, 40.0) == pytest.approx(1.6)
    assert next_multiplier(1.6, 40.0, 50.0) == pytest.approx(1.6)
    assert next_multiplier(1.6, 50.0, 20.0) == pytest.approx(1.3)
    assert next_multiplier(1.0, 50.0, 20.0) == 1.0
    assert next_multiplier(5.0, 10.0, 20.0, ceiling=3.0) == pytest.approx(3.0)


def test_widen_intervals_keeps_point_and_grows_width():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [10, 14] * 10)
    service = _service(repository, _Clock())
    forecast = service.generate("S1", "SKU-1", periods=[7]).forecasts[7]

    widened = widen_intervals(forecast, 1.5)

    assert widened.uncertainty_multiplier == 1.5
    for before, after in zip(forecast.predictions, widened.predictions):
        assert after.point_estimate == before.point_estimate
        assert after.width >= before.width
        assert after.lower_bound >= 0


def _actuals_for(forecast, value: float) -> SalesHistory:
    return SalesHistory(
        store_id=forecast.store_id,
        product_id=forecast.product_id,
        observations=tuple(SalesObservation(date=p.date, quantity=value) for p in forecast.predictions),
    )


def test_degrading_accuracy_widens_future_intervals_and_alerts():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [10, 14] * 10)
    service = _service(repository, _Clock())
    forecast = service.generate("S1", "SKU-1", periods=[7]).forecasts[7]
    base_width = forecast.predictions[0].width

    first = service.record_accuracy("S1", "SKU-1", forecast, _actuals_for(forecast, 12.0))
    assert first.uncertainty_multiplier == 1.0
    assert first.events == []

    second = service.record_accuracy("S1", "SKU-1", forecast, _actuals_for(forecast, 30.0))
    assert second.record.mape > first.record.mape
    assert second.uncertainty_multiplier > 1.0
    assert [e.event for e in second.events] == ["low_accuracy_detected"]
    assert second.events[0].accuracy < 70

    assert service.state("S1", "SKU-1", 7) is ForecastState.STALE
    regenerated = service.generate("S1", "SKU-1", periods=[7]).forecasts[7]
    assert regenerated.uncertainty_multiplier == second.uncertainty_multiplier
    assert regenerated.predictions[0].width == pytest.approx(base_width * second.uncertainty_multiplier)


def test_concurrent_requests_share_a_single_fit():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [10] * 20)
    settings = IntelligenceSettings()
    clock = _Clock()
    model = _SlowModel(settings)
    service = _service(repository, clock, model=model, settings=settings)

    results = []

    def worker():
        results.append(service.generate("S1", "SKU-1", periods=[7], timeout=5))

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    time.sleep(0.2)
    model.release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert model.calls == 1
    assert len(results) == 5
    forecasts = {id(batch.forecasts[7]) for batch in results}
    assert len(forecasts) == 1
    assert sum(len(batch.events) for batch in results) == 1


def test_batch_isolates_corrupted_products():
    repository = InMemoryRepository()
    _seed(repository, "GOOD", [10] * 20)
    _seed(repository, "SHORT", [10] * 3)
    repository.append_sales(
        "S1", "BAD", [SalesObservation(date=START + timedelta(days=i), quantity=-1.0) for i in range(20)]
    )
    service = _service(repository, _Clock())

    result = service.generate_batch("S1", ["GOOD", "BAD", "SHORT"], periods=[7])

    assert sorted(result.batches) == ["GOOD", "SHORT"]
    assert 7 in result.batches["GOOD"].forecasts
    assert 7 in result.batches["SHORT"].failures
    assert isinstance(result.errors["BAD"], InvalidInputError)
    assert len(result.events) == 1


def test_backtest_reports_rolling_metrics():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [10, 12] * 35)
    service = _service(repository, _Clock())

    result = service.backtest("S1", "SKU-1", window=28, horizon=7, step=7)

    assert result["origins"] == len(result["records"]) == len(result["origin_dates"])
    assert result["origins"] == 6
    assert result["model_used"] == "moving_average-1"
    assert result["mape"] == pytest.approx(100 * (1 / 10 + 1 / 12) / 2, rel=1e-6)
    assert 0.0 <= result["coverage"] <= 1.0
    assert list(service.tracker.accuracy_trend("S1", "SKU-1")) == []


def test_parallel_batch_fits_leave_warning_filters_alone():
    repository = InMemoryRepository()
    products = [f"SKU-{n}" for n in range(8)]
    for n, product_id in enumerate(products):
        _seed(repository, product_id, [3 + n + (i * 7 % 11) + (i % 7) for i in range(60)])
    settings = IntelligenceSettings()
    clock = _Clock()
    service = ForecastService(repository, settings=settings, clock=clock)
    before = list(warnings.filters)

    for _ in range(3):
        result = service.generate_batch("S1", products, periods=[7, 14], refresh=True, max_workers=4)
        assert not result.errors
        assert sorted(result.batches) == sorted(products)

    assert list(warnings.filters) == before


def test_concurrent_accuracy_scoring_sees_each_previous_record():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [10, 14] * 10)
    service = _service(repository, _Clock())
    forecast = service.generate("S1", "SKU-1", periods=[7]).forecasts[7]
    day = forecast.predictions[-1].date
    actual_levels = [12.0, 30.0, 15.0, 40.0, 11.0, 25.0, 60.0, 13.0]

    threads = [
        threading.Thread(
            target=service.record_accuracy,
            args=("S1", "SKU-1", forecast, _actuals_for(forecast, level), day),
        )
        for level in actual_levels
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    records = list(service.tracker.accuracy_trend("S1", "SKU-1"))
    assert len(records) == len(actual_levels)
    expected = 1.0
    previous = None
    for record in records:
        expected = next_multiplier(expected, previous, record.mape, service.settings.max_uncertainty_multiplier)
        previous = record.mape
    assert service.uncertainty_multiplier("S1", "SKU-1") == pytest.approx(expected)


def test_unsupported_horizons_from_a_generator_are_reported():
    service = _service(InMemoryRepository(), _Clock())

    with pytest.raises(InvalidInputError) as excinfo:
        service.generate("S1", "SKU-1", periods=(h for h in (7, 10)))

    assert "[7, 10]" in excinfo.value.reason


def test_configured_ttl_drives_expiry():
    repository = InMemoryRepository()
    _seed(repository, "SKU-1", [10, 12] * 10)
    clock = _Clock()
    settings = IntelligenceSettings(forecast_ttl_hours=6)
    service = _service(repository, clock, settings=settings)
    forecast = service.generate("S1", "SKU-1", periods=[7]).forecasts[7]

    assert forecast.expires_at(service.ttl) == clock.now + timedelta(hours=6)
    assert forecast.expires_at() == clock.now + timedelta(hours=24)

    clock.now += timedelta(hours=6)
    assert forecast.is_expired(clock.now, service.ttl)
    assert service.state("S1", "SKU-1", 7) is ForecastState.STALE
