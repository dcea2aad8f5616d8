r"""backend\inventory_intel\models\schemas.py

Pydantic models used throughout the core and the API.

These models serve as both the value objects exchanged between services
and the response serialisation schemas.  Forecasts, predictions and
accuracy records are frozen: a regenerated forecast supersedes the old
one instead of mutating it.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

FORECAST_TTL = timedelta(hours=24)


class SalesObservation(BaseModel):
    """A single recorded sale (or sales total) for one product on one day."""

    model_config = ConfigDict(frozen=True)

    date: date
    quantity: float = Field(..., description="Units sold on the date")
    unit_price: Optional[float] = Field(None, description="Realised unit price, if known")


class SalesHistory(BaseModel):
    """Date ordered sales observations for one (store, product) pair."""

    model_config = ConfigDict(frozen=True)

    store_id: str
    product_id: str
    observations: Tuple[SalesObservation, ...] = ()

    def distinct_dates(self) -> int:
        return len({obs.date for obs in self.observations})

    @property
    def last_date(self) -> Optional[date]:
        if not self.observations:
            return None
        return max(obs.date for obs in self.observations)


class DailyPrediction(BaseModel):
    """A single point in a demand forecast."""

    model_config = ConfigDict(frozen=True)

    date: date
    point_estimate: float = Field(..., ge=0.0, description="Predicted demand for the date")
    lower_bound: float = Field(..., description="Lower bound of the prediction interval")
    upper_bound: float = Field(..., description="Upper bound of the prediction interval")

    @model_validator(mode="after")
    def _check_bounds(self) -> "DailyPrediction":
        if not self.lower_bound <= self.point_estimate <= self.upper_bound:
            raise ValueError(
                "prediction bounds must satisfy lower_bound <= point_estimate <= upper_bound"
            )
        return self

    @property
    def width(self) -> float:
        return self.upper_bound - self.lower_bound


class Forecast(BaseModel):
    """A forecast for a given product over one of the supported horizons."""

    model_config = ConfigDict(frozen=True)

    store_id: str
    product_id: str
    horizon_days: int = Field(..., ge=1)
    generated_at: datetime
    model_version: str
    predictions: Tuple[DailyPrediction, ...]
    confidence_level: float = Field(95.0, description="Interval level, in percent")
    possibly_discontinued: bool = False
    uncertainty_multiplier: float = Field(1.0, ge=1.0)

    def expires_at(self, ttl: timedelta = FORECAST_TTL) -> datetime:
        return self.generated_at + ttl

    def is_expired(self, now: datetime, ttl: timedelta = FORECAST_TTL) -> bool:
        return now >= self.expires_at(ttl)

    def total_demand(self) -> float:
        return float(sum(p.point_estimate for p in self.predictions))


class AccuracyRecord(BaseModel):
    """Accuracy of a past forecast against realized sales."""

    model_config = ConfigDict(frozen=True)

    store_id: str
    product_id: str
    evaluation_date: date
    mape: float = Field(..., ge=0.0, description="Mean absolute percentage error, in percent")
    rmse: float = Field(..., ge=0.0)
    mae: float = Field(..., ge=0.0)
    matched_days: int = Field(..., ge=1)
    horizon_days: Optional[int] = None

    @property
    def accuracy(self) -> float:
        return max(0.0, 100.0 - self.mape)


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]


_URGENCY_RANK = {Urgency.LOW: 0, Urgency.MEDIUM: 1, Urgency.HIGH: 2, Urgency.CRITICAL: 3}


class ReorderRecommendation(BaseModel):
    """Recommendation for reordering a product, always derived on demand."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    current_stock: float
    forecasted_demand: float = Field(..., description="Demand expected over the lead time")
    safety_stock: float = Field(..., ge=0.0)
    reorder_point: float = Field(..., description="Inventory level at which to reorder")
    reorder_quantity: int = Field(..., ge=0, description="Suggested order quantity")
    urgency: Urgency
    active: bool = Field(..., description="True when current stock is below the reorder point")
    lead_time_days: int
    daily_rate: float
    days_to_stockout: Optional[float] = None
    estimated_stockout_date: Optional[date] = None


class ProductStock(BaseModel):
    """Stock position and replenishment parameters of a product."""

    product_id: str
    name: str = ""
    current_stock: float = Field(0.0, ge=0.0)
    minimum_threshold: float = Field(0.0, ge=0.0)
    unit_price: float = Field(0.0, ge=0.0)
    lead_time_days: Optional[int] = Field(None, gt=0)
    inventory_age_days: float = Field(0.0, ge=0.0)

    @property
    def display_name(self) -> str:
        return self.name or self.product_id


class _SignalBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    product_name: str
    current_stock: float
    priority: float = Field(0.0, description="Higher values sort first within a signal kind")


class LowStockSignal(_SignalBase):
    kind: Literal["low"] = "low"
    threshold: float


class OutOfStockSignal(_SignalBase):
    kind: Literal["out"] = "out"
    threshold: float = 0.0


class OverstockSignal(_SignalBase):
    kind: Literal["overstock"] = "overstock"
    days_of_supply: Optional[float] = Field(None, description="None when demand is zero")
    window_demand: float
    value_at_risk: float


StockSignal = Annotated[
    Union[LowStockSignal, OutOfStockSignal, OverstockSignal], Field(discriminator="kind")
]


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    store_id: str
    product_id: str
    occurred_at: datetime


class ForecastGenerated(_EventBase):
    event: Literal["forecast_generated"] = "forecast_generated"
    forecast: Forecast


class LowAccuracyDetected(_EventBase):
    event: Literal["low_accuracy_detected"] = "low_accuracy_detected"
    mape: float
    accuracy: float


class StockSignalRaised(_EventBase):
    event: Literal["stock_signal_raised"] = "stock_signal_raised"
    signal: StockSignal


class ReorderRecommended(_EventBase):
    event: Literal["reorder_recommended"] = "reorder_recommended"
    recommendation: ReorderRecommendation


OutputEvent = Annotated[
    Union[ForecastGenerated, LowAccuracyDetected, StockSignalRaised, ReorderRecommended],
    Field(discriminator="event"),
]


class ForecastResponse(BaseModel):
    """API payload listing the forecasts produced for a product."""

    store_id: str
    product_id: str
    forecasts: List[Forecast]
    failures: dict[int, dict] = Field(default_factory=dict)


class AccuracyTrendResponse(BaseModel):
    store_id: str
    product_id: str
    records: List[AccuracyRecord]
    uncertainty_multiplier: float


class AccuracyResponse(BaseModel):
    record: AccuracyRecord
    uncertainty_multiplier: float
    low_accuracy: bool = False


class SalesUpload(BaseModel):
    """Request body for appending observed sales to a product."""

    observations: List[SalesObservation] = Field(..., min_length=1)


class StockUpdate(BaseModel):
    """Request body for upserting a product's stock position."""

    name: str = ""
    current_stock: float = Field(0.0, ge=0.0)
    minimum_threshold: float = Field(0.0, ge=0.0)
    unit_price: float = Field(0.0, ge=0.0)
    lead_time_days: Optional[int] = Field(None, gt=0)
    inventory_age_days: float = Field(0.0, ge=0.0)
