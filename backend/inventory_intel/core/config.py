"""
Application configuration utilities.

This module defines the ``Settings`` class used by the service for
environment variables, the ``IntelligenceSettings`` business rules loaded
from ``configs/settings.yaml`` and the YAML helper they share.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGGER = logging.getLogger(__name__)

SUPPORTED_HORIZONS: tuple[int, ...] = (7, 14, 30)


class Settings(BaseSettings):
    """Configuration loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # API server configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Directory holding settings.yaml
    config_dir: str = "configs"

    log_level: str = "INFO"


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    """Return a cached instance of ``Settings``.

    Using a cache ensures that environment variables are only read once.
    """
    return Settings()


def load_yaml(file_path: str) -> dict:
    """Load a YAML file from the given path and return its contents.

    If the file does not exist, an empty dictionary is returned.
    """
    if not os.path.exists(file_path):
        return {}
    with open(file_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


class IntelligenceSettings(BaseModel):
    """Business rules for forecasting, reordering and stock alerting."""

    confidence_level: float = Field(95.0, description="Prediction interval level, in percent")
    overstock_window_days: int = Field(60, description="Days of supply above which stock is excess")
    forecast_ttl_hours: float = Field(24.0, description="Validity window of a cached forecast")
    min_history_days: int = Field(14, description="Distinct sale dates required to fit a model")
    discontinued_zero_days: int = Field(30, description="Trailing zero days that flag a product")
    moving_average_window: int = Field(14, description="Window of the fallback moving average")
    low_accuracy_threshold: float = Field(70.0, description="Accuracy (100 - MAPE) alert floor")
    max_uncertainty_multiplier: float = Field(3.0, description="Upper clamp for interval widening")
    default_lead_time_days: int = Field(7, description="Lead time used when a product has none")
    horizons: list[int] = Field(default_factory=lambda: list(SUPPORTED_HORIZONS))

    @property
    def confidence_fraction(self) -> float:
        return self.confidence_level / 100.0


def _coerce(settings: dict[str, Any]) -> dict[str, Any]:
    values = {key: value for key, value in settings.items() if value is not None}

    level = float(values.get("confidence_level", 95.0))
    # Accept either 0.95 or 95.
    if level <= 1.0:
        level *= 100.0
    values["confidence_level"] = min(max(level, 50.0), 99.5)

    for key, floor in (
        ("overstock_window_days", 1),
        ("min_history_days", 1),
        ("discontinued_zero_days", 1),
        ("moving_average_window", 1),
        ("default_lead_time_days", 1),
    ):
        if key in values:
            values[key] = max(int(values[key]), floor)

    if "max_uncertainty_multiplier" in values:
        values["max_uncertainty_multiplier"] = max(float(values["max_uncertainty_multiplier"]), 1.0)

    horizons = values.get("horizons")
    if horizons is not None:
        kept = sorted({int(h) for h in horizons if int(h) in SUPPORTED_HORIZONS})
        if not kept:
            LOGGER.warning("No supported horizons configured (%s); using defaults", horizons)
            kept = list(SUPPORTED_HORIZONS)
        values["horizons"] = kept
    return values


def load_intelligence_settings(config_root: str | None = None) -> IntelligenceSettings:
    """Read ``settings.yaml`` under ``config_root`` and clamp it to sane ranges."""

    root = config_root or get_settings().config_dir
    raw = load_yaml(os.path.join(root, "settings.yaml"))
    if not isinstance(raw, dict):
        LOGGER.warning("Settings at %s are not a mapping; using defaults.", root)
        raw = {}
    fields = IntelligenceSettings.model_fields
    known = {key: value for key, value in raw.items() if key in fields}
    return IntelligenceSettings(**_coerce(known))
