r"""backend\inventory_intel\main.py

Main entrypoint for the FastAPI application.

The API accepts sales observations and stock positions per store and
product, and exposes demand forecasts, forecast accuracy, reorder
recommendations and stock alerts derived from them.  A health endpoint is
also provided for readiness/liveness checks.  Configuration is read from
environment variables and YAML files in `configs/`.
"""


from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
import os
import logging
from pathlib import Path

from dotenv import load_dotenv

from .api.v1 import (
    accuracy,
    alerts,
    backtest,
    events,
    forecasts,
    health,
    inventory,
    reorder,
    sales,
)
from .core.config import get_settings
from .core.observability import RequestMetricsMiddleware, metrics_endpoint

# Load .env from repo root
BASE_DIR = Path(__file__).resolve().parents[2]  # repo root
load_dotenv(BASE_DIR / ".env")

logging.basicConfig(level=get_settings().log_level.upper())

app = FastAPI(title="Inventory Intelligence API", version="0.1.0")

origins_env = os.getenv("CORS_ORIGINS", "")
origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,  # In production specify your UI domain(s)
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestMetricsMiddleware)

# Include versioned routers
app.include_router(health.router, prefix="/api/v1")
app.include_router(sales.router, prefix="/api/v1")
app.include_router(inventory.router, prefix="/api/v1")
app.include_router(forecasts.router, prefix="/api/v1")
app.include_router(accuracy.router, prefix="/api/v1")
app.include_router(backtest.router, prefix="/api/v1")
app.include_router(reorder.router, prefix="/api/v1")
app.include_router(alerts.router, prefix="/api/v1")
app.include_router(events.router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
def _root() -> RedirectResponse:
    """Redirect the root path to the interactive docs."""

    return RedirectResponse(url="/docs")


@app.get("/metrics", include_in_schema=False)
async def _metrics() -> Response:
    """Expose Prometheus metrics."""

    return metrics_endpoint()
