"""Abandoned-cart reminder worker."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header

from storepay.common.config import settings
from storepay.common.db import SessionLocal
from storepay.common.http import enforce_api_key, install_http_handlers
from storepay.common.logging import configure_logging
from storepay.common.metrics import metrics_response
from storepay.common.startup import log_startup_config
from storepay.common.telegram_bot import build_bot
from storepay.common.tracing import instrument_app, setup_tracing
from storepay.services.carts.sweep import AbandonmentSweep

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "TELEGRAM_BOT_TOKEN", "REMINDER_DELAY_MINUTES", "REMINDER_INTERVAL_SECONDS"],
)
sweep = AbandonmentSweep(SessionLocal, build_bot())


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the periodic sweep with the app lifecycle."""

    sweep_task = asyncio.create_task(sweep.run_forever())
    yield
    sweep_task.cancel()


app = FastAPI(title="storepay Cart Reminders", lifespan=lifespan)
instrument_app(app)
install_http_handlers(app)


@app.post("/internal/sweep")
async def run_sweep(x_api_key: str | None = Header(default=None)):
    """Run one sweep now; returns the per-outcome counts."""

    enforce_api_key(x_api_key)
    report = await sweep.run_once()
    return {"success": True, **report.as_dict()}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
