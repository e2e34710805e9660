"""Ledger service API.

Exposes balance-chain reconciliation and internal bonus credits.
"""

from decimal import Decimal

from fastapi import FastAPI, Header
from pydantic import BaseModel, Field

from storepay.common.config import settings
from storepay.common.db import SessionLocal
from storepay.common.http import enforce_api_key, install_http_handlers
from storepay.common.logging import configure_logging
from storepay.common.metrics import metrics_response
from storepay.common.money import to_kopecks, to_rubles
from storepay.common.startup import log_startup_config
from storepay.common.tracing import instrument_app, setup_tracing
from storepay.services.ledger.service import LedgerService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings.service_name, ["SERVICE_NAME", "POSTGRES_DSN"])
service = LedgerService(SessionLocal)

app = FastAPI(title="storepay Ledger Service")
instrument_app(app)
install_http_handlers(app)


class BonusRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    description: str = Field(default="Бонус", min_length=1, max_length=200)
    idempotency_key: str = Field(alias="idempotencyKey", min_length=5)


@app.get("/reconciliation/{user_id}")
def reconciliation(user_id: str, x_api_key: str | None = Header(default=None)):
    """Verify one user's `balance_after` chain against the stored balance."""

    enforce_api_key(x_api_key)
    return service.verify_chain(user_id)


@app.get("/reconciliation")
def reconciliation_report(limit: int = 1000, x_api_key: str | None = Header(default=None)):
    """Chain verification summary over users with ledger entries."""

    enforce_api_key(x_api_key)
    return service.reconciliation_report(limit=limit)


@app.post("/internal/users/{user_id}/bonus")
def credit_bonus(user_id: str, req: BonusRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    entry, applied = service.credit_bonus(user_id, to_kopecks(req.amount), req.description, req.idempotency_key)
    return {
        "success": True,
        "applied": applied,
        "transactionId": entry.id,
        "balanceAfter": float(to_rubles(entry.balance_after_kopecks)),
    }


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
