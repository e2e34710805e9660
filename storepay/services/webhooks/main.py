"""Gateway webhook endpoints.

Status codes drive gateway retries: 200 for applied, duplicate and ignored
events, 400 for payloads that will never be valid, 403 for bad signatures,
500 for anything transient.
"""

from uuid import uuid4

from fastapi import FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from storepay.common.config import settings
from storepay.common.db import SessionLocal
from storepay.common.errors import SignatureInvalid, WebhookRejected
from storepay.common.http import install_http_handlers
from storepay.common.logging import configure_logging, logger, trace_id_ctx
from storepay.common.metrics import metrics_response, webhook_events_total
from storepay.common.startup import log_startup_config
from storepay.common.tracing import instrument_app, setup_tracing
from storepay.services.orders.models import METHOD_CRYPTOBOT, METHOD_XROCKET
from storepay.services.webhooks.service import build_reconciler

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "CRYPTOBOT_API_TOKEN", "XROCKET_API_TOKEN"],
)
service = build_reconciler(SessionLocal)

app = FastAPI(title="storepay Payment Webhooks")
instrument_app(app)
install_http_handlers(app)


async def _handle(gateway: str, handler, body: bytes, signature: str | None):
    trace_id_ctx.set(str(uuid4()))
    try:
        outcome = await run_in_threadpool(handler, body, signature)
    except SignatureInvalid:
        return PlainTextResponse("Forbidden", status_code=403)
    except WebhookRejected as exc:
        return PlainTextResponse(f"Invalid payload: {exc}", status_code=400)
    except Exception:
        webhook_events_total.labels(service=settings.service_name, gateway=gateway, outcome="error").inc()
        logger.exception("webhook processing failed gateway=%s", gateway)
        return PlainTextResponse("Internal error", status_code=500)
    return JSONResponse({"ok": True, "status": outcome.status})


@app.post("/webhooks/cryptobot")
async def cryptobot_webhook(request: Request, crypto_pay_api_signature: str | None = Header(default=None)):
    body = await request.body()
    return await _handle(METHOD_CRYPTOBOT, service.handle_cryptobot, body, crypto_pay_api_signature)


@app.post("/webhooks/xrocket")
async def xrocket_webhook(request: Request, rocket_pay_signature: str | None = Header(default=None)):
    body = await request.body()
    return await _handle(METHOD_XROCKET, service.handle_xrocket, body, rocket_pay_signature)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
