"""Order lifecycle workers and internal fulfillment/refund endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header
from pydantic import BaseModel, Field

from storepay.common.config import settings
from storepay.common.db import SessionLocal
from storepay.common.http import enforce_api_key, install_http_handlers
from storepay.common.logging import configure_logging
from storepay.common.metrics import metrics_response
from storepay.common.money import to_rubles
from storepay.common.startup import log_startup_config
from storepay.common.tracing import instrument_app, setup_tracing
from storepay.services.orders.service import OrderService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS"],
)
service = OrderService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher and the `orders.paid` consumer with the app."""

    publisher_task = asyncio.create_task(service.outbox_publisher())
    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    publisher_task.cancel()
    consumer_task.cancel()
    await service.kafka.close()


app = FastAPI(title="storepay Orders", lifespan=lifespan)
instrument_app(app)
install_http_handlers(app)


class CompleteRequest(BaseModel):
    delivered_content: str = Field(alias="deliveredContent", min_length=1)


class RefundRequest(BaseModel):
    reason: str = Field(default="refund", min_length=1, max_length=200)


def _order_summary(order) -> dict:
    return {
        "id": order.id,
        "userId": order.user_id,
        "kind": order.kind,
        "status": order.status,
        "paymentMethod": order.payment_method,
        "total": float(to_rubles(order.total_kopecks)),
        "stateVersion": order.state_version,
    }


@app.get("/internal/orders/{order_id}")
def get_order(order_id: str, x_api_key: str | None = Header(default=None)):
    """Order with its full transition timeline."""

    enforce_api_key(x_api_key)
    order = service.get_order(order_id)
    return {
        "success": True,
        "order": _order_summary(order),
        "timeline": [
            {"from": row.from_state, "to": row.to_state, "reason": row.reason, "eventId": row.event_id}
            for row in service.timeline(order_id)
        ],
    }


@app.post("/internal/orders/{order_id}/complete")
def complete_order(order_id: str, req: CompleteRequest, x_api_key: str | None = Header(default=None)):
    """Fulfillment confirmation: `paid` -> `completed`."""

    enforce_api_key(x_api_key)
    order = service.complete(order_id, req.delivered_content)
    return {"success": True, "order": _order_summary(order)}


@app.post("/internal/orders/{order_id}/refund")
def refund_order(order_id: str, req: RefundRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    order, entry = service.refund(order_id, req.reason)
    return {
        "success": True,
        "order": _order_summary(order),
        "refunded": float(to_rubles(entry.amount_kopecks)) if entry is not None else 0.0,
    }


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
