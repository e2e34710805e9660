"""Mini App HTTP surface: auth, checkout, invoices, cart sync, balance."""

from uuid import uuid4

from fastapi import FastAPI, Header

from storepay.common.config import settings
from storepay.common.db import SessionLocal
from storepay.common.http import install_http_handlers
from storepay.common.logging import configure_logging, trace_id_ctx
from storepay.common.metrics import metrics_response
from storepay.common.money import to_kopecks, to_rubles
from storepay.common.rate_limit import build_limiter
from storepay.common.startup import log_startup_config
from storepay.common.tracing import instrument_app, setup_tracing
from storepay.services.storefront.schemas import (
    AuthRequest,
    CancelRequest,
    CartSyncRequest,
    CheckoutRequest,
    InvoiceRequest,
)
from storepay.services.storefront.service import StorefrontService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "CRYPTOBOT_API_URL",
        "XROCKET_API_URL",
        "RATE_LIMIT_PER_MINUTE",
        "PRICE_TOLERANCE_KOPECKS",
    ],
)
service = StorefrontService(SessionLocal)
rate_limiter = build_limiter()

app = FastAPI(title="storepay Storefront")
instrument_app(app)
install_http_handlers(app)


def _trace(x_trace_id: str | None) -> str:
    trace_id = x_trace_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    return trace_id


def _profile_view(profile) -> dict:
    return {
        "id": profile.id,
        "telegramId": profile.telegram_id,
        "username": profile.username,
        "firstName": profile.first_name,
        "lastName": profile.last_name,
        "languageCode": profile.language_code,
        "balance": float(to_rubles(profile.balance_kopecks)),
        "isBanned": profile.is_banned,
    }


def _order_view(order) -> dict:
    return {
        "id": order.id,
        "kind": order.kind,
        "status": order.status,
        "paymentMethod": order.payment_method,
        "paymentId": order.payment_id,
        "total": float(to_rubles(order.total_kopecks)),
        "balanceToUse": float(to_rubles(order.balance_to_use_kopecks)),
        "deliveredContent": order.delivered_content,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "paidAt": order.paid_at.isoformat() if order.paid_at else None,
        "completedAt": order.completed_at.isoformat() if order.completed_at else None,
        "items": [
            {
                "productId": item.product_id,
                "productName": item.product_name,
                "price": float(to_rubles(item.unit_price_kopecks)),
                "quantity": item.quantity,
                "options": item.options,
            }
            for item in order.items
        ],
    }


@app.post("/auth/telegram")
def auth_telegram(req: AuthRequest, x_trace_id: str | None = Header(default=None)):
    """Verify `initData` and create or refresh the caller's profile."""

    _trace(x_trace_id)
    profile, created = service.login(req.init_data)
    return {"success": True, "created": created, "profile": _profile_view(profile)}


@app.post("/checkout")
def checkout(req: CheckoutRequest, x_trace_id: str | None = Header(default=None)):
    """Pay a cart from balance, or open a crypto invoice for it."""

    trace_id = _trace(x_trace_id)
    profile = service.authenticate(req.init_data)
    rate_limiter.enforce(profile.id)
    result = service.checkout.checkout(
        profile.id,
        [item.to_line() for item in req.items],
        to_kopecks(req.total),
        balance_to_use_kopecks=to_kopecks(req.balance_to_use),
        payment_method=req.payment_method,
        trace_id=trace_id,
    )
    body = {"success": True, "orderId": result.order_id}
    if result.new_balance_kopecks is not None:
        body["newBalance"] = float(to_rubles(result.new_balance_kopecks))
    if result.invoice is not None:
        body["invoiceId"] = result.invoice.invoice_id
        body["invoiceUrl"] = result.invoice.pay_url
        body["miniAppUrl"] = result.invoice.mini_app_url
    return body


@app.post("/payments/invoice")
def create_invoice(req: InvoiceRequest, x_trace_id: str | None = Header(default=None)):
    """Create a top-up invoice, or an invoice for an existing pending order."""

    trace_id = _trace(x_trace_id)
    profile = service.authenticate(req.init_data)
    rate_limiter.enforce(profile.id)
    result = service.invoices.create_invoice(
        profile.id,
        to_kopecks(req.amount),
        description=req.description,
        order_id=req.order_id,
        balance_to_use_kopecks=to_kopecks(req.balance_to_use),
        method=req.payment_method,
        trace_id=trace_id,
    )
    return {
        "success": True,
        "orderId": result.order_id,
        "invoiceId": result.invoice.invoice_id,
        "payUrl": result.invoice.pay_url,
        "miniAppUrl": result.invoice.mini_app_url,
        "expiresAt": result.invoice.expires_at,
        "amountUsdt": str(result.amount_usdt),
    }


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, req: CancelRequest):
    """Cancel one of the caller's pending orders."""

    profile = service.authenticate(req.init_data)
    order = service.orders.cancel(order_id, user_id=profile.id)
    return {"success": True, "order": _order_view(order)}


@app.get("/orders/{order_id}")
def get_order(order_id: str, x_telegram_init_data: str | None = Header(default=None)):
    profile = service.authenticate(x_telegram_init_data, allow_banned=True)
    order = service.orders.get_order(order_id, user_id=profile.id)
    return {"success": True, "order": _order_view(order)}


@app.post("/cart/sync")
def cart_sync(req: CartSyncRequest):
    """Persist the caller's cart snapshot (client side debounces the calls)."""

    profile = service.authenticate(req.init_data)
    items = [item.model_dump(by_alias=True, mode="json") for item in req.items]
    action = service.carts.sync(profile.id, items, to_kopecks(req.total))
    return {"success": True, "action": action}


@app.get("/balance")
def balance(x_telegram_init_data: str | None = Header(default=None)):
    profile = service.authenticate(x_telegram_init_data, allow_banned=True)
    return {"success": True, "balance": float(to_rubles(profile.balance_kopecks))}


@app.get("/transactions")
def transactions(limit: int = 50, x_telegram_init_data: str | None = Header(default=None)):
    """Latest ledger entries of the caller, newest first."""

    profile = service.authenticate(x_telegram_init_data, allow_banned=True)
    entries = service.ledger.history(profile.id, limit=max(1, min(limit, 200)))
    return {
        "success": True,
        "transactions": [
            {
                "id": entry.id,
                "type": entry.kind,
                "amount": float(to_rubles(entry.amount_kopecks)),
                "balanceAfter": float(to_rubles(entry.balance_after_kopecks)),
                "description": entry.description,
                "paymentId": entry.payment_id,
                "orderId": entry.order_id,
                "createdAt": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }


@app.get("/exchange-rate")
def exchange_rate():
    """Current USDT->RUB rate used for invoice conversion."""

    return {"success": True, "rate": float(service.invoices.exchange_rate()), "source": "USDT", "target": "RUB"}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
