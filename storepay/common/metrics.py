"""Prometheus metric definitions shared across services."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
checkout_requests_total = Counter(
    "checkout_requests_total",
    "Checkout attempts by payment method and outcome",
    ["service", "method", "outcome"],
)
invoices_created_total = Counter("invoices_created_total", "Gateway invoices created", ["service", "gateway"])
gateway_failures_total = Counter(
    "gateway_failures_total",
    "Gateway calls that failed or returned a non-success envelope",
    ["service", "gateway", "operation"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound gateway webhooks by outcome",
    ["service", "gateway", "outcome"],
)
balance_credits_total = Counter("balance_credits_total", "Deposits credited to user balances", ["service"])
duplicate_payments_skipped_total = Counter(
    "duplicate_payments_skipped_total",
    "Payment confirmations skipped because the payment id was already applied",
    ["service", "gateway"],
)
order_transitions_total = Counter(
    "order_transitions_total",
    "Order state transitions",
    ["service", "from_state", "to_state"],
)
order_paid_seconds = Histogram(
    "order_paid_seconds",
    "Seconds from order creation until it was paid",
    ["service", "payment_method"],
)
cart_syncs_total = Counter("cart_syncs_total", "Cart sync calls by action", ["service", "action"])
cart_reminders_total = Counter(
    "cart_reminders_total",
    "Abandoned cart reminders by outcome",
    ["service", "outcome"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
