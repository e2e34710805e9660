"""Payment webhook reconciliation.

A confirmed gateway payment is applied in one transaction keyed by the
gateway invoice id: lock the profile, skip if a ledger row with this
`(user_id, payment_id)` exists, append the deposit, settle or advance the
correlated order, drop the cart, enqueue `payments.credited`. The unique
constraint on `(user_id, payment_id)` decides races the lookup cannot see.
"""

import json
from dataclasses import dataclass

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from storepay.common.config import settings
from storepay.common.errors import (
    InsufficientBalance,
    OutOfStock,
    ProfileNotFound,
    SignatureInvalid,
    StorefrontError,
    WebhookRejected,
)
from storepay.common.logging import logger, payment_id_ctx, trace_id_ctx, user_id_ctx
from storepay.common.metrics import balance_credits_total, duplicate_payments_skipped_total, webhook_events_total
from storepay.common.money import format_rubles, to_kopecks
from storepay.common.outbox import enqueue_event
from storepay.common.state_machine import CANCELLED, PAID, PENDING
from storepay.services.analytics.service import AnalyticsRecorder
from storepay.services.carts.service import CartService
from storepay.services.inventory.service import InventoryService, PricedLine
from storepay.services.ledger.models import DEPOSIT, PURCHASE, Profile
from storepay.services.ledger.service import LedgerService
from storepay.services.orders.models import METHOD_CRYPTOBOT, METHOD_XROCKET, PURCHASE_ORDER, Order, OutboxEvent
from storepay.services.orders.service import OrderService
from storepay.services.payments.gateways import verify_webhook_signature
from storepay.services.webhooks.schemas import (
    INVOICE_PAID,
    XROCKET_PAID,
    CorrelationPayload,
    CryptoBotUpdate,
    XRocketInvoice,
)

PAYMENTS_CREDITED = "payments.credited"

IGNORED = "ignored"
CREDITED = "credited"
DUPLICATE = "duplicate"


@dataclass(frozen=True)
class WebhookOutcome:
    status: str
    payment_id: str | None = None
    order_id: str | None = None
    order_status: str | None = None
    new_balance_kopecks: int | None = None


class WebhookReconciler:
    """Verifies gateway callbacks and applies each paid invoice exactly once."""

    def __init__(
        self,
        session_factory,
        ledger: LedgerService,
        orders: OrderService,
        inventory: InventoryService,
        carts: CartService,
        analytics: AnalyticsRecorder,
        tokens: dict[str, str] | None = None,
        service_name: str = "webhooks",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.orders = orders
        self.inventory = inventory
        self.carts = carts
        self.analytics = analytics
        self.tokens = tokens or {
            METHOD_CRYPTOBOT: settings.cryptobot_api_token,
            METHOD_XROCKET: settings.xrocket_api_token,
        }
        self.service_name = service_name

    # -- gateway entrypoints ---------------------------------------------------

    def handle_cryptobot(self, body: bytes, signature: str | None) -> WebhookOutcome:
        self._verify(METHOD_CRYPTOBOT, body, signature)
        data = self._decode(METHOD_CRYPTOBOT, body)
        if data.get("update_type") != INVOICE_PAID:
            return self._ignored(METHOD_CRYPTOBOT, data.get("update_type"))
        try:
            update = CryptoBotUpdate.model_validate(data)
        except ValidationError as exc:
            raise self._rejected(METHOD_CRYPTOBOT, f"invalid update: {exc.error_count()} errors") from exc
        if update.payload is None:
            raise self._rejected(METHOD_CRYPTOBOT, "invoice missing")
        invoice = update.payload
        payload = self._correlation(METHOD_CRYPTOBOT, invoice.payload)
        return self.apply_payment(METHOD_CRYPTOBOT, str(invoice.invoice_id), payload, asset=invoice.asset)

    def handle_xrocket(self, body: bytes, signature: str | None) -> WebhookOutcome:
        self._verify(METHOD_XROCKET, body, signature)
        data = self._decode(METHOD_XROCKET, body)
        raw_invoice = data["data"] if isinstance(data.get("data"), dict) else data
        if raw_invoice.get("status") != XROCKET_PAID:
            return self._ignored(METHOD_XROCKET, raw_invoice.get("status"))
        try:
            invoice = XRocketInvoice.model_validate(raw_invoice)
        except ValidationError as exc:
            raise self._rejected(METHOD_XROCKET, f"invalid invoice: {exc.error_count()} errors") from exc
        payload = self._correlation(METHOD_XROCKET, invoice.payload)
        return self.apply_payment(METHOD_XROCKET, str(invoice.id), payload, asset=invoice.currency)

    # -- the atomic unit ---------------------------------------------------------

    def apply_payment(
        self, gateway: str, payment_id: str, payload: CorrelationPayload, asset: str | None = None
    ) -> WebhookOutcome:
        """Credit `payload.amount_rub` once per `(user, payment_id)`."""

        amount_kopecks = to_kopecks(payload.amount_rub)
        if amount_kopecks <= 0:
            raise self._rejected(gateway, f"amount below one kopeck: {payload.amount_rub}")
        user_id = payload.user_id
        payment_id_ctx.set(payment_id)
        user_id_ctx.set(user_id)
        try:
            outcome = self._apply(gateway, payment_id, payload, amount_kopecks)
        except ProfileNotFound as exc:
            raise self._rejected(gateway, f"unknown user {user_id}") from exc
        except IntegrityError:
            # A concurrent delivery committed first; its row is the credit.
            with self.session_factory() as db:
                if self.ledger.find_payment_entry(db, user_id, payment_id) is None:
                    raise
            outcome = self._duplicate(gateway, payment_id)

        if outcome.status == DUPLICATE:
            return outcome
        webhook_events_total.labels(service=self.service_name, gateway=gateway, outcome=CREDITED).inc()
        balance_credits_total.labels(service=self.service_name).inc()
        logger.info(
            "payment credited gateway=%s payment_id=%s user_id=%s amount_kopecks=%s order_id=%s order_status=%s",
            gateway,
            payment_id,
            user_id,
            amount_kopecks,
            outcome.order_id,
            outcome.order_status,
        )
        self.analytics.record(
            "payment_completed",
            user_id,
            {
                "amount": str(payload.amount_rub),
                "payment_id": payment_id,
                "gateway": gateway,
                "currency": asset,
                "order_id": outcome.order_id,
                "order_status": outcome.order_status,
            },
        )
        return outcome

    def _apply(
        self, gateway: str, payment_id: str, payload: CorrelationPayload, amount_kopecks: int
    ) -> WebhookOutcome:
        user_id = payload.user_id
        with self.session_factory() as db:
            profile = self.ledger.lock_profile(db, user_id)
            if self.ledger.find_payment_entry(db, user_id, payment_id) is not None:
                return self._duplicate(gateway, payment_id)

            order = self._resolve_order(db, payment_id, payload)
            self.ledger.post_entry(
                db,
                profile,
                DEPOSIT,
                amount_kopecks,
                f"Пополнение баланса: {format_rubles(amount_kopecks)}",
                payment_id=payment_id,
                order_id=order.id if order is not None else None,
            )
            if order is not None:
                if order.kind == PURCHASE_ORDER:
                    self._settle_purchase(db, profile, order, payment_id)
                else:
                    self.orders.transition(
                        db, order, PAID, reason="payment_confirmed", event_id=payment_id, trace_id=trace_id_ctx.get()
                    )
            self.carts.clear(db, user_id)
            enqueue_event(
                db,
                OutboxEvent,
                PAYMENTS_CREDITED,
                payment_id,
                {
                    "gateway": gateway,
                    "payment_id": payment_id,
                    "user_id": user_id,
                    "amount_kopecks": amount_kopecks,
                    "order_id": order.id if order is not None else None,
                },
                trace_id=trace_id_ctx.get(),
                user_id=user_id,
                aggregate_type="payment",
            )
            db.commit()
            return WebhookOutcome(
                status=CREDITED,
                payment_id=payment_id,
                order_id=order.id if order is not None else None,
                order_status=order.status if order is not None else None,
                new_balance_kopecks=profile.balance_kopecks,
            )

    def _resolve_order(self, db, payment_id: str, payload: CorrelationPayload) -> Order | None:
        if payload.order_id:
            order = self.orders.lock_order(db, payload.order_id, payload.user_id)
            if order is None or order.payment_id != payment_id or order.status != PENDING:
                logger.warning(
                    "payment order not matched order_id=%s payment_id=%s", payload.order_id, payment_id
                )
                return None
            return order
        return self.orders.find_pending_by_payment(db, payment_id, payload.user_id)

    def _settle_purchase(self, db, profile: Profile, order: Order, payment_id: str) -> None:
        """Pay the order from the just-credited balance, or cancel it.

        Everything is checked under row locks before anything is written, so a
        failed settlement only adds the cancellation; the deposit stays.
        """

        lines = [
            PricedLine(
                product_id=item.product_id,
                product_name=item.product_name,
                unit_price_kopecks=item.unit_price_kopecks,
                quantity=item.quantity,
                options=item.options or {},
            )
            for item in order.items
        ]
        products = self.inventory.load_products(db, [line.product_id for line in lines], lock=True)
        try:
            for line in lines:
                if line.product_id not in products:
                    raise OutOfStock(f'Товар "{line.product_name}" закончился')
            self.inventory.check_availability(db, order.user_id, lines, products)
            if profile.balance_kopecks < order.total_kopecks:
                raise InsufficientBalance()
        except StorefrontError as exc:
            self.orders.transition(
                db, order, CANCELLED, reason=f"settlement_failed:{type(exc).__name__}", event_id=payment_id
            )
            logger.info(
                "order cancelled at settlement order_id=%s reason=%s; deposit kept", order.id, exc.message
            )
            return

        self.inventory.decrement(db, lines, products)
        self.ledger.post_entry(
            db,
            profile,
            PURCHASE,
            -order.total_kopecks,
            f"Оплата заказа #{order.id[:8]}",
            order_id=order.id,
        )
        self.orders.transition(
            db, order, PAID, reason="payment_confirmed", event_id=payment_id, trace_id=trace_id_ctx.get()
        )

    # -- helpers -------------------------------------------------------------------

    def _verify(self, gateway: str, body: bytes, signature: str | None) -> None:
        if not verify_webhook_signature(body, signature, self.tokens.get(gateway, "")):
            webhook_events_total.labels(service=self.service_name, gateway=gateway, outcome="forbidden").inc()
            logger.warning("webhook signature invalid gateway=%s", gateway)
            raise SignatureInvalid(gateway)

    def _decode(self, gateway: str, body: bytes) -> dict:
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise self._rejected(gateway, "body is not JSON") from exc
        if not isinstance(data, dict):
            raise self._rejected(gateway, "body is not an object")
        return data

    def _correlation(self, gateway: str, raw: str | None) -> CorrelationPayload:
        if not raw:
            raise self._rejected(gateway, "payload missing")
        try:
            return CorrelationPayload.model_validate_json(raw)
        except ValidationError as exc:
            raise self._rejected(gateway, f"payload invalid: {exc.error_count()} errors") from exc

    def _rejected(self, gateway: str, reason: str) -> WebhookRejected:
        webhook_events_total.labels(service=self.service_name, gateway=gateway, outcome="rejected").inc()
        logger.warning("webhook rejected gateway=%s reason=%s", gateway, reason)
        return WebhookRejected(reason)

    def _ignored(self, gateway: str, kind) -> WebhookOutcome:
        webhook_events_total.labels(service=self.service_name, gateway=gateway, outcome=IGNORED).inc()
        logger.info("webhook ignored gateway=%s kind=%s", gateway, kind)
        return WebhookOutcome(status=IGNORED)

    def _duplicate(self, gateway: str, payment_id: str) -> WebhookOutcome:
        webhook_events_total.labels(service=self.service_name, gateway=gateway, outcome=DUPLICATE).inc()
        duplicate_payments_skipped_total.labels(service=self.service_name, gateway=gateway).inc()
        logger.info("duplicate payment skipped gateway=%s payment_id=%s", gateway, payment_id)
        return WebhookOutcome(status=DUPLICATE, payment_id=payment_id)


def build_reconciler(session_factory, tokens: dict[str, str] | None = None) -> WebhookReconciler:
    ledger = LedgerService(session_factory)
    return WebhookReconciler(
        session_factory,
        ledger,
        OrderService(session_factory, ledger),
        InventoryService(settings.price_tolerance_kopecks),
        CartService(session_factory),
        AnalyticsRecorder(session_factory),
        tokens=tokens,
    )
