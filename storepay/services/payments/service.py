"""Invoice creation: RUB amount -> gateway invoice correlated to an order."""

import json
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from storepay.common.config import settings
from storepay.common.errors import OrderNotFound, OrderStateConflict, ValidationFailed
from storepay.common.logging import logger
from storepay.common.metrics import invoices_created_total
from storepay.common.money import format_rubles, to_rubles
from storepay.common.state_machine import PENDING
from storepay.services.orders.models import METHOD_CRYPTOBOT
from storepay.services.orders.service import OrderService
from storepay.services.payments.gateways import GatewayInvoice, build_gateways
from storepay.services.payments.rates import ExchangeRateCache

USDT_STEP = Decimal("0.01")


@dataclass(frozen=True)
class InvoiceResult:
    order_id: str
    invoice: GatewayInvoice
    amount_usdt: Decimal
    rate: Decimal


def build_payload(
    user_id: str, amount_kopecks: int, order_id: str | None = None, balance_to_use_kopecks: int = 0
) -> str:
    """Opaque correlation payload echoed back by the gateway webhook."""

    payload = {
        "userId": user_id,
        "amountRub": str(to_rubles(amount_kopecks)),
        "balanceToUse": str(to_rubles(balance_to_use_kopecks)),
    }
    if order_id:
        payload["orderId"] = order_id
    return json.dumps(payload, separators=(",", ":"))


class InvoiceService:
    """Creates gateway invoices and ties them to `pending` orders."""

    def __init__(
        self,
        session_factory,
        orders: OrderService | None = None,
        gateways: dict | None = None,
        rates: ExchangeRateCache | None = None,
        service_name: str = "payments",
    ) -> None:
        self.session_factory = session_factory
        self.orders = orders or OrderService(session_factory)
        self.gateways = gateways if gateways is not None else build_gateways()
        self.rates = rates or ExchangeRateCache(
            self.gateways[METHOD_CRYPTOBOT].exchange_rates,
            ttl_seconds=settings.exchange_rate_ttl_seconds,
            fallback=Decimal(settings.fallback_usdt_rub_rate),
        )
        self.service_name = service_name

    def exchange_rate(self) -> Decimal:
        return self.rates.get()

    def rub_to_usdt(self, amount_kopecks: int) -> tuple[Decimal, Decimal]:
        rate = self.rates.get()
        amount = (to_rubles(amount_kopecks) / rate).quantize(USDT_STEP, rounding=ROUND_HALF_UP)
        return max(amount, USDT_STEP), rate

    def create_invoice(
        self,
        user_id: str,
        amount_kopecks: int,
        description: str | None = None,
        order_id: str | None = None,
        balance_to_use_kopecks: int = 0,
        method: str = METHOD_CRYPTOBOT,
        trace_id: str = "",
    ) -> InvoiceResult:
        """Create an invoice for `amount_kopecks`.

        With `order_id` the invoice is attached to that `pending` order of the
        user; otherwise a `pending` top-up order is created once the gateway
        has answered. The gateway call happens outside any row lock and is
        never retried here.
        """

        if amount_kopecks <= 0:
            raise ValidationFailed("Сумма должна быть положительной")
        if balance_to_use_kopecks < 0:
            raise ValidationFailed("Некорректная сумма списания с баланса")
        gateway = self.gateways.get(method)
        if gateway is None:
            raise ValidationFailed("Неизвестный способ оплаты")

        if order_id:
            with self.session_factory() as db:
                order = self.orders.lock_order(db, order_id, user_id)
                if order is None:
                    raise OrderNotFound()
                if order.status != PENDING:
                    raise OrderStateConflict()
            description = description or f"Оплата заказа #{order_id[:8]}"
        else:
            description = description or f"Пополнение баланса на {format_rubles(amount_kopecks)}"

        amount_usdt, rate = self.rub_to_usdt(amount_kopecks)
        payload = build_payload(user_id, amount_kopecks, order_id, balance_to_use_kopecks)
        invoice = gateway.create_invoice(
            amount_usdt, settings.invoice_asset, description, payload, settings.invoice_expires_in_seconds
        )
        invoices_created_total.labels(service=self.service_name, gateway=method).inc()

        with self.session_factory() as db:
            if order_id:
                order = self.orders.lock_order(db, order_id, user_id)
                if order is None or order.status != PENDING:
                    # The invoice stays payable; its webhook will still credit the balance.
                    logger.warning(
                        "invoice created for non-pending order order_id=%s invoice_id=%s",
                        order_id,
                        invoice.invoice_id,
                    )
                    raise OrderStateConflict()
                order.payment_id = invoice.invoice_id
                order.payment_method = method
                order.balance_to_use_kopecks = balance_to_use_kopecks
            else:
                order = self.orders.create_order(
                    db,
                    user_id,
                    PENDING,
                    method,
                    amount_kopecks,
                    payment_id=invoice.invoice_id,
                    reason="invoice_created",
                    trace_id=trace_id,
                )
            db.commit()
            logger.info(
                "invoice created gateway=%s invoice_id=%s order_id=%s amount_kopecks=%s amount_usdt=%s",
                method,
                invoice.invoice_id,
                order.id,
                amount_kopecks,
                amount_usdt,
            )
            return InvoiceResult(order_id=order.id, invoice=invoice, amount_usdt=amount_usdt, rate=rate)
