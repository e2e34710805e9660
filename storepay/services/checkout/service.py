"""Checkout: balance-funded purchases and crypto invoice checkouts.

The balance path is one atomic unit. Row locks are taken profile first, then
the touched products in id order, so two checkouts never wait on each other
in opposite directions.
"""

from dataclasses import dataclass

from storepay.common.errors import (
    InsufficientBalance,
    StorefrontError,
    UserBanned,
    ValidationFailed,
)
from storepay.common.logging import logger
from storepay.common.metrics import checkout_requests_total
from storepay.common.money import format_rubles, to_rubles
from storepay.common.state_machine import PAID, PENDING
from storepay.services.analytics.service import AnalyticsRecorder
from storepay.services.carts.service import CartService
from storepay.services.inventory.service import InventoryService, LineRequest
from storepay.services.ledger.models import PURCHASE
from storepay.services.ledger.service import LedgerService
from storepay.services.orders.models import METHOD_BALANCE
from storepay.services.orders.service import OrderService
from storepay.services.payments.gateways import GatewayInvoice
from storepay.services.payments.service import InvoiceService


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    new_balance_kopecks: int | None = None
    invoice: GatewayInvoice | None = None


class CheckoutService:
    """Turns a validated cart into a paid order or a pending order with an invoice."""

    def __init__(
        self,
        session_factory,
        ledger: LedgerService,
        orders: OrderService,
        inventory: InventoryService,
        carts: CartService,
        invoices: InvoiceService,
        analytics: AnalyticsRecorder,
        service_name: str = "checkout",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.orders = orders
        self.inventory = inventory
        self.carts = carts
        self.invoices = invoices
        self.analytics = analytics
        self.service_name = service_name

    def checkout(
        self,
        user_id: str,
        lines: list[LineRequest],
        total_kopecks: int,
        balance_to_use_kopecks: int = 0,
        payment_method: str = METHOD_BALANCE,
        trace_id: str = "",
    ) -> CheckoutResult:
        try:
            if payment_method == METHOD_BALANCE:
                result = self.pay_with_balance(user_id, lines, total_kopecks, trace_id)
            else:
                result = self.checkout_with_invoice(
                    user_id, lines, total_kopecks, balance_to_use_kopecks, payment_method, trace_id
                )
        except StorefrontError as exc:
            checkout_requests_total.labels(
                service=self.service_name, method=payment_method, outcome=type(exc).__name__
            ).inc()
            raise
        checkout_requests_total.labels(service=self.service_name, method=payment_method, outcome="ok").inc()
        return result

    def pay_with_balance(
        self, user_id: str, lines: list[LineRequest], total_kopecks: int, trace_id: str = ""
    ) -> CheckoutResult:
        """Validate, decrement stock, create a `paid` order and debit the balance.

        Everything happens in one transaction; any raised error leaves no
        order, no ledger row and untouched stock.
        """

        with self.session_factory() as db:
            profile = self.ledger.lock_profile(db, user_id)
            if profile.is_banned:
                raise UserBanned()
            priced, products = self.inventory.price_lines(db, lines, total_kopecks, lock=True)
            order_total = sum(line.line_total_kopecks for line in priced)
            if profile.balance_kopecks < order_total:
                raise InsufficientBalance()
            self.inventory.reserve(db, user_id, priced, products)
            order = self.orders.create_order(
                db,
                user_id,
                PAID,
                METHOD_BALANCE,
                order_total,
                lines=priced,
                balance_to_use_kopecks=order_total,
                reason="paid_with_balance",
                trace_id=trace_id,
            )
            self.ledger.post_entry(
                db,
                profile,
                PURCHASE,
                -order_total,
                f"Оплата заказа #{order.id[:8]}",
                order_id=order.id,
            )
            self.carts.clear(db, user_id)
            db.commit()
            new_balance = profile.balance_kopecks

        logger.info(
            "order paid with balance order_id=%s user_id=%s total_kopecks=%s new_balance_kopecks=%s",
            order.id,
            user_id,
            order_total,
            new_balance,
        )
        self.analytics.record(
            "order_paid_with_balance",
            user_id,
            {"order_id": order.id, "total": str(to_rubles(order_total)), "items": len(priced)},
        )
        return CheckoutResult(order_id=order.id, new_balance_kopecks=new_balance)

    def checkout_with_invoice(
        self,
        user_id: str,
        lines: list[LineRequest],
        total_kopecks: int,
        balance_to_use_kopecks: int,
        payment_method: str,
        trace_id: str = "",
    ) -> CheckoutResult:
        """Create a `pending` order, then an invoice for the non-balance part.

        Stock is only checked here; it is decremented when the payment is
        confirmed. A gateway failure cancels the pending order.
        """

        if payment_method not in self.invoices.gateways:
            raise ValidationFailed("Неизвестный способ оплаты")
        if balance_to_use_kopecks < 0:
            raise ValidationFailed("Некорректная сумма списания с баланса")
        with self.session_factory() as db:
            profile = self.ledger.lock_profile(db, user_id)
            if profile.is_banned:
                raise UserBanned()
            priced, products = self.inventory.price_lines(db, lines, total_kopecks)
            order_total = sum(line.line_total_kopecks for line in priced)
            if balance_to_use_kopecks >= order_total:
                raise ValidationFailed("Сумма к оплате должна быть положительной, оплатите заказ балансом")
            if balance_to_use_kopecks > profile.balance_kopecks:
                raise InsufficientBalance()
            self.inventory.check_availability(db, user_id, priced, products)
            order = self.orders.create_order(
                db,
                user_id,
                PENDING,
                payment_method,
                order_total,
                lines=priced,
                balance_to_use_kopecks=balance_to_use_kopecks,
                reason="checkout_started",
                trace_id=trace_id,
            )
            db.commit()

        crypto_amount = order_total - balance_to_use_kopecks
        try:
            result = self.invoices.create_invoice(
                user_id,
                crypto_amount,
                description=f"Оплата заказа #{order.id[:8]} на {format_rubles(order_total)}",
                order_id=order.id,
                balance_to_use_kopecks=balance_to_use_kopecks,
                method=payment_method,
                trace_id=trace_id,
            )
        except StorefrontError:
            self.orders.cancel(order.id, user_id, reason="invoice_failed")
            raise
        return CheckoutResult(order_id=order.id, invoice=result.invoice)
