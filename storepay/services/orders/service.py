"""Order state machine progression.

Transitions are applied with optimistic concurrency on `(id, status,
state_version)`, mirrored to the timeline, and announced through the outbox in
the same transaction as the state change.
"""

from datetime import datetime, timezone

from sqlalchemy import func, select, update

from storepay.common.errors import OrderNotFound, OrderStateConflict, ValidationFailed
from storepay.common.events import EventEnvelope, KafkaBus, consume_forever
from storepay.common.logging import logger
from storepay.common.metrics import duplicate_events_skipped_total, order_paid_seconds, order_transitions_total
from storepay.common.money import format_rubles
from storepay.common.outbox import OutboxRelay, enqueue_event
from storepay.common.state_machine import (
    CANCELLED,
    COMPLETED,
    PAID,
    PENDING,
    REFUNDED,
    InvalidTransition,
    validate_transition,
)
from storepay.services.ledger.models import PURCHASE, REFUND, Transaction
from storepay.services.ledger.service import LedgerService
from storepay.services.orders.models import (
    DEPOSIT_ORDER,
    PURCHASE_ORDER,
    InboxEvent,
    Order,
    OrderItem,
    OrderTimeline,
    OutboxEvent,
)

ORDERS_PAID = "orders.paid"
ORDERS_COMPLETED = "orders.completed"
ORDERS_REFUNDED = "orders.refunded"


class OrderService:
    """Owns order creation, transitions, fulfillment confirmation and refunds."""

    def __init__(self, session_factory, ledger: LedgerService | None = None, service_name: str = "orders") -> None:
        self.session_factory = session_factory
        self.ledger = ledger or LedgerService(session_factory)
        self.kafka = KafkaBus()
        self.service_name = service_name
        self.relay = OutboxRelay(session_factory, OutboxEvent, self.kafka, service_name)

    # -- building blocks for other services' atomic units ---------------------

    def create_order(
        self,
        db,
        user_id: str,
        status: str,
        payment_method: str,
        total_kopecks: int,
        lines=(),
        payment_id: str | None = None,
        balance_to_use_kopecks: int = 0,
        reason: str = "order_created",
        trace_id: str = "",
    ) -> Order:
        """Insert an order with its line snapshots and first timeline row."""

        if total_kopecks <= 0:
            raise ValidationFailed("Сумма заказа должна быть положительной")
        order = Order(
            user_id=user_id,
            kind=PURCHASE_ORDER if lines else DEPOSIT_ORDER,
            status=status,
            payment_method=payment_method,
            payment_id=payment_id,
            total_kopecks=total_kopecks,
            balance_to_use_kopecks=balance_to_use_kopecks,
            state_version=0,
        )
        if status == PAID:
            order.paid_at = datetime.now(timezone.utc)
        db.add(order)
        db.flush()
        for position, line in enumerate(lines):
            db.add(
                OrderItem(
                    order_id=order.id,
                    position=position,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    unit_price_kopecks=line.unit_price_kopecks,
                    quantity=line.quantity,
                    options=line.options,
                )
            )
        db.add(OrderTimeline(order_id=order.id, from_state=None, to_state=status, reason=reason, event_id=None))
        self._announce(db, order, status, reason, trace_id)
        db.flush()
        db.refresh(order)
        return order

    def lock_order(self, db, order_id: str, user_id: str | None = None) -> Order | None:
        stmt = select(Order).where(Order.id == order_id)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        return db.execute(
            stmt.with_for_update().execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_pending_by_payment(self, db, payment_id: str, user_id: str) -> Order | None:
        return db.execute(
            select(Order)
            .where(Order.payment_id == payment_id, Order.user_id == user_id, Order.status == PENDING)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def transition(
        self, db, order: Order, new_status: str, reason: str, event_id: str | None = None, trace_id: str = ""
    ) -> None:
        """Apply one validated state transition with optimistic concurrency.

        Transition writes are guarded by `(id, status, state_version)` to
        prevent stale concurrent updates from succeeding.
        """

        validate_transition(order.status, new_status)
        from_status = order.status
        current_version = order.state_version
        now = datetime.now(timezone.utc)
        values = {"status": new_status, "state_version": current_version + 1, "updated_at": now}
        if new_status == PAID:
            values["paid_at"] = now
        if new_status == COMPLETED:
            values["completed_at"] = now
            values["delivered_content"] = order.delivered_content

        result = db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == from_status,
                Order.state_version == current_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RuntimeError(
                f"optimistic concurrency conflict for order {order.id} (expected version {current_version})"
            )

        for key, value in values.items():
            setattr(order, key, value)
        db.add(
            OrderTimeline(
                order_id=order.id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
                event_id=event_id,
            )
        )
        order_transitions_total.labels(service=self.service_name, from_state=from_status, to_state=new_status).inc()

        self._announce(db, order, new_status, reason, trace_id)
        if new_status == PAID:
            self._observe_paid(order)

    def _announce(self, db, order: Order, status: str, reason: str, trace_id: str = "") -> None:
        topic = {PAID: ORDERS_PAID, COMPLETED: ORDERS_COMPLETED, REFUNDED: ORDERS_REFUNDED}.get(status)
        if topic is None:
            return
        enqueue_event(
            db,
            OutboxEvent,
            topic,
            order.id,
            {
                "order_id": order.id,
                "user_id": order.user_id,
                "kind": order.kind,
                "payment_method": order.payment_method,
                "total_kopecks": order.total_kopecks,
                "reason": reason,
            },
            trace_id=trace_id,
            user_id=order.user_id,
        )

    def _observe_paid(self, order: Order) -> None:
        created_at = order.created_at
        if created_at is None:
            return
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
        order_paid_seconds.labels(service=self.service_name, payment_method=order.payment_method).observe(elapsed)

    # -- standalone units ---------------------------------------------------------

    def get_order(self, order_id: str, user_id: str | None = None) -> Order:
        with self.session_factory() as db:
            stmt = select(Order).where(Order.id == order_id)
            if user_id is not None:
                stmt = stmt.where(Order.user_id == user_id)
            order = db.execute(stmt).scalar_one_or_none()
            if order is None:
                raise OrderNotFound()
            return order

    def timeline(self, order_id: str) -> list[OrderTimeline]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(OrderTimeline)
                    .where(OrderTimeline.order_id == order_id)
                    .order_by(OrderTimeline.created_at, OrderTimeline.timeline_id)
                )
                .scalars()
                .all()
            )

    def cancel(self, order_id: str, user_id: str | None = None, reason: str = "cancelled_by_user") -> Order:
        """Cancel a pending order; anything past `pending` is a conflict."""

        with self.session_factory() as db:
            order = self.lock_order(db, order_id, user_id)
            if order is None:
                raise OrderNotFound()
            if order.status == CANCELLED:
                return order
            try:
                self.transition(db, order, CANCELLED, reason=reason)
            except InvalidTransition as exc:
                raise OrderStateConflict() from exc
            db.commit()
            logger.info("order cancelled order_id=%s reason=%s", order.id, reason)
            return order

    def complete(self, order_id: str, delivered_content: str, event_id: str | None = None) -> Order:
        """Explicit fulfillment confirmation: `paid` -> `completed`."""

        with self.session_factory() as db:
            order = self.lock_order(db, order_id)
            if order is None:
                raise OrderNotFound()
            if order.status == COMPLETED:
                return order
            if order.status != PAID:
                raise OrderStateConflict(f"Заказ в статусе {order.status} не может быть выдан")
            order.delivered_content = delivered_content
            self.transition(db, order, COMPLETED, reason="fulfillment_confirmed", event_id=event_id)
            db.commit()
            logger.info("order completed order_id=%s", order.id)
            return order

    def refund(self, order_id: str, reason: str = "refund") -> tuple[Order, Transaction | None]:
        """Move a paid/completed order to `refunded`, returning its balance debits.

        The refund credits exactly what the ledger debited for this order, so
        the crypto portion of a mixed payment comes back as balance as well
        (it was deposited before being spent).
        """

        with self.session_factory() as db:
            order = self.lock_order(db, order_id)
            if order is None:
                raise OrderNotFound()
            if order.status == REFUNDED:
                return order, None
            if order.status not in (PAID, COMPLETED):
                raise OrderStateConflict(f"Заказ в статусе {order.status} нельзя вернуть")
            profile = self.ledger.lock_profile(db, order.user_id)
            debited = -int(
                db.execute(
                    select(func.coalesce(func.sum(Transaction.amount_kopecks), 0)).where(
                        Transaction.order_id == order.id, Transaction.kind == PURCHASE
                    )
                ).scalar_one()
            )
            entry = None
            if debited > 0:
                entry = self.ledger.post_entry(
                    db,
                    profile,
                    REFUND,
                    debited,
                    f"Возврат по заказу #{order.id[:8]}: {format_rubles(debited)}",
                    order_id=order.id,
                )
            self.transition(db, order, REFUNDED, reason=reason)
            db.commit()
            logger.info("order refunded order_id=%s amount_kopecks=%s", order.id, debited)
            return order, entry

    # -- fulfillment worker ----------------------------------------------------------

    def _inbox_seen(self, db, event_id: str) -> bool:
        existing = db.execute(
            select(InboxEvent).where(
                InboxEvent.event_id == event_id,
                InboxEvent.consumed_by_service == self.service_name,
            )
        ).scalar_one_or_none()
        return existing is not None

    def _mark_inbox(self, db, event_id: str) -> None:
        db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))

    async def handle_order_paid(self, event: EventEnvelope) -> None:
        """Auto-fulfil top-up orders; product orders wait for delivery confirmation."""

        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", ORDERS_PAID, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=ORDERS_PAID).inc()
                return
            order = self.lock_order(db, event.aggregate_id)
            if order is not None and order.kind == DEPOSIT_ORDER and order.status == PAID:
                order.delivered_content = f"Пополнение баланса на {format_rubles(order.total_kopecks)}"
                self.transition(db, order, COMPLETED, reason="deposit_credited", event_id=event.event_id)
            self._mark_inbox(db, event.event_id)
            db.commit()

    async def outbox_publisher(self) -> None:
        await self.relay.run_forever()

    async def start_consumers(self) -> None:
        """Start the `orders.paid` consumer."""

        await consume_forever(ORDERS_PAID, "orders-fulfillment", self.handle_order_paid)
