"""Order lifecycle: creation, transitions, fulfillment, refunds, deposit auto-completion."""

import asyncio

import pytest
from sqlalchemy import select

from storepay.common.errors import OrderStateConflict
from storepay.common.events import EventEnvelope
from storepay.common.state_machine import CANCELLED, COMPLETED, PAID, PENDING, REFUNDED, InvalidTransition
from storepay.services.inventory.service import PricedLine
from storepay.services.ledger.models import PURCHASE, REFUND, Profile, Transaction
from storepay.services.ledger.service import LedgerService
from storepay.services.orders.models import DEPOSIT_ORDER, METHOD_BALANCE, METHOD_CRYPTOBOT, InboxEvent, OutboxEvent
from storepay.services.orders.service import ORDERS_COMPLETED, ORDERS_PAID, ORDERS_REFUNDED, OrderService


def _line(product_id="p1", price=30000, quantity=1):
    return PricedLine(
        product_id=product_id, product_name="VPN ключ", unit_price_kopecks=price, quantity=quantity, options={}
    )


def _create(session_factory, orders, user_id, status=PENDING, method=METHOD_CRYPTOBOT, lines=(), total=30000, **kw):
    with session_factory() as db:
        order = orders.create_order(db, user_id, status, method, total, lines=lines, **kw)
        db.commit()
        return order


def _outbox_types(session_factory):
    with session_factory() as db:
        return [row.event_type for row in db.execute(select(OutboxEvent).order_by(OutboxEvent.created_at)).scalars()]


def test_create_pending_order_writes_items_and_timeline(session_factory, make_profile):
    orders = OrderService(session_factory)
    profile = make_profile()

    order = _create(session_factory, orders, profile.id, lines=[_line(quantity=2)], total=60000, payment_id="inv_9")

    assert order.status == PENDING
    assert order.kind == "purchase"
    assert [(item.product_name, item.quantity, item.unit_price_kopecks) for item in order.items] == [
        ("VPN ключ", 2, 30000)
    ]
    timeline = orders.timeline(order.id)
    assert [(row.from_state, row.to_state) for row in timeline] == [(None, PENDING)]
    assert _outbox_types(session_factory) == []


def test_order_created_paid_is_announced(session_factory, make_profile):
    orders = OrderService(session_factory)
    profile = make_profile()

    _create(session_factory, orders, profile.id, status=PAID, method=METHOD_BALANCE, lines=[_line()])

    assert _outbox_types(session_factory) == [ORDERS_PAID]


def test_transition_bumps_version_and_appends_timeline(session_factory, make_profile):
    orders = OrderService(session_factory)
    profile = make_profile()
    order = _create(session_factory, orders, profile.id, lines=[_line()])

    with session_factory() as db:
        locked = orders.lock_order(db, order.id)
        orders.transition(db, locked, PAID, reason="payment_confirmed", event_id="inv_1")
        db.commit()

    paid = orders.get_order(order.id)
    assert paid.status == PAID
    assert paid.state_version == 1
    assert paid.paid_at is not None
    assert [row.to_state for row in orders.timeline(order.id)] == [PENDING, PAID]
    assert _outbox_types(session_factory) == [ORDERS_PAID]


def test_stale_version_cannot_overwrite(session_factory, make_profile):
    orders = OrderService(session_factory)
    profile = make_profile()
    order = _create(session_factory, orders, profile.id, lines=[_line()])

    with session_factory() as db:
        stale = orders.lock_order(db, order.id)
        db.expunge(stale)
    orders.cancel(order.id)

    with session_factory() as db:
        with pytest.raises(RuntimeError):
            orders.transition(db, stale, PAID, reason="late_webhook")


def test_illegal_transition_raises(session_factory, make_profile):
    orders = OrderService(session_factory)
    profile = make_profile()
    order = _create(session_factory, orders, profile.id, lines=[_line()])

    with session_factory() as db:
        locked = orders.lock_order(db, order.id)
        with pytest.raises(InvalidTransition):
            orders.transition(db, locked, COMPLETED, reason="skip_payment")


def test_cancel_pending_is_idempotent_and_paid_conflicts(session_factory, make_profile):
    orders = OrderService(session_factory)
    profile = make_profile()
    pending = _create(session_factory, orders, profile.id, lines=[_line()])
    paid = _create(session_factory, orders, profile.id, status=PAID, method=METHOD_BALANCE, lines=[_line()])

    assert orders.cancel(pending.id, profile.id).status == CANCELLED
    assert orders.cancel(pending.id, profile.id).status == CANCELLED
    with pytest.raises(OrderStateConflict):
        orders.cancel(paid.id, profile.id)


def test_complete_requires_paid(session_factory, make_profile):
    orders = OrderService(session_factory)
    profile = make_profile()
    pending = _create(session_factory, orders, profile.id, lines=[_line()])
    paid = _create(session_factory, orders, profile.id, status=PAID, method=METHOD_BALANCE, lines=[_line()])

    with pytest.raises(OrderStateConflict):
        orders.complete(pending.id, "KEY-123")
    completed = orders.complete(paid.id, "KEY-123")

    assert completed.status == COMPLETED
    assert orders.get_order(paid.id).delivered_content == "KEY-123"
    assert ORDERS_COMPLETED in _outbox_types(session_factory)


def test_refund_returns_balance_debited_for_the_order(session_factory, make_profile):
    ledger = LedgerService(session_factory)
    orders = OrderService(session_factory, ledger)
    profile = make_profile(balance_kopecks=100000)
    order = _create(session_factory, orders, profile.id, status=PAID, method=METHOD_BALANCE, lines=[_line()])
    with session_factory() as db:
        locked = ledger.lock_profile(db, profile.id)
        ledger.post_entry(db, locked, PURCHASE, -30000, "Оплата заказа", order_id=order.id)
        db.commit()
    orders.complete(order.id, "KEY-1")

    refunded, entry = orders.refund(order.id, reason="customer_support")
    again, second_entry = orders.refund(order.id)

    assert refunded.status == REFUNDED
    assert entry.kind == REFUND
    assert entry.amount_kopecks == 30000
    assert again.status == REFUNDED and second_entry is None
    with session_factory() as db:
        assert db.get(Profile, profile.id).balance_kopecks == 100000
        kinds = [t.kind for t in db.execute(select(Transaction).order_by(Transaction.sequence)).scalars()]
    assert kinds == ["bonus", PURCHASE, REFUND]
    assert ORDERS_REFUNDED in _outbox_types(session_factory)
    assert ledger.verify_chain(profile.id)["consistent"] is True


def test_refund_of_pending_order_conflicts(session_factory, make_profile):
    orders = OrderService(session_factory)
    profile = make_profile()
    pending = _create(session_factory, orders, profile.id, lines=[_line()])

    with pytest.raises(OrderStateConflict):
        orders.refund(pending.id)


def test_paid_deposit_order_is_completed_by_worker_once(session_factory, make_profile):
    orders = OrderService(session_factory)
    profile = make_profile()
    deposit = _create(session_factory, orders, profile.id, status=PAID, total=50000)
    assert deposit.kind == DEPOSIT_ORDER
    event = EventEnvelope(event_type=ORDERS_PAID, aggregate_id=deposit.id, payload={"order_id": deposit.id})

    asyncio.run(orders.handle_order_paid(event))
    asyncio.run(orders.handle_order_paid(event))

    completed = orders.get_order(deposit.id)
    assert completed.status == COMPLETED
    assert completed.delivered_content == "Пополнение баланса на 500₽"
    assert [row.to_state for row in orders.timeline(deposit.id)] == [PAID, COMPLETED]
    with session_factory() as db:
        assert len(db.execute(select(InboxEvent)).scalars().all()) == 1


def test_paid_purchase_order_waits_for_fulfillment(session_factory, make_profile):
    orders = OrderService(session_factory)
    profile = make_profile()
    order = _create(session_factory, orders, profile.id, status=PAID, method=METHOD_BALANCE, lines=[_line()])
    event = EventEnvelope(event_type=ORDERS_PAID, aggregate_id=order.id, payload={"order_id": order.id})

    asyncio.run(orders.handle_order_paid(event))

    assert orders.get_order(order.id).status == PAID
