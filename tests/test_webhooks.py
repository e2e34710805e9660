"""Webhook reconciliation: signature checks, exactly-once crediting, order settlement."""

import json

import pytest
from sqlalchemy import select, update

from conftest import CRYPTOBOT_TOKEN, XROCKET_TOKEN
from storepay.common.errors import SignatureInvalid, WebhookRejected
from storepay.common.state_machine import CANCELLED, PAID, PENDING
from storepay.services.analytics.models import AnalyticsEvent
from storepay.services.carts.models import CartSession
from storepay.services.inventory.models import Product
from storepay.services.inventory.service import PricedLine
from storepay.services.ledger.models import DEPOSIT, PURCHASE, Profile, Transaction
from storepay.services.orders.models import METHOD_CRYPTOBOT, METHOD_XROCKET, Order, OutboxEvent
from storepay.services.payments.gateways import compute_webhook_signature
from storepay.services.webhooks.service import (
    CREDITED,
    DUPLICATE,
    IGNORED,
    PAYMENTS_CREDITED,
    build_reconciler,
)


@pytest.fixture
def reconciler(session_factory):
    return build_reconciler(
        session_factory, tokens={METHOD_CRYPTOBOT: CRYPTOBOT_TOKEN, METHOD_XROCKET: XROCKET_TOKEN}
    )


def cryptobot_update(invoice_id, payload, update_type="invoice_paid") -> bytes:
    return json.dumps(
        {
            "update_id": 1,
            "update_type": update_type,
            "request_date": "2026-10-16T10:00:00.000Z",
            "payload": {
                "invoice_id": invoice_id,
                "status": "paid",
                "asset": "USDT",
                "amount": "5.24",
                "payload": json.dumps(payload) if isinstance(payload, dict) else payload,
            },
        }
    ).encode()


def deliver_cryptobot(reconciler, body: bytes):
    return reconciler.handle_cryptobot(body, compute_webhook_signature(body, CRYPTOBOT_TOKEN))


def _balance(session_factory, user_id):
    with session_factory() as db:
        return db.get(Profile, user_id).balance_kopecks


def _entries(session_factory, user_id):
    with session_factory() as db:
        return (
            db.execute(select(Transaction).where(Transaction.user_id == user_id).order_by(Transaction.sequence))
            .scalars()
            .all()
        )


def _pending_purchase(session_factory, reconciler, user_id, product, payment_id, quantity=1):
    line = PricedLine(
        product_id=product.id,
        product_name=product.name,
        unit_price_kopecks=product.price_kopecks,
        quantity=quantity,
        options={},
    )
    with session_factory() as db:
        order = reconciler.orders.create_order(
            db,
            user_id,
            PENDING,
            METHOD_CRYPTOBOT,
            product.price_kopecks * quantity,
            lines=[line],
            payment_id=payment_id,
        )
        db.commit()
        return order


def test_duplicate_delivery_credits_once(session_factory, make_profile, reconciler):
    profile = make_profile()
    body = cryptobot_update(1, {"userId": profile.id, "amountRub": 500})

    first = deliver_cryptobot(reconciler, body)
    second = deliver_cryptobot(reconciler, body)

    assert first.status == CREDITED
    assert first.new_balance_kopecks == 50000
    assert second.status == DUPLICATE
    assert _balance(session_factory, profile.id) == 50000
    entries = _entries(session_factory, profile.id)
    assert [(e.kind, e.payment_id, e.amount_kopecks) for e in entries] == [(DEPOSIT, "1", 50000)]
    assert entries[0].description == "Пополнение баланса: 500₽"


def test_concurrent_delivery_resolved_by_unique_constraint(session_factory, make_profile, reconciler, monkeypatch):
    profile = make_profile()
    body = cryptobot_update("inv_race", {"userId": profile.id, "amountRub": 250})
    assert deliver_cryptobot(reconciler, body).status == CREDITED

    real_lookup = reconciler.ledger.find_payment_entry
    calls = {"n": 0}

    def blind_first_lookup(db, user_id, payment_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_lookup(db, user_id, payment_id)

    monkeypatch.setattr(reconciler.ledger, "find_payment_entry", blind_first_lookup)
    outcome = deliver_cryptobot(reconciler, body)

    assert outcome.status == DUPLICATE
    assert _balance(session_factory, profile.id) == 25000
    assert len(_entries(session_factory, profile.id)) == 1


def test_bad_signature_is_refused(session_factory, make_profile, reconciler):
    profile = make_profile()
    body = cryptobot_update(2, {"userId": profile.id, "amountRub": 100})

    with pytest.raises(SignatureInvalid):
        reconciler.handle_cryptobot(body, compute_webhook_signature(body, "some-other-token"))
    with pytest.raises(SignatureInvalid):
        reconciler.handle_cryptobot(body, None)
    assert _balance(session_factory, profile.id) == 0


def test_non_paid_update_is_acknowledged_without_credit(session_factory, make_profile, reconciler):
    profile = make_profile()
    body = cryptobot_update(3, {"userId": profile.id, "amountRub": 100}, update_type="invoice_expired")

    assert deliver_cryptobot(reconciler, body).status == IGNORED
    assert _balance(session_factory, profile.id) == 0


@pytest.mark.parametrize(
    "payload",
    [
        "not json at all",
        {"amountRub": 100},
        {"userId": "u1", "amountRub": 0},
        {"userId": "u1", "amountRub": -5},
        {"userId": "u1", "amountRub": 10, "unexpected": True},
        "",
    ],
)
def test_malformed_payload_is_rejected(reconciler, payload):
    with pytest.raises(WebhookRejected):
        deliver_cryptobot(reconciler, cryptobot_update(4, payload))


@pytest.mark.parametrize("amount", [0.001, 0.004])
def test_amount_below_one_kopeck_is_rejected_without_ledger_write(session_factory, make_profile, reconciler, amount):
    profile = make_profile()
    body = cryptobot_update(6, {"userId": profile.id, "amountRub": amount})

    with pytest.raises(WebhookRejected):
        deliver_cryptobot(reconciler, body)

    assert _balance(session_factory, profile.id) == 0
    assert _entries(session_factory, profile.id) == []


def test_unknown_user_is_rejected(reconciler):
    body = cryptobot_update(5, {"userId": "no-such-user", "amountRub": 100})

    with pytest.raises(WebhookRejected):
        deliver_cryptobot(reconciler, body)


def test_non_json_body_is_rejected(reconciler):
    body = b"<html>"
    with pytest.raises(WebhookRejected):
        reconciler.handle_cryptobot(body, compute_webhook_signature(body, CRYPTOBOT_TOKEN))


@pytest.mark.parametrize("wrapped", [True, False])
def test_xrocket_paid_invoice_credits(session_factory, make_profile, reconciler, wrapped):
    profile = make_profile()
    invoice = {
        "id": 9001,
        "status": "paid",
        "currency": "USDT",
        "amount": 1.05,
        "payload": json.dumps({"userId": profile.id, "amountRub": 100}),
    }
    body = json.dumps({"type": "invoicePay", "data": invoice} if wrapped else invoice).encode()
    signature = compute_webhook_signature(body, XROCKET_TOKEN)

    outcome = reconciler.handle_xrocket(body, signature)
    again = reconciler.handle_xrocket(body, signature)

    assert outcome.status == CREDITED
    assert again.status == DUPLICATE
    assert _balance(session_factory, profile.id) == 10000


def test_xrocket_signature_uses_its_own_token(make_profile, reconciler):
    profile = make_profile()
    body = json.dumps(
        {"id": 1, "status": "paid", "payload": json.dumps({"userId": profile.id, "amountRub": 1})}
    ).encode()

    with pytest.raises(SignatureInvalid):
        reconciler.handle_xrocket(body, compute_webhook_signature(body, CRYPTOBOT_TOKEN))


def test_xrocket_unpaid_status_ignored(reconciler):
    body = json.dumps({"id": 1, "status": "active"}).encode()

    outcome = reconciler.handle_xrocket(body, compute_webhook_signature(body, XROCKET_TOKEN))

    assert outcome.status == IGNORED


def test_purchase_order_is_settled(session_factory, make_profile, make_product, reconciler):
    profile = make_profile()
    product = make_product(price_kopecks=30000, stock=1)
    order = _pending_purchase(session_factory, reconciler, profile.id, product, "800")
    with session_factory() as db:
        db.add(CartSession(user_id=profile.id, items=[{"productId": product.id}], total_kopecks=30000))
        db.commit()

    body = cryptobot_update(800, {"userId": profile.id, "amountRub": 300, "orderId": order.id})
    outcome = deliver_cryptobot(reconciler, body)

    assert outcome.status == CREDITED
    assert outcome.order_id == order.id
    assert outcome.order_status == PAID
    assert outcome.new_balance_kopecks == 0
    entries = _entries(session_factory, profile.id)
    assert [(e.kind, e.amount_kopecks, e.balance_after_kopecks) for e in entries] == [
        (DEPOSIT, 30000, 30000),
        (PURCHASE, -30000, 0),
    ]
    assert all(e.order_id == order.id for e in entries)
    with session_factory() as db:
        assert db.get(Order, order.id).status == PAID
        assert db.get(Product, product.id).stock == 0
        assert db.execute(select(CartSession)).scalars().all() == []
        outbox = [row.event_type for row in db.execute(select(OutboxEvent)).scalars()]
    assert sorted(outbox) == sorted([PAYMENTS_CREDITED, "orders.paid"])
    assert reconciler.ledger.verify_chain(profile.id)["consistent"] is True


def test_mixed_payment_debits_balance_portion(session_factory, make_profile, make_product, reconciler):
    profile = make_profile(balance_kopecks=10000)
    product = make_product(price_kopecks=30000)
    order = _pending_purchase(session_factory, reconciler, profile.id, product, "801")

    body = cryptobot_update(
        801, {"userId": profile.id, "amountRub": 200, "balanceToUse": 100, "orderId": order.id}
    )
    outcome = deliver_cryptobot(reconciler, body)

    assert outcome.order_status == PAID
    assert _balance(session_factory, profile.id) == 0


def test_failed_settlement_cancels_order_and_keeps_deposit(
    session_factory, make_profile, make_product, reconciler
):
    profile = make_profile()
    product = make_product(price_kopecks=30000, stock=1)
    order = _pending_purchase(session_factory, reconciler, profile.id, product, "802")
    with session_factory() as db:
        db.execute(update(Product).where(Product.id == product.id).values(stock=0))
        db.commit()

    body = cryptobot_update(802, {"userId": profile.id, "amountRub": 300, "orderId": order.id})
    outcome = deliver_cryptobot(reconciler, body)

    assert outcome.status == CREDITED
    assert outcome.order_status == CANCELLED
    assert _balance(session_factory, profile.id) == 30000
    assert [e.kind for e in _entries(session_factory, profile.id)] == [DEPOSIT]
    timeline = reconciler.orders.timeline(order.id)
    assert timeline[-1].reason == "settlement_failed:OutOfStock"


def test_mismatched_order_only_credits(session_factory, make_profile, make_product, reconciler):
    profile = make_profile()
    product = make_product()
    order = _pending_purchase(session_factory, reconciler, profile.id, product, "803")

    body = cryptobot_update(999, {"userId": profile.id, "amountRub": 300, "orderId": order.id})
    outcome = deliver_cryptobot(reconciler, body)

    assert outcome.status == CREDITED
    assert outcome.order_id is None
    assert _balance(session_factory, profile.id) == 30000
    with session_factory() as db:
        assert db.get(Order, order.id).status == PENDING


def test_deposit_order_found_by_invoice_id_is_paid(session_factory, make_profile, reconciler):
    profile = make_profile()
    with session_factory() as db:
        deposit = reconciler.orders.create_order(
            db, profile.id, PENDING, METHOD_CRYPTOBOT, 50000, payment_id="804"
        )
        db.commit()

    outcome = deliver_cryptobot(reconciler, cryptobot_update(804, {"userId": profile.id, "amountRub": 500}))

    assert outcome.order_id == deposit.id
    assert outcome.order_status == PAID
    assert _balance(session_factory, profile.id) == 50000
    with session_factory() as db:
        events = db.execute(select(AnalyticsEvent).where(AnalyticsEvent.event_type == "payment_completed"))
        assert len(events.scalars().all()) == 1
