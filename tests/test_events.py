"""Outbox relay and consumer dispatch."""

import asyncio

from sqlalchemy import select

from storepay.common.events import EventEnvelope, dispatch
from storepay.common.logging import trace_id_ctx
from storepay.common.outbox import PENDING, SENT, OutboxRelay, enqueue_event
from storepay.services.orders.models import OutboxEvent


class FakeBus:
    def __init__(self, fail_topics=()):
        self.published = []
        self.fail_topics = set(fail_topics)

    async def publish(self, topic, event):
        if topic in self.fail_topics:
            raise ConnectionError("broker unavailable")
        self.published.append((topic, event))


def _statuses(session_factory):
    with session_factory() as db:
        return {row.event_type: row.status for row in db.execute(select(OutboxEvent)).scalars()}


def _enqueue(session_factory, *event_types):
    with session_factory() as db:
        for event_type in event_types:
            enqueue_event(db, OutboxEvent, event_type, "order-1", {"order_id": "order-1"}, trace_id="t-1")
        db.commit()


def test_relay_publishes_and_marks_rows_sent(session_factory):
    _enqueue(session_factory, "orders.paid", "orders.completed")
    bus = FakeBus()
    relay = OutboxRelay(session_factory, OutboxEvent, bus, "orders")

    delivered = asyncio.run(relay.publish_pending())

    assert delivered == 2
    assert sorted(topic for topic, _ in bus.published) == ["orders.completed", "orders.paid"]
    assert all(event.trace_id == "t-1" for _, event in bus.published)
    assert _statuses(session_factory) == {"orders.paid": SENT, "orders.completed": SENT}
    assert asyncio.run(relay.publish_pending()) == 0


def test_failed_publish_returns_row_to_pending(session_factory):
    _enqueue(session_factory, "orders.paid", "payments.credited")
    relay = OutboxRelay(session_factory, OutboxEvent, FakeBus(fail_topics={"payments.credited"}), "orders")

    delivered = asyncio.run(relay.publish_pending())

    assert delivered == 1
    assert _statuses(session_factory) == {"orders.paid": SENT, "payments.credited": PENDING}


def test_dispatch_binds_context_and_survives_handler_errors():
    seen = []

    async def handler(event):
        seen.append((event.event_type, trace_id_ctx.get()))
        raise RuntimeError("handler bug")

    raw = EventEnvelope(event_type="orders.paid", aggregate_id="o1", trace_id="trace-9", payload={}).encode()

    handled = asyncio.run(dispatch("orders.paid", "orders-fulfillment", raw, handler))

    assert handled is False
    assert seen == [("orders.paid", "trace-9")]
    assert trace_id_ctx.get() != "trace-9"


def test_dispatch_skips_undecodable_records():
    async def handler(event):
        raise AssertionError("must not be called")

    assert asyncio.run(dispatch("orders.paid", "g", b"\xff not json", handler)) is False
