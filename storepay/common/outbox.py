"""Transactional outbox: enqueue inside the business transaction, publish later.

`enqueue_event` runs inside an atomic unit so the event commits or rolls back
with the state change. `OutboxRelay` drains committed rows to Kafka.
"""

import asyncio
from datetime import timedelta

from sqlalchemy import and_, func, or_, select, update

from storepay.common.db import utcnow
from storepay.common.events import EventEnvelope, KafkaBus
from storepay.common.logging import logger
from storepay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


def enqueue_event(
    db,
    outbox_model,
    event_type: str,
    aggregate_id: str,
    payload: dict,
    trace_id: str = "",
    user_id: str = "",
    aggregate_type: str = "order",
) -> None:
    """Add one outbox row for `event_type` (topic name == event type)."""

    db.add(
        outbox_model(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            topic=event_type,
            status=PENDING,
            payload=EventEnvelope(
                event_type=event_type,
                aggregate_id=aggregate_id,
                trace_id=trace_id,
                user_id=user_id,
                payload=payload,
            ).model_dump(),
        )
    )


class OutboxRelay:
    """Publishes one service's `outbox_events` rows to Kafka.

    A batch is claimed with `FOR UPDATE SKIP LOCKED` and flipped to
    `PROCESSING`, so several relays can share the table. Rows left in
    `PROCESSING` longer than `claim_timeout_seconds` (a relay died mid-batch)
    are claimed again; consumers dedupe the resulting repeats.
    """

    def __init__(
        self,
        session_factory,
        outbox_model,
        bus: KafkaBus,
        service_name: str,
        batch_size: int = 100,
        claim_timeout_seconds: int = 30,
        idle_seconds: float = 0.5,
    ) -> None:
        self.session_factory = session_factory
        self.model = outbox_model
        self.bus = bus
        self.service_name = service_name
        self.batch_size = batch_size
        self.claim_timeout_seconds = claim_timeout_seconds
        self.idle_seconds = idle_seconds

    def claim(self, db) -> list[tuple[str, str, dict]]:
        model = self.model
        now = utcnow()
        abandoned = and_(
            model.status == PROCESSING,
            model.sent_at.is_not(None),
            model.sent_at < now - timedelta(seconds=self.claim_timeout_seconds),
        )
        ids = (
            db.execute(
                select(model.id)
                .where(or_(model.status == PENDING, abandoned))
                .order_by(model.created_at)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .all()
        )
        if not ids:
            return []
        db.execute(
            update(model)
            .where(model.id.in_(ids))
            .values(status=PROCESSING, sent_at=now)
            .execution_options(synchronize_session=False)
        )
        rows = db.execute(
            select(model.id, model.topic, model.payload).where(model.id.in_(ids)).order_by(model.created_at)
        ).all()
        return [(row.id, row.topic, row.payload) for row in rows]

    def settle(self, row_id: str, delivered: bool) -> None:
        """`SENT` after a broker ack, back to `PENDING` otherwise."""

        values = {"status": SENT, "sent_at": utcnow()} if delivered else {"status": PENDING, "sent_at": None}
        with self.session_factory() as db:
            db.execute(
                update(self.model)
                .where(self.model.id == row_id, self.model.status == PROCESSING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self.observe_backlog(db)
            db.commit()

    def observe_backlog(self, db) -> None:
        count, oldest = db.execute(
            select(func.count(), func.min(self.model.created_at)).where(self.model.status.in_((PENDING, PROCESSING)))
        ).one()
        age_seconds = 0.0
        if oldest is not None:
            if oldest.tzinfo is None:
                oldest = oldest.replace(tzinfo=utcnow().tzinfo)
            age_seconds = max(0.0, (utcnow() - oldest).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(count))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age_seconds)

    async def publish_pending(self) -> int:
        """Claim one batch and publish it; returns the number of rows delivered."""

        with self.session_factory() as db:
            rows = self.claim(db)
            self.observe_backlog(db)
            db.commit()
        delivered = 0
        for row_id, topic, payload in rows:
            try:
                await self.bus.publish(topic, EventEnvelope(**payload))
            except Exception:
                logger.exception("outbox publish failed outbox_id=%s topic=%s", row_id, topic)
                self.settle(row_id, delivered=False)
                continue
            self.settle(row_id, delivered=True)
            delivered += 1
        return delivered

    async def run_forever(self) -> None:
        while True:
            try:
                delivered = await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("outbox relay iteration failed service=%s", self.service_name)
                delivered = 0
            if not delivered:
                await asyncio.sleep(self.idle_seconds)
