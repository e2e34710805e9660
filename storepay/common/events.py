"""Kafka envelope + producer/consumer helpers.

Domain events (`orders.paid`, `orders.completed`, `orders.refunded`,
`payments.credited`) leave a service through its outbox and are consumed
with `consume_forever`. Delivery is at-least-once; consumers dedupe through
their inbox table.
"""

import asyncio
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from storepay.common.config import settings
from storepay.common.logging import logger, payment_id_ctx, trace_id_ctx, user_id_ctx
from storepay.common.metrics import event_queue_delay_seconds


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = ""
    user_id: str = ""
    payload: dict[str, Any]

    def encode(self) -> bytes:
        return json.dumps(self.model_dump(), ensure_ascii=False).encode("utf-8")

    @classmethod
    def decode(cls, raw: bytes) -> "EventEnvelope":
        return cls(**json.loads(raw.decode("utf-8")))

    def age_seconds(self) -> float:
        occurred_at = datetime.fromisoformat(self.occurred_at.replace("Z", "+00:00"))
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        return max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())


class KafkaBus:
    """Producer started on first publish; keyed by aggregate so one order's events stay ordered."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
            await self._producer.start()
        await self._producer.send_and_wait(topic, event.encode(), key=event.aggregate_id.encode("utf-8"))

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None


@contextmanager
def event_context(event: EventEnvelope):
    """Bind the event's correlation ids to the logging context vars."""

    tokens = (
        (trace_id_ctx, trace_id_ctx.set(event.trace_id)),
        (user_id_ctx, user_id_ctx.set(event.user_id)),
        (payment_id_ctx, payment_id_ctx.set(event.aggregate_id)),
    )
    try:
        yield
    finally:
        for var, token in tokens:
            var.reset(token)


async def dispatch(topic: str, group_id: str, raw: bytes, handler) -> bool:
    """Decode one record and run `handler`; failures are logged, never raised."""

    try:
        event = EventEnvelope.decode(raw)
    except ValueError as exc:
        logger.error("event_undecodable topic=%s group=%s error=%s", topic, group_id, exc)
        return False
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(event.age_seconds())
    with event_context(event):
        logger.info(
            "event_received topic=%s group=%s event_type=%s aggregate_id=%s",
            topic,
            group_id,
            event.event_type,
            event.aggregate_id,
        )
        try:
            await handler(event)
        except Exception as exc:
            logger.exception(
                "handler_error topic=%s group=%s event_id=%s error=%s", topic, group_id, event.event_id, exc
            )
            return False
    return True


async def consume_forever(topic: str, group_id: str, handler, batch_size: int = 50) -> None:
    """Consume `topic` as `group_id` and commit offsets after each handled batch.

    A broken connection tears the consumer down and starts a new one after a
    short pause.
    """

    while True:
        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        try:
            await consumer.start()
            while True:
                batches = await consumer.getmany(timeout_ms=500, max_records=batch_size)
                for records in batches.values():
                    for record in records:
                        await dispatch(topic, group_id, record.value, handler)
                if batches:
                    await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            await consumer.stop()
