"""Kafka envelope + producer/consumer helpers.

This module standardizes the order change envelope and the resilient consumer
loop behind the Kafka change feed.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from orderbell.common.config import settings
from orderbell.common.logging import logger


ORDER_CHANGED = "orders.changed"


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    payload: dict[str, Any]


def order_change_envelope(order_id: str, order: dict[str, Any], change_type: str = "modified") -> EventEnvelope:
    """Wrap one order snapshot as an `orders.changed` envelope."""

    return EventEnvelope(
        event_type=ORDER_CHANGED,
        aggregate_id=order_id,
        payload={"change_type": change_type, "order": order},
    )


class KafkaBus:
    """Lazy Kafka producer wrapper used to publish order changes."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(topic, json.dumps(event.model_dump(), default=str).encode("utf-8"))

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


async def make_consumer(topic: str, group_id: str, bootstrap_servers: str | None = None) -> AIOKafkaConsumer:
    """Create a configured Kafka consumer for one topic/group."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=bootstrap_servers or settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


async def consume_envelopes(
    topic: str,
    group_id: str,
    bootstrap_servers: str | None = None,
    retry_delay_seconds: float = 2.0,
) -> AsyncIterator[EventEnvelope]:
    """Continuously consume one topic and yield parsed envelopes.

    Malformed messages are logged and skipped. Offsets are committed once per
    batch after every message in it has been yielded, so a restart may replay
    the last batch; consumers of this feed must tolerate duplicates anyway.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id, bootstrap_servers)
            while True:
                results = await consumer.getmany(timeout_ms=500, max_records=50)
                for _, messages in results.items():
                    for msg in messages:
                        try:
                            event = EventEnvelope(**json.loads(msg.value.decode("utf-8")))
                        except Exception as exc:
                            logger.error(
                                "malformed_event topic=%s group=%s offset=%s error=%s",
                                topic,
                                group_id,
                                msg.offset,
                                exc,
                            )
                            continue
                        yield event
                if results:
                    await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(retry_delay_seconds)
        finally:
            if consumer is not None:
                await consumer.stop()
            await asyncio.sleep(0)
