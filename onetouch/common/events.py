"""Kafka envelope + producer helper for payment state-change events.

The hosting order system consumes these to learn about payment progress; it
never reads the orchestrator tables directly.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from onetouch.common.config import settings


STATE_CHANGED_TOPIC = "onetouch.payments.state_changed"


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


class KafkaBus:
    """Lazy Kafka producer wrapper used by the outbox publisher."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
