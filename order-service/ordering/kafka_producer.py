"""Kafka producer helper: the dead-letter path.

Events that cannot be applied (undecodable, schema-invalid, or still failing
after the retry budget) are not allowed to block their lane. They are
published, with the failure reason, to a dead-letter topic and the lane moves
on. Whoever owns that topic decides what to do with them.

Keying: the dead-letter message key is the entity id when we have one, so all
failures for one record land in the same partition, in order.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from confluent_kafka import Producer
from pydantic import BaseModel, Field

from .config import KAFKA_BOOTSTRAP_SERVERS
from .models import EntityType, utc_now


class DeadLetter(BaseModel):
    """What we know about an event we gave up on."""

    entityType: EntityType
    sourceTopic: str
    reason: str
    eventId: int | None = None
    rawValue: str | None = None
    attempts: int = 0
    failedAt: datetime = Field(default_factory=utc_now)


def create_producer(bootstrap_servers: str = KAFKA_BOOTSTRAP_SERVERS) -> Producer:
    """Create and configure a Confluent Kafka Producer."""
    conf: dict[str, Any] = {
        "bootstrap.servers": bootstrap_servers,
        # Retries inside the client must not duplicate dead letters.
        "enable.idempotence": True,
    }
    return Producer(conf)


def _delivery_report(err, msg) -> None:
    """Delivery callback, called from `poll()`/`flush()`."""
    if err is not None:
        print(f"[Producer] Dead-letter delivery failed: {err}")
    else:
        print(f"[Producer] Dead letter stored in {msg.topic()} [{msg.partition()}] @ offset {msg.offset()}")


class KafkaDeadLetterSink:
    """Callable sink handed to `EventConsumer` as its dead-letter path."""

    def __init__(self, producer: Producer, topic: str, flush_timeout: float = 5.0) -> None:
        self._producer = producer
        self._topic = topic
        self._flush_timeout = flush_timeout

    def __call__(self, letter: DeadLetter) -> None:
        payload: bytes = json.dumps(letter.model_dump(mode="json")).encode("utf-8")
        key: bytes | None = (
            str(letter.eventId).encode("utf-8") if letter.eventId is not None else None
        )
        self._producer.produce(
            topic=self._topic,
            key=key,
            value=payload,
            callback=_delivery_report,
        )
        # Dead letters are rare; wait for the ack so the source offset is only
        # committed once the failure is recorded somewhere.
        self._producer.flush(self._flush_timeout)

    def close(self) -> None:
        self._producer.flush(self._flush_timeout)
