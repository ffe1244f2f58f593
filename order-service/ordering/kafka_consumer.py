"""Replica event lanes: Kafka -> decode -> validate -> apply to a ReplicaStore.

One lane per entity type (items, accounts). A lane is one thread with its own
Kafka consumer, so events for a topic are applied strictly in arrival order
and never interleave. Lanes for different entity types are independent.

High-level flow per message:
    poll -> decode JSON -> validate event -> upsert/delete -> commit offset

Delivery is at-least-once (offsets are committed manually after handling), so
the same event can be applied twice. That is fine: upsert replaces the whole
record and delete of a missing key is a no-op.

What happens when something goes wrong:

- Bad bytes / bad JSON / wrong schema: a poison message. Retrying will never
  help, so it goes straight to the dead-letter path and its offset is
  committed.
- Unknown event type: logged and discarded. Upstream may have added a kind we
  do not care about yet.
- Applying to the store fails: retried a bounded number of times with a fixed
  pause, then dead-lettered. The lane then carries on with the next event.
"""

from __future__ import annotations

import json
import time
from enum import Enum
from threading import Event, Thread
from typing import Any, Callable, Type

from confluent_kafka import Consumer
from pydantic import BaseModel, ValidationError

from .config import (
    EVENT_RETRY_ATTEMPTS,
    EVENT_RETRY_BACKOFF_SECONDS,
    KAFKA_BOOTSTRAP_SERVERS,
    KAFKA_GROUP_ID,
)
from .kafka_producer import DeadLetter
from .models import EntityType, EventType, ReplicaEvent
from .replica_store import ReplicaStore

DeadLetterSink = Callable[[DeadLetter], None]


class ConsumerState(str, Enum):
    IDLE = "IDLE"
    PROCESSING = "PROCESSING"
    APPLIED = "APPLIED"
    RETRYING = "RETRYING"


class Disposition(str, Enum):
    """What happened to one message. Every disposition ends with a commit."""

    APPLIED = "APPLIED"
    DISCARDED = "DISCARDED"
    DEAD_LETTERED = "DEAD_LETTERED"


class EventConsumer:
    """Applies one entity type's events to its replica store.

    This class has no Kafka dependency; `run_consumer` feeds it raw message
    values. That keeps the apply/retry logic testable on its own.

    Args:
        entity_type: Which entity this lane replicates.
        store: The replica store to write. This lane is its only writer.
        model: pydantic model for the event payload.
        topic: Source topic, recorded in dead letters.
        dead_letter: Called with a `DeadLetter` for events we give up on.
        retry_attempts: Retries after the first failed application.
        backoff_seconds: Fixed pause between attempts.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        entity_type: EntityType,
        store: ReplicaStore,
        model: Type[BaseModel],
        topic: str,
        dead_letter: DeadLetterSink,
        retry_attempts: int = EVENT_RETRY_ATTEMPTS,
        backoff_seconds: float = EVENT_RETRY_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.entity_type = entity_type
        self.store = store
        self.model = model
        self.topic = topic
        self._dead_letter = dead_letter
        self._retry_attempts = max(0, retry_attempts)
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep

        self.state = ConsumerState.IDLE
        self.applied = 0
        self.discarded = 0
        self.dead_lettered = 0

    @property
    def tag(self) -> str:
        return f"[Consumer:{self.entity_type.value}]"

    def handle_raw(self, raw: bytes | str | None) -> Disposition:
        """Decode and handle one raw message value."""
        try:
            text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            if text is None:
                raise ValueError("empty message value")
            data = json.loads(text)
        except (UnicodeDecodeError, ValueError) as e:
            # json.JSONDecodeError is a ValueError.
            print(f"{self.tag} Bad payload (decode/json): {e}. Dead-lettering.")
            return self._give_up(reason=f"undecodable: {e}", raw=raw)

        try:
            event = ReplicaEvent.model_validate(data)
        except ValidationError as e:
            print(f"{self.tag} Bad event schema: {e}. data={data}")
            return self._give_up(reason=f"invalid event: {e}", raw=raw, event_id=_peek_id(data))

        return self.handle(event, raw=raw)

    def handle(self, event: ReplicaEvent, raw: Any = None) -> Disposition:
        """Apply an already-decoded event."""
        self.state = ConsumerState.PROCESSING
        try:
            if event.eventType is EventType.UNKNOWN:
                print(f"{self.tag} Unknown event type for id={event.id}; discarded")
                self.discarded += 1
                return Disposition.DISCARDED

            entity: BaseModel | None = None
            if event.eventType.is_upsert:
                try:
                    entity = self.model.model_validate(event.entity_fields())
                except ValidationError as e:
                    print(f"{self.tag} Bad {event.eventType.value} payload for id={event.id}: {e}")
                    return self._give_up(
                        reason=f"invalid payload: {e}", raw=raw, event_id=event.id
                    )

            return self._apply_with_retry(event, entity, raw)
        finally:
            self.state = ConsumerState.IDLE

    def _apply_with_retry(
        self, event: ReplicaEvent, entity: BaseModel | None, raw: Any
    ) -> Disposition:
        attempts = 0
        while True:
            attempts += 1
            try:
                self._apply(event, entity)
            except Exception as e:
                if attempts > self._retry_attempts:
                    print(
                        f"{self.tag} Giving up on {event.eventType.value} id={event.id} "
                        f"after {attempts} attempts: {e}"
                    )
                    return self._give_up(
                        reason=f"apply failed: {e}",
                        raw=raw,
                        event_id=event.id,
                        attempts=attempts,
                    )
                self.state = ConsumerState.RETRYING
                print(
                    f"{self.tag} Apply failed for id={event.id} "
                    f"(attempt {attempts}/{self._retry_attempts + 1}): {e}. "
                    f"Retrying in {self._backoff_seconds}s"
                )
                self._sleep(self._backoff_seconds)
                self.state = ConsumerState.PROCESSING
                continue

            self.state = ConsumerState.APPLIED
            self.applied += 1
            return Disposition.APPLIED

    def _apply(self, event: ReplicaEvent, entity: BaseModel | None) -> None:
        if event.eventType is EventType.DELETED:
            if self.store.delete(event.id):
                print(f"{self.tag} Deleted id={event.id}")
            else:
                print(f"{self.tag} Delete of absent id={event.id} ignored")
            return

        self.store.upsert(event.id, entity)
        print(f"{self.tag} {event.eventType.value} applied for id={event.id}")

    def _give_up(
        self,
        reason: str,
        raw: Any = None,
        event_id: int | None = None,
        attempts: int = 0,
    ) -> Disposition:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        letter = DeadLetter(
            entityType=self.entity_type,
            sourceTopic=self.topic,
            reason=reason,
            eventId=event_id,
            rawValue=None if raw is None else str(raw),
            attempts=attempts,
        )
        self._dead_letter(letter)
        self.dead_lettered += 1
        return Disposition.DEAD_LETTERED

    def snapshot(self) -> dict[str, Any]:
        """Lane statistics for the sync-status endpoint."""
        return {
            "entityType": self.entity_type.value,
            "topic": self.topic,
            "state": self.state.value,
            "replicaCount": self.store.count(),
            "applied": self.applied,
            "discarded": self.discarded,
            "deadLettered": self.dead_lettered,
        }


def _peek_id(data: Any) -> int | None:
    if isinstance(data, dict) and isinstance(data.get("id"), int):
        return data["id"]
    return None


def create_consumer(
    bootstrap_servers: str = KAFKA_BOOTSTRAP_SERVERS,
    group_id: str = KAFKA_GROUP_ID,
) -> Consumer:
    """Create and configure a Confluent Kafka Consumer.

    - auto.offset.reset=earliest: a new group replays the topic from the
      start, which rebuilds an empty replica.
    - enable.auto.commit=False: we commit after the event is applied or
      dead-lettered, never before.
    """
    conf: dict[str, Any] = {
        "bootstrap.servers": bootstrap_servers,
        "group.id": group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
        "session.timeout.ms": 30000,
        "max.poll.interval.ms": 300000,
    }
    return Consumer(conf)


def run_consumer(
    handler: EventConsumer,
    stop_event: Event,
    consumer_factory: Callable[[], Any] = create_consumer,
    poll_timeout: float = 1.0,
) -> None:
    """Run one lane until `stop_event.is_set()` becomes True.

    Args:
        handler: The lane's `EventConsumer`.
        stop_event: A threading.Event (or compatible object) used to stop the loop.
        consumer_factory: Builds the Kafka consumer. Swapped out in tests.
        poll_timeout: Seconds to wait per poll; bounds shutdown latency.
    """
    print(f"{handler.tag} Starting on topic {handler.topic}")

    consumer = consumer_factory()
    consumer.subscribe([handler.topic])

    try:
        while not stop_event.is_set():
            msg = consumer.poll(poll_timeout)

            if msg is None:
                continue

            # Kafka-level error (broker, partition EOF...), not a payload problem.
            if msg.error():
                print(f"{handler.tag} Kafka error: {msg.error()}")
                continue

            try:
                disposition = handler.handle_raw(msg.value())
            except Exception as e:
                # Most likely the dead-letter publish itself failed. Leave the
                # offset uncommitted so the event is seen again after a restart.
                print(
                    f"{handler.tag} Unhandled failure at p={msg.partition()} "
                    f"o={msg.offset()}: {e}"
                )
                continue

            print(
                f"{handler.tag} {disposition.value} (p={msg.partition()} o={msg.offset()})"
            )
            consumer.commit(msg)
    finally:
        consumer.close()
        print(f"{handler.tag} Closed")


def start_consumer_thread(
    handler: EventConsumer,
    stop_event: Event,
    consumer_factory: Callable[[], Any] = create_consumer,
) -> Thread:
    """Start a lane on its own daemon thread and return the thread."""
    thread = Thread(
        target=run_consumer,
        args=(handler, stop_event, consumer_factory),
        name=f"replica-{handler.entity_type.value}",
        daemon=True,
    )
    thread.start()
    return thread
