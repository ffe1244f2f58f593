"""Wiring: build every component once and hand each its dependencies.

Nothing is a module-level singleton except what `main.py` keeps for the app's
lifetime. Tests build their own `Services` with the in-memory backend.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event, Thread
from typing import Any, Callable

from .assembler import OrderAssembler
from .config import (
    KAFKA_ACCOUNT_TOPIC,
    KAFKA_DEAD_LETTER_TOPIC,
    KAFKA_ITEM_TOPIC,
    MONGO_ACCOUNT_COLLECTION,
    MONGO_ITEM_COLLECTION,
    MONGO_ORDER_COLLECTION,
    REPLICA_BACKEND,
)
from .kafka_consumer import DeadLetterSink, EventConsumer, start_consumer_thread
from .kafka_producer import KafkaDeadLetterSink, create_producer
from .models import EntityType, ReplicatedAccount, ReplicatedItem
from .mongo import MongoOrderStore, MongoReplicaStore, get_database
from .mutation import OrderMutationCoordinator
from .order_store import InMemoryOrderStore
from .replica_store import InMemoryReplicaStore, ReplicaStore
from .resync import ResyncRequester
from .validation import StaleReplicaCallback, ValidationEngine


def _casefold(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


@dataclass
class Services:
    items: ReplicaStore
    accounts: ReplicaStore
    orders: Any
    engine: ValidationEngine
    assembler: OrderAssembler
    coordinator: OrderMutationCoordinator
    lanes: list[EventConsumer]
    dead_letter: DeadLetterSink
    stop_event: Event = field(default_factory=Event)
    threads: list[Thread] = field(default_factory=list)

    def start_lanes(self, consumer_factory: Callable[[], Any] | None = None) -> None:
        """Start one consumer thread per entity type."""
        for lane in self.lanes:
            if consumer_factory is None:
                thread = start_consumer_thread(lane, self.stop_event)
            else:
                thread = start_consumer_thread(lane, self.stop_event, consumer_factory)
            self.threads.append(thread)

    def shutdown(self, join_timeout: float = 5.0) -> None:
        """Stop lanes, then release the pool and the stores. Idempotent."""
        self.stop_event.set()
        for thread in self.threads:
            thread.join(join_timeout)
        self.threads.clear()
        self.engine.close()
        close = getattr(self.dead_letter, "close", None)
        if close is not None:
            close()
        self.items.close()
        self.accounts.close()


def build_services(
    backend: str = REPLICA_BACKEND,
    dead_letter: DeadLetterSink | None = None,
    on_stale: StaleReplicaCallback | None = None,
    **engine_kwargs: Any,
) -> Services:
    """Build the service graph.

    Args:
        backend: "mongo" or "memory".
        dead_letter: Dead-letter sink; defaults to the Kafka DLQ topic.
        on_stale: Stale-replica callback; defaults to a `ResyncRequester`.
        engine_kwargs: Passed to `ValidationEngine` (executor, timeout).
    """
    if backend == "memory":
        items: ReplicaStore = InMemoryReplicaStore(name="items")
        accounts: ReplicaStore = InMemoryReplicaStore(
            name="accounts", index_fields=("email",), normalise=_casefold
        )
        orders: Any = InMemoryOrderStore()
    elif backend == "mongo":
        db = get_database()
        items = MongoReplicaStore(db[MONGO_ITEM_COLLECTION], ReplicatedItem, name="items")
        accounts = MongoReplicaStore(
            db[MONGO_ACCOUNT_COLLECTION],
            ReplicatedAccount,
            name="accounts",
            index_fields=("email",),
        )
        orders = MongoOrderStore(db[MONGO_ORDER_COLLECTION])
    else:
        raise ValueError(f"unknown replica backend {backend!r}")

    if dead_letter is None:
        dead_letter = KafkaDeadLetterSink(create_producer(), KAFKA_DEAD_LETTER_TOPIC)

    if on_stale is None:
        on_stale = ResyncRequester()

    lanes = [
        EventConsumer(EntityType.ITEM, items, ReplicatedItem, KAFKA_ITEM_TOPIC, dead_letter),
        EventConsumer(
            EntityType.ACCOUNT, accounts, ReplicatedAccount, KAFKA_ACCOUNT_TOPIC, dead_letter
        ),
    ]
    engine = ValidationEngine(items, accounts, on_stale=on_stale, **engine_kwargs)
    assembler = OrderAssembler()

    return Services(
        items=items,
        accounts=accounts,
        orders=orders,
        engine=engine,
        assembler=assembler,
        coordinator=OrderMutationCoordinator(assembler),
        lanes=lanes,
        dead_letter=dead_letter,
    )
