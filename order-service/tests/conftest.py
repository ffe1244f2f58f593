from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from itertools import count
from types import SimpleNamespace

import pytest

from ordering.kafka_consumer import EventConsumer
from ordering.models import EntityType, ReplicatedAccount, ReplicatedItem
from ordering.replica_store import InMemoryReplicaStore
from ordering.validation import ValidationEngine


def make_item(item_id, name="Widget", price="9.99", **extra):
    return ReplicatedItem(
        id=item_id,
        name=name,
        unitPrice=Decimal(price),
        stockLevel=extra.pop("stockLevel", 100),
        category=extra.pop("category", "tools"),
        imageUrl=extra.pop("imageUrl", f"https://img.example/{item_id}.png"),
        **extra,
    )


def make_account(account_id=1, email="ada@example.com", **extra):
    return ReplicatedAccount(
        id=account_id,
        email=email,
        firstName=extra.pop("firstName", "Ada"),
        lastName=extra.pop("lastName", "Lovelace"),
        **extra,
    )


def account_store_factory():
    return InMemoryReplicaStore(
        name="accounts", index_fields=("email",), normalise=lambda v: v.strip().lower()
    )


@pytest.fixture
def item_store():
    return InMemoryReplicaStore(name="items")


@pytest.fixture
def account_store():
    return account_store_factory()


@pytest.fixture
def known_account(account_store):
    account = make_account()
    account_store.upsert(account.id, account)
    return account


@pytest.fixture
def dead_letters():
    return []


@pytest.fixture
def stale_signals():
    return []


@pytest.fixture
def item_lane(item_store, dead_letters):
    return EventConsumer(
        EntityType.ITEM,
        item_store,
        ReplicatedItem,
        topic="product",
        dead_letter=dead_letters.append,
        retry_attempts=3,
        backoff_seconds=0,
        sleep=lambda _: None,
    )


@pytest.fixture
def account_lane(account_store, dead_letters):
    return EventConsumer(
        EntityType.ACCOUNT,
        account_store,
        ReplicatedAccount,
        topic="user",
        dead_letter=dead_letters.append,
        backoff_seconds=0,
        sleep=lambda _: None,
    )


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="test-validation")
    yield pool
    pool.shutdown(wait=False)


@pytest.fixture
def engine(item_store, account_store, executor, stale_signals):
    return ValidationEngine(
        item_store,
        account_store,
        executor=executor,
        timeout=2.0,
        on_stale=lambda entity, reason: stale_signals.append((entity, reason)),
    )


# --- Fakes for infrastructure --------------------------------------------------


class FakeCollection:
    """Just enough of a pymongo collection for the stores under test."""

    def __init__(self):
        self.docs = {}
        self.indexes = []
        self.written = {}
        self._clock = count()
        self.fail_with = None

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def create_index(self, keys, **kwargs):
        self.indexes.append(keys)

    def replace_one(self, flt, doc, upsert=False):
        self._maybe_fail()
        key = flt["_id"]
        if key in self.docs or upsert:
            self.docs[key] = dict(doc)
            self.written[key] = next(self._clock)
        return SimpleNamespace(matched_count=int(key in self.docs))

    def delete_one(self, flt):
        self._maybe_fail()
        removed = self.docs.pop(flt["_id"], None)
        return SimpleNamespace(deleted_count=0 if removed is None else 1)

    def _matching(self, flt):
        return [dict(d) for d in self.docs.values() if all(d.get(k) == v for k, v in flt.items())]

    def find_one(self, flt, sort=None):
        self._maybe_fail()
        found = self._matching(flt)
        if sort:
            field, direction = sort[0]
            # Ties go to the most recent write, like a real clock would.
            found.sort(key=lambda d: (d.get(field), self.written[d["_id"]]), reverse=direction < 0)
        return found[0] if found else None

    def find(self, flt):
        return FakeCursor(self._matching(flt))

    def count_documents(self, flt):
        self._maybe_fail()
        return len(self._matching(flt))


class FakeCursor(list):
    def sort(self, field, direction):
        return sorted(self, key=lambda d: d.get(field), reverse=direction < 0)


class FakeMessage:
    def __init__(self, value, offset, error=None, partition=0):
        self._value = value
        self._offset = offset
        self._error = error
        self._partition = partition

    def value(self):
        return self._value

    def error(self):
        return self._error

    def offset(self):
        return self._offset

    def partition(self):
        return self._partition


class FakeKafkaConsumer:
    """Hands out queued messages, then sets `stop_event` once drained."""

    def __init__(self, messages, stop_event):
        self.messages = list(messages)
        self.stop_event = stop_event
        self.subscribed = []
        self.committed = []
        self.closed = False

    def subscribe(self, topics):
        self.subscribed.extend(topics)

    def poll(self, timeout):
        if not self.messages:
            self.stop_event.set()
            return None
        return self.messages.pop(0)

    def commit(self, msg):
        self.committed.append(msg.offset())

    def close(self):
        self.closed = True
