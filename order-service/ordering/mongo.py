"""MongoDB storage for order-service.

Two things live here:

- `MongoReplicaStore`: the persistent `ReplicaStore`. One document per entity,
  `_id` = entity id. `replace_one(..., upsert=True)` replaces the whole document
  atomically, which is exactly the last-write-wins contract the consumer needs,
  and makes redelivered events harmless.
- `MongoOrderStore`: a plain keyed store for assembled orders.

Documents are written with `model_dump(mode="json")`, so prices go in as
strings and come back as `Decimal` through the pydantic model.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Generic, Iterable, Type, TypeVar

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, errors

from .config import MONGO_DB, MONGO_URI
from .errors import ReplicaUnavailableError
from .models import Order, utc_now
from .replica_store import ReplicaStore

M = TypeVar("M", bound=BaseModel)

# Bookkeeping field, stripped before the document is validated back.
REPLICATED_AT = "_replicatedAt"


def get_database(uri: str = MONGO_URI, name: str = MONGO_DB):
    """Connect to MongoDB and return the configured database."""
    client = MongoClient(uri)
    return client[name]


def _unavailable_on_connection_error(func: Callable) -> Callable:
    """Turn pymongo connectivity failures into `ReplicaUnavailableError`.

    Only connection-level errors are translated; anything else (bad documents,
    programming errors) propagates unchanged.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except (errors.ConnectionFailure, errors.ServerSelectionTimeoutError) as e:
            raise ReplicaUnavailableError(f"{self.name}: {e}") from e

    return wrapper


class MongoReplicaStore(ReplicaStore[int, M], Generic[M]):
    """`ReplicaStore` over a Mongo collection.

    Args:
        collection: pymongo collection handle.
        model: pydantic model the documents are validated into on read.
        name: Used in log lines.
        index_fields: Secondary lookup fields. Indexed together with the write
            timestamp so `find_by` returns the most recently replicated match.
    """

    def __init__(
        self,
        collection,
        model: Type[M],
        name: str = "replica",
        index_fields: Iterable[str] = (),
    ) -> None:
        self.name = name
        self._collection = collection
        self._model = model
        self._index_fields = tuple(index_fields)
        for field in self._index_fields:
            collection.create_index([(field, ASCENDING), (REPLICATED_AT, DESCENDING)])

    @_unavailable_on_connection_error
    def upsert(self, key: int, value: M) -> None:
        doc = value.model_dump(mode="json")
        doc["_id"] = key
        doc[REPLICATED_AT] = utc_now()
        self._collection.replace_one({"_id": key}, doc, upsert=True)

    @_unavailable_on_connection_error
    def delete(self, key: int) -> bool:
        result = self._collection.delete_one({"_id": key})
        return result.deleted_count > 0

    @_unavailable_on_connection_error
    def get(self, key: int) -> M | None:
        return self._to_model(self._collection.find_one({"_id": key}))

    @_unavailable_on_connection_error
    def count(self) -> int:
        return self._collection.count_documents({})

    @_unavailable_on_connection_error
    def find_by(self, field: str, value: Any) -> M | None:
        if field not in self._index_fields:
            raise KeyError(f"{self.name} has no index on {field!r}")
        if isinstance(value, str):
            value = value.strip().lower()
        doc = self._collection.find_one({field: value}, sort=[(REPLICATED_AT, DESCENDING)])
        return self._to_model(doc)

    def _to_model(self, doc: dict[str, Any] | None) -> M | None:
        if doc is None:
            return None
        doc = dict(doc)
        doc.pop("_id", None)
        doc.pop(REPLICATED_AT, None)
        # A document that no longer matches the model raises here; that is a
        # corrupted replica, not a missing one.
        return self._model.model_validate(doc)


class MongoOrderStore:
    """Keyed store for assembled orders. `_id` = order id."""

    def __init__(self, collection) -> None:
        self._collection = collection
        # Supports "my orders, newest first".
        collection.create_index([("ownerAccountId", ASCENDING), ("createdAt", DESCENDING)])

    def save(self, order: Order) -> Order:
        doc = order.model_dump(mode="json")
        doc["_id"] = order.id
        self._collection.replace_one({"_id": order.id}, doc, upsert=True)
        print(f"[Mongo] Saved order {order.id} ({len(order.lines)} lines)")
        return order

    def get(self, order_id: str) -> Order | None:
        doc = self._collection.find_one({"_id": order_id})
        if doc is None:
            return None
        doc.pop("_id", None)
        return Order.model_validate(doc)

    def list_by_owner(self, account_id: int) -> list[Order]:
        docs = self._collection.find({"ownerAccountId": account_id}).sort("createdAt", -1)
        orders = []
        for doc in docs:
            doc.pop("_id", None)
            orders.append(Order.model_validate(doc))
        return orders

    def delete(self, order_id: str) -> bool:
        return self._collection.delete_one({"_id": order_id}).deleted_count > 0
