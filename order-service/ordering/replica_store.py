"""Local replica storage.

A `ReplicaStore` holds one entity type's replicated records, keyed by id.

Contract (shared by every implementation):
- `upsert` replaces unconditionally (last write wins) and is visible to the
  next `get`.
- `delete` of a missing key is a no-op.
- `get` is a local lookup that returns `None` when absent. It never raises
  for "not found".
- Readers see either the old or the new record, never a half-written one.

The event consumer is the only writer; validation is the only reader.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from threading import RLock
from typing import Any, Callable, Generic, Hashable, Iterable, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class ReplicaStore(ABC, Generic[K, V]):
    """Keyed store for one replicated entity type."""

    name: str = "replica"

    @abstractmethod
    def upsert(self, key: K, value: V) -> None: ...

    @abstractmethod
    def delete(self, key: K) -> bool:
        """Remove `key`. Returns False if it was not there."""

    @abstractmethod
    def get(self, key: K) -> V | None: ...

    @abstractmethod
    def count(self) -> int: ...

    @abstractmethod
    def find_by(self, field: str, value: Any) -> V | None:
        """Lookup on a secondary index field (e.g. account email)."""

    def get_many(self, keys: Iterable[K]) -> dict[K, V | None]:
        return {key: self.get(key) for key in keys}

    def close(self) -> None:
        """Release resources. Called once on shutdown."""


class InMemoryReplicaStore(ReplicaStore[K, V]):
    """Process-local store: a dict plus optional secondary indexes.

    Records are treated as immutable values; an upsert swaps the reference
    under the lock, so a concurrent `get` sees one version or the other.

    Args:
        name: Used in log lines and the sync-status endpoint.
        index_fields: Attribute names to index for `find_by`. Each index is
            unique; a later record takes the value over from an earlier one.
        normalise: Optional function applied to index values on write and
            lookup (emails are compared case-insensitively).
    """

    def __init__(
        self,
        name: str = "replica",
        index_fields: Iterable[str] = (),
        normalise: Callable[[Any], Any] | None = None,
    ) -> None:
        self.name = name
        self._records: dict[K, V] = {}
        self._indexes: dict[str, dict[Any, K]] = {field: {} for field in index_fields}
        self._normalise = normalise or (lambda value: value)
        self._lock = RLock()

    def upsert(self, key: K, value: V) -> None:
        with self._lock:
            previous = self._records.get(key)
            if previous is not None:
                self._unindex(key, previous)
            self._records[key] = value
            self._index(key, value)

    def delete(self, key: K) -> bool:
        with self._lock:
            previous = self._records.pop(key, None)
            if previous is None:
                return False
            self._unindex(key, previous)
            return True

    def get(self, key: K) -> V | None:
        with self._lock:
            return self._records.get(key)

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def find_by(self, field: str, value: Any) -> V | None:
        if field not in self._indexes:
            raise KeyError(f"{self.name} has no index on {field!r}")
        with self._lock:
            key = self._indexes[field].get(self._normalise(value))
            if key is None:
                return None
            return self._records.get(key)

    def close(self) -> None:
        with self._lock:
            self._records.clear()
            for index in self._indexes.values():
                index.clear()

    def _index(self, key: K, value: V) -> None:
        for field, index in self._indexes.items():
            indexed = getattr(value, field, None)
            if indexed is None:
                continue
            indexed = self._normalise(indexed)
            stale = index.get(indexed)
            # Another key held this value; the newer record wins the index.
            if stale is not None and stale != key:
                print(f"[Replica] {self.name}: {field}={indexed!r} moved from {stale} to {key}")
            index[indexed] = key

    def _unindex(self, key: K, value: V) -> None:
        for field, index in self._indexes.items():
            indexed = getattr(value, field, None)
            if indexed is None:
                continue
            indexed = self._normalise(indexed)
            if index.get(indexed) == key:
                del index[indexed]
