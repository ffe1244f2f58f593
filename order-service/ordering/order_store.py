"""In-process order store, used when the service runs without MongoDB.

Same methods as `mongo.MongoOrderStore`.
"""

from __future__ import annotations

from threading import Lock

from .models import Order


class InMemoryOrderStore:
    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = Lock()

    def save(self, order: Order) -> Order:
        with self._lock:
            self._orders[order.id] = order
        return order

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            return self._orders.get(order_id)

    def list_by_owner(self, account_id: int) -> list[Order]:
        with self._lock:
            owned = [o for o in self._orders.values() if o.ownerAccountId == account_id]
        return sorted(owned, key=lambda o: o.createdAt, reverse=True)

    def delete(self, order_id: str) -> bool:
        with self._lock:
            return self._orders.pop(order_id, None) is not None
