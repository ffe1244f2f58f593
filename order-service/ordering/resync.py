"""Resynchronization requests to the upstream catalog/account services.

When validation suspects a replica is stale (today: it is empty), we ask the
owning service to republish its records as INITIAL_LOAD events. We only send
the request; redelivery is the upstream's job and the events come back
through the normal lanes.

The call runs on its own short-lived thread so validation never waits on it,
and at most one request per entity type is in flight.
"""

from __future__ import annotations

from threading import Lock, Thread

import httpx

from .config import ACCOUNT_SERVICE_URL, CATALOG_SERVICE_URL, RESYNC_TIMEOUT_SECONDS
from .models import EntityType

RESYNC_PATH = "/sync/initial-load"


class ResyncRequester:
    """Sends `POST <service>/sync/initial-load` for an entity type."""

    def __init__(
        self,
        service_urls: dict[EntityType, str] | None = None,
        timeout: float = RESYNC_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._service_urls = service_urls or {
            EntityType.ITEM: CATALOG_SERVICE_URL,
            EntityType.ACCOUNT: ACCOUNT_SERVICE_URL,
        }
        self._timeout = timeout
        self._transport = transport
        self._in_flight: set[EntityType] = set()
        self._lock = Lock()

    def request(self, entity_type: EntityType, reason: str) -> bool:
        """Send the request synchronously.

        Returns True if the upstream accepted it. Failures are logged, never
        raised: a missed resync only means the replica stays stale a while.
        """
        base_url = self._service_urls.get(entity_type)
        if not base_url:
            print(f"[Resync] No service URL configured for {entity_type.value}; skipping")
            return False

        url = f"{base_url.rstrip('/')}{RESYNC_PATH}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                resp = client.post(
                    url,
                    json={"reason": reason},
                    headers={"User-Agent": "order-service"},
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            print(f"[Resync] Request for {entity_type.value} failed: {e}")
            return False

        print(f"[Resync] Requested {entity_type.value} initial load ({reason})")
        return True

    def request_async(self, entity_type: EntityType, reason: str) -> Thread | None:
        """Fire-and-forget `request`. Returns None if one is already running."""
        with self._lock:
            if entity_type in self._in_flight:
                return None
            self._in_flight.add(entity_type)

        def _run() -> None:
            try:
                self.request(entity_type, reason)
            finally:
                with self._lock:
                    self._in_flight.discard(entity_type)

        thread = Thread(target=_run, name=f"resync-{entity_type.value}", daemon=True)
        thread.start()
        return thread

    def __call__(self, entity_type: EntityType, reason: str) -> None:
        self.request_async(entity_type, reason)
