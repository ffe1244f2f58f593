"""order-service configuration.

Every setting comes from an environment variable, read once at import time.
Nothing else in the package touches `os.environ`, so this file is the complete
list of what the service depends on.

Defaults are meant for a developer laptop. In a deployment, override them.
"""

from __future__ import annotations

import os


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# --- Kafka -------------------------------------------------------------------
KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")

# All lanes share one consumer group; each topic still gets its own consumer.
KAFKA_GROUP_ID: str = os.getenv("KAFKA_GROUP_ID", "order-service")

# Topics published by the catalog and account services.
KAFKA_ITEM_TOPIC: str = os.getenv("KAFKA_ITEM_TOPIC", "product")
KAFKA_ACCOUNT_TOPIC: str = os.getenv("KAFKA_ACCOUNT_TOPIC", "user")

# Events that could not be applied end up here.
KAFKA_DEAD_LETTER_TOPIC: str = os.getenv("KAFKA_DEAD_LETTER_TOPIC", "order-service.dlq")

# Turn off to run the HTTP side alone (replicas then only change in tests).
CONSUME_EVENTS: bool = _bool("CONSUME_EVENTS", True)

# --- Event application retry -------------------------------------------------
# Fixed backoff: 3 retries one second apart, then dead-letter.
EVENT_RETRY_ATTEMPTS: int = int(os.getenv("EVENT_RETRY_ATTEMPTS", "3"))
EVENT_RETRY_BACKOFF_SECONDS: float = float(os.getenv("EVENT_RETRY_BACKOFF_SECONDS", "1.0"))

# --- Validation --------------------------------------------------------------
# Worker pool for the account/item resolution tasks. Kept between 2 and 5.
VALIDATION_WORKERS: int = min(5, max(2, int(os.getenv("VALIDATION_WORKERS", "5"))))
VALIDATION_TIMEOUT_SECONDS: float = float(os.getenv("VALIDATION_TIMEOUT_SECONDS", "5.0"))

# --- Replica storage ---------------------------------------------------------
# "mongo" or "memory"
REPLICA_BACKEND: str = os.getenv("REPLICA_BACKEND", "mongo").strip().lower()

MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB: str = os.getenv("MONGO_DB", "order_service")
MONGO_ITEM_COLLECTION: str = os.getenv("MONGO_ITEM_COLLECTION", "items")
MONGO_ACCOUNT_COLLECTION: str = os.getenv("MONGO_ACCOUNT_COLLECTION", "accounts")
MONGO_ORDER_COLLECTION: str = os.getenv("MONGO_ORDER_COLLECTION", "orders")

# --- Upstream services (resynchronization only) ------------------------------
CATALOG_SERVICE_URL: str = os.getenv("CATALOG_SERVICE_URL", "http://localhost:9002")
ACCOUNT_SERVICE_URL: str = os.getenv("ACCOUNT_SERVICE_URL", "http://localhost:9001")
RESYNC_TIMEOUT_SECONDS: float = float(os.getenv("RESYNC_TIMEOUT_SECONDS", "10.0"))
