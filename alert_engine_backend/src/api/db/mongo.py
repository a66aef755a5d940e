from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


APP_DB_NAME = "alerting"


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    alert_events: Collection


class MongoManager:
    """
    MongoDB connection manager for the alert event journal.

    Holds one MongoClient; MongoClient is thread-safe and pools connections internally.
    """

    def __init__(self, mongo_uri: str):
        self._mongo_uri = mongo_uri
        self._client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect(self) -> None:
        """Initialize the Mongo client if needed."""
        with self._lock:
            if self._client is not None:
                return
            self._client = MongoClient(self._mongo_uri, connect=True, serverSelectionTimeoutMS=5000)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping MongoDB; used at startup and by the connectivity-check endpoint."""
        try:
            if self._client is None:
                self.connect()
            assert self._client is not None
            self._client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                except PyMongoError:
                    logger.exception("Error closing MongoClient")
                self._client = None

    def db(self) -> Database:
        if self._client is None:
            self.connect()
        assert self._client is not None
        return self._client[APP_DB_NAME]

    def collections(self) -> MongoCollections:
        return MongoCollections(alert_events=self.db()["alert_events"])

    def init_indexes(self, *, events_ttl_seconds: int = 0) -> None:
        """
        Create required indexes (idempotent).

        events_ttl_seconds == 0 disables the TTL index on alert_events.createdAt.
        """
        cols = self.collections()
        cols.alert_events.create_index([("rule", ASCENDING)], name="idx_alert_events_rule")
        cols.alert_events.create_index([("eventType", ASCENDING)], name="idx_alert_events_eventType")
        cols.alert_events.create_index([("createdAt", DESCENDING)], name="idx_alert_events_createdAt_desc")
        cols.alert_events.create_index(
            [("fingerprint", ASCENDING), ("createdAt", DESCENDING)],
            name="idx_alert_events_fingerprint_createdAt_desc",
        )
        if int(events_ttl_seconds) > 0:
            cols.alert_events.create_index(
                [("createdAt", ASCENDING)],
                name="ttl_alert_events_createdAt",
                expireAfterSeconds=int(events_ttl_seconds),
            )
