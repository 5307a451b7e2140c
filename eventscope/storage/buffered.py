"""BufferedStore: enqueue writes in Redis, read from the durable store.

Writes never touch the durable store: entries and deferred payload updates
are appended to two Redis FIFO lists that only FlushService drains. Reads
go to the durable store, so a write becomes visible after the next flush.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from eventscope.models import Entry, build_entry
from eventscope.storage.base import DEFAULT_PER_PAGE, StorageBackend

logger = logging.getLogger(__name__)


def buffer_keys(prefix: str) -> tuple[str, str]:
    """(entries list key, updates list key) for a key prefix."""
    return f"{prefix}:buffer:entries", f"{prefix}:buffer:updates"


class BufferedStore(StorageBackend):
    def __init__(self, connection, database, prefix: str = "eventscope", index=None):
        self._connection = connection
        self.database = database
        self.index = index
        self.entries_key, self.updates_key = buffer_keys(prefix)

    @property
    def redis(self):
        return self._connection.client

    # ------------------------------------------------------------------
    # Writes -> Redis
    # ------------------------------------------------------------------

    def write(self, attributes: dict) -> Entry:
        entry = build_entry(attributes)
        self.redis.rpush(self.entries_key, entry.to_json())
        return entry

    def update_by_batch(self, batch_id: str, entry_type: str, payload_updates: dict) -> None:
        """Queue a pending update; FlushService applies it after the entry is durable."""
        update = {
            "batch_id": batch_id,
            "entry_type": entry_type,
            "payload_updates": payload_updates,
        }
        self.redis.rpush(self.updates_key, json.dumps(update, default=str))
        return None

    def pending_entries(self) -> int:
        return self.redis.llen(self.entries_key)

    def pending_updates(self) -> int:
        return self.redis.llen(self.updates_key)

    # ------------------------------------------------------------------
    # Reads -> durable store
    # ------------------------------------------------------------------

    def find(self, entry_id: str) -> Entry | None:
        return self.database.find(entry_id)

    def list(self, filters: dict | None = None, page: int = 1,
             per_page: int = DEFAULT_PER_PAGE, visible_only: bool = True) -> list[Entry]:
        return self.database.list(filters, page=page, per_page=per_page, visible_only=visible_only)

    def count(self, filters: dict | None = None, visible_only: bool = True) -> int:
        return self.database.count(filters, visible_only=visible_only)

    def entries_for_batch(self, batch_id: str) -> list[Entry]:
        return self.database.entries_for_batch(batch_id)

    def entries_for_family(self, family_hash: str, page: int = 1,
                           per_page: int = DEFAULT_PER_PAGE) -> list[Entry]:
        return self.database.entries_for_family(family_hash, page=page, per_page=per_page)

    def family_count(self, family_hash: str) -> int:
        return self.database.family_count(family_hash)

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def delete_all(self) -> int:
        self.redis.delete(self.entries_key, self.updates_key)
        if self.index is not None:
            self.index.clear()
        return self.database.delete_all()

    def delete_expired(self, horizon: timedelta, now: datetime | None = None) -> int:
        if self.index is None:
            return self.database.delete_expired(horizon, now=now)
        deleted = self.database.delete_expired(horizon, now=now, on_deleted=self.index.remove)
        self.index.prune(self.database.delete_batch_size)
        return deleted

    def is_ready(self) -> bool:
        return self._connection.is_available() and self.database.is_ready()

    def close(self):
        self._connection.reconnect()
        self.database.close()
