"""RedisStore keeps every entry and index in Redis, with no durable store."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from eventscope.models import Entry, build_entry, utcnow
from eventscope.storage.base import DEFAULT_PER_PAGE, StorageBackend, page_offset
from eventscope.storage.redis_index import RedisIndex

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 1000


class RedisStore(StorageBackend):
    """Fully in-memory backend; entries expire with the retention TTL."""

    def __init__(self, connection, prefix: str = "eventscope", ttl_seconds: int = 7 * 86400,
                 delete_batch_size: int = DELETE_BATCH_SIZE):
        self._connection = connection
        self.index = RedisIndex(connection, prefix=prefix, ttl_seconds=ttl_seconds)
        self.delete_batch_size = delete_batch_size

    def write(self, attributes: dict) -> Entry:
        entry = build_entry(attributes)
        self.index.add([entry])
        return entry

    def update_by_batch(self, batch_id: str, entry_type: str, payload_updates: dict) -> Entry | None:
        if not batch_id:
            return None
        candidates = [e for e in self.entries_for_batch(batch_id) if e.entry_type == entry_type]
        if not candidates:
            return None
        latest = max(candidates, key=lambda e: (e.created_at or e.occurred_at))
        updated = latest.with_updates(payload_updates)
        self.index.refresh(updated)
        return updated

    def find(self, entry_id: str) -> Entry | None:
        return self.index.get(entry_id)

    def list(self, filters: dict | None = None, page: int = 1,
             per_page: int = DEFAULT_PER_PAGE, visible_only: bool = True) -> list[Entry]:
        start = page_offset(page, per_page)
        ids = self.index.query_ids(filters, visible_only, start, start + per_page - 1)
        return self.index.get_many(ids)

    def count(self, filters: dict | None = None, visible_only: bool = True) -> int:
        return self.index.count(filters, visible_only)

    def entries_for_batch(self, batch_id: str) -> list[Entry]:
        if not batch_id:
            return []
        return self.index.get_many(self.index.batch_ids(batch_id))

    def entries_for_family(self, family_hash: str, page: int = 1,
                           per_page: int = DEFAULT_PER_PAGE) -> list[Entry]:
        if not family_hash:
            return []
        start = page_offset(page, per_page)
        return self.index.get_many(self.index.family_ids(family_hash, start, start + per_page - 1))

    def family_count(self, family_hash: str) -> int:
        if not family_hash:
            return 0
        return self.index.family_size(family_hash)

    def delete_all(self) -> int:
        return self.index.clear()

    def delete_expired(self, horizon: timedelta, now: datetime | None = None) -> int:
        cutoff = ((now or utcnow()) - horizon).timestamp()
        total = 0
        while True:
            ids = self.index.expired_ids(cutoff, self.delete_batch_size)
            if not ids:
                break
            total += self.index.remove(ids)
            if len(ids) < self.delete_batch_size:
                break
        self.index.prune(self.delete_batch_size)
        return total

    def is_ready(self) -> bool:
        return self._connection.is_available()

    def close(self):
        self._connection.reconnect()
