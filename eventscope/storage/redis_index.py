"""Standalone Redis secondary indexes over entries.

Layout under ``<prefix>:index``:

    entry:<id>      serialized entry, TTL = retention horizon
    entries         sorted set of every id (score = occurred_at epoch)
    visible         sorted set of ids shown in listings
    type:<t>        sorted set per entry type
    batch:<b>       sorted set per batch id (TTL = retention horizon)
    family:<f>      sorted set per family hash (TTL = retention horizon)
    tag:<t>         plain set per tag
    refs:<id>       hash of an entry's batch id and family hash, no TTL
    types, tags     sets of every type / tag ever indexed, for cleanup
"""

from __future__ import annotations

import logging

from eventscope.models import Entry
from eventscope.storage.base import normalize_filters

logger = logging.getLogger(__name__)


class RedisIndex:
    def __init__(self, connection, prefix: str = "eventscope", ttl_seconds: int = 7 * 86400):
        self._connection = connection
        self._prefix = f"{prefix}:index"
        self.ttl_seconds = ttl_seconds

    @property
    def redis(self):
        return self._connection.client

    # Key generators

    def key(self, *parts) -> str:
        return ":".join((self._prefix,) + tuple(str(p) for p in parts))

    def entry_key(self, entry_id: str) -> str:
        return self.key("entry", entry_id)

    @property
    def all_key(self) -> str:
        return self.key("entries")

    @property
    def visible_key(self) -> str:
        return self.key("visible")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def add(self, entries: list[Entry]):
        """Store entries and add them to every index, one MULTI/EXEC per entry."""
        for entry in entries:
            score = entry.occurred_at.timestamp()
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(self.entry_key(entry.id), entry.to_json(), ex=self.ttl_seconds)
            pipe.zadd(self.all_key, {entry.id: score})
            if entry.visible_in_listing:
                pipe.zadd(self.visible_key, {entry.id: score})
            pipe.zadd(self.key("type", entry.entry_type), {entry.id: score})
            pipe.sadd(self.key("types"), entry.entry_type)
            refs = {name: value for name, value in (("batch_id", entry.batch_id),
                                                    ("family_hash", entry.family_hash)) if value}
            if refs:
                pipe.hset(self.key("refs", entry.id), mapping=refs)
            if entry.batch_id:
                pipe.zadd(self.key("batch", entry.batch_id), {entry.id: score})
                pipe.expire(self.key("batch", entry.batch_id), self.ttl_seconds)
            if entry.family_hash:
                pipe.zadd(self.key("family", entry.family_hash), {entry.id: score})
                pipe.expire(self.key("family", entry.family_hash), self.ttl_seconds)
            for tag in entry.tags:
                pipe.sadd(self.key("tag", tag), entry.id)
                pipe.sadd(self.key("tags"), tag)
            pipe.execute()

    def refresh(self, entry: Entry):
        """Rewrite an amended entry's record; its index memberships are unchanged."""
        self.redis.set(self.entry_key(entry.id), entry.to_json(), ex=self.ttl_seconds)

    def remove(self, entry_ids: list[str]) -> int:
        """Drop records and every index reference for the given ids."""
        if not entry_ids:
            return 0
        records = dict(zip(entry_ids, self._get_raw(entry_ids)))
        known_types = self.redis.smembers(self.key("types"))
        known_tags = self.redis.smembers(self.key("tags"))
        expired = [entry_id for entry_id, raw in records.items() if raw is None]
        refs = dict(zip(expired, self._get_refs(expired)))

        pipe = self.redis.pipeline(transaction=True)
        for entry_id, raw in records.items():
            pipe.delete(self.entry_key(entry_id), self.key("refs", entry_id))
            pipe.zrem(self.all_key, entry_id)
            pipe.zrem(self.visible_key, entry_id)
            if raw is None:
                # Record already expired: sweep every set it could be in
                for entry_type in known_types:
                    pipe.zrem(self.key("type", entry_type), entry_id)
                for tag in known_tags:
                    pipe.srem(self.key("tag", tag), entry_id)
                if refs[entry_id].get("batch_id"):
                    pipe.zrem(self.key("batch", refs[entry_id]["batch_id"]), entry_id)
                if refs[entry_id].get("family_hash"):
                    pipe.zrem(self.key("family", refs[entry_id]["family_hash"]), entry_id)
                continue
            entry = Entry.from_json(raw)
            pipe.zrem(self.key("type", entry.entry_type), entry_id)
            if entry.batch_id:
                pipe.zrem(self.key("batch", entry.batch_id), entry_id)
            if entry.family_hash:
                pipe.zrem(self.key("family", entry.family_hash), entry_id)
            for tag in entry.tags:
                pipe.srem(self.key("tag", tag), entry_id)
        pipe.execute()
        return len(records)

    def clear(self) -> int:
        """Delete every index key; return how many entries were indexed."""
        count = self.redis.zcard(self.all_key)
        keys = list(self.redis.scan_iter(match=f"{self._prefix}:*", count=500))
        for start in range(0, len(keys), 500):
            self.redis.delete(*keys[start:start + 500])
        return count

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_raw(self, entry_ids: list[str]) -> list:
        pipe = self.redis.pipeline(transaction=False)
        for entry_id in entry_ids:
            pipe.get(self.entry_key(entry_id))
        return pipe.execute()

    def _get_refs(self, entry_ids: list[str]) -> list[dict]:
        if not entry_ids:
            return []
        pipe = self.redis.pipeline(transaction=False)
        for entry_id in entry_ids:
            pipe.hgetall(self.key("refs", entry_id))
        return pipe.execute()

    def get(self, entry_id: str) -> Entry | None:
        raw = self.redis.get(self.entry_key(entry_id))
        return Entry.from_json(raw) if raw else None

    def get_many(self, entry_ids: list[str]) -> list[Entry]:
        """Entries in id order; ids whose record expired are skipped."""
        if not entry_ids:
            return []
        return [Entry.from_json(raw) for raw in self._get_raw(entry_ids) if raw]

    def expired_ids(self, cutoff_score: float, limit: int) -> list[str]:
        """Up to ``limit`` ids with a score strictly below cutoff_score, oldest first."""
        return self.redis.zrangebyscore(self.all_key, "-inf", f"({cutoff_score}", start=0, num=limit)

    def dangling_ids(self, limit: int) -> list[str]:
        """Up to ``limit`` indexed ids whose record has already expired."""
        ids = [member for member, _ in self.redis.zscan_iter(self.all_key, count=500)]
        missing = []
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            pipe = self.redis.pipeline(transaction=False)
            for entry_id in chunk:
                pipe.exists(self.entry_key(entry_id))
            missing.extend(i for i, present in zip(chunk, pipe.execute()) if not present)
            if len(missing) >= limit:
                break
        return missing[:limit]

    def prune(self, batch_size: int = 1000) -> int:
        """Drop every index reference to records that expired before a sweep removed them."""
        total = 0
        while True:
            ids = self.dangling_ids(batch_size)
            if not ids:
                break
            total += self.remove(ids)
            if len(ids) < batch_size:
                break
        if total:
            logger.info("Pruned %d index references to expired records", total)
        return total

    def _base_key(self, filters: dict, visible_only: bool) -> str:
        if "type" in filters:
            return self.key("type", filters["type"])
        if "batch_id" in filters:
            return self.key("batch", filters["batch_id"])
        if "family_hash" in filters:
            return self.key("family", filters["family_hash"])
        return self.visible_key if visible_only else self.all_key

    def query_ids(self, filters: dict | None, visible_only: bool,
                  start: int = 0, stop: int = -1) -> list[str]:
        """Newest-first ids matching every filter, sliced like ZREVRANGE."""
        filters = normalize_filters(filters)
        base = self._base_key(filters, visible_only)
        extra = {k for k in filters if self._base_key({k: filters[k]}, False) != base}
        needs_visible = visible_only and base not in (self.visible_key, self.all_key)

        if not extra and not needs_visible and "tag" not in filters:
            return self.redis.zrevrange(base, start, stop)

        ids = self.redis.zrevrange(base, 0, -1)
        if "tag" in filters:
            members = self.redis.smembers(self.key("tag", filters["tag"]))
            ids = [i for i in ids if i in members]
        for name in ("type", "batch_id", "family_hash"):
            if name in extra:
                kind = "family" if name == "family_hash" else name.replace("_id", "")
                members = set(self.redis.zrange(self.key(kind, filters[name]), 0, -1))
                ids = [i for i in ids if i in members]
        if needs_visible:
            members = set(self.redis.zrange(self.visible_key, 0, -1))
            ids = [i for i in ids if i in members]
        return ids[start:] if stop == -1 else ids[start:stop + 1]

    def count(self, filters: dict | None, visible_only: bool) -> int:
        filters = normalize_filters(filters)
        base = self._base_key(filters, visible_only)
        if len(filters) <= 1 and "tag" not in filters and (
                not visible_only or base in (self.visible_key, self.all_key)):
            return self.redis.zcard(base)
        return len(self.query_ids(filters, visible_only))

    def batch_ids(self, batch_id: str) -> list[str]:
        return self.redis.zrange(self.key("batch", batch_id), 0, -1)

    def family_ids(self, family_hash: str, start: int = 0, stop: int = -1) -> list[str]:
        return self.redis.zrevrange(self.key("family", family_hash), start, stop)

    def family_size(self, family_hash: str) -> int:
        return self.redis.zcard(self.key("family", family_hash))
