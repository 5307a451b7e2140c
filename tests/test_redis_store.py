"""Tests for RedisStore and the RedisIndex it is built on."""

from datetime import timedelta

import pytest

from eventscope.errors import EntryNotFoundError, MalformedEntryError
from eventscope.storage.redis_store import RedisStore

from conftest import T0


@pytest.fixture
def store(connection):
    return RedisStore(connection, prefix="mem", ttl_seconds=3600, delete_batch_size=2)


class TestWriteAndRead:
    def test_write_then_find(self, store, make_attrs):
        entry = store.write(make_attrs(batch_id="b1", tags=["get"]))
        assert store.find(entry.id) == entry
        assert store.find("missing") is None
        with pytest.raises(EntryNotFoundError):
            store.find_or_raise("missing")

    def test_malformed_entry_not_stored(self, store, make_attrs):
        with pytest.raises(MalformedEntryError):
            store.write(make_attrs(occurred_at="not a time"))
        assert store.count(visible_only=False) == 0

    def test_records_expire_with_retention(self, store, redis_factory, make_attrs):
        entry = store.write(make_attrs())
        ttl = redis_factory().ttl(store.index.entry_key(entry.id))
        assert 0 < ttl <= 3600

    def test_listing_newest_first_and_visibility(self, store, make_attrs):
        first = store.write(make_attrs(minutes=1))
        store.write(make_attrs(minutes=2, visible_in_listing=False))
        third = store.write(make_attrs(minutes=3))

        assert [e.id for e in store.list()] == [third.id, first.id]
        assert store.count() == 2
        assert store.count(visible_only=False) == 3

    def test_filters(self, store, make_attrs):
        store.write(make_attrs("query", tags=["slow"]))
        store.write(make_attrs("query", minutes=1))
        store.write(make_attrs("request", tags=["slow"], visible_in_listing=False))

        assert store.count({"type": "query"}) == 2
        assert store.count({"tag": "slow"}) == 1
        assert store.count({"tag": "slow"}, visible_only=False) == 2
        assert store.count({"type": "request"}) == 0
        assert [e.entry_type for e in store.list({"type": "query", "tag": "slow"})] == ["query"]

    def test_pagination(self, store, make_attrs):
        for i in range(7):
            store.write(make_attrs(minutes=i))
        assert len(store.list(page=1, per_page=5)) == 5
        last = store.list(page=2, per_page=5)
        assert [e.occurred_at for e in last] == [T0 + timedelta(minutes=1), T0]

    def test_batch_and_family(self, store, make_attrs):
        store.write(make_attrs("request", minutes=2, batch_id="b1"))
        store.write(make_attrs("query", minutes=1, batch_id="b1", family_hash="fam"))
        store.write(make_attrs("query", minutes=5, family_hash="fam"))

        assert [e.entry_type for e in store.entries_for_batch("b1")] == ["query", "request"]
        assert store.entries_for_batch(None) == []
        assert store.family_count("fam") == 2
        assert [e.occurred_at for e in store.entries_for_family("fam")] == [
            T0 + timedelta(minutes=5), T0 + timedelta(minutes=1)]


class TestUpdateByBatch:
    def test_merges_into_latest_entry(self, store, make_attrs):
        store.write(make_attrs(batch_id="b1", created_at=T0))
        latest = store.write(make_attrs(batch_id="b1", created_at=T0 + timedelta(seconds=1)))

        updated = store.update_by_batch("b1", "request", {"status": 200})

        assert updated.id == latest.id
        assert store.find(latest.id).payload["status"] == 200

    def test_missing_target(self, store):
        assert store.update_by_batch("b1", "request", {"status": 200}) is None
        assert store.update_by_batch(None, "request", {"status": 200}) is None


class TestDeletes:
    def test_delete_all(self, store, make_attrs):
        for i in range(3):
            store.write(make_attrs(minutes=i, tags=["t"]))
        assert store.delete_all() == 3
        assert store.count(visible_only=False) == 0
        assert store.list({"tag": "t"}, visible_only=False) == []

    def test_delete_expired_in_batches(self, store, make_attrs):
        for i in range(5):
            store.write(make_attrs(minutes=i, batch_id="old", tags=["slow"]))
        kept = store.write(make_attrs(minutes=60 * 24 * 3, batch_id="new"))

        deleted = store.delete_expired(timedelta(days=1), now=T0 + timedelta(days=2))

        assert deleted == 5
        assert [e.id for e in store.list(visible_only=False)] == [kept.id]
        assert store.index.batch_ids("old") == []
        assert store.count({"tag": "slow"}, visible_only=False) == 0
        assert store.count({"type": "request"}, visible_only=False) == 1

    def test_remove_after_record_expired(self, store, redis_factory, make_attrs):
        entry = store.write(make_attrs(tags=["slow"]))
        redis_factory().delete(store.index.entry_key(entry.id))

        store.index.remove([entry.id])

        assert store.count({"type": "request"}, visible_only=False) == 0
        assert store.count({"tag": "slow"}, visible_only=False) == 0

    def test_is_ready(self, store):
        assert store.is_ready() is True

    def test_sweep_prunes_references_to_expired_records(self, store, redis_factory, make_attrs):
        gone = store.write(make_attrs(batch_id="b1", family_hash="fam", tags=["slow"]))
        kept = store.write(make_attrs(minutes=1, batch_id="b1"))
        redis_factory().delete(store.index.entry_key(gone.id))

        assert store.delete_expired(timedelta(days=1), now=T0) == 0

        assert store.count() == 1
        assert store.count({"tag": "slow"}, visible_only=False) == 0
        assert store.index.batch_ids("b1") == [kept.id]
        assert store.family_count("fam") == 0
