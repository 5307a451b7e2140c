"""Tests for FlushService draining the Redis buffer into SQLite."""

import json
import sqlite3
import threading

import redis

from eventscope.flush import FlushService
from eventscope.retry import RetryPolicy
from eventscope.storage.connection import RedisConnection


class FlakyDatabase:
    """Wraps a DirectStore; insert_many fails on the calls listed in ``fail_calls``."""

    def __init__(self, database, fail_calls=(), fail_always=False):
        self._database = database
        self.fail_calls = set(fail_calls)
        self.fail_always = fail_always
        self.calls = 0
        self.reconnects = 0

    def insert_many(self, entries):
        self.calls += 1
        if self.fail_always or self.calls in self.fail_calls:
            raise sqlite3.OperationalError("database is locked")
        return self._database.insert_many(entries)

    def reconnect(self):
        self.reconnects += 1
        self._database.reconnect()

    def __getattr__(self, name):
        return getattr(self._database, name)


class _BrokenClient:
    def lpop(self, *args, **kwargs):
        raise redis.exceptions.ConnectionError("Connection reset by peer")

    def close(self):
        pass


def _flush(connection, database, **kwargs):
    kwargs.setdefault("prefix", "test")
    return FlushService(connection, database, **kwargs)


class TestFlushEntries:
    def test_flushes_every_pending_entry(self, buffered, connection, database, make_attrs):
        ids = {buffered.write(make_attrs(minutes=i)).id for i in range(5)}
        service = _flush(connection, database, batch_size=2)

        assert service.run() == 5
        assert service.last_report.batches == 3
        assert service.last_report.completed is True
        assert buffered.pending_entries() == 0
        assert {e.id for e in database.list(visible_only=False)} == ids

    def test_empty_buffer(self, connection, database):
        service = _flush(connection, database)
        assert service.run() == 0
        assert service.last_report.batches == 0

    def test_transient_failure_is_retried(self, buffered, connection, database, make_attrs):
        for i in range(3):
            buffered.write(make_attrs(minutes=i))
        flaky = FlakyDatabase(database, fail_calls={1})

        assert _flush(connection, flaky).run() == 3
        assert flaky.reconnects == 1
        assert database.count() == 3

    def test_exhausted_retries_leave_batch_in_order(self, buffered, connection, database,
                                                    redis_factory, make_attrs):
        ids = [buffered.write(make_attrs(minutes=i)).id for i in range(4)]
        flaky = FlakyDatabase(database, fail_always=True)
        service = _flush(connection, flaky, retry_policy=RetryPolicy(max_retries=2))

        assert service.run() == 0
        assert service.last_report.completed is False
        assert flaky.calls == 3
        queued = redis_factory().lrange(buffered.entries_key, 0, -1)
        assert [json.loads(raw)["id"] for raw in queued] == ids

        assert _flush(connection, database).run() == 4
        assert database.count() == 4

    def test_partial_flush_keeps_remaining_batches(self, buffered, connection, database, make_attrs):
        for i in range(150):
            buffered.write(make_attrs(minutes=i))
        flaky = FlakyDatabase(database, fail_calls={2, 3})
        service = _flush(connection, flaky, batch_size=100, retry_policy=RetryPolicy(max_retries=1))

        assert service.run() == 100
        assert buffered.pending_entries() == 50
        assert database.count() == 100

        assert _flush(connection, database).run() == 50
        assert database.count() == 150

    def test_undecodable_entry_is_skipped(self, buffered, connection, database,
                                          redis_factory, make_attrs):
        buffered.write(make_attrs())
        redis_factory().rpush(buffered.entries_key, "not json")
        buffered.write(make_attrs(minutes=1))
        service = _flush(connection, database)

        assert service.run() == 2
        assert service.last_report.skipped == 1
        assert buffered.pending_entries() == 0

    def test_replayed_entries_are_not_duplicated(self, buffered, connection, database,
                                                 redis_factory, make_attrs):
        entry = buffered.write(make_attrs())
        redis_factory().rpush(buffered.entries_key, entry.to_json())

        service = _flush(connection, database)

        assert service.run() == 1
        assert service.last_report.duplicates == 1
        assert database.count() == 1

    def test_count_covers_only_rows_written(self, buffered, connection, database, index,
                                            redis_factory, make_attrs):
        for i in range(3):
            buffered.write(make_attrs(minutes=i))
        broken = json.loads(buffered.write(make_attrs(minutes=9)).to_json())
        client = redis_factory()
        client.rpop(buffered.entries_key)
        broken["entry_type"] = None
        client.rpush(buffered.entries_key, json.dumps(broken))
        service = _flush(connection, database, index=index)

        assert service.run_safely() == 3
        assert service.last_report.skipped == 1
        assert buffered.pending_entries() == 0
        assert database.count() == 3
        assert index.get(broken["id"]) is None
        assert index.count(None, visible_only=False) == 3

    def test_reconnects_after_redis_failure(self, buffered, database, redis_factory, make_attrs):
        buffered.write(make_attrs())
        clients = iter([_BrokenClient()])
        flaky_connection = RedisConnection(factory=lambda: next(clients, None) or redis_factory())

        assert _flush(flaky_connection, database).run() == 1
        assert database.count() == 1

    def test_concurrent_workers_never_share_a_record(self, buffered, redis_factory, database,
                                                     make_attrs):
        for i in range(200):
            buffered.write(make_attrs(minutes=i))
        counts = []

        def worker():
            service = _flush(RedisConnection(factory=redis_factory), database, batch_size=10)
            counts.append(service.run())

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(counts) == 200
        assert database.count() == 200


class TestPendingUpdates:
    def test_update_merged_after_entry_flush(self, buffered, connection, database, make_attrs):
        entry = buffered.write(make_attrs(batch_id="b1"))
        buffered.update_by_batch("b1", "request", {"status": 201})
        service = _flush(connection, database)

        service.run()

        assert service.last_report.updates_applied == 1
        assert database.find(entry.id).payload["status"] == 201
        assert buffered.pending_updates() == 0

    def test_update_without_target_is_dropped(self, buffered, connection, database):
        buffered.update_by_batch("missing", "request", {"status": 500})
        service = _flush(connection, database)

        service.run()

        assert service.last_report.updates_dropped == 1
        assert service.last_report.updates_applied == 0
        assert buffered.pending_updates() == 0

    def test_index_tracks_flushed_and_updated_entries(self, buffered, connection, database,
                                                      index, make_attrs):
        entry = buffered.write(make_attrs(batch_id="b1", tags=["slow"]))
        buffered.update_by_batch("b1", "request", {"status": 404})

        _flush(connection, database, index=index).run()

        assert index.get(entry.id).payload["status"] == 404
        assert index.batch_ids("b1") == [entry.id]
        assert index.query_ids({"tag": "slow"}, visible_only=True) == [entry.id]


class TestRunSafely:
    def test_never_raises(self, connection, database):
        class Boom:
            def lpop(self, *args, **kwargs):
                raise RuntimeError("unexpected")

        boom = RedisConnection(factory=Boom)
        assert _flush(boom, database).run_safely() == 0
