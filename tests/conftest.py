from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from eventscope.storage.buffered import BufferedStore
from eventscope.storage.connection import RedisConnection
from eventscope.storage.database import DirectStore
from eventscope.storage.redis_index import RedisIndex

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_attrs():
    """Factory for entry attributes; ``minutes`` offsets occurred_at from T0."""
    def _make(entry_type="request", minutes=0, **overrides):
        attrs = {
            "entry_type": entry_type,
            "occurred_at": T0 + timedelta(minutes=minutes),
            "payload": {"path": "/users", "method": "GET"},
            "tags": [],
        }
        attrs.update(overrides)
        return attrs
    return _make


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_factory(redis_server):
    return lambda: fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def connection(redis_factory):
    return RedisConnection(factory=redis_factory)


@pytest.fixture
def database(tmp_path):
    db = DirectStore(str(tmp_path / "entries.sqlite3"))
    yield db
    db.close()


@pytest.fixture
def index(connection):
    return RedisIndex(connection, prefix="test", ttl_seconds=3600)


@pytest.fixture
def buffered(connection, database, index):
    return BufferedStore(connection, database, prefix="test", index=index)
