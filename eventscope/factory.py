"""Builds the configured storage backend and its collaborators once at startup."""

import logging
from dataclasses import dataclass

from eventscope.config import STORAGE_BUFFERED, STORAGE_REDIS, Config
from eventscope.flush import FlushService
from eventscope.retention import RetentionSweeper
from eventscope.retry import RetryPolicy
from eventscope.storage.base import StorageBackend
from eventscope.storage.buffered import BufferedStore
from eventscope.storage.connection import RedisConnection
from eventscope.storage.database import DirectStore
from eventscope.storage.redis_index import RedisIndex
from eventscope.storage.redis_store import RedisStore

logger = logging.getLogger(__name__)


@dataclass
class Components:
    storage: StorageBackend
    sweeper: RetentionSweeper
    flush: FlushService | None = None
    connection: RedisConnection | None = None

    def close(self):
        self.storage.close()


def _retry_policy(config: Config) -> RetryPolicy:
    return RetryPolicy(max_retries=config.max_retries, backoff=config.retry_backoff)


def build_components(config: Config, redis_factory=None) -> Components:
    """Select the backend named by ``config.storage``.

    ``redis_factory`` overrides how Redis clients are created (tests pass
    an in-process fake).
    """
    ttl = int(config.retention_horizon.total_seconds())
    connection = None
    if config.storage in (STORAGE_BUFFERED, STORAGE_REDIS):
        connection = RedisConnection(config.redis_url, factory=redis_factory)

    flush = None
    if config.storage == STORAGE_BUFFERED:
        database = DirectStore(config.database_path, delete_batch_size=config.sweep_batch_size)
        index = RedisIndex(connection, prefix=config.key_prefix, ttl_seconds=ttl)
        storage = BufferedStore(connection, database, prefix=config.key_prefix, index=index)
        flush = FlushService(
            connection,
            database,
            prefix=config.key_prefix,
            batch_size=config.flush_batch_size,
            retry_policy=_retry_policy(config),
            index=index,
        )
    elif config.storage == STORAGE_REDIS:
        storage = RedisStore(connection, prefix=config.key_prefix, ttl_seconds=ttl,
                             delete_batch_size=config.sweep_batch_size)
    else:
        storage = DirectStore(config.database_path, retry_policy=_retry_policy(config),
                              delete_batch_size=config.sweep_batch_size)

    logger.info("Using %s storage (%s)", config.storage, type(storage).__name__)
    return Components(
        storage=storage,
        sweeper=RetentionSweeper(storage, config.retention_horizon),
        flush=flush,
        connection=connection,
    )


def build_storage(config: Config, redis_factory=None) -> StorageBackend:
    return build_components(config, redis_factory=redis_factory).storage
