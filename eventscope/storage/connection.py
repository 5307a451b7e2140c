"""Lazily-created Redis client with explicit reconnect."""

import logging
import threading

import redis

logger = logging.getLogger(__name__)


class RedisConnection:
    """Holds one Redis client; ``reconnect`` forces a fresh one on next use.

    Pass ``factory`` (a zero-argument callable returning a client) to
    control how clients are built, e.g. in tests.
    """

    def __init__(self, url: str | None = None, factory=None):
        if url is None and factory is None:
            raise ValueError("RedisConnection needs a url or a factory")
        self._url = url
        self._factory = factory or self._from_url
        self._client = None
        self._lock = threading.Lock()

    def _from_url(self):
        return redis.Redis.from_url(
            self._url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )

    @property
    def client(self):
        with self._lock:
            if self._client is None:
                self._client = self._factory()
            return self._client

    def reconnect(self):
        """Close the current client; the next access builds a new one."""
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except Exception:
                logger.debug("Error closing Redis client", exc_info=True)

    def is_available(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception:
            return False
