"""Periodic deletion of entries older than the retention horizon."""

import logging
from datetime import datetime, timedelta

from eventscope.models import utcnow

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Deletes expired entries through the active storage backend.

    The backend removes rows in bounded batches and drops every secondary
    index reference to a swept id.
    """

    def __init__(self, storage, horizon: timedelta, clock=utcnow):
        self._storage = storage
        self.horizon = horizon
        self._clock = clock

    def cutoff(self, now: datetime | None = None) -> datetime:
        return (now or self._clock()) - self.horizon

    def sweep(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        deleted = self._storage.delete_expired(self.horizon, now=now)
        logger.info("Purged %d entries older than %s", deleted, self.cutoff(now).isoformat())
        return deleted

    def run_safely(self) -> int:
        try:
            return self.sweep()
        except Exception:
            logger.exception("Retention sweep failed")
            return 0
