"""Capture facade used by event sources (request hooks, query hooks, job hooks, ...).

Nothing raised while capturing escapes into the instrumented application:
failures are logged and the event is skipped.
"""

import logging

from eventscope import context
from eventscope.config import Config
from eventscope.family import family_hash
from eventscope.models import Entry, utcnow
from eventscope.redactor import Redactor

logger = logging.getLogger(__name__)


class Recorder:
    def __init__(self, storage, config: Config | None = None, redactor: Redactor | None = None):
        self._storage = storage
        self._config = config or Config()
        self._redactor = redactor or Redactor(self._config.sensitive_keys)
        self._ready: bool | None = None

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def storage(self):
        return self._storage

    def is_ready(self) -> bool:
        """Storage readiness, probed once and memoized until reset_ready()."""
        if self._ready is None:
            try:
                self._ready = bool(self._storage.is_ready())
            except Exception:
                logger.exception("Storage readiness probe failed")
                return False
        return self._ready

    def reset_ready(self):
        self._ready = None

    def ignore_path(self, path: str | None) -> bool:
        if not path:
            return False
        return any(path.startswith(ignored) for ignored in self._config.ignore_paths)

    def should_record(self, path: str | None = None) -> bool:
        return self.enabled and self.is_ready() and not self.ignore_path(path)

    def unit(self, batch_id: str | None = None, **attributes):
        """Context manager scoping one request/job/command; always clears on exit."""
        return context.scope(batch_id=batch_id, **attributes)

    def record(
        self,
        entry_type: str,
        payload: dict | None = None,
        tags=(),
        family=(),
        visible: bool = True,
        occurred_at=None,
    ) -> Entry | None:
        """Write one entry for the current unit. Returns the entry, or None if skipped."""
        if not self.enabled:
            return None
        try:
            ctx = context.current()
            merged = ctx.payload_attributes()
            merged.update(payload or {})

            all_tags = list(tags)
            for tag in ctx.tags:
                if tag not in all_tags:
                    all_tags.append(tag)

            return self._storage.write({
                "entry_type": entry_type,
                "batch_id": ctx.batch_id,
                "family_hash": family_hash(*family) if family else None,
                "payload": self._redactor.redact(merged),
                "tags": all_tags,
                "visible_in_listing": visible,
                "occurred_at": occurred_at or utcnow(),
            })
        except Exception:
            logger.exception("Failed to record %s entry", entry_type)
            return None

    def update(self, entry_type: str, payload_updates: dict):
        """Attach later-arriving data (e.g. a response) to this unit's entry of entry_type."""
        if not self.enabled:
            return None
        try:
            return self._storage.update_by_batch(
                context.current().batch_id,
                entry_type,
                self._redactor.redact(payload_updates),
            )
        except Exception:
            logger.exception("Failed to update %s entry", entry_type)
            return None
