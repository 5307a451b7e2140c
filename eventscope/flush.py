"""FlushService drains the Redis buffer into the durable store.

Entries are popped in batches with an atomic LPOP-count, so concurrent
flush workers never process the same record. A batch that still cannot
be written after the retry ceiling is pushed back to the head of its
list for the next run. Records popped by a process that then dies are
lost; the buffer trades strict durability for non-blocking writers.
"""

import json
import logging
from dataclasses import dataclass

from eventscope.errors import MalformedEntryError, RetryExhaustedError
from eventscope.models import Entry, validate_attributes
from eventscope.retry import RetryPolicy
from eventscope.storage.buffered import buffer_keys

logger = logging.getLogger(__name__)

BATCH_SIZE = 100


def _decode_entry(raw: str) -> Entry:
    """Parse a buffered record, rejecting anything the durable store would refuse."""
    data = json.loads(raw)
    validate_attributes(data)
    return Entry.from_dict(data)


@dataclass
class FlushReport:
    flushed: int = 0
    batches: int = 0
    skipped: int = 0
    duplicates: int = 0
    updates_applied: int = 0
    updates_dropped: int = 0
    completed: bool = True


class FlushService:
    def __init__(
        self,
        connection,
        database,
        prefix: str = "eventscope",
        batch_size: int = BATCH_SIZE,
        retry_policy: RetryPolicy | None = None,
        index=None,
    ):
        self._connection = connection
        self._database = database
        self._index = index
        self._retry = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.entries_key, self.updates_key = buffer_keys(prefix)
        self.last_report = FlushReport()

    @property
    def redis(self):
        return self._connection.client

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Flush queued entries, then apply pending updates. Returns entries flushed."""
        report = FlushReport()
        self._flush_entries(report)
        self._apply_updates(report)
        self.last_report = report
        if report.flushed or report.updates_applied:
            logger.info(
                "Flushed %d entries in %d batch(es), applied %d update(s)",
                report.flushed, report.batches, report.updates_applied,
            )
        return report.flushed

    def run_safely(self) -> int:
        """Scheduler entry point: never raises, so the next tick tries again."""
        try:
            return self.run()
        except Exception:
            logger.exception("Flush run failed")
            return 0

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def _pop(self, key: str) -> list[str]:
        return self._retry.run(
            lambda: self.redis.lpop(key, self.batch_size) or [],
            reset=self._connection.reconnect,
            description=f"pop {key}",
        )

    def _requeue(self, key: str, raw_items: list[str]):
        """Push items back to the head of the list, preserving their order."""
        if not raw_items:
            return
        try:
            self._retry.run(
                lambda: self.redis.lpush(key, *reversed(raw_items)),
                reset=self._connection.reconnect,
                description=f"requeue {key}",
            )
        except RetryExhaustedError as exc:
            logger.error("Could not requeue %d item(s) to %s, they are lost: %s",
                         len(raw_items), key, exc.last_error)

    def _flush_entries(self, report: FlushReport):
        while True:
            try:
                raw_batch = self._pop(self.entries_key)
            except RetryExhaustedError as exc:
                logger.error("Buffer unavailable after %d attempts (flushed %d entries so far): %s",
                             exc.attempts, report.flushed, exc.last_error)
                report.completed = False
                return
            if not raw_batch:
                return

            entries, raws = [], []
            for raw in raw_batch:
                try:
                    entries.append(_decode_entry(raw))
                    raws.append(raw)
                except (ValueError, KeyError, TypeError, MalformedEntryError):
                    report.skipped += 1
                    logger.error("Discarding malformed buffered entry: %.200s", raw)
            if not entries:
                continue

            try:
                inserted = self._retry.run(
                    lambda: self._database.insert_many(entries),
                    reset=self._database.reconnect,
                    description="flush batch",
                )
            except RetryExhaustedError as exc:
                logger.error(
                    "Flush of %d entries failed after %d attempts (flushed %d entries so far), "
                    "leaving batch for next run: %s",
                    len(entries), exc.attempts, report.flushed, exc.last_error,
                )
                self._requeue(self.entries_key, raws)
                report.completed = False
                return

            # Ids already durable (replays) are ignored by the insert
            report.flushed += inserted
            report.duplicates += len(entries) - inserted
            report.batches += 1
            self._add_to_index(entries)

    def _add_to_index(self, entries: list[Entry]):
        if self._index is None:
            return
        try:
            self._index.add(entries)
        except Exception:
            logger.warning("Index update failed for %d flushed entries", len(entries), exc_info=True)

    # ------------------------------------------------------------------
    # Pending updates
    # ------------------------------------------------------------------

    def _apply_updates(self, report: FlushReport):
        while True:
            try:
                raw_batch = self._pop(self.updates_key)
            except RetryExhaustedError as exc:
                logger.error("Update buffer unavailable after %d attempts: %s",
                             exc.attempts, exc.last_error)
                report.completed = False
                return
            if not raw_batch:
                return

            remaining = []
            for raw in raw_batch:
                try:
                    remaining.append((raw, json.loads(raw)))
                except ValueError:
                    report.updates_dropped += 1
                    logger.error("Discarding undecodable buffered update: %.200s", raw)

            def apply_remaining():
                # Retries resume from the first update not yet applied
                while remaining:
                    self._apply_one(remaining[0][1], report)
                    remaining.pop(0)

            try:
                self._retry.run(apply_remaining, reset=self._database.reconnect,
                                description="apply updates")
            except RetryExhaustedError as exc:
                logger.error("Applying %d pending update(s) failed after %d attempts: %s",
                             len(remaining), exc.attempts, exc.last_error)
                self._requeue(self.updates_key, [raw for raw, _ in remaining])
                report.completed = False
                return

    def _apply_one(self, update: dict, report: FlushReport):
        try:
            entry = self._database.update_by_batch(
                update.get("batch_id"),
                update.get("entry_type"),
                update.get("payload_updates") or {},
            )
        except self._retry.transient:
            raise
        except Exception:
            logger.debug("Failed to apply buffered update %r", update, exc_info=True)
            report.updates_dropped += 1
            return

        if entry is None:
            # Target not flushed yet (or already swept): best-effort, drop it
            logger.debug("No entry for batch %s / %s, dropping update",
                         update.get("batch_id"), update.get("entry_type"))
            report.updates_dropped += 1
            return

        report.updates_applied += 1
        if self._index is not None:
            try:
                self._index.refresh(entry)
            except Exception:
                logger.warning("Index refresh failed for entry %s", entry.id, exc_info=True)
