"""DirectStore: synchronous writes and reads against the durable SQLite store."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path

from eventscope.errors import BackendUnavailableError, RetryExhaustedError
from eventscope.models import Entry, build_entry, parse_time, to_iso, utcnow
from eventscope.storage.base import (
    DEFAULT_PER_PAGE,
    StorageBackend,
    normalize_filters,
    page_offset,
)

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 1000

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS entries (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  id TEXT NOT NULL,
  batch_id TEXT,
  family_hash TEXT,
  entry_type TEXT NOT NULL,
  payload TEXT NOT NULL DEFAULT '{}',
  tags TEXT NOT NULL DEFAULT '[]',
  visible_in_listing INTEGER NOT NULL DEFAULT 1,
  occurred_at TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_id ON entries(id);
CREATE INDEX IF NOT EXISTS idx_entries_batch ON entries(batch_id);
CREATE INDEX IF NOT EXISTS idx_entries_family ON entries(family_hash);
CREATE INDEX IF NOT EXISTS idx_entries_type ON entries(entry_type);
CREATE INDEX IF NOT EXISTS idx_entries_occurred ON entries(occurred_at);
CREATE INDEX IF NOT EXISTS idx_entries_type_visible ON entries(entry_type, visible_in_listing);

CREATE TABLE IF NOT EXISTS entry_tags (
  tag TEXT NOT NULL,
  entry_id TEXT NOT NULL,
  PRIMARY KEY (tag, entry_id)
);

CREATE INDEX IF NOT EXISTS idx_entry_tags_entry ON entry_tags(entry_id);
"""

_INSERT_SQL = """
INSERT {conflict} INTO entries
  (id, batch_id, family_hash, entry_type, payload, tags,
   visible_in_listing, occurred_at, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _row_to_entry(row: sqlite3.Row) -> Entry:
    return Entry(
        id=row["id"],
        batch_id=row["batch_id"],
        family_hash=row["family_hash"],
        entry_type=row["entry_type"],
        payload=json.loads(row["payload"]),
        tags=json.loads(row["tags"]),
        visible_in_listing=bool(row["visible_in_listing"]),
        occurred_at=parse_time(row["occurred_at"]),
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


def _entry_params(entry: Entry) -> tuple:
    now = utcnow()
    return (
        entry.id,
        entry.batch_id,
        entry.family_hash,
        entry.entry_type,
        json.dumps(entry.payload, default=str),
        json.dumps(list(entry.tags)),
        1 if entry.visible_in_listing else 0,
        to_iso(entry.occurred_at),
        to_iso(entry.created_at or now),
        to_iso(entry.updated_at or now),
    )


class DirectStore(StorageBackend):
    """Durable store backed by one shared SQLite connection.

    Every failure is visible to the caller: with a ``retry_policy`` the
    operation is retried on a fresh connection first, and a connection
    that stays unusable surfaces as BackendUnavailableError.
    """

    def __init__(self, path: str, retry_policy=None, delete_batch_size: int = DELETE_BATCH_SIZE,
                 timeout: float = 5.0):
        self.path = path
        self.delete_batch_size = delete_batch_size
        self._retry = retry_policy
        self._timeout = timeout
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None

        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self._timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if self.path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(self._timeout * 1000)}")
        conn.executescript(_SCHEMA_SQL)
        conn.commit()
        return conn

    @property
    def connection(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                self._conn = self._connect()
            return self._conn

    def reconnect(self):
        """Drop the current connection so the next operation opens a fresh one."""
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.close()
            except sqlite3.Error:
                logger.debug("Error closing SQLite connection", exc_info=True)

    def close(self):
        self.reconnect()

    def _execute(self, fn, description: str):
        def attempt():
            with self._lock:
                return fn(self.connection)

        try:
            if self._retry is None:
                return attempt()
            return self._retry.run(attempt, reset=self.reconnect, description=description)
        except RetryExhaustedError as exc:
            raise BackendUnavailableError(f"{description} failed: {exc.last_error}") from exc
        except sqlite3.OperationalError as exc:
            raise BackendUnavailableError(f"{description} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(self, attributes: dict) -> Entry:
        entry = build_entry(attributes)
        self._execute(lambda conn: self._insert(conn, [entry], ignore_duplicates=False), "write")
        return entry

    def insert_many(self, entries: list[Entry]) -> int:
        """Insert a batch in one transaction; ids already present are skipped.

        Returns the number of rows actually inserted.
        """
        if not entries:
            return 0
        return self._execute(lambda conn: self._insert(conn, entries, ignore_duplicates=True),
                             "insert_many")

    def _insert(self, conn: sqlite3.Connection, entries: list[Entry], ignore_duplicates: bool) -> int:
        sql = _INSERT_SQL.format(conflict="OR IGNORE" if ignore_duplicates else "")
        tag_rows = [(tag, entry.id) for entry in entries for tag in entry.tags]
        with conn:
            before = conn.total_changes
            conn.executemany(sql, [_entry_params(entry) for entry in entries])
            inserted = conn.total_changes - before
            conn.executemany("INSERT OR IGNORE INTO entry_tags (tag, entry_id) VALUES (?, ?)", tag_rows)
        return inserted

    def update_by_batch(self, batch_id: str, entry_type: str, payload_updates: dict) -> Entry | None:
        """Merge payload_updates into the most recently created entry of (batch_id, entry_type).

        Returns the amended entry, or None when no such entry exists.
        """
        def update(conn):
            row = conn.execute(
                "SELECT * FROM entries WHERE batch_id = ? AND entry_type = ? "
                "ORDER BY created_at DESC, seq DESC LIMIT 1",
                (batch_id, entry_type),
            ).fetchone()
            if row is None:
                return None
            entry = _row_to_entry(row).with_updates(payload_updates)
            with conn:
                conn.execute(
                    "UPDATE entries SET payload = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(entry.payload, default=str), to_iso(entry.updated_at), entry.id),
                )
            return entry

        if not batch_id:
            return None
        return self._execute(update, "update_by_batch")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, entry_id: str) -> Entry | None:
        row = self._execute(
            lambda conn: conn.execute("SELECT * FROM entries WHERE id = ?", (entry_id,)).fetchone(),
            "find",
        )
        return _row_to_entry(row) if row is not None else None

    @staticmethod
    def _where(filters: dict | None, visible_only: bool) -> tuple[str, list]:
        filters = normalize_filters(filters)
        clauses, params = [], []
        if visible_only:
            clauses.append("visible_in_listing = 1")
        if "type" in filters:
            clauses.append("entry_type = ?")
            params.append(filters["type"])
        if "batch_id" in filters:
            clauses.append("batch_id = ?")
            params.append(filters["batch_id"])
        if "family_hash" in filters:
            clauses.append("family_hash = ?")
            params.append(filters["family_hash"])
        if "tag" in filters:
            clauses.append("id IN (SELECT entry_id FROM entry_tags WHERE tag = ?)")
            params.append(filters["tag"])
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    def _select(self, where: str, params: list, order: str, limit: int | None = None,
                offset: int = 0, description: str = "list") -> list[Entry]:
        sql = f"SELECT * FROM entries{where} ORDER BY {order}"
        params = list(params)
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params += [limit, offset]
        rows = self._execute(lambda conn: conn.execute(sql, params).fetchall(), description)
        return [_row_to_entry(row) for row in rows]

    def list(self, filters: dict | None = None, page: int = 1,
             per_page: int = DEFAULT_PER_PAGE, visible_only: bool = True) -> list[Entry]:
        where, params = self._where(filters, visible_only)
        return self._select(where, params, "occurred_at DESC, seq DESC",
                            limit=per_page, offset=page_offset(page, per_page))

    def count(self, filters: dict | None = None, visible_only: bool = True) -> int:
        where, params = self._where(filters, visible_only)
        sql = f"SELECT COUNT(*) FROM entries{where}"
        return self._execute(lambda conn: conn.execute(sql, params).fetchone()[0], "count")

    def entries_for_batch(self, batch_id: str) -> list[Entry]:
        if not batch_id:
            return []
        return self._select(" WHERE batch_id = ?", [batch_id], "occurred_at ASC, seq ASC",
                            description="entries_for_batch")

    def entries_for_family(self, family_hash: str, page: int = 1,
                           per_page: int = DEFAULT_PER_PAGE) -> list[Entry]:
        if not family_hash:
            return []
        return self._select(" WHERE family_hash = ?", [family_hash], "occurred_at DESC, seq DESC",
                            limit=per_page, offset=page_offset(page, per_page),
                            description="entries_for_family")

    def family_count(self, family_hash: str) -> int:
        if not family_hash:
            return 0
        return self.count({"family_hash": family_hash}, visible_only=False)

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def delete_all(self) -> int:
        def delete(conn):
            with conn:
                deleted = conn.execute("DELETE FROM entries").rowcount
                conn.execute("DELETE FROM entry_tags")
            return deleted

        return self._execute(delete, "delete_all")

    def delete_expired(self, horizon: timedelta, now: datetime | None = None,
                       on_deleted=None) -> int:
        """Delete entries older than ``now - horizon`` in bounded batches.

        ``on_deleted`` receives the ids removed by each batch so standalone
        indexes can drop their references too. A failing callback never
        aborts the sweep; its ids are offered once more at the end.
        """
        cutoff = to_iso((now or utcnow()) - horizon)
        batch_size = self.delete_batch_size

        def delete_batch(conn):
            ids = [row[0] for row in conn.execute(
                "SELECT id FROM entries WHERE occurred_at < ? ORDER BY occurred_at LIMIT ?",
                (cutoff, batch_size),
            ).fetchall()]
            if not ids:
                return ids, 0
            marks = ",".join("?" * len(ids))
            with conn:
                conn.execute(f"DELETE FROM entry_tags WHERE entry_id IN ({marks})", ids)
                deleted = conn.execute(f"DELETE FROM entries WHERE id IN ({marks})", ids).rowcount
            return ids, deleted

        total = 0
        unreported: list[str] = []
        while True:
            ids, deleted = self._execute(delete_batch, "delete_expired")
            total += deleted
            if ids and on_deleted is not None:
                try:
                    on_deleted(ids)
                except Exception:
                    logger.warning("Index cleanup failed for %d swept entries, retrying after the sweep",
                                   len(ids), exc_info=True)
                    unreported.extend(ids)
            if deleted < batch_size:
                break

        if unreported:
            try:
                on_deleted(unreported)
            except Exception:
                logger.error("Index cleanup failed again for %d swept entries", len(unreported),
                             exc_info=True)
        return total

    def is_ready(self) -> bool:
        try:
            with self._lock:
                self.connection.execute("SELECT 1 FROM entries LIMIT 1").fetchall()
            return True
        except Exception:
            return False
