"""Storage backend contract shared by the direct, buffered and Redis stores."""

from __future__ import annotations

import abc
from datetime import datetime, timedelta

from eventscope.errors import EntryNotFoundError
from eventscope.models import Entry

DEFAULT_PER_PAGE = 25
FILTER_KEYS = ("type", "tag", "batch_id", "family_hash")


def normalize_filters(filters: dict | None) -> dict:
    """Keep only recognised, non-empty filters. ``entry_type`` is accepted for ``type``."""
    if not filters:
        return {}
    filters = dict(filters)
    if "entry_type" in filters and "type" not in filters:
        filters["type"] = filters.pop("entry_type")
    return {key: filters[key] for key in FILTER_KEYS if filters.get(key)}


def page_offset(page: int, per_page: int) -> int:
    """Row offset for a 1-indexed page; pages below 1 clamp to the first."""
    return (max(int(page), 1) - 1) * per_page


class StorageBackend(abc.ABC):
    """Write/read/delete operations over Entry, regardless of where entries live."""

    @abc.abstractmethod
    def write(self, attributes: dict) -> Entry:
        """Validate and persist (or enqueue) a new entry."""

    @abc.abstractmethod
    def update_by_batch(self, batch_id: str, entry_type: str, payload_updates: dict) -> Entry | None:
        """Merge later-arriving payload data into the newest entry of a batch and type."""

    @abc.abstractmethod
    def find(self, entry_id: str) -> Entry | None:
        """Return the entry or None when it does not exist."""

    def find_or_raise(self, entry_id: str) -> Entry:
        entry = self.find(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    @abc.abstractmethod
    def list(self, filters: dict | None = None, page: int = 1,
             per_page: int = DEFAULT_PER_PAGE, visible_only: bool = True) -> list[Entry]:
        """Newest-first page of entries matching filters."""

    @abc.abstractmethod
    def count(self, filters: dict | None = None, visible_only: bool = True) -> int:
        """Number of entries matching filters."""

    @abc.abstractmethod
    def entries_for_batch(self, batch_id: str) -> list[Entry]:
        """Every entry of a batch, oldest first."""

    @abc.abstractmethod
    def entries_for_family(self, family_hash: str, page: int = 1,
                           per_page: int = DEFAULT_PER_PAGE) -> list[Entry]:
        """Newest-first page of entries sharing a family hash."""

    @abc.abstractmethod
    def family_count(self, family_hash: str) -> int:
        """Number of entries sharing a family hash."""

    @abc.abstractmethod
    def delete_all(self) -> int:
        """Remove every entry; return how many were removed."""

    @abc.abstractmethod
    def delete_expired(self, horizon: timedelta, now: datetime | None = None) -> int:
        """Remove entries that occurred before ``now - horizon``; return the count."""

    @abc.abstractmethod
    def is_ready(self) -> bool:
        """Health probe; never raises."""

    def close(self):
        """Release connections held by the backend."""
