"""Canonical entry model shared by every storage backend."""

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

import jsonschema

from eventscope.errors import MalformedEntryError


class EntryType(str, Enum):
    REQUEST = "request"
    QUERY = "query"
    EXCEPTION = "exception"
    JOB_ENQUEUE = "job_enqueue"
    JOB_PERFORM = "job_perform"
    COMMAND = "command"
    MODEL = "model"
    VIEW = "view"


TIMESTAMP_FIELDS = ("occurred_at", "created_at", "updated_at")

ENTRY_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["entry_type", "occurred_at"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "batch_id": {"type": ["string", "null"]},
        "family_hash": {"type": ["string", "null"]},
        "entry_type": {"type": "string", "pattern": "\\S"},
        "payload": {"type": ["object", "null"]},
        "tags": {"type": ["array", "null"], "items": {"type": "string"}},
        "visible_in_listing": {"type": "boolean"},
        "occurred_at": {"type": ["string", "number"], "minLength": 1},
        "created_at": {"type": ["string", "null"]},
        "updated_at": {"type": ["string", "null"]},
    },
}

_validator = jsonschema.Draft202012Validator(ENTRY_SCHEMA)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 so lexical order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_time(value) -> datetime:
    """Parse an ISO string, epoch number or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _dedupe(tags) -> list[str]:
    seen: list[str] = []
    for tag in tags or ():
        if tag not in seen:
            seen.append(tag)
    return seen


@dataclass
class Entry:
    """One recorded event.

    ``batch_id`` and ``family_hash`` never change once written; only
    ``payload`` and ``updated_at`` are amended, through ``with_updates``.
    """

    id: str
    entry_type: str
    occurred_at: datetime
    batch_id: str | None = None
    family_hash: str | None = None
    payload: dict = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    visible_in_listing: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def with_updates(self, payload_updates: dict, now: datetime | None = None) -> "Entry":
        """Return a copy with payload_updates merged in and updated_at bumped."""
        merged = dict(self.payload)
        merged.update(payload_updates or {})
        return replace(self, payload=merged, updated_at=now or utcnow())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "family_hash": self.family_hash,
            "entry_type": self.entry_type,
            "payload": self.payload,
            "tags": list(self.tags),
            "visible_in_listing": self.visible_in_listing,
            "occurred_at": to_iso(self.occurred_at),
            "created_at": to_iso(self.created_at) if self.created_at else None,
            "updated_at": to_iso(self.updated_at) if self.updated_at else None,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)

    @classmethod
    def from_dict(cls, data: dict) -> "Entry":
        return cls(
            id=data["id"],
            entry_type=data["entry_type"],
            occurred_at=parse_time(data["occurred_at"]),
            batch_id=data.get("batch_id"),
            family_hash=data.get("family_hash"),
            payload=data.get("payload") or {},
            tags=_dedupe(data.get("tags")),
            visible_in_listing=bool(data.get("visible_in_listing", True)),
            created_at=parse_time(data["created_at"]) if data.get("created_at") else None,
            updated_at=parse_time(data["updated_at"]) if data.get("updated_at") else None,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Entry":
        return cls.from_dict(json.loads(raw))


def validate_attributes(attrs: dict) -> dict:
    """Validate raw entry attributes; return them normalized for the schema.

    Raises MalformedEntryError listing every problem found.
    """
    if not isinstance(attrs, dict):
        raise MalformedEntryError([f"attributes must be a mapping, got {type(attrs).__name__}"])

    candidate = dict(attrs)
    for name in TIMESTAMP_FIELDS:
        value = candidate.get(name)
        if isinstance(value, datetime):
            candidate[name] = to_iso(value)
    if isinstance(candidate.get("entry_type"), Enum):
        candidate["entry_type"] = candidate["entry_type"].value
    if isinstance(candidate.get("tags"), (set, tuple, frozenset)):
        candidate["tags"] = list(candidate["tags"])

    errors = [error.message for error in _validator.iter_errors(candidate)]
    if not errors:
        for name in TIMESTAMP_FIELDS:
            if candidate.get(name):
                try:
                    parse_time(candidate[name])
                except (ValueError, OverflowError, OSError):
                    errors.append(f"{name} is not a valid timestamp: {candidate[name]!r}")
    if errors:
        raise MalformedEntryError(errors)
    return candidate


def build_entry(attrs: dict, now: datetime | None = None) -> Entry:
    """Validate attributes and build a new Entry with a fresh id and bookkeeping times."""
    candidate = validate_attributes(attrs)
    now = now or utcnow()
    return Entry(
        id=candidate.get("id") or str(uuid.uuid4()),
        entry_type=candidate["entry_type"],
        occurred_at=parse_time(candidate["occurred_at"]),
        batch_id=candidate.get("batch_id"),
        family_hash=candidate.get("family_hash"),
        payload=dict(candidate.get("payload") or {}),
        tags=_dedupe(candidate.get("tags")),
        visible_in_listing=candidate.get("visible_in_listing", True),
        created_at=parse_time(candidate["created_at"]) if candidate.get("created_at") else now,
        updated_at=parse_time(candidate["updated_at"]) if candidate.get("updated_at") else now,
    )
