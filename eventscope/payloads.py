"""Typed views over entry payloads, one variant per entry type.

Storage keeps payloads as open maps; these variants are for consumers
(API serializers, dashboards) that need to know a payload's shape.
Unknown keys are kept in ``extra``.
"""

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar

from eventscope.models import Entry, EntryType


def _from_payload(cls, payload: dict):
    payload = dict(payload or {})
    for source, target in cls.ALIASES.items():
        if source in payload:
            payload[target] = payload.pop(source)
    names = {f.name for f in fields(cls)} - {"extra"}
    known = {name: payload.pop(name) for name in list(payload) if name in names}
    return cls(**known, extra=payload)


@dataclass(frozen=True)
class RequestPayload:
    ALIASES: ClassVar[dict] = {}
    path: str | None = None
    method: str | None = None
    status: int | None = None
    duration: float | None = None
    controller: str | None = None
    action: str | None = None
    response: Any = None
    response_headers: dict | None = None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class QueryPayload:
    ALIASES: ClassVar[dict] = {}
    sql: str | None = None
    name: str | None = None
    duration: float | None = None
    cached: bool = False
    row_count: int | None = None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ExceptionPayload:
    ALIASES: ClassVar[dict] = {"class": "exception_class"}
    exception_class: str | None = None
    message: str | None = None
    file: str | None = None
    line: int | None = None
    backtrace: list | None = None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class JobPayload:
    ALIASES: ClassVar[dict] = {}
    job_id: str | None = None
    job_class: str | None = None
    queue_name: str | None = None
    arguments: list | None = None
    duration: float | None = None
    exception: dict | None = None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CommandPayload:
    ALIASES: ClassVar[dict] = {}
    command: str | None = None
    arguments: Any = None
    duration: float | None = None
    exit_code: int | None = None
    exception: dict | None = None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ModelPayload:
    ALIASES: ClassVar[dict] = {}
    action: str | None = None
    model: str | None = None
    changes: dict | None = None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ViewPayload:
    ALIASES: ClassVar[dict] = {}
    name: str | None = None
    path: str | None = None
    view_type: str | None = None
    duration: float | None = None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GenericPayload:
    ALIASES: ClassVar[dict] = {}
    extra: dict = field(default_factory=dict)


PAYLOAD_TYPES = {
    EntryType.REQUEST.value: RequestPayload,
    EntryType.QUERY.value: QueryPayload,
    EntryType.EXCEPTION.value: ExceptionPayload,
    EntryType.JOB_ENQUEUE.value: JobPayload,
    EntryType.JOB_PERFORM.value: JobPayload,
    EntryType.COMMAND.value: CommandPayload,
    EntryType.MODEL.value: ModelPayload,
    EntryType.VIEW.value: ViewPayload,
}


def payload_for(entry: Entry):
    """Typed payload variant for the entry's type (GenericPayload if unknown)."""
    cls = PAYLOAD_TYPES.get(entry.entry_type, GenericPayload)
    return _from_payload(cls, entry.payload)
