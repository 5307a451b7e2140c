"""Per-execution-unit correlation context (request, job, command).

The active context lives in a ``ContextVar`` so every thread and every
asyncio task resolves its own instance; two concurrent units never see
each other's batch id or tags.

A context opened with ``scope()`` is shared with the tasks spawned inside
it. One created implicitly by ``current()`` belongs to the thread or task
that created it; a child task that inherits it gets a fresh context on
its first ``current()`` call.
"""

import asyncio
import contextlib
import contextvars
import threading
import uuid

_current: contextvars.ContextVar = contextvars.ContextVar("eventscope_context", default=None)


class Context:
    """Mutable bag holding the batch id, inherited tags and free-form attributes."""

    def __init__(self, batch_id: str | None = None, **attributes):
        self._batch_id = batch_id
        self._tags: list[str] = []
        self._attributes: dict = dict(attributes)
        self._owner = None

    # Batch id groups every entry written during this unit

    @property
    def batch_id(self) -> str:
        if self._batch_id is None:
            self._batch_id = str(uuid.uuid4())
        return self._batch_id

    @batch_id.setter
    def batch_id(self, value: str | None):
        self._batch_id = value

    # Tags

    @property
    def tags(self) -> list[str]:
        return list(self._tags)

    def add_tag(self, tag: str):
        if tag and tag not in self._tags:
            self._tags.append(tag)

    def add_tags(self, *tags):
        for tag in tags:
            if isinstance(tag, (list, tuple, set)):
                self.add_tags(*tag)
            else:
                self.add_tag(tag)

    # Attributes

    def __getitem__(self, key: str):
        return self._attributes.get(key)

    def __setitem__(self, key: str, value):
        self._attributes[key] = value

    def __contains__(self, key: str) -> bool:
        return key in self._attributes

    def get(self, key: str, default=None):
        return self._attributes.get(key, default)

    def merge(self, attributes: dict) -> "Context":
        self._attributes.update(attributes)
        return self

    @property
    def request_id(self):
        return self._attributes.get("request_id")

    @request_id.setter
    def request_id(self, value):
        self._attributes["request_id"] = value

    @property
    def user_id(self):
        return self._attributes.get("user_id")

    @user_id.setter
    def user_id(self, value):
        self._attributes["user_id"] = value

    def payload_attributes(self) -> dict:
        """Attributes merged into every entry payload (unset values omitted)."""
        return {k: v for k, v in self._attributes.items() if v is not None}

    def to_dict(self) -> dict:
        return {
            "batch_id": self._batch_id,
            "tags": list(self._tags),
            "attributes": dict(self._attributes),
        }

    def is_empty(self) -> bool:
        return self._batch_id is None and not self._tags and not self._attributes


def _owner():
    """The running asyncio task, or the current thread outside an event loop."""
    try:
        task = asyncio.current_task()
    except RuntimeError:
        task = None
    return task if task is not None else threading.current_thread()


def current() -> Context:
    """Return the calling unit's context, creating one on first use."""
    ctx = _current.get()
    owner = _owner()
    if ctx is None or (ctx._owner is not None and ctx._owner is not owner):
        ctx = Context()
        ctx._owner = owner
        _current.set(ctx)
    return ctx


def peek() -> Context | None:
    """Return the calling unit's context without creating one."""
    return _current.get()


def clear():
    """Drop all state for the calling unit."""
    _current.set(None)


@contextlib.contextmanager
def scope(batch_id: str | None = None, **attributes):
    """Run one execution unit with a fresh context.

    The context is cleared on every exit path, including exceptions and
    cancellation, and whatever was active before is restored.
    """
    ctx = Context(batch_id=batch_id, **attributes)
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)
