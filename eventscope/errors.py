"""Exception types raised by the recorder core."""


class EventScopeError(Exception):
    """Base class for every error raised by eventscope."""


class EntryNotFoundError(EventScopeError):
    """Raised by ``find_or_raise`` when no entry has the given id."""

    def __init__(self, entry_id: str):
        super().__init__(f"Entry not found: {entry_id}")
        self.entry_id = entry_id


class MalformedEntryError(EventScopeError):
    """Entry attributes failed validation; nothing was persisted."""

    def __init__(self, errors: list[str]):
        super().__init__("Malformed entry: " + "; ".join(errors))
        self.errors = errors


class BackendUnavailableError(EventScopeError):
    """The durable store or the buffer store could not be reached."""


class RetryExhaustedError(EventScopeError):
    """A retried operation kept failing past the configured ceiling."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error
