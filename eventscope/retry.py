"""Bounded retry-with-reset policy for transient backend failures."""

import logging
import sqlite3
import time

import redis

from eventscope.errors import BackendUnavailableError, RetryExhaustedError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    BackendUnavailableError,
    sqlite3.OperationalError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
)


class RetryPolicy:
    """Runs an operation up to ``1 + max_retries`` times.

    Before every retry the ``reset`` callable (typically a reconnect) is
    invoked and the policy sleeps an exponential backoff capped at
    ``max_backoff``. Errors outside ``transient`` propagate untouched;
    exhausting the ceiling raises RetryExhaustedError.
    """

    def __init__(
        self,
        max_retries: int = 3,
        backoff: float = 0.0,
        max_backoff: float = 5.0,
        transient: tuple = TRANSIENT_ERRORS,
        sleep=time.sleep,
    ):
        self.max_retries = max_retries
        self.backoff = backoff
        self.max_backoff = max_backoff
        self.transient = transient
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry: int) -> float:
        if self.backoff <= 0:
            return 0.0
        return min(self.backoff * (2 ** (retry - 1)), self.max_backoff)

    def run(self, operation, reset=None, description: str = "operation"):
        retries = 0
        while True:
            try:
                return operation()
            except self.transient as exc:
                retries += 1
                if retries > self.max_retries:
                    raise RetryExhaustedError(retries, exc) from exc
                logger.warning(
                    "%s failed (%s), reconnecting (attempt %d/%d)...",
                    description, exc, retries, self.max_retries,
                )
                if reset is not None:
                    try:
                        reset()
                    except Exception:
                        logger.exception("Reset before retry of %s failed", description)
                delay = self.delay_for(retries)
                if delay > 0:
                    self._sleep(delay)
