"""Retry with exponential backoff, plus a per-remote circuit breaker.

Only ``TransientRemoteError`` is retried.  Delays grow as
``base_delay * multiplier ** attempt``, capped at ``max_delay``, with
+/- ``jitter`` randomisation; a ``Retry-After`` value from the remote
replaces the computed delay.  After ``max_retries`` retries the last
transient error is re-raised for the orchestrator to record.

The circuit breaker counts consecutive transient failures.  At
``failure_threshold`` it opens and calls fail fast until ``reset_timeout``
has passed; the next call is a half-open trial that closes the circuit on
success or re-opens it on failure.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Callable, TypeVar

import requests

from ..errors import TransientRemoteError

T = TypeVar("T")
logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.25
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_TIMEOUT = 300.0


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    multiplier: float = DEFAULT_MULTIPLIER
    jitter: float = DEFAULT_JITTER

    def delay(
        self,
        attempt: int,
        retry_after: float | None = None,
        rand: Callable[[], float] = random.random,
    ) -> float:
        """Seconds to wait before retry number ``attempt + 1``."""
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_delay)
        delay = min(self.base_delay * self.multiplier**attempt, self.max_delay)
        if self.jitter:
            delay *= 1 + self.jitter * (2 * rand() - 1)
        return max(delay, 0.0)


def get_retry_after(response: requests.Response) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fail fast against a remote that keeps failing transiently.

    Args:
        failure_threshold: Consecutive transient failures that open the
            circuit.
        reset_timeout: Seconds the circuit stays open before a trial call.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def allow(self) -> bool:
        """Return ``True`` if a call may go through now."""
        with self._lock:
            if self._state is CircuitState.OPEN:
                if self._clock() - self._opened_at >= self.reset_timeout:
                    self._state = CircuitState.HALF_OPEN
                    return True
                return False
            return True

    def record_success(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if (
                self._state is CircuitState.HALF_OPEN
                or self._failures >= self.failure_threshold
            ):
                if self._state is not CircuitState.OPEN:
                    logger.warning(
                        "Circuit opened after %d consecutive failures",
                        self._failures,
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()


# ---------------------------------------------------------------------------
# Retry loop
# ---------------------------------------------------------------------------


def call_with_retry(
    func: Callable[[], T],
    *,
    policy: RetryPolicy,
    system: str,
    description: str,
    breaker: CircuitBreaker | None = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Call *func*, retrying ``TransientRemoteError`` per *policy*.

    Args:
        func: Zero-argument callable performing one attempt.
        policy: Backoff settings.
        system: Remote name, for errors and logs.
        description: What is being attempted, for logs.
        breaker: Optional circuit breaker shared by the remote's calls.
        sleep: Sleep function (injectable for tests).

    Returns:
        Whatever *func* returns.

    Raises:
        TransientRemoteError: When retries are exhausted or the circuit
            is open.
        RemoteError: Non-transient errors propagate immediately.
    """
    attempts = policy.max_retries + 1
    for attempt in range(attempts):
        if breaker is not None and not breaker.allow():
            raise TransientRemoteError(
                f"circuit open, skipping {description}", system=system
            )
        try:
            result = func()
        except TransientRemoteError as exc:
            if breaker is not None:
                breaker.record_failure()
            if attempt + 1 >= attempts:
                logger.error(
                    "%s %s failed after %d attempts: %s",
                    system,
                    description,
                    attempts,
                    exc.message,
                )
                raise
            delay = policy.delay(attempt, exc.retry_after)
            logger.warning(
                "Transient error on %s %s, attempt %d/%d, retrying in %.2fs: %s",
                system,
                description,
                attempt + 1,
                attempts,
                delay,
                exc.message,
            )
            sleep(delay)
            continue
        if breaker is not None:
            breaker.record_success()
        return result
    raise AssertionError("unreachable")  # pragma: no cover
