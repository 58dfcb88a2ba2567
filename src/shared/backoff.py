"""
Exponential Backoff With Jitter

Retry combinator used at every I/O boundary of the order pipeline: broker
read, order persist after consume, database write, database read and
dead-letter publish.

RETRY SCHEDULE:
- First retry waits initial_interval, randomized by +/- randomization_factor
- Each following interval is multiplied by multiplier, capped at max_interval
- Retrying stops when the next wait would push total elapsed time past
  max_elapsed_time

    initial=0.1s, multiplier=1.5, max=1s, budget=5s
    waits ~ 0.1, 0.15, 0.225, 0.34, 0.5, 0.76, 1.0, 1.0, ... (each +/- 50%)

CLASSIFICATION:
- The caller injects is_permanent(exc) -> bool
- Permanent errors end the loop immediately and are returned unchanged
- Everything else is treated as transient and retried

OUTCOME:
run_with_backoff() never raises for operation failures; it returns a
RetryOutcome (SUCCEEDED / PERMANENT / EXHAUSTED / CANCELLED). retry_call()
unwraps that outcome into a value or an exception for callers that prefer
exceptions.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Optional, TypeVar

T = TypeVar("T")


# ==============================================================================
# RETRY ERRORS
# ==============================================================================


class PermanentError(Exception):
    """Marker base class: an error that must never be retried."""


class RetryExhaustedError(Exception):
    """The backoff budget ran out while the operation kept failing transiently."""

    def __init__(self, description: str, attempts: int, elapsed: float, last_error: BaseException):
        self.description = description
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error
        super().__init__(
            f"{description}: gave up after {attempts} attempts in {elapsed:.2f}s: {last_error}"
        )


class RetryCancelledError(Exception):
    """The cancellation signal fired before the operation succeeded."""

    def __init__(self, description: str, attempts: int, last_error: Optional[BaseException] = None):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{description}: cancelled after {attempts} attempts")


def is_permanent_error(exc: BaseException) -> bool:
    """Default classifier: only PermanentError subclasses are permanent."""
    return isinstance(exc, PermanentError)


# ==============================================================================
# POLICY
# ==============================================================================


@dataclass(frozen=True)
class BackoffPolicy:
    """
    One backoff profile: how long to keep trying and how far apart.

    Attributes:
        max_elapsed_time: Total wall-clock budget in seconds
        initial_interval: First retry interval in seconds
        max_interval: Cap for any single interval in seconds
        multiplier: Growth factor between intervals
        randomization_factor: Jitter, as a fraction of the current interval
    """

    max_elapsed_time: float
    initial_interval: float
    max_interval: float
    multiplier: float = 1.5
    randomization_factor: float = 0.5

    def __post_init__(self) -> None:
        if self.max_elapsed_time <= 0:
            raise ValueError("max_elapsed_time must be positive")
        if self.initial_interval <= 0 or self.max_interval <= 0:
            raise ValueError("retry intervals must be positive")
        if self.initial_interval > self.max_interval:
            raise ValueError("initial_interval must not exceed max_interval")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= self.randomization_factor < 1:
            raise ValueError("randomization_factor must be in [0, 1)")

    def delays(self, rng: Optional[random.Random] = None) -> Iterator[float]:
        """Yield the randomized wait before each successive retry, forever."""
        rng = rng or random.Random()
        interval = self.initial_interval
        while True:
            delta = self.randomization_factor * interval
            yield rng.uniform(interval - delta, interval + delta)
            interval = min(interval * self.multiplier, self.max_interval)

    # Call-site profiles. Config can override every value; these are the defaults.

    @classmethod
    def broker_read(cls) -> "BackoffPolicy":
        return cls(max_elapsed_time=30.0, initial_interval=1.0, max_interval=5.0)

    @classmethod
    def persist(cls) -> "BackoffPolicy":
        return cls(max_elapsed_time=10.0, initial_interval=0.5, max_interval=2.0)

    @classmethod
    def db_write(cls) -> "BackoffPolicy":
        return cls(max_elapsed_time=5.0, initial_interval=0.1, max_interval=1.0)

    @classmethod
    def db_read(cls) -> "BackoffPolicy":
        return cls(max_elapsed_time=3.0, initial_interval=0.1, max_interval=0.5)

    @classmethod
    def producer_send(cls) -> "BackoffPolicy":
        return cls(max_elapsed_time=15.0, initial_interval=0.5, max_interval=3.0)


# ==============================================================================
# OUTCOME
# ==============================================================================


class RetryStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PERMANENT = "permanent"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass
class RetryOutcome:
    """Result of run_with_backoff()."""

    status: RetryStatus
    description: str
    attempts: int
    elapsed: float
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.status is RetryStatus.SUCCEEDED

    def unwrap(self) -> Any:
        """
        Return the value, or raise the failure.

        Raises:
            The permanent error itself (unchanged) for PERMANENT
            RetryExhaustedError for EXHAUSTED, chained to the last error
            RetryCancelledError for CANCELLED
        """
        if self.status is RetryStatus.SUCCEEDED:
            return self.value
        if self.status is RetryStatus.PERMANENT:
            raise self.error
        if self.status is RetryStatus.EXHAUSTED:
            raise RetryExhaustedError(
                self.description, self.attempts, self.elapsed, self.error
            ) from self.error
        raise RetryCancelledError(self.description, self.attempts, self.error) from self.error


# ==============================================================================
# COMBINATOR
# ==============================================================================


def run_with_backoff(
    operation: Callable[[], T],
    policy: BackoffPolicy,
    *,
    is_permanent: Callable[[BaseException], bool] = is_permanent_error,
    description: str = "operation",
    logger: Optional[logging.Logger] = None,
    cancel_event: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], None]] = None,
    rng: Optional[random.Random] = None,
) -> RetryOutcome:
    """
    Invoke operation until it succeeds, fails permanently, runs out of budget
    or is cancelled.

    Args:
        operation: Nullary callable; each call is one full attempt
        policy: Backoff profile for this call site
        is_permanent: Classifier; True means do not retry
        description: Name of the operation, used in logs and errors
        logger: Logger for retry (WARNING) and failure (ERROR) records
        cancel_event: When set, waiting stops and the outcome is CANCELLED
        clock: Monotonic clock in seconds (injectable for tests)
        sleep: Wait function (injectable for tests); defaults to waiting on
            cancel_event, or time.sleep when there is no cancel_event
        rng: Random source for jitter

    Returns:
        RetryOutcome describing how the loop ended
    """
    log = logger or logging.getLogger(__name__)
    delays = policy.delays(rng)
    start = clock()
    attempts = 0
    last_error: Optional[BaseException] = None

    while True:
        if cancel_event is not None and cancel_event.is_set():
            return RetryOutcome(
                RetryStatus.CANCELLED, description, attempts, clock() - start, error=last_error
            )

        attempts += 1
        try:
            value = operation()
        except Exception as exc:
            last_error = exc
        else:
            return RetryOutcome(
                RetryStatus.SUCCEEDED, description, attempts, clock() - start, value=value
            )

        elapsed = clock() - start

        if is_permanent(last_error):
            log.error(
                "Permanent failure, not retrying",
                extra={
                    "operation": description,
                    "attempt": attempts,
                    "error_type": type(last_error).__name__,
                    "error": str(last_error),
                },
            )
            return RetryOutcome(
                RetryStatus.PERMANENT, description, attempts, elapsed, error=last_error
            )

        delay = next(delays)
        if elapsed + delay > policy.max_elapsed_time:
            log.error(
                "Retry budget exhausted",
                extra={
                    "operation": description,
                    "attempts": attempts,
                    "elapsed_s": round(elapsed, 3),
                    "max_elapsed_time_s": policy.max_elapsed_time,
                    "error_type": type(last_error).__name__,
                    "error": str(last_error),
                },
            )
            return RetryOutcome(
                RetryStatus.EXHAUSTED, description, attempts, elapsed, error=last_error
            )

        log.warning(
            "Retrying after transient failure",
            extra={
                "operation": description,
                "attempt": attempts,
                "delay_s": round(delay, 3),
                "error_type": type(last_error).__name__,
                "error": str(last_error),
            },
        )

        if _wait(delay, cancel_event, sleep):
            return RetryOutcome(
                RetryStatus.CANCELLED, description, attempts, clock() - start, error=last_error
            )


def retry_call(operation: Callable[[], T], policy: BackoffPolicy, **kwargs: Any) -> T:
    """
    Exception-raising form of run_with_backoff().

    Accepts the same keyword arguments. Returns the operation's value, or
    raises the permanent error, RetryExhaustedError or RetryCancelledError.
    """
    return run_with_backoff(operation, policy, **kwargs).unwrap()


def _wait(
    delay: float,
    cancel_event: Optional[threading.Event],
    sleep: Optional[Callable[[float], None]],
) -> bool:
    """Wait delay seconds. Returns True if cancellation fired."""
    if sleep is not None:
        sleep(delay)
        return cancel_event is not None and cancel_event.is_set()
    if cancel_event is not None:
        return cancel_event.wait(delay)
    time.sleep(delay)
    return False
