"""
Retry of managed transactions with exponential backoff.

A transaction function runs inside a :class:`ManagedTransaction`. If the
function or the commit fails with a retryable error (transient server
errors, lost connections), the transaction is rolled back and the
function is invoked again on a fresh transaction after a backoff delay.
Non-retryable errors propagate immediately. When the retry budget runs
out, :class:`~graphtx.exceptions.RetriesExhaustedError` carries every
error seen.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, TypeVar

from .config import AccessMode, TransactionConfig
from .exceptions import ResultLeakError, RetriesExhaustedError, is_retryable_error
from .result import Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Retry configuration with exponential backoff.

    Attributes:
        max_retry_time: Seconds after the first attempt during which retries
            may start
        retry_delay: Delay before the first retry in seconds
        backoff_multiplier: Multiplier for exponential backoff
        max_delay: Maximum delay between retries (caps exponential growth)
        jitter: Random jitter as a fraction of the delay, applied in both
            directions (0.0-1.0)
        max_retries: Optional cap on the number of retries

    Example:
        >>> policy = RetryPolicy(max_retry_time=10, retry_delay=0.5, jitter=0)
        >>> [policy.get_delay(n) for n in range(3)]
        [0.5, 1.0, 2.0]
    """

    max_retry_time: float = 30.0
    retry_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.2
    max_retries: Optional[int] = None

    def is_retryable(self, error: BaseException) -> bool:
        return is_retryable_error(error)

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay for a given retry attempt.

        Args:
            attempt: Retry number (0-indexed)

        Returns:
            Delay in seconds, capped at max_delay before jitter
        """
        delay = self.retry_delay * (self.backoff_multiplier**attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            delay += delay * self.jitter * random.uniform(-1.0, 1.0)

        return max(delay, 0.0)


@dataclass
class RetryContext:
    """
    Retry state of one managed transaction.

    Attributes:
        attempt: Number of times the transaction function was invoked
        errors: Retryable errors seen so far, oldest first
        elapsed: Seconds since the first attempt started
        next_delay: Backoff before the upcoming retry
        total_delay: Total time spent in backoff delays
    """

    attempt: int = 0
    errors: List[BaseException] = field(default_factory=list)
    elapsed: float = 0.0
    next_delay: float = 0.0
    total_delay: float = 0.0

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.errors[-1] if self.errors else None


class TransactionRunner:
    """
    Runs transaction functions with retry.

    Args:
        session: Session whose connection pool, bookmarks and options the
            managed transactions use
        policy: Retry configuration
        sleep: Backoff sleep function
        clock: Monotonic clock used for the retry budget
        on_retry: Optional callback called before each retry with
            ``(error, attempt, delay)``

    Example:
        >>> runner = TransactionRunner(session, RetryPolicy())
        >>> runner.run(AccessMode.WRITE, lambda tx: tx.run("CREATE ()").consume())
    """

    def __init__(
        self,
        session: Any,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
    ):
        self.policy = policy or RetryPolicy()
        self.context = RetryContext()
        self._session = session
        self._sleep = sleep
        self._clock = clock
        self._on_retry = on_retry

    def run(
        self,
        access_mode: AccessMode,
        work: Callable[..., T],
        *args: Any,
        config: Optional[TransactionConfig] = None,
        **kwargs: Any,
    ) -> T:
        """
        Invoke ``work(tx, *args, **kwargs)`` until it commits.

        Options attached with :func:`~graphtx.query.unit_of_work` are used
        unless ``config`` is given.

        Returns:
            Whatever ``work`` returned from its committed attempt

        Raises:
            RetriesExhaustedError: If retryable failures outlast the budget
            Exception: Any non-retryable error, after rollback
        """
        if config is None:
            config = getattr(work, "transaction_config", None)
            if not isinstance(config, TransactionConfig):
                config = None

        self.context = context = RetryContext()
        start = self._clock()

        while True:
            context.attempt += 1
            try:
                return self._attempt(access_mode, config, work, args, kwargs)
            except Exception as e:
                if not self.policy.is_retryable(e):
                    logger.debug(f"Non-retryable error: {type(e).__name__}")
                    raise
                context.errors.append(e)

            context.elapsed = self._clock() - start
            out_of_time = context.elapsed >= self.policy.max_retry_time
            out_of_retries = (
                self.policy.max_retries is not None
                and context.attempt > self.policy.max_retries
            )
            if out_of_time or out_of_retries:
                logger.debug(
                    f"Retry exhausted after {context.attempt} attempts: "
                    f"{type(context.last_error).__name__}"
                )
                raise RetriesExhaustedError(
                    context.errors, context.attempt, context.elapsed
                ) from context.last_error

            delay = self.policy.get_delay(context.attempt - 1)
            context.next_delay = delay
            context.total_delay += delay
            logger.warning(
                f"Transaction failed and will be retried in {delay:.2f}s "
                f"(attempt {context.attempt}): "
                f"{type(context.last_error).__name__}: {context.last_error}"
            )
            if self._on_retry:
                self._on_retry(context.last_error, context.attempt, delay)
            self._sleep(delay)

    def _attempt(self, access_mode, config, work, args, kwargs):
        tx = self._session._begin_managed(access_mode, config)
        try:
            value = work(tx, *args, **kwargs)
            if isinstance(value, Result):
                raise ResultLeakError(
                    value,
                    "Transaction functions must not return a Result; "
                    "return its records or summary instead",
                )
            tx._commit()
        except BaseException as e:
            tx._close_on_error(e)
            raise
        return value


__all__ = ["RetryPolicy", "RetryContext", "TransactionRunner"]
