"""Error taxonomy, circuit breaker and retry logic."""
import time
import asyncio
from typing import Callable, Deque, Optional, Type, Tuple
from collections import deque
from functools import wraps
from enum import Enum
from loguru import logger


class DexArbError(Exception):
    """Base class for all dexarb errors."""
    pass


class TransientFetchError(DexArbError):
    """Network or timeout failure fetching a quote. Retried on the next tick."""
    pass


class RateLimitExceeded(DexArbError):
    """No rate limiter permit was available. The current fetch is skipped."""
    pass


class NoActiveVenues(DexArbError):
    """Monitoring was started with no active venue."""
    pass


class NoProviderForToken(DexArbError):
    """No funding provider supports the requested token."""
    pass


class ExecutionFailure(DexArbError):
    """
    Settlement or pre-settlement checks failed for an opportunity.

    Only retryable failures (settlement rejected or errored) are eligible for
    the retry policy and count towards the circuit breaker.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class StaleResponse(DexArbError):
    """Offloaded result belongs to an epoch that is no longer current."""
    pass


class OffloadTimeout(TransientFetchError):
    """Offloaded computation did not answer in time."""
    pass


class OffloadError(DexArbError):
    """The worker answered with an error or is unavailable."""
    pass


class OpportunityNotFound(DexArbError):
    """No opportunity exists with the given id."""
    pass


class AlreadyTerminal(DexArbError):
    """The opportunity already completed or failed."""
    pass


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """Circuit breaker over consecutive failures inside a rolling window."""

    def __init__(
        self,
        failure_threshold: int = 5,
        window: float = 300.0,
        recovery_timeout: Optional[float] = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening the circuit
            window: Only failures within this many seconds count towards the threshold
            recovery_timeout: Seconds before a trial call is allowed; None keeps the
                circuit open until reset() is called
            name: Circuit breaker name for logging
            clock: Monotonic time source
        """
        self.failure_threshold = failure_threshold
        self.window = window
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._clock = clock

        self.failures: Deque[float] = deque()
        self.opened_at: Optional[float] = None
        self.state = CircuitState.CLOSED

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def is_open(self) -> bool:
        """True while calls must be rejected."""
        if self.state != CircuitState.OPEN:
            return False
        if self._should_attempt_reset():
            self.state = CircuitState.HALF_OPEN
            logger.info(f"Circuit breaker '{self.name}' entering HALF_OPEN state")
            return False
        return True

    def _should_attempt_reset(self) -> bool:
        if self.recovery_timeout is None or self.opened_at is None:
            return False
        return self._clock() - self.opened_at >= self.recovery_timeout

    def record_success(self):
        """A success breaks the run of consecutive failures."""
        if self.state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit breaker '{self.name}' recovered, closing circuit")
            self.state = CircuitState.CLOSED
            self.opened_at = None

        self.failures.clear()

    def record_failure(self):
        now = self._clock()
        self.failures.append(now)

        while self.failures and self.failures[0] < now - self.window:
            self.failures.popleft()

        if self.state == CircuitState.HALF_OPEN or len(self.failures) >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.error(
                    f"Circuit breaker '{self.name}' opened after "
                    f"{len(self.failures)} consecutive failures"
                )
            self.state = CircuitState.OPEN
            self.opened_at = now

    def reset(self):
        """Manually reset circuit breaker."""
        self.failures.clear()
        self.opened_at = None
        self.state = CircuitState.CLOSED
        logger.info(f"Circuit breaker '{self.name}' manually reset")

    def get_state(self) -> dict:
        """Get current circuit breaker state."""
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            'opened_at': self.opened_at,
        }


def async_retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
):
    """
    Decorator for retrying async function with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        backoff_factor: Multiplier for delay after each retry
        max_delay: Maximum delay between retries
        exceptions: Tuple of exceptions to catch and retry
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} retries: {e}"
                        )
                        raise

                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}), "
                        f"retrying in {delay:.2f}s: {e}"
                    )

                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


def backoff_delay(attempt: int, initial_delay: float, backoff_factor: float = 2.0,
                  max_delay: float = 300.0) -> float:
    """Delay before retry number `attempt` (1-based)."""
    return min(initial_delay * backoff_factor ** (attempt - 1), max_delay)


class ErrorHandler:
    """Per-instance error accounting."""

    def __init__(self):
        self.error_counts: dict[str, int] = {}

    def record_error(self, error: Exception | str):
        """Record an error occurrence by type name."""
        error_type = error if isinstance(error, str) else type(error).__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_stats(self) -> dict:
        """Get error statistics."""
        return {
            'total_errors': sum(self.error_counts.values()),
            'error_types': self.error_counts.copy(),
        }

    def reset(self):
        self.error_counts.clear()
