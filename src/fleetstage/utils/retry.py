"""Retry strategy and bounded polling with exponential backoff."""

import time
import random
import threading
from dataclasses import dataclass
from typing import Callable, TypeVar, Optional, Type
from functools import wraps

import requests
from botocore.exceptions import ClientError

from fleetstage.utils.errors import (
    ErrorContext,
    FleetError,
    OperationCancelledError,
    ProvisionTimeoutError,
)
from fleetstage.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements exponential backoff retry strategy for transient errors."""

    # AWS error codes that should trigger a retry
    RETRYABLE_ERROR_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'Unavailable',
        'Throttling',
        'RequestLimitExceeded',
        'InternalError',
        'InternalFailure',
    }

    # Network-related exceptions that should trigger a retry
    RETRYABLE_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
        requests.ConnectionError,
        requests.Timeout,
    )

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is retryable and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False

        if isinstance(error, FleetError):
            return error.retryable

        if isinstance(error, self.RETRYABLE_EXCEPTIONS):
            return True

        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', '')
            return error_code in self.RETRYABLE_ERROR_CODES

        return False

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Random value between 0 and 10% of delay
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            The last exception if all retries are exhausted
        """
        attempt = 0
        while True:
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")
                return result
            except Exception as e:
                if not self.should_retry(e, attempt):
                    logger.debug(f"Error is not retryable or max retries exceeded: {e}")
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: "
                    f"{self._get_error_info(e)}. Retrying in {delay:.2f}s..."
                )
                time.sleep(delay)
                attempt += 1

    def _get_error_info(self, error: Exception) -> str:
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            error_message = error.response.get('Error', {}).get('Message', str(error))
            return f"{error_code}: {error_message}"

        return f"{type(error).__name__}: {error}"


def with_retry(
    max_retries: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True
):
    """Decorator to add retry logic to a function.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds for first retry
        max_delay: Maximum delay in seconds between retries
        exponential_base: Base for exponential backoff calculation
        jitter: Whether to add random jitter to delay

    Returns:
        Decorated function with retry logic

    Example:
        @with_retry(max_retries=3, base_delay=2.0)
        def describe(client, instance_id):
            return client.describe_instances(InstanceIds=[instance_id])
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            strategy = RetryStrategy(
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter
            )
            return strategy.execute_with_retry(func, *args, **kwargs)

        return wrapper

    return decorator


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded exponential backoff for poll loops.

    The loop stops at whichever comes first: ``timeout`` seconds elapsed or
    ``max_attempts`` checks performed.
    """
    initial_delay: float = 2.0
    multiplier: float = 1.5
    max_delay: float = 15.0
    timeout: float = 600.0
    max_attempts: Optional[int] = None

    def delays(self):
        """Yield successive sleep intervals, capped at ``max_delay``."""
        delay = self.initial_delay
        while True:
            yield min(delay, self.max_delay)
            delay = min(delay * self.multiplier, self.max_delay)

    def with_timeout(self, timeout: float) -> 'BackoffPolicy':
        return BackoffPolicy(
            initial_delay=self.initial_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
            timeout=timeout,
            max_attempts=self.max_attempts,
        )


def poll_until(
    check: Callable[[], Optional[T]],
    policy: BackoffPolicy,
    description: str,
    timeout_error: Type[FleetError] = ProvisionTimeoutError,
    context: Optional[ErrorContext] = None,
    cancel_event: Optional[threading.Event] = None,
) -> T:
    """Call ``check`` until it returns a truthy value.

    Shared by server power-state polling and reachability polling.

    Args:
        check: Callable returning a truthy value when the wait is over
        policy: Backoff and deadline for the loop
        description: What is being waited for, used in logs and errors
        timeout_error: Error kind raised when the policy is exhausted
        context: Error context attached to raised errors
        cancel_event: When set, the loop aborts at its next step

    Returns:
        The first truthy value returned by ``check``

    Raises:
        timeout_error: If the deadline or attempt limit is reached
        OperationCancelledError: If ``cancel_event`` is set while waiting
    """
    waiter = cancel_event or threading.Event()
    deadline = time.monotonic() + policy.timeout
    attempts = 0
    delays = policy.delays()

    while True:
        if waiter.is_set():
            raise OperationCancelledError(
                f"cancelled while waiting for {description}", context=context
            )

        attempts += 1
        result = check()
        if result:
            logger.debug(f"{description}: done after {attempts} checks")
            return result

        remaining = deadline - time.monotonic()
        if remaining <= 0 or (policy.max_attempts is not None and attempts >= policy.max_attempts):
            raise timeout_error(
                f"timed out after {policy.timeout:g}s ({attempts} checks) waiting for {description}",
                context=context,
            )

        if waiter.wait(min(next(delays), remaining)):
            raise OperationCancelledError(
                f"cancelled while waiting for {description}", context=context
            )
