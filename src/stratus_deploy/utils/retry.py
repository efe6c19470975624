"""Backoff for provider calls that fail transiently.

AWS reports two kinds of transient failure while a stack converges: throttling
and service hiccups, and eventual-consistency errors raised while a resource
is still settling (a VPC whose network interfaces are being released, an EFS
file system whose mount targets are still deleting). Both are retried here;
everything else propagates on the first attempt.
"""

import itertools
import random
import time
from typing import Callable, Optional, TypeVar

from botocore.exceptions import ClientError
from stratus_deploy.utils.errors import DeploymentError
from stratus_deploy.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

THROTTLING_CODES = frozenset({
    'Throttling',
    'ThrottlingException',
    'RequestThrottled',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'RequestTimeout',
    'ServiceUnavailable',
    'InternalError',
    'InternalFailure',
})

SETTLING_CODES = frozenset({
    'DependencyViolation',
    'IncorrectState',
    'IncorrectFileSystemLifeCycleState',
    'FileSystemInUse',
    'InvalidDBInstanceState',
    'ResourceInUse',
})


def error_code(error: Exception) -> Optional[str]:
    """Return the AWS error code of a ClientError, or None."""
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code')
    return None


def describe_error(error: Exception) -> str:
    code = error_code(error)
    if code:
        return f"{code}: {error.response.get('Error', {}).get('Message', error)}"
    return f"{type(error).__name__}: {error}"


class RetryStrategy:
    """Exponential backoff with jitter around a single provider call."""

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Retries after the first attempt
            base_delay: Delay in seconds before the first retry
            max_delay: Upper bound for a single delay
            exponential_base: Growth factor between retries
            jitter: Add up to 10% random delay
            sleep: Function used to wait between attempts
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep

    def is_transient(self, error: Exception) -> bool:
        """Check whether an error is worth another attempt."""
        if isinstance(error, (ConnectionError, TimeoutError)):
            return True
        if isinstance(error, DeploymentError):
            return getattr(error, 'retryable', False)
        code = error_code(error)
        return code in THROTTLING_CODES or code in SETTLING_CODES

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Check whether to retry after the given 0-indexed attempt failed."""
        return attempt < self.max_retries and self.is_transient(error)

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds before the retry that follows ``attempt``."""
        delay = min(self.base_delay * self.exponential_base ** attempt, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay

    def execute_with_retry(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Call ``func`` until it succeeds or fails permanently.

        Returns:
            Result of the function call

        Raises:
            The last exception once it is permanent or retries are exhausted
        """
        for attempt in itertools.count():
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e, attempt):
                    raise
                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed ({describe_error(e)}); "
                    f"retrying in {delay:.2f}s"
                )
                self.sleep(delay)
                continue

            if attempt:
                logger.info(f"Succeeded after {attempt} retries")
            return result
