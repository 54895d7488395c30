"""Backoff retries for read-only CloudFormation calls.

Only describe/list/validate calls and tracker polls go through here.
Mutations are submitted exactly once.
"""

import random
from typing import Callable, Optional, TypeVar

from botocore.exceptions import ClientError

from stackrecon.utils.cancellation import CancellationToken
from stackrecon.utils.errors import ErrorHandler, ReconcileCancelledError, RemoteCallFailedError
from stackrecon.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Capped exponential backoff for transient read failures."""

    # Plain network failures raised outside botocore
    NETWORK_EXCEPTIONS = (ConnectionError, TimeoutError)

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Retries after the first attempt
            base_delay: Wait before the first retry (seconds)
            max_delay: Upper bound for any single wait (seconds)
            exponential_base: Growth factor between consecutive waits
            jitter: Add up to 10% random delay so parallel stacks spread out
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Whether ``error`` from attempt number ``attempt`` (0-based) is worth another try."""
        if attempt >= self.max_retries:
            return False
        if isinstance(error, RemoteCallFailedError):
            return error.transient
        if isinstance(error, ClientError):
            return ErrorHandler.error_code(error) in ErrorHandler.TRANSIENT_ERROR_CODES
        return isinstance(error, self.NETWORK_EXCEPTIONS)

    def get_delay(self, attempt: int) -> float:
        """Seconds to wait after the failed attempt number ``attempt`` (0-based)."""
        delay = min(self.base_delay * self.exponential_base ** attempt, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        cancel: Optional[CancellationToken] = None,
        **kwargs
    ) -> T:
        """Call ``func(*args, **kwargs)``, retrying transient failures.

        Args:
            func: Read-only call to make
            cancel: Token that interrupts the wait between attempts

        Returns:
            Whatever ``func`` returns

        Raises:
            ReconcileCancelledError: The token fired while waiting to retry
            Exception: The last error, once it is permanent or retries ran out
        """
        cancel = cancel or CancellationToken()

        for attempt in range(self.max_retries + 1):
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e, attempt):
                    if attempt and attempt >= self.max_retries:
                        logger.error(f"Giving up after {attempt + 1} attempts: {self._describe(e)}")
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed ({self._describe(e)}); "
                    f"retrying in {delay:.2f}s"
                )
                if cancel.wait(delay):
                    raise ReconcileCancelledError(f"Retry aborted: {cancel.reason}", cause=e) from e
                continue

            if attempt:
                logger.info(f"Call succeeded on attempt {attempt + 1}")
            return result

    @staticmethod
    def _describe(error: Exception) -> str:
        if isinstance(error, ClientError):
            return f"{ErrorHandler.error_code(error)}: {ErrorHandler.error_message(error)}"
        return f"{type(error).__name__}: {error}"
