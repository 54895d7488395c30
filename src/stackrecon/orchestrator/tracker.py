"""Operation tracker that polls long-running CloudFormation operations to completion."""

import time
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from stackrecon.client.base import RemoteStackClient
from stackrecon.state.models import (
    DetectionStatus,
    DriftDetectionStatus,
    OperationHandle,
    OperationKind,
    StackStatus,
)
from stackrecon.utils.cancellation import CancellationToken
from stackrecon.utils.errors import (
    DivergenceError,
    ErrorContext,
    NotFoundError,
    OperationFailedError,
    OperationTimeoutError,
    ReconcileCancelledError,
)
from stackrecon.utils.logging import get_logger
from stackrecon.utils.retry import RetryStrategy

logger = get_logger(__name__)

Status = Union[StackStatus, DetectionStatus]

# Actions after which a vanished stack means the operation finished
VANISHING_ACTIONS = ('delete', 'settle')


@dataclass
class OperationResult:
    """Outcome of awaiting one operation."""

    handle: OperationHandle
    status: Status
    status_reason: Optional[str] = None
    polls: int = 0
    duration: float = 0.0  # seconds
    drift: Optional[DriftDetectionStatus] = None


class OperationTracker:
    """Polls an OperationHandle until it reaches a terminal status.

    Each poll that does not find a terminal status is followed by a wait that
    starts at ``poll_interval`` and grows by ``backoff_multiplier`` up to
    ``max_poll_interval``. Waits go through a CancellationToken, so a caller
    can abort them at any time. Transient errors on the status query itself
    are retried with their own bounded backoff and are never reported as an
    operation failure.
    """

    def __init__(
        self,
        client: RemoteStackClient,
        poll_interval: float = 5.0,
        max_poll_interval: float = 60.0,
        backoff_multiplier: float = 2.0,
        timeout: float = 3600.0,
        query_retries: int = 3,
        query_retry_base_delay: float = 1.0
    ):
        """Initialize operation tracker.

        Args:
            client: Remote stack client used for status queries
            poll_interval: Initial wait between polls in seconds
            max_poll_interval: Maximum wait between polls in seconds
            backoff_multiplier: Growth factor of the wait between polls
            timeout: Default deadline in seconds
            query_retries: Retries for transient status query failures
            query_retry_base_delay: First backoff for query retries in seconds
        """
        self.client = client
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self.backoff_multiplier = backoff_multiplier
        self.timeout = timeout
        self.query_retry = RetryStrategy(
            max_retries=query_retries,
            base_delay=query_retry_base_delay,
            max_delay=max_poll_interval
        )
        self.logger = get_logger(__name__)

    def await_operation(
        self,
        handle: OperationHandle,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> OperationResult:
        """Block until the operation reaches a terminal status.

        Args:
            handle: Operation to await
            poll_interval: Initial wait between polls, overrides the default
            timeout: Deadline in seconds, overrides the default
            cancel: Optional cancellation token

        Returns:
            OperationResult with the final status

        Raises:
            OperationFailedError: The provider reported a failure status
            OperationTimeoutError: The deadline passed first; the operation may
                still be running and the handle can be awaited again
            DivergenceError: The stack settled in a status that is neither
                expected nor a known failure
            ReconcileCancelledError: The cancellation token fired
            RemoteCallFailedError: Status queries kept failing
        """
        interval = poll_interval if poll_interval is not None else self.poll_interval
        timeout = timeout if timeout is not None else self.timeout
        cancel = cancel or CancellationToken()

        started = time.monotonic()
        deadline = started + timeout
        polls = 0
        status: Optional[Status] = None
        context = ErrorContext(stack_name=handle.stack_name, operation_id=handle.operation_id)

        self.logger.debug(
            f"Awaiting {handle.action} operation {handle.operation_id}",
            extra={'stack': handle.stack_name, 'operation': handle.action}
        )

        while True:
            if cancel.cancelled:
                raise self._cancelled(handle, cancel, context)

            status, reason, drift = self.query_retry.execute_with_retry(
                self._query, handle, cancel=cancel
            )
            polls += 1
            elapsed = time.monotonic() - started

            if handle.is_expected(status):
                self.logger.info(
                    f"{handle.action} reached {status.value} after {polls} poll(s) in {elapsed:.1f}s",
                    extra={'stack': handle.stack_name, 'operation': handle.action, 'duration': elapsed}
                )
                return OperationResult(
                    handle=handle,
                    status=status,
                    status_reason=reason,
                    polls=polls,
                    duration=elapsed,
                    drift=drift
                )

            if self._is_failure(handle, status):
                raise OperationFailedError(
                    f"{handle.action} failed with status {status.value}"
                    + (f": {reason}" if reason else ""),
                    status=status.value,
                    context=context
                )

            if self._is_settled(handle, status):
                raise DivergenceError(
                    f"{handle.action} ended in unexpected status {status.value}; expected one of "
                    f"{', '.join(sorted(handle.expected_terminal_statuses))}",
                    context=context
                )

            now = time.monotonic()
            if now >= deadline:
                raise OperationTimeoutError(
                    f"{handle.action} did not finish within {timeout:.0f}s "
                    f"(last status {status.value}); it may still be running",
                    last_status=status.value,
                    context=context
                )

            delay = min(
                interval * (self.backoff_multiplier ** (polls - 1)),
                self.max_poll_interval,
                deadline - now
            )
            self.logger.debug(
                f"{handle.action} is {status.value}, next poll in {delay:.1f}s",
                extra={'stack': handle.stack_name, 'operation': handle.action}
            )
            if cancel.wait(delay):
                raise self._cancelled(handle, cancel, context)

    def _query(self, handle: OperationHandle) -> Tuple[Status, Optional[str], Optional[DriftDetectionStatus]]:
        """Read the current status of the operation once."""
        if handle.kind == OperationKind.DRIFT_DETECTION:
            drift = self.client.describe_stack_drift_detection_status(handle.operation_id)
            return drift.detection_status, drift.reason, drift

        try:
            status, reason = self.client.get_stack_status(handle.stack_name, handle.stack_id)
        except NotFoundError:
            if handle.action in VANISHING_ACTIONS:
                return StackStatus.DELETE_COMPLETE, None, None
            raise
        return status, reason, None

    @staticmethod
    def _is_failure(handle: OperationHandle, status: Status) -> bool:
        if handle.kind == OperationKind.DRIFT_DETECTION:
            return status == DetectionStatus.DETECTION_FAILED
        return status.is_failure

    @staticmethod
    def _is_settled(handle: OperationHandle, status: Status) -> bool:
        if handle.kind == OperationKind.DRIFT_DETECTION:
            return status != DetectionStatus.DETECTION_IN_PROGRESS
        return not status.in_progress and status != StackStatus.UNKNOWN

    @staticmethod
    def _cancelled(handle: OperationHandle, cancel: CancellationToken,
                   context: ErrorContext) -> ReconcileCancelledError:
        return ReconcileCancelledError(
            f"Stopped waiting for {handle.action} ({cancel.reason}); "
            "the remote operation was not cancelled",
            mutation_submitted=handle.action in ('create', 'update', 'delete'),
            context=context
        )

