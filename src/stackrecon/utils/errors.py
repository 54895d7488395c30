"""Error handling framework for reconciliation operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass, field
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from stackrecon.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorKind(Enum):
    """Taxonomy of errors surfaced by the reconciliation core."""
    NOT_FOUND = "not_found"
    INVALID_TEMPLATE = "invalid_template"
    INVALID_REQUEST = "invalid_request"
    REMOTE_CALL_FAILED = "remote_call_failed"
    OPERATION_FAILED = "operation_failed"
    TIMEOUT = "timeout"
    DIVERGENCE = "divergence"
    DRIFT_UNRESOLVED = "drift_unresolved"
    ALREADY_IN_PROGRESS = "already_in_progress"
    CANCELLED = "cancelled"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Stack may be left in an unknown state
    ERROR = "error"  # Reconciliation failed, remote state is known
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    stack_identity: Optional[str] = None
    stack_name: Optional[str] = None
    phase: Optional[str] = None
    step: Optional[str] = None
    operation_id: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Dict[str, Any] = field(default_factory=dict)


class ReconcileError(Exception):
    """Base exception for reconciliation errors."""

    kind = ErrorKind.UNKNOWN
    severity = ErrorSeverity.ERROR

    # True when a submitted mutation may still be running or in an unverified state
    state_unknown = False

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize reconciliation error.

        Args:
            message: Human-readable error message
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def __str__(self) -> str:
        parts = [f"[{self.kind.value}]"]
        if self.context.stack_identity or self.context.stack_name:
            parts.append(f"stack={self.context.stack_identity or self.context.stack_name}")
        if self.context.step:
            parts.append(f"step={self.context.step}")
        parts.append(self.message)
        return " ".join(parts)

    def with_context(self, **fields: Any) -> "ReconcileError":
        """Fill in context fields that are not already set.

        Returns:
            Self, so the call can be used inline with ``raise``
        """
        for name, value in fields.items():
            if value is not None and getattr(self.context, name, None) is None:
                setattr(self.context, name, value)
        return self

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()} ({self.kind.value}): {self.message}"]

        if self.context.stack_identity or self.context.stack_name:
            lines.append(f"   Stack: {self.context.stack_identity or self.context.stack_name}")
        if self.context.phase:
            lines.append(f"   Phase: {self.context.phase}")
        if self.context.step:
            lines.append(f"   Step: {self.context.step}")
        if self.context.operation_id:
            lines.append(f"   Operation: {self.context.operation_id}")

        if self.state_unknown:
            lines.append("   The stack may still be changing; check its status before retrying.")

        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        reasons = self.context.additional_info.get('failure_reasons')
        if reasons:
            lines.append("   Failed resources:")
            for reason in reasons:
                lines.append(f"     - {reason}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'message': self.message,
            'kind': self.kind.value,
            'severity': self.severity.value,
            'state_unknown': self.state_unknown,
            'context': {
                'stack_identity': self.context.stack_identity,
                'stack_name': self.context.stack_name,
                'phase': self.context.phase,
                'step': self.context.step,
                'operation_id': self.context.operation_id,
                'aws_operation': self.context.aws_operation,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class NotFoundError(ReconcileError):
    """Stack does not exist."""
    kind = ErrorKind.NOT_FOUND


class InvalidTemplateError(ReconcileError):
    """Template missing or rejected by the provider."""
    kind = ErrorKind.INVALID_TEMPLATE


class InvalidRequestError(ReconcileError):
    """Request rejected locally before reaching the provider."""
    kind = ErrorKind.INVALID_REQUEST


class RemoteCallFailedError(ReconcileError):
    """Transport or provider error on a single call."""
    kind = ErrorKind.REMOTE_CALL_FAILED

    def __init__(self, message: str, transient: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.transient = transient


class OperationFailedError(ReconcileError):
    """Provider reported a terminal failure status for an operation."""
    kind = ErrorKind.OPERATION_FAILED

    def __init__(self, message: str, status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status


class OperationTimeoutError(ReconcileError):
    """Deadline passed before the operation reached a terminal status."""
    kind = ErrorKind.TIMEOUT
    severity = ErrorSeverity.CRITICAL
    state_unknown = True

    def __init__(self, message: str, last_status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.last_status = last_status


class DivergenceError(ReconcileError):
    """Post-operation verification does not match the expected state."""
    kind = ErrorKind.DIVERGENCE
    severity = ErrorSeverity.CRITICAL
    state_unknown = True

    def __init__(self, message: str, state_unknown: bool = True, **kwargs):
        super().__init__(message, **kwargs)
        self.state_unknown = state_unknown
        if not state_unknown:
            self.severity = ErrorSeverity.ERROR


class DriftUnresolvedError(ReconcileError):
    """Drift status of a stack could not be established before planning."""
    kind = ErrorKind.DRIFT_UNRESOLVED


class AlreadyInProgressError(ReconcileError):
    """Another reconciliation for the same stack is in flight."""
    kind = ErrorKind.ALREADY_IN_PROGRESS
    severity = ErrorSeverity.WARNING


class ReconcileCancelledError(ReconcileError):
    """Local waiting was aborted by a cancellation signal or deadline."""
    kind = ErrorKind.CANCELLED
    severity = ErrorSeverity.WARNING

    def __init__(self, message: str, mutation_submitted: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.mutation_submitted = mutation_submitted

    @property
    def state_unknown(self) -> bool:
        return self.mutation_submitted


class ConfigurationError(ReconcileError):
    """Error in configuration file or settings."""
    kind = ErrorKind.CONFIGURATION
    severity = ErrorSeverity.CRITICAL


class ErrorHandler:
    """Translates botocore and network errors into the reconciliation taxonomy."""

    # Provider error codes that are worth retrying on read-only calls
    TRANSIENT_ERROR_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'Throttling',
        'ThrottlingException',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'RequestThrottled',
        'InternalError',
        'InternalFailure',
        'ServiceException',
    }

    SUGGESTIONS = {
        'AccessDenied': [
            'Check IAM policies attached to your user/role',
            'Verify you have cloudformation permissions for this operation',
        ],
        'InsufficientCapabilitiesException': [
            'Add the required capability (e.g. CAPABILITY_IAM) to the stack declaration',
        ],
        'AlreadyExistsException': [
            'A stack with this name already exists; reconcile again to re-read its state',
        ],
        'LimitExceededException': [
            'Request a service limit increase or delete unused stacks',
        ],
        'Throttling': [
            'Reduce the number of stacks reconciled in parallel',
        ],
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    @staticmethod
    def error_code(error: ClientError) -> str:
        return error.response.get('Error', {}).get('Code', 'Unknown')

    @staticmethod
    def error_message(error: ClientError) -> str:
        return error.response.get('Error', {}).get('Message', str(error))

    def is_not_found(self, error: ClientError) -> bool:
        """Check whether a ClientError means the stack does not exist."""
        code = self.error_code(error)
        return code in ('ValidationError', 'StackNotFoundException') and \
            'does not exist' in self.error_message(error)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> ReconcileError:
        """Handle an exception and convert to ReconcileError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            ReconcileError of the matching kind
        """
        context = context or ErrorContext()

        if isinstance(error, ReconcileError):
            return error.with_context(**{
                key: value for key, value in vars(context).items()
                if key != 'additional_info'
            })

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError,
                              ConnectionError, TimeoutError)):
            return RemoteCallFailedError(
                f'Network error: {error}',
                transient=True,
                context=context,
                cause=error,
                suggestions=[
                    'Check your network connectivity',
                    'Verify the CloudFormation endpoint is reachable from this host',
                ]
            )

        if isinstance(error, BotoCoreError):
            return RemoteCallFailedError(
                f'AWS client error: {error}',
                context=context,
                cause=error
            )

        return ReconcileError(
            message=str(error),
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> ReconcileError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized ReconcileError
        """
        error_code = self.error_code(error)
        error_message = self.error_message(error)
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = context.aws_operation or getattr(error, 'operation_name', None)

        if self.is_not_found(error):
            return NotFoundError(
                error_message,
                context=context,
                cause=error
            )

        return RemoteCallFailedError(
            f"AWS Error ({error_code}): {error_message}",
            transient=error_code in self.TRANSIENT_ERROR_CODES,
            context=context,
            cause=error,
            suggestions=self.SUGGESTIONS.get(error_code, [])
        )

    def log_error(self, error: ReconcileError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
