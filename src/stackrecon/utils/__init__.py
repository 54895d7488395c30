"""Utility modules for logging, errors, retries, cancellation and AWS sessions."""

from stackrecon.utils.aws_client import AWSClientManager
from stackrecon.utils.cancellation import CancellationToken
from stackrecon.utils.retry import RetryStrategy
from stackrecon.utils.errors import (
    ErrorKind,
    ErrorSeverity,
    ErrorContext,
    ReconcileError,
    NotFoundError,
    InvalidTemplateError,
    InvalidRequestError,
    RemoteCallFailedError,
    OperationFailedError,
    OperationTimeoutError,
    DivergenceError,
    DriftUnresolvedError,
    AlreadyInProgressError,
    ReconcileCancelledError,
    ConfigurationError,
    ErrorHandler,
    error_handler
)
from stackrecon.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # AWS Client
    'AWSClientManager',

    # Cancellation and retry
    'CancellationToken',
    'RetryStrategy',

    # Errors
    'ErrorKind',
    'ErrorSeverity',
    'ErrorContext',
    'ReconcileError',
    'NotFoundError',
    'InvalidTemplateError',
    'InvalidRequestError',
    'RemoteCallFailedError',
    'OperationFailedError',
    'OperationTimeoutError',
    'DivergenceError',
    'DriftUnresolvedError',
    'AlreadyInProgressError',
    'ReconcileCancelledError',
    'ConfigurationError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
