"""Utility modules for logging, errors, retries and AWS client management."""

from fleetstage.utils.aws_client import AWSClientManager, AssumeRoleConfig
from fleetstage.utils.retry import RetryStrategy, with_retry, BackoffPolicy, poll_until
from fleetstage.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    FleetError,
    ProviderUnavailableError,
    InvalidSpecError,
    QuotaExceededError,
    ProvisionTimeoutError,
    UnreachableTimeoutError,
    DnsConvergenceError,
    StateError,
    StateStoreLockedError,
    ContainerLayerError,
    ConfirmationRequiredError,
    OperationCancelledError,
    ErrorHandler,
    error_handler
)
from fleetstage.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AssumeRoleConfig',

    # Retry
    'RetryStrategy',
    'with_retry',
    'BackoffPolicy',
    'poll_until',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'FleetError',
    'ProviderUnavailableError',
    'InvalidSpecError',
    'QuotaExceededError',
    'ProvisionTimeoutError',
    'UnreachableTimeoutError',
    'DnsConvergenceError',
    'StateError',
    'StateStoreLockedError',
    'ContainerLayerError',
    'ConfirmationRequiredError',
    'OperationCancelledError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
