"""Error taxonomy for stage convergence operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass, asdict

import requests
from botocore.exceptions import (
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
)

from fleetstage.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur while converging a stage."""
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    INVALID_SPEC = "invalid_spec"
    QUOTA = "quota"
    TIMEOUT = "timeout"
    DNS = "dns"
    STATE = "state"
    CONTAINER = "container"
    CONFIRMATION = "confirmation"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Whole operation aborted
    ERROR = "error"  # Resource failed but siblings continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_key: Optional[str] = None
    provider: Optional[str] = None
    operation: Optional[str] = None
    stage: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class FleetError(Exception):
    """Base exception for convergence errors.

    The rendered message always carries the resource key (when known) and the
    backend's own message, never just a generic failure.
    """

    category = ErrorCategory.UNKNOWN
    severity = ErrorSeverity.ERROR
    retryable = False

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize error.

        Args:
            message: Human-readable error message (usually the backend detail)
            category: Error category, defaults to the class category
            severity: Error severity, defaults to the class severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        self.message = message
        if category is not None:
            self.category = category
        if severity is not None:
            self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []
        super().__init__(self.__str__())

    @property
    def resource_key(self) -> Optional[str]:
        return self.context.resource_key

    def __str__(self) -> str:
        if self.context.resource_key:
            return f"{self.context.resource_key}: {self.message}"
        return self.message

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_key:
            lines.append(f"   Resource: {self.context.resource_key}")
        if self.context.stage:
            lines.append(f"   Stage: {self.context.stage}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {self.cause}")

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
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': asdict(self.context),
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ProviderUnavailableError(FleetError):
    """Network or authentication failure reaching a backend."""
    category = ErrorCategory.PROVIDER_UNAVAILABLE
    retryable = True


class InvalidSpecError(FleetError):
    """Request rejected as malformed or unsupported. Never retried."""
    category = ErrorCategory.INVALID_SPEC
    severity = ErrorSeverity.CRITICAL


class QuotaExceededError(FleetError):
    """Backend refused the request because of account limits."""
    category = ErrorCategory.QUOTA


class ProvisionTimeoutError(FleetError):
    """A server did not reach its target power state in time."""
    category = ErrorCategory.TIMEOUT


class UnreachableTimeoutError(FleetError):
    """A running server never became reachable for remote commands."""
    category = ErrorCategory.TIMEOUT


class DnsConvergenceError(FleetError):
    """A single DNS record could not be converged."""
    category = ErrorCategory.DNS


class StateError(FleetError):
    """The state store could not be read or written."""
    category = ErrorCategory.STATE
    severity = ErrorSeverity.CRITICAL


class StateStoreLockedError(StateError):
    """Another invocation holds the state store lock."""


class ContainerLayerError(FleetError):
    """Failure passed through from the container orchestrator."""
    category = ErrorCategory.CONTAINER


class ConfirmationRequiredError(FleetError):
    """A destructive operation was requested without confirmation."""
    category = ErrorCategory.CONFIRMATION
    severity = ErrorSeverity.CRITICAL


class OperationCancelledError(FleetError):
    """A wait was aborted by user interrupt or overall command timeout."""
    category = ErrorCategory.CANCELLED
    severity = ErrorSeverity.CRITICAL


class ErrorHandler:
    """Maps backend exceptions onto the error taxonomy."""

    # EC2 error codes and the error kind they become
    AWS_ERROR_MAPPING = {
        'InstanceLimitExceeded': {
            'error_class': QuotaExceededError,
            'suggestions': [
                'Request an EC2 instance limit increase for the region',
                'Destroy unused servers in other stages',
            ]
        },
        'VcpuLimitExceeded': {
            'error_class': QuotaExceededError,
            'suggestions': [
                'Request a vCPU limit increase for the instance family',
                'Choose a smaller plan for this server',
            ]
        },
        'InsufficientInstanceCapacity': {
            'error_class': QuotaExceededError,
            'suggestions': [
                'Retry later or pick a different availability zone',
            ]
        },
        'InvalidParameterValue': {
            'error_class': InvalidSpecError,
            'suggestions': [
                'Check the plan and disk settings of this server',
            ]
        },
        'InvalidParameterCombination': {
            'error_class': InvalidSpecError,
            'suggestions': [
                'Check that the plan supports the requested disk and image',
            ]
        },
        'InvalidAMIID.NotFound': {
            'error_class': InvalidSpecError,
            'suggestions': [
                'Verify the disk archive / image_id exists in this region',
            ]
        },
        'InvalidAMIID.Malformed': {
            'error_class': InvalidSpecError,
            'suggestions': [
                'Image ids look like ami-0123456789abcdef0',
            ]
        },
        'InvalidKeyPair.NotFound': {
            'error_class': InvalidSpecError,
            'suggestions': [
                'Import the ssh key into EC2 or fix the key name',
            ]
        },
        'Unsupported': {
            'error_class': InvalidSpecError,
            'suggestions': [
                'The plan is not offered in this region or zone',
            ]
        },
        'AuthFailure': {
            'error_class': ProviderUnavailableError,
            'suggestions': [
                'Check that your AWS credentials are correctly configured',
                'Verify credentials using: aws sts get-caller-identity',
            ]
        },
        'UnauthorizedOperation': {
            'error_class': ProviderUnavailableError,
            'suggestions': [
                'Add the required EC2 permission for this operation',
            ]
        },
        'RequestLimitExceeded': {
            'error_class': ProviderUnavailableError,
            'suggestions': [
                'Wait a few moments and retry',
            ]
        },
        'Unavailable': {
            'error_class': ProviderUnavailableError,
            'suggestions': [
                'Wait a few moments and retry',
            ]
        },
        'InternalError': {
            'error_class': ProviderUnavailableError,
            'suggestions': [
                'Wait a few moments and retry',
            ]
        },
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> FleetError:
        """Handle an exception and convert to FleetError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            FleetError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, FleetError):
            for field_name in ('resource_key', 'provider', 'operation', 'stage'):
                if getattr(error.context, field_name) is None:
                    setattr(error.context, field_name, getattr(context, field_name))
            if error.context.additional_info is None:
                error.context.additional_info = context.additional_info
            error.args = (str(error),)
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return ProviderUnavailableError(
                f"credentials unavailable: {error}",
                context=context,
                cause=error,
                suggestions=[
                    'Configure credentials for this provider',
                    'Check the environment variables the provider reads',
                ]
            )

        if isinstance(error, (requests.ConnectionError, requests.Timeout,
                              EndpointConnectionError, ConnectionError, TimeoutError)):
            return ProviderUnavailableError(
                f"network error: {error}",
                context=context,
                cause=error,
                suggestions=['Check your network connectivity and retry']
            )

        return FleetError(
            message=str(error) or type(error).__name__,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(self, error: ClientError, context: ErrorContext) -> FleetError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized FleetError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

        info = dict(context.additional_info or {})
        info['request_id'] = request_id
        info['error_code'] = error_code
        context.additional_info = info

        error_info = self.AWS_ERROR_MAPPING.get(error_code)
        if error_info:
            return error_info['error_class'](
                f"{error_code}: {error_message}",
                context=context,
                cause=error,
                suggestions=list(error_info['suggestions'])
            )

        return FleetError(
            message=f"AWS error ({error_code}): {error_message}",
            context=context,
            cause=error,
            suggestions=[f'AWS Request ID: {request_id}']
        )

    def log_error(self, error: FleetError):
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
