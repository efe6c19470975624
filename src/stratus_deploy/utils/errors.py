"""Error handling framework for template and provisioning operations."""

import logging
from typing import Optional, Dict, Any, List, Tuple
from enum import Enum
from dataclasses import asdict, dataclass
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError, PartialCredentialsError
from stratus_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during a run."""
    PARSE = "parse"
    REFERENCE = "reference"
    DEPENDENCY = "dependency"
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    STATE = "state"
    PROVIDER = "provider"
    CREDENTIAL = "credential"
    PERMISSION = "permission"
    NETWORK = "network"
    RESOURCE_LIMIT = "resource_limit"
    SKIPPED = "skipped"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot start or continue
    ERROR = "error"  # Node failed but independent branches continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize deployment error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []
        self.retryable = False

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for JSON logs and state diagnostics."""
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'retryable': self.retryable,
            'context': asdict(self.context),
            'cause': str(self.cause) if self.cause else None,
            'suggestions': list(self.suggestions),
        }


class ConfigurationError(DeploymentError):
    """Error in the engine configuration file or settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ParseError(DeploymentError):
    """Malformed or ambiguous template document."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.PARSE, **kwargs):
        super().__init__(
            message,
            category=category,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ReferenceError(ParseError):
    """Reference to an undefined node, parameter or attribute."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.REFERENCE, **kwargs)


class ValidationError(ParseError):
    """Parameter value rejected by its declared constraints."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.VALIDATION, **kwargs)


class CycleError(DeploymentError):
    """Reference cycle in the resource graph."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = list(cycle)
        super().__init__(
            f"Circular dependency detected: {' -> '.join(self.cycle)}",
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateError(DeploymentError):
    """Error related to state persistence."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ProviderError(DeploymentError):
    """Remote provider operation failed."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.PROVIDER,
        retryable: bool = False,
        **kwargs
    ):
        super().__init__(
            message,
            category=category,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )
        self.retryable = retryable


class SkippedDependencyFailure(DeploymentError):
    """Node not applied because a node it is ordered after failed."""

    def __init__(self, resource_id: str, failed_dependency: str, **kwargs):
        self.failed_dependency = failed_dependency
        super().__init__(
            f"Skipped '{resource_id}': '{failed_dependency}' did not apply",
            category=ErrorCategory.SKIPPED,
            severity=ErrorSeverity.INFO,
            context=ErrorContext(resource_id=resource_id),
            **kwargs
        )


# AWS error code -> (category, summary, suggestions)
AWS_ERROR_CODES: Dict[str, Tuple[ErrorCategory, str, Tuple[str, ...]]] = {
    'InvalidClientTokenId': (
        ErrorCategory.CREDENTIAL, 'AWS credentials are invalid',
        ('Check the active identity with: aws sts get-caller-identity',),
    ),
    'ExpiredToken': (
        ErrorCategory.CREDENTIAL, 'AWS session token has expired',
        ('Refresh the session and re-run; applied nodes are kept in state',),
    ),
    'AccessDenied': (
        ErrorCategory.PERMISSION, 'Access denied',
        ('Grant the deploying identity the action named in the message',),
    ),
    'AccessDeniedException': (
        ErrorCategory.PERMISSION, 'Access denied',
        ('Grant the deploying identity the action named in the message',),
    ),
    'UnauthorizedOperation': (
        ErrorCategory.PERMISSION, 'Operation not authorized',
        ('Grant the deploying identity the EC2 action named in the message',
         'Check that the project region is the intended one'),
    ),
    'VpcLimitExceeded': (
        ErrorCategory.RESOURCE_LIMIT, 'VPC quota reached for this region',
        ('Delete unused VPCs or request a quota increase',),
    ),
    'LimitExceeded': (
        ErrorCategory.RESOURCE_LIMIT, 'Service quota reached',
        ('Request a quota increase through Service Quotas',),
    ),
    'InstanceQuotaExceeded': (
        ErrorCategory.RESOURCE_LIMIT, 'RDS instance quota reached',
        ('Delete unused DB instances or request a quota increase',),
    ),
    'InsufficientDBInstanceCapacity': (
        ErrorCategory.RESOURCE_LIMIT, 'No capacity for the requested DB instance class',
        ('Choose another DBInstanceClass', 'Retry later or in another availability zone'),
    ),
    'DependencyViolation': (
        ErrorCategory.DEPENDENCY, 'Resource still has dependent objects',
        ('Look for resources created outside this stack that use it',),
    ),
    'InvalidAMIID.NotFound': (
        ErrorCategory.VALIDATION, 'AMI not found in this region',
        ('Check the image id or the SSM parameter it was resolved from',),
    ),
    'InvalidKeyPair.NotFound': (
        ErrorCategory.VALIDATION, 'EC2 key pair not found',
        ('Create the key pair or pass an existing KeyName parameter',),
    ),
    'ParameterNotFound': (
        ErrorCategory.VALIDATION, 'SSM parameter not found',
        ('Check the default of the SSM-typed template parameter',),
    ),
    'ValidationError': (
        ErrorCategory.VALIDATION, 'Request rejected by validation',
        ('Check the resource properties in the template',),
    ),
    'InvalidParameterValue': (
        ErrorCategory.VALIDATION, 'Invalid property value',
        ('Check the resource properties in the template',),
    ),
    'InvalidParameterCombination': (
        ErrorCategory.VALIDATION, 'Incompatible property values',
        ('Check the resource properties in the template',),
    ),
    'RequestTimeout': (
        ErrorCategory.NETWORK, 'Request timed out',
        ('Re-run the command; completed nodes are not re-applied',),
    ),
    'ServiceUnavailable': (
        ErrorCategory.NETWORK, 'AWS service temporarily unavailable',
        ('Re-run the command; completed nodes are not re-applied',),
    ),
    'InternalError': (
        ErrorCategory.NETWORK, 'AWS internal error',
        ('Re-run the command; completed nodes are not re-applied',),
    ),
}


class ErrorHandler:
    """Converts exceptions raised by provider calls into ProviderErrors."""

    def __init__(self):
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> DeploymentError:
        """Categorize an exception.

        Engine errors are returned unchanged. botocore errors are mapped by
        code; connection problems are retryable network errors; anything else
        is an unknown provider error wrapping the original.

        Args:
            error: The exception to handle
            context: Where the error occurred

        Returns:
            DeploymentError with category and suggestions
        """
        if isinstance(error, DeploymentError):
            return error

        context = context or ErrorContext()

        if isinstance(error, ClientError):
            return self._from_client_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return ProviderError(
                f"AWS credentials unavailable: {error}",
                category=ErrorCategory.CREDENTIAL,
                context=context,
                cause=error,
                suggestions=['Set a profile in stratus.yaml or pass --profile']
            )

        if isinstance(error, (ConnectionError, TimeoutError, EndpointConnectionError)):
            return ProviderError(
                f"Network error: {error}",
                category=ErrorCategory.NETWORK,
                retryable=True,
                context=context,
                cause=error,
                suggestions=['Re-run the command; completed nodes are not re-applied']
            )

        return ProviderError(
            str(error) or type(error).__name__,
            category=ErrorCategory.UNKNOWN,
            context=context,
            cause=error,
            suggestions=['Run with --log-level debug for the full traceback']
        )

    def _from_client_error(self, error: ClientError, context: ErrorContext) -> ProviderError:
        details = error.response.get('Error', {})
        code = details.get('Code', 'Unknown')
        message = details.get('Message', str(error))

        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = getattr(error, 'operation_name', None)

        if code not in AWS_ERROR_CODES:
            return ProviderError(
                f"AWS Error ({code}): {message}",
                context=context,
                cause=error,
                suggestions=[f"Look up the error code {code} for {context.aws_operation or 'this call'}"]
            )

        category, summary, suggestions = AWS_ERROR_CODES[code]
        return ProviderError(
            f"{summary}: {message}",
            category=category,
            retryable=category == ErrorCategory.NETWORK,
            context=context,
            cause=error,
            suggestions=list(suggestions)
        )

    def log_error(self, error: DeploymentError):
        """Log an error at the level matching its severity."""
        level = {
            ErrorSeverity.CRITICAL: logging.ERROR,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
        }.get(error.severity, logging.INFO)

        self.logger.log(level, error.to_user_message(), extra={'resource_id': error.context.resource_id})
        self.logger.debug(f"Error details: {error.to_dict()}")


error_handler = ErrorHandler()
