"""Utility modules for logging, AWS client management, and helpers."""

from stratus_deploy.utils.aws_client import AWSClientManager
from stratus_deploy.utils.retry import RetryStrategy
from stratus_deploy.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    DeploymentError,
    ConfigurationError,
    ParseError,
    ReferenceError,
    ValidationError,
    CycleError,
    StateError,
    ProviderError,
    SkippedDependencyFailure,
    ErrorHandler,
    error_handler
)
from stratus_deploy.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # AWS Client
    'AWSClientManager',

    # Retry
    'RetryStrategy',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'DeploymentError',
    'ConfigurationError',
    'ParseError',
    'ReferenceError',
    'ValidationError',
    'CycleError',
    'StateError',
    'ProviderError',
    'SkippedDependencyFailure',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
