"""Configuration management for the stratus deployment engine."""

from .models import (
    EnvironmentConfig,
    ExecutionConfig,
    LoggingConfig,
    ProjectConfig,
    RetryConfig,
    StateConfig,
)
from .parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE

__all__ = [
    "EnvironmentConfig",
    "ExecutionConfig",
    "LoggingConfig",
    "ProjectConfig",
    "RetryConfig",
    "StateConfig",
    "Config",
    "ConfigValidationError",
    "DEFAULT_CONFIG_FILE",
]
