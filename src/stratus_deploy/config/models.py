"""Pydantic models for configuration schema."""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

REGION_PATTERN = "^[a-z]{2}(-gov|-iso[a-z]*)?-[a-z]+-[0-9]+$"


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z][a-z0-9-]*$")
    region: Optional[str] = Field(None, pattern=REGION_PATTERN)
    profile: Optional[str] = None
    template: str = Field("template.yaml", min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("parameters")
    @classmethod
    def validate_parameters(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Parameter values must be scalars or lists of scalars."""
        for key, value in v.items():
            items = value if isinstance(value, list) else [value]
            for item in items:
                if isinstance(item, (dict, list)) or item is None:
                    raise ValueError(f"Parameter '{key}' must be a scalar or a list of scalars")
        return v


class StateConfig(BaseModel):
    """Where state records are kept."""

    backend: str = Field("file", pattern="^(file|s3)$")
    directory: str = Field(".stratus/state", min_length=1)
    bucket: Optional[str] = Field(None, min_length=3, max_length=63)
    prefix: str = "stratus"

    @model_validator(mode="after")
    def validate_backend(self):
        """An S3 backend needs a bucket."""
        if self.backend == "s3" and not self.bucket:
            raise ValueError("bucket is required when the state backend is s3")
        return self


class ExecutionConfig(BaseModel):
    """Reconciliation concurrency and timeouts."""

    parallel: bool = False
    max_workers: int = Field(4, ge=1, le=64)
    timeout: Optional[float] = Field(None, gt=0, description="Per-call timeout in seconds")

    @property
    def workers(self) -> int:
        """Number of concurrent provider calls for a run."""
        return self.max_workers if self.parallel else 1


class RetryConfig(BaseModel):
    """Backoff for transient provider errors."""

    max_retries: int = Field(5, ge=0, le=20)
    base_delay: float = Field(1.0, gt=0)
    max_delay: float = Field(60.0, gt=0)

    @model_validator(mode="after")
    def validate_delays(self):
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be smaller than base_delay")
        return self


class LoggingConfig(BaseModel):
    """Log level and JSON log file location."""

    level: str = Field("info", pattern="^(debug|info|warning|error)$")
    directory: Optional[str] = ".stratus/logs"


class EnvironmentConfig(BaseModel):
    """Environment-specific overrides."""

    name: str = Field(..., min_length=1)
    region: Optional[str] = Field(None, pattern=REGION_PATTERN)
    profile: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    state: Optional[StateConfig] = None
