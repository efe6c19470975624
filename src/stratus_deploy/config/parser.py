"""YAML configuration parser for the stratus deployment engine."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import (
    EnvironmentConfig,
    ExecutionConfig,
    LoggingConfig,
    ProjectConfig,
    RetryConfig,
    StateConfig,
)

DEFAULT_CONFIG_FILE = "stratus.yaml"

SECTIONS = {
    "state": StateConfig,
    "execution": ExecutionConfig,
    "retry": RetryConfig,
    "logging": LoggingConfig,
}


class ConfigValidationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


class Config:
    """Configuration manager for a stratus project."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to stratus.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.state = StateConfig()
        self.execution = ExecutionConfig()
        self.retry = RetryConfig()
        self.logging = LoggingConfig()
        self.environments: Dict[str, EnvironmentConfig] = {}

    @classmethod
    def from_dict(cls, data: Dict, config_path: str = DEFAULT_CONFIG_FILE) -> "Config":
        """Build a configuration from already-loaded data."""
        config = cls(config_path)
        config.data = data or {}
        config._validate_and_parse()
        return config

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        self._validate_and_parse()
        return self

    def _validate_and_parse(self) -> None:
        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.project = ProjectConfig(**self.data["project"])
        for section, model in SECTIONS.items():
            setattr(self, section, model(**(self.data.get(section) or {})))
        self._parse_environments()

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not isinstance(self.data, dict):
            return [{"loc": [], "msg": "Configuration must be a mapping"}]

        unknown = sorted(set(self.data) - {"project", "environments", *SECTIONS})
        for key in unknown:
            errors.append({"loc": [key], "msg": f"Unknown section '{key}'"})

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        else:
            errors.extend(_check(ProjectConfig, self.data["project"], ["project"]))

        for section, model in SECTIONS.items():
            if section in self.data:
                errors.extend(_check(model, self.data[section] or {}, [section]))

        if "environments" in self.data:
            if not isinstance(self.data["environments"], dict):
                errors.append(
                    {"loc": ["environments"], "msg": "Environments must be a dictionary"}
                )
            else:
                for env_name, env_data in self.data["environments"].items():
                    env_config_data = {"name": env_name, **(env_data or {})}
                    errors.extend(
                        _check(EnvironmentConfig, env_config_data, ["environments", env_name])
                    )

        return errors

    def get_environment(self, env_name: str) -> EnvironmentConfig:
        """Get environment-specific configuration.

        Raises:
            ConfigValidationError: If environment doesn't exist
        """
        if env_name not in self.environments:
            available = ", ".join(self.environments.keys()) or "none"
            raise ConfigValidationError(
                f"Environment '{env_name}' not found. Available environments: {available}"
            )

        return self.environments[env_name]

    def stack_name(self, env_name: Optional[str] = None) -> str:
        """Stack name for a project, suffixed with the environment if any."""
        return f"{self.project.name}-{env_name}" if env_name else self.project.name

    def get_parameters(self, env_name: Optional[str] = None) -> Dict[str, Any]:
        """Template parameters with environment overrides applied."""
        parameters = dict(self.project.parameters)
        if env_name:
            parameters.update(self.get_environment(env_name).parameters)
        return parameters

    def get_region(self, env_name: Optional[str] = None) -> Optional[str]:
        if env_name and self.get_environment(env_name).region:
            return self.get_environment(env_name).region
        return self.project.region

    def get_profile(self, env_name: Optional[str] = None) -> Optional[str]:
        if env_name and self.get_environment(env_name).profile:
            return self.get_environment(env_name).profile
        return self.project.profile

    def get_state(self, env_name: Optional[str] = None) -> StateConfig:
        """State backend, isolated per environment."""
        if env_name:
            environment = self.get_environment(env_name)
            if environment.state:
                return environment.state
            return self.state.model_copy(update={
                "directory": str(Path(self.state.directory) / env_name),
                "prefix": f"{self.state.prefix}/{env_name}",
            })
        return self.state

    def template_path(self) -> Path:
        """Template path, relative to the configuration file."""
        path = Path(self.project.template)
        if path.is_absolute():
            return path
        return self.config_path.parent / path

    def _parse_environments(self):
        """Parse environment configurations."""
        self.environments = {}
        for env_name, env_data in (self.data.get("environments") or {}).items():
            self.environments[env_name] = EnvironmentConfig(name=env_name, **(env_data or {}))

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        return {
            "project": self.project.model_dump() if self.project else {},
            **{section: getattr(self, section).model_dump() for section in SECTIONS},
            "environments": {
                name: env.model_dump(exclude={"name"}) for name, env in self.environments.items()
            },
        }


def _check(model: type, data: Any, location: List) -> List[Dict]:
    """Validate one section, prefixing error locations."""
    if not isinstance(data, dict):
        return [{"loc": location, "msg": "Section must be a mapping"}]
    try:
        model(**data)
    except ValidationError as e:
        return [
            {"loc": location + list(error["loc"]), "msg": error["msg"]}
            for error in e.errors()
        ]
    return []
