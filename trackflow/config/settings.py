"""
Configuration settings for the trackflow rule engine.

Settings come from a YAML file (with ``${VAR}`` environment interpolation)
or from ``TRACKFLOW_``-prefixed environment variables, using ``__`` for
nesting (``TRACKFLOW_TRACKER__API_TOKEN``).
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, HttpUrl, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from trackflow.exceptions import ConfigurationError


class TrackerConfig(BaseModel):
    """Issue tracker connection.

    Supports environment references in YAML:
    - api_token: "${JIRA_API_TOKEN}"
    """

    base_url: HttpUrl = Field(..., description="Base URL of the tracker site")
    email: str = Field(..., description="Account email used for basic auth")
    api_token: SecretStr = Field(..., description="API token for the account")
    timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")
    max_connections: int = Field(default=10, ge=1, description="Connection pool size")


class EngineConfig(BaseModel):
    """Rule engine limits and storage."""

    history_limit: int = Field(default=1000, ge=1, description="Executions kept in history")
    bulk_batch_size: int = Field(default=50, ge=1, description="Default bulk operation batch size")
    max_bulk_issues: int = Field(default=1000, ge=1, description="Default bulk operation issue cap")
    retention_days: int = Field(default=30, ge=0, description="Age after which cleanup prunes records")
    rules_directory: str = Field(default=".trackflow/rules", description="Rule storage directory")
    history_file: str = Field(
        default=".trackflow/executions.json", description="Execution history file used by the CLI"
    )


class TrackflowSettings(BaseSettings):
    """Main trackflow settings.

    The tracker section is optional so that offline commands (validate, list)
    work without credentials; executing rules requires it.
    """

    model_config = SettingsConfigDict(
        env_prefix="TRACKFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    tracker: TrackerConfig | None = None
    engine: EngineConfig = Field(default_factory=EngineConfig)

    @property
    def rules_dir(self) -> Path:
        """Get the rules directory as Path object."""
        return Path(self.engine.rules_directory)

    def require_tracker(self) -> TrackerConfig:
        """Return the tracker section or fail with a clear message."""
        if self.tracker is None:
            raise ConfigurationError("Tracker connection is not configured (set 'tracker' in the config file)")
        return self.tracker

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> TrackflowSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            TrackflowSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines (starting with #) are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
