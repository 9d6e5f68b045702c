"""Configuration management for refdata-bridge using Pydantic.

This module provides type-safe configuration models for the two record
stores, performance tuning, logging and the entity types to migrate.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from refdata_migration.client.exceptions import DependencyError
from refdata_migration.resources import (
    EntityDefinition,
    get_default_entities,
    validate_dependency_order,
)

# Hard request limit of the record store for one batch or one page
MAX_REQUEST_RECORDS = 5000


class StoreInstanceConfig(BaseModel):
    """Configuration for one record store (source or target)."""

    name: str = Field(default="", description="Display name of the environment")
    url: str = Field(..., description="Record store base URL")
    token: str = Field(..., description="API authentication token")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    timeout: int = Field(default=120, ge=1, le=1200, description="Request timeout in seconds")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate and normalize URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        """Validate token is not empty."""
        if not v or v.strip() == "":
            raise ValueError("Token cannot be empty")
        return v

    @property
    def label(self) -> str:
        """Name shown in logs and reports."""
        return self.name or self.url


class PerformanceConfig(BaseModel):
    """Performance tuning configuration."""

    max_parallel: int = Field(
        default=4, ge=1, le=32, description="Maximum batch calls in flight at once"
    )
    batch_size: int = Field(
        default=1000,
        ge=1,
        le=MAX_REQUEST_RECORDS,
        description="Records per upsert or delete call",
    )
    page_size: int = Field(
        default=5000,
        ge=1,
        le=MAX_REQUEST_RECORDS,
        description="Records per extraction page",
    )
    rate_limit: int = Field(default=20, ge=0, le=100, description="Requests per second (0 = off)")
    retry_attempts: int = Field(
        default=3, ge=1, le=10, description="Attempts per page fetch or batch call"
    )
    retry_backoff_seconds: float = Field(
        default=2.0, ge=0.0, le=120.0, description="Fixed wait between attempts"
    )
    progress_interval_seconds: float = Field(
        default=3.0, ge=0.1, le=60.0, description="Minimum time between progress snapshots"
    )
    http_max_connections: int = Field(default=50, ge=1, le=200)
    http_max_keepalive_connections: int = Field(default=20, ge=1, le=100)

    @model_validator(mode="after")
    def validate_connection_pool(self) -> "PerformanceConfig":
        """Ensure the connection pool can serve every parallel batch."""
        if self.http_max_connections < self.max_parallel:
            raise ValueError(
                "http_max_connections must be at least max_parallel "
                f"({self.http_max_connections} < {self.max_parallel})"
            )
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="WARNING", description="Console log level")
    file_level: str = Field(default="DEBUG", description="File log level")
    format: str = Field(default="json", description="Log file format (json or console)")
    file: str | None = Field(default="logs/migration.log", description="Log file path")
    disable_progress: bool = Field(default=False, description="Disable live progress display")
    log_payloads: bool = Field(
        default=False,
        description="Log request/response payloads at DEBUG level (tokens are redacted)",
    )
    max_payload_size: int = Field(default=10000, ge=100, le=1000000)

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class MigrationConfig(BaseSettings):
    """Main migration configuration."""

    model_config = SettingsConfigDict(
        env_prefix="REFDATA_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    source: StoreInstanceConfig = Field(..., description="Source record store")
    target: StoreInstanceConfig = Field(..., description="Target record store")

    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Declared dependency order (parents first)
    entities: list[EntityDefinition] = Field(default_factory=get_default_entities)

    dry_run: bool = Field(default=False, description="Run every phase except writes")
    clean_target: bool = Field(
        default=False, description="Delete target records before migrating"
    )

    @model_validator(mode="after")
    def validate_entities(self) -> "MigrationConfig":
        """Validate the declared entity order."""
        if not self.entities:
            raise ValueError("At least one entity type must be configured")
        try:
            validate_dependency_order(self.entities)
        except DependencyError as e:
            raise ValueError(str(e)) from e
        return self


def load_config_from_yaml(config_path: str | Path) -> MigrationConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        MigrationConfig: Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ValueError(f"Empty configuration file: {config_path}")

    config_data = _expand_env_vars(config_data)

    return MigrationConfig(**config_data)


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} references in config values.

    Args:
        data: Configuration value

    Returns:
        Value with expanded environment variables

    Raises:
        ValueError: If a referenced variable is not set
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        if data.startswith("${") and data.endswith("}"):
            var_name = data[2:-1]
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(
                    f"Environment variable '{var_name}' not found. "
                    f"Please set it in your environment or .env file."
                )
            return env_value
        return data
    else:
        return data
