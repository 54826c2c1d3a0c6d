"""Configuration settings for pctl.

Uses pydantic-settings for config parsing from environment variables and
defaults; values from the `pctl.yml` file override both. The `build` section
is validated up front so configuration mistakes fail before any build starts.
"""

import json
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pctl.builds.tagging import DEFAULT_TAG_FORMAT, validate_tag_format
from pctl.portainer.client import DEFAULT_TIMEOUT, validate_url
from pctl.types import PARALLEL_AUTO, BuildMode

CONFIG_FILENAME = "pctl.yml"
DEFAULT_COMPOSE_FILE = "docker-compose.yml"

DEFAULT_PLATFORMS = ("linux/amd64",)
DEFAULT_WARN_THRESHOLD_MB = 50


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or is incomplete."""

    def __init__(self, message: str, code: str = "config_error") -> None:
        super().__init__(message)
        self.code = code


class BuildConfig(BaseModel):
    """Build settings for one run.

    Attributes:
        mode: remote-build (build on the remote engine) or load (build
            locally, then upload the image).
        parallel: 'auto' or a positive integer.
        tag_format: Tag template ({{stack}}, {{service}}, {{hash}}, {{timestamp}}).
        platforms: Target platforms for load mode.
        extra_build_args: Build args applied to every service, overriding
            service args with the same key.
        force_build: Rebuild even if the tag exists; implies no-cache.
        warn_threshold_mb: Warn when a build context exceeds this size (0 disables).
    """

    model_config = ConfigDict(extra="forbid")

    mode: BuildMode = Field(default=BuildMode.REMOTE_BUILD, description="Build mode")
    parallel: str = Field(default=PARALLEL_AUTO, description="Build parallelism")
    tag_format: str = Field(default=DEFAULT_TAG_FORMAT, description="Image tag template")
    platforms: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PLATFORMS),
        description="Target platforms (load mode)",
    )
    extra_build_args: dict[str, str] = Field(
        default_factory=dict, description="Global build arg overrides"
    )
    force_build: bool = Field(default=False, description="Force rebuild")
    warn_threshold_mb: int = Field(
        default=DEFAULT_WARN_THRESHOLD_MB,
        ge=0,
        description="Context size warning threshold in MB",
    )

    @field_validator("mode", mode="before")
    @classmethod
    def validate_mode(cls, v: Any) -> Any:
        """Reject unknown build modes with the accepted values."""
        if v is None or v == "":
            return BuildMode.REMOTE_BUILD
        valid = [m.value for m in BuildMode]
        if isinstance(v, BuildMode) or v in valid:
            return v
        raise ValueError(
            f"invalid build mode '{v}', must be '{valid[0]}' or '{valid[1]}'"
        )

    @field_validator("parallel", mode="before")
    @classmethod
    def validate_parallel(cls, v: Any) -> Any:
        """Accept 'auto' or a positive integer (ints are stored as strings).

        Other non-numeric strings are accepted and run sequentially.
        """
        if isinstance(v, bool):
            raise ValueError(f"invalid parallel value '{v}'")
        if isinstance(v, int):
            v = str(v)
        if not isinstance(v, str):
            return v
        v = v.strip()
        if v == PARALLEL_AUTO:
            return v
        if not v:
            raise ValueError("invalid parallel value '', must be 'auto' or a positive integer")
        try:
            value = int(v)
        except ValueError:
            return v
        if value <= 0:
            raise ValueError(
                f"invalid parallel value '{v}', must be 'auto' or a positive integer"
            )
        return v

    @field_validator("tag_format", mode="before")
    @classmethod
    def check_tag_format(cls, v: Any) -> Any:
        """Validate the tag template."""
        if v is None or v == "":
            return DEFAULT_TAG_FORMAT
        if isinstance(v, str):
            validate_tag_format(v)
        return v

    @field_validator("platforms", mode="before")
    @classmethod
    def default_platforms(cls, v: Any) -> Any:
        """Fall back to the default platform list when empty."""
        if not v:
            return list(DEFAULT_PLATFORMS)
        return v

    @field_validator("extra_build_args", mode="before")
    @classmethod
    def stringify_build_args(cls, v: Any) -> Any:
        """Coerce YAML scalar values (numbers, booleans) to strings."""
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(key): str(value) for key, value in v.items()}
        return v


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the PCTL_ prefix
    (nested build settings use PCTL_BUILD__<FIELD>), then overridden by
    values from pctl.yml when loaded through load_settings().
    """

    model_config = SettingsConfigDict(
        env_prefix="PCTL_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Portainer connection
    portainer_url: str = Field(default="", description="Portainer base URL")
    api_token: str = Field(default="", description="Portainer API key")
    environment_id: int = Field(default=0, ge=0, description="Portainer environment ID")
    skip_tls_verify: bool = Field(
        default=True,
        description="Skip TLS verification (self-hosted instances)",
    )
    request_timeout: float = Field(
        default=DEFAULT_TIMEOUT,
        gt=0,
        description="Timeout for short API requests in seconds",
    )

    # Stack
    stack_name: str = Field(default="", description="Stack name")
    compose_file: str = Field(
        default=DEFAULT_COMPOSE_FILE, description="Compose file path"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    build: BuildConfig = Field(default_factory=BuildConfig)

    @field_validator("portainer_url")
    @classmethod
    def check_portainer_url(cls, v: str) -> str:
        """Validate the URL when one is set."""
        if v:
            validate_url(v)
        return v

    def require_connection(self) -> None:
        """Check that everything needed to talk to Portainer is set.

        Raises:
            ConfigError: Naming the first missing field.
        """
        required = {
            "portainer_url": self.portainer_url,
            "api_token": self.api_token,
            "environment_id": self.environment_id,
            "stack_name": self.stack_name,
            "compose_file": self.compose_file,
        }
        for name, value in required.items():
            if not value:
                raise ConfigError(f"{name} is required", code="config_incomplete")


def get_settings() -> Settings:
    """Get settings from the environment only.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def load_settings(path: str | Path = CONFIG_FILENAME) -> Settings:
    """Load settings from a pctl.yml file layered over the environment.

    Args:
        path: Path to the configuration file.

    Returns:
        Validated Settings.

    Raises:
        ConfigError: If the file is missing, unreadable, not a YAML mapping,
            or fails validation.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(
            f"configuration file '{config_path}' not found",
            code="config_not_found",
        )

    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except OSError as e:
        raise ConfigError(
            f"failed to read configuration file: {e}", code="config_unreadable"
        ) from e
    except yaml.YAMLError as e:
        raise ConfigError(
            f"failed to parse configuration file: {e}", code="config_invalid"
        ) from e

    if not isinstance(data, dict):
        raise ConfigError(
            "configuration file must contain a mapping", code="config_invalid"
        )

    try:
        return Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}", code="config_invalid") from e


def default_stack_name(cwd: Path | None = None) -> str:
    """Derive a stack name from the working directory name."""
    try:
        directory = cwd or Path(os.getcwd())
    except OSError:
        return "pctl_project"
    name = directory.name.lower().replace(" ", "_").replace("-", "_")
    return f"pctl_{name}"


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON with the API token masked.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    data = settings.model_dump(mode="json")
    if data.get("api_token"):
        data["api_token"] = "********"
    return json.dumps(data, indent=2)


__all__ = [
    "CONFIG_FILENAME",
    "DEFAULT_COMPOSE_FILE",
    "PARALLEL_AUTO",
    "BuildConfig",
    "ConfigError",
    "Settings",
    "default_stack_name",
    "get_settings",
    "load_settings",
    "print_settings_json",
]
