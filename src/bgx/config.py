"""Configuration for bgx."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bgx.exceptions import ConfigError

# The follower's timeout must tolerate this many missed heartbeats.
MIN_TIMEOUT_INTERVALS = 5

StatsProviderName = Literal["psutil", "procfs", "none"]
LogLevel = Literal["debug", "info", "warning", "error"]


class BgxConfig(BaseSettings):
    """Settings shared by the supervisor and the follower.

    Environment variables:
        BGX_HOME: Directory holding task logs.
        BGX_HEARTBEAT_INTERVAL: Seconds between heartbeat events.
        BGX_HEARTBEAT_TIMEOUT: Seconds without events before a follower gives up.
        BGX_POLL_INTERVAL: Seconds between polls of a growing log file.
        BGX_STATS: Process stats provider (psutil, procfs, none).
        BGX_LOG_LEVEL: Minimum level of diagnostic log output.

    Example:
        >>> config = BgxConfig(home=Path("/tmp/tasks"))
        >>> config.heartbeat_timeout
        30.0
    """

    home: Path = Field(
        default=Path("/tmp/bgx"),
        description="Directory holding task logs",
    )
    heartbeat_interval: float = Field(
        default=5.0,
        gt=0,
        description="Seconds between heartbeat events",
    )
    heartbeat_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds without events before a follower gives up",
    )
    poll_interval: float = Field(
        default=0.1,
        gt=0,
        description="Seconds between polls of a growing log file",
    )
    stats: StatsProviderName = Field(
        default="psutil",
        description="Process stats provider",
    )
    log_level: LogLevel = Field(
        default="warning",
        description="Minimum level of diagnostic log output",
    )

    model_config = SettingsConfigDict(env_prefix="BGX_", extra="ignore")

    @model_validator(mode="after")
    def validate_timing(self) -> BgxConfig:
        """Ensure the timeout leaves room for missed heartbeats."""
        if self.heartbeat_timeout < MIN_TIMEOUT_INTERVALS * self.heartbeat_interval:
            msg = (
                f"heartbeat_timeout ({self.heartbeat_timeout}s) must be at least "
                f"{MIN_TIMEOUT_INTERVALS}x heartbeat_interval ({self.heartbeat_interval}s)"
            )
            raise ValueError(msg)
        if self.poll_interval >= self.heartbeat_timeout:
            msg = (
                f"poll_interval ({self.poll_interval}s) must be shorter than "
                f"heartbeat_timeout ({self.heartbeat_timeout}s)"
            )
            raise ValueError(msg)
        return self

    def to_yaml(self) -> str:
        """Serialize the config to YAML."""
        data = self.model_dump(mode="json")
        return yaml.dump(data, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> BgxConfig:
        """Parse config from YAML content.

        Values from the YAML document take precedence over environment
        variables; unspecified fields still fall back to the environment.

        Args:
            yaml_content: YAML string to parse.

        Returns:
            Parsed BgxConfig instance.

        Raises:
            ValueError: If the YAML is invalid.
        """
        try:
            data: dict[str, Any] | None = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            msg = f"Invalid YAML: {e}"
            raise ValueError(msg) from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            msg = "Config YAML must be a mapping"
            raise ValueError(msg)

        return cls(**data)

    @classmethod
    def load(cls, path: Path) -> BgxConfig:
        """Load config from a YAML file.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ValueError: If the YAML is invalid.
        """
        if not path.exists():
            msg = f"Config file not found: {path}"
            raise FileNotFoundError(msg)
        return cls.from_yaml(path.read_text())


def resolve_config(
    config_path: Path | None = None,
    **overrides: Any,
) -> BgxConfig:
    """Build the effective configuration at the CLI boundary.

    Args:
        config_path: Optional YAML file.
        **overrides: Explicit values (None entries are ignored).

    Returns:
        Validated BgxConfig.

    Raises:
        ConfigError: If the file or any value is invalid.
    """
    explicit = {k: v for k, v in overrides.items() if v is not None}
    try:
        if config_path is not None:
            base = BgxConfig.load(config_path)
            data = base.model_dump()
            data.update(explicit)
            return BgxConfig(**data)
        return BgxConfig(**explicit)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"])
        msg = f"invalid configuration: {first['msg']}"
        if field:
            msg = f"invalid configuration for {field}: {first['msg']}"
        raise ConfigError(msg, field=field) from e
    except (FileNotFoundError, ValueError) as e:
        raise ConfigError(str(e)) from e
