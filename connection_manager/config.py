"""Configuration for the connection manager."""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from connection_manager.exceptions import ConfigurationError

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "argocd-connections"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yml"
DEFAULT_CONNECTIONS_FILE = DEFAULT_CONFIG_DIR / "connections.yml"


class ManagerConfig(BaseModel):
    """Connection manager settings."""

    connections_file: Path = DEFAULT_CONNECTIONS_FILE
    cli_binary: str = "argocd"
    verify_command: str = "cluster list"
    cli_timeout: float | None = None
    refresh_interval: int = Field(default=30, ge=1)
    log_level: str = "INFO"

    @field_validator("connections_file", mode="before")
    @classmethod
    def expand_path(cls, v):
        """Expand ~ in the registry path."""
        return Path(v).expanduser()

    @field_validator("cli_binary", "verify_command")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("value cannot be empty")
        return v.strip()

    @field_validator("cli_timeout")
    @classmethod
    def validate_timeout(cls, v: float | None) -> float | None:
        """Validate the timeout is positive when set."""
        if v is not None and v <= 0:
            raise ValueError("cli_timeout must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got '{v}'")
        return v.upper()

    def save(self, path: str | Path) -> None:
        """Save configuration to YAML file."""
        import yaml

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)

    @classmethod
    def load(cls, path: str | Path) -> "ManagerConfig":
        """Load configuration from YAML file; an absent file yields defaults."""
        import yaml

        path = Path(path).expanduser()
        if not path.exists():
            return cls()
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to read configuration file: {path}",
                f"{e}\n\nFix or remove the file to fall back to defaults.",
            )
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file {path} must contain a mapping",
                f"Found {type(data).__name__} at the top level",
            )
        try:
            return cls(**data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration in {path}", str(e))

    @classmethod
    def from_env(cls, config_path: str | Path | None = None) -> "ManagerConfig":
        """Load configuration, then apply environment overrides.

        ARGOCD_CONNECTIONS_CONFIG names the config file, ARGOCD_CONNECTIONS_FILE
        the registry file and ARGOCD_CLI the CLI binary.
        """
        config_path = config_path or os.environ.get(
            "ARGOCD_CONNECTIONS_CONFIG", str(DEFAULT_CONFIG_FILE)
        )
        config = cls.load(config_path)

        updates: dict = {}
        connections_file = os.environ.get("ARGOCD_CONNECTIONS_FILE")
        if connections_file:
            updates["connections_file"] = Path(connections_file).expanduser()
        cli_binary = os.environ.get("ARGOCD_CLI")
        if cli_binary:
            updates["cli_binary"] = cli_binary
        if updates:
            config = config.model_copy(update=updates)
        return config
