"""Configuration management for deployctl using Pydantic."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deployctl.core.exceptions import ConfigError
from deployctl.core.logging import LogLevel
from deployctl.core.output import OutputFormat


class EnvSettings(BaseSettings):
    """Overrides read from ``DEPLOYCTL_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="DEPLOYCTL_", extra="ignore")

    state_dir: str | None = None
    config: str | None = None
    env: str | None = None


class ServiceTargetConfig(BaseModel):
    """Where one service of one environment lives."""

    host: str
    port: int = 80
    base_url: str | None = None
    credential_ref: str | None = None  # identity file for ssh, or None for the agent
    user: str | None = None
    ssh_port: int = 22
    deploy_dir: str = "/opt/app"
    backup_dir: str | None = None
    transport: Literal["ssh", "local"] = "ssh"

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("host must not be empty")
        return v

    def get_base_url(self) -> str:
        """Base URL for health probes, derived from host/port when unset."""
        if self.base_url:
            return self.base_url.rstrip("/")
        return f"http://{self.host}:{self.port}"

    def get_backup_dir(self) -> str:
        return self.backup_dir or f"{self.deploy_dir.rstrip('/')}/backups"


class EnvironmentConfig(BaseModel):
    """A named environment and its service table."""

    description: str = ""
    services: dict[str, ServiceTargetConfig] = Field(default_factory=dict)


class TransportConfig(BaseModel):
    """Remote shell / file copy settings."""

    ssh_binary: str = "ssh"
    scp_binary: str = "scp"
    connect_timeout: int = 5
    strict_host_key_checking: bool = True
    options: list[str] = Field(default_factory=list)  # extra -o options
    transfer_timeout: int = 600


class HealthDefaults(BaseModel):
    """Defaults applied to health checks that leave fields unset."""

    poll_interval: float = 5.0
    max_attempts: int = 60
    timeout: float = 5.0
    expected_status: tuple[int, int] = (200, 299)
    verify_tls: bool = True

    @model_validator(mode="after")
    def validate_bounds(self) -> "HealthDefaults":
        low, high = self.expected_status
        if low > high:
            raise ValueError("expected_status low bound must not exceed high bound")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        return self


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.WARNING
    dry_run: bool = False
    confirm_destructive: bool = True
    timeout: int = 300

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v


class DeployCtlConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    state_dir: str = "~/.deployctl"
    transport: TransportConfig = Field(default_factory=TransportConfig)
    health: HealthDefaults = Field(default_factory=HealthDefaults)
    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)

    def get_state_dir(self) -> Path:
        """State directory from environment or config."""
        override = EnvSettings().state_dir
        return Path(override or self.state_dir).expanduser()


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["deployctl.yaml", "deployctl.yml", ".deployctl.yaml", ".deployctl.yml"]

    def __init__(self):
        self._config: DeployCtlConfig | None = None

    def load(self, config_file: str | Path | None = None) -> DeployCtlConfig:
        """Load configuration from files and environment.

        Priority (highest to lowest):
        1. Explicitly specified config file
        2. Project config (./deployctl.yaml)
        3. User config (~/.deployctl/config.yaml)

        Args:
            config_file: Optional explicit config file path

        Returns:
            Merged configuration
        """
        configs: list[dict[str, Any]] = []

        user_config_path = Path.home() / ".deployctl" / "config.yaml"
        if user_config_path.exists():
            configs.append(self._load_yaml_file(user_config_path))

        project_config = self._find_project_config()
        if project_config:
            configs.append(self._load_yaml_file(project_config))

        if config_file:
            config_path = Path(config_file)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_file}")
            configs.append(self._load_yaml_file(config_path))

        merged = merge_dicts(*configs)

        try:
            self._config = DeployCtlConfig(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}")
        return self._config

    def _find_project_config(self) -> Path | None:
        """Find project config file in current or parent directories."""
        current = Path.cwd()

        while current != current.parent:
            for filename in self.CONFIG_FILENAMES:
                config_path = current / filename
                if config_path.exists():
                    return config_path
            current = current.parent

        return None

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        """Load a YAML config file."""
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")
        if not isinstance(content, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return content


def merge_dicts(*dicts: dict[str, Any]) -> dict[str, Any]:
    """Deep merge mappings left to right; later values win."""
    result: dict[str, Any] = {}
    for d in dicts:
        result = _deep_merge(result, d)
    return result


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


_config_loader = ConfigLoader()


def load_config(config_file: str | Path | None = None) -> DeployCtlConfig:
    """Load deployctl configuration.

    Args:
        config_file: Optional explicit config file path

    Returns:
        Loaded configuration
    """
    return _config_loader.load(config_file)


def get_default_config() -> DeployCtlConfig:
    """Get default configuration without loading from files."""
    return DeployCtlConfig()
