"""Configuration management for the k3sctl application.

Settings are resolved with the following precedence:
1. Explicitly passed parameters (CLI flags)
2. Configuration file (``--config`` or one of ``DEFAULT_CONFIG_PATHS``)
3. Environment variables (``K3SCTL_*``, ``.env`` is honoured)
4. Default values
"""
import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# Load environment variables from .env file if it exists
load_dotenv()

logger = logging.getLogger("k3sctl.config")

DEFAULT_CONFIG_PATHS = [
    Path("/etc/k3sctl/config.yaml"),
    Path("~/.config/k3sctl/config.yaml"),
]

# Security
REDACT_KEYS: tuple = ("password", "secret", "token")


def _env(name: str, default: str) -> str:
    return os.getenv(f"K3SCTL_{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(f"K3SCTL_{name}")
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class LoggingSettings(BaseModel):
    """Logging configuration."""
    level: str = Field(default_factory=lambda: _env("LOG_LEVEL", "INFO").upper())
    file: Optional[str] = Field(default_factory=lambda: os.getenv("K3SCTL_LOG_FILE") or None)
    max_size_mb: int = Field(default_factory=lambda: int(_env("LOG_MAX_SIZE_MB", "10")))
    backup_count: int = Field(default_factory=lambda: int(_env("LOG_BACKUP_COUNT", "3")))

    @field_validator('level')
    @classmethod
    def check_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v


class ReadinessSettings(BaseModel):
    """Control-plane readiness polling."""
    interval: float = Field(default_factory=lambda: float(_env("READY_INTERVAL", "5")))
    timeout: float = Field(default_factory=lambda: float(_env("READY_TIMEOUT", "300")))
    max_attempts: Optional[int] = None
    request_timeout: int = 5

    @field_validator('interval', 'timeout')
    @classmethod
    def check_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v


class AddonSettings(BaseModel):
    """MetalLB add-on settings."""
    manifest_url: str = Field(default_factory=lambda: _env(
        "METALLB_MANIFEST_URL",
        "https://raw.githubusercontent.com/metallb/metallb/v0.14.0/config/manifests/metallb-native.yaml",
    ))
    namespace: str = "metallb-system"
    pool_name: str = "default-pool"
    advertisement_name: str = "default"
    selector: str = "app=metallb"
    wait_timeout: int = Field(default_factory=lambda: int(_env("METALLB_WAIT_TIMEOUT", "90")))
    timeout_fatal: bool = Field(default_factory=lambda: _env_bool("METALLB_TIMEOUT_FATAL", False))
    apply_attempts: int = 5
    apply_interval: float = 5.0
    peer_port: int = 7946


class SnapshotSettings(BaseModel):
    """Embedded etcd snapshot schedule written on the first master."""
    cron: str = Field(default_factory=lambda: _env("SNAPSHOT_CRON", "0 */12 * * *"))
    retention: int = Field(default_factory=lambda: int(_env("SNAPSHOT_RETENTION", "5")))

    @field_validator('cron')
    @classmethod
    def check_cron(cls, v: str) -> str:
        if len(v.split()) != 5:
            raise ValueError(f"Expected a five-field cron expression, got: {v!r}")
        return v

    @field_validator('retention')
    @classmethod
    def check_retention(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retention must be at least 1")
        return v


class InstallerSettings(BaseModel):
    """Delegated installer and host preparation."""
    script_url: str = Field(default_factory=lambda: _env("INSTALL_SCRIPT_URL", "https://get.k3s.io"))
    helm_script_url: str = "https://raw.githubusercontent.com/helm/helm/main/scripts/get-helm-3"
    install_helm: bool = Field(default_factory=lambda: _env_bool("INSTALL_HELM", True))
    update_packages: bool = Field(default_factory=lambda: _env_bool("UPDATE_PACKAGES", True))
    download_timeout: int = 60
    command_timeout: int = 900
    default_no_proxy: str = "127.0.0.1,localhost,10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,.svc,.cluster.local"


class Settings(BaseModel):
    """k3sctl settings."""
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    readiness: ReadinessSettings = Field(default_factory=ReadinessSettings)
    addon: AddonSettings = Field(default_factory=AddonSettings)
    snapshot: SnapshotSettings = Field(default_factory=SnapshotSettings)
    installer: InstallerSettings = Field(default_factory=InstallerSettings)

    model_config = {"extra": "ignore"}

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'Settings':
        """Load settings from a YAML file, falling back to the default paths."""
        config_data: Dict[str, Any] = {}

        if config_path:
            path = Path(config_path).expanduser().absolute()
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {path}")
            config_data = cls._load_config_file(path)
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        return cls(**config_data)

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Invalid config format in {path}: expected a mapping")
        logger.debug(f"Loaded settings from {path}")
        return data


# Global settings instance
_settings: Optional[Settings] = None


def get_settings(config_path: Optional[Union[str, Path]] = None) -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load(config_path)
    return _settings


def set_settings(settings: Optional[Settings]) -> None:
    """Set (or clear) the global settings instance."""
    global _settings
    _settings = settings
