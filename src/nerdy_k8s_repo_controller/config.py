from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any
import os

import yaml


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


def _env_optional_str(name: str) -> str | None:
    raw = os.getenv(name, "").strip()
    return raw or None


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ControllerConfig:
    namespace: str = field(default_factory=lambda: os.getenv("NKRC_NAMESPACE", "velero"))
    resync_period_seconds: int = field(default_factory=lambda: _env_int("NKRC_RESYNC_PERIOD_SECONDS", 300))
    # 0 or negative leaves the choice to the repository backend.
    maintenance_frequency_seconds: int = field(
        default_factory=lambda: _env_int("NKRC_MAINTENANCE_FREQUENCY_SECONDS", 0)
    )
    workers: int = field(default_factory=lambda: _env_int("NKRC_WORKERS", 4))
    restic_binary: str = field(default_factory=lambda: os.getenv("NKRC_RESTIC_BINARY", "restic"))
    restic_cache_dir: str | None = field(default_factory=lambda: _env_optional_str("NKRC_RESTIC_CACHE_DIR"))
    command_timeout_seconds: int | None = field(
        default_factory=lambda: _env_optional_int("NKRC_COMMAND_TIMEOUT_SECONDS")
    )
    credentials_dir: Path = field(
        default_factory=lambda: Path(os.getenv("NKRC_CREDENTIALS_DIR", "/tmp/nkrc-credentials"))
    )
    ready_wait_timeout_seconds: int = field(
        default_factory=lambda: _env_int("NKRC_READY_WAIT_TIMEOUT_SECONDS", 120)
    )
    kubeconfig_path: str | None = field(default_factory=lambda: _env_optional_str("NKRC_KUBECONFIG"))
    context: str | None = field(default_factory=lambda: _env_optional_str("NKRC_CONTEXT"))
    in_cluster: bool = field(default_factory=lambda: _env_flag("NKRC_IN_CLUSTER"))
    log_level: str = field(default_factory=lambda: os.getenv("NKRC_LOG_LEVEL", "INFO"))


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


_YAML_KEYS = {
    "namespace": "namespace",
    "resyncPeriodSeconds": "resync_period_seconds",
    "maintenanceFrequencySeconds": "maintenance_frequency_seconds",
    "workers": "workers",
    "resticBinary": "restic_binary",
    "resticCacheDir": "restic_cache_dir",
    "commandTimeoutSeconds": "command_timeout_seconds",
    "credentialsDir": "credentials_dir",
    "readyWaitTimeoutSeconds": "ready_wait_timeout_seconds",
    "kubeconfig": "kubeconfig_path",
    "context": "context",
    "inCluster": "in_cluster",
    "logLevel": "log_level",
}


def load_config(path: Path | str | None = None) -> ControllerConfig:
    config = ControllerConfig()
    if path is not None:
        config = replace(config, **_read_yaml_overrides(Path(path)))
    validate_config(config)
    return config


def validate_config(config: ControllerConfig) -> None:
    if config.resync_period_seconds <= 0:
        raise ConfigError("resync_period_seconds must be positive")
    if config.workers < 1:
        raise ConfigError("workers must be at least 1")
    if config.ready_wait_timeout_seconds <= 0:
        raise ConfigError("ready_wait_timeout_seconds must be positive")
    if config.command_timeout_seconds is not None and config.command_timeout_seconds <= 0:
        raise ConfigError("command_timeout_seconds must be positive when set")
    if not config.namespace.strip():
        raise ConfigError("namespace must not be empty")


def _read_yaml_overrides(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as error:
        raise ConfigError(f"config file not found: {path}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"failed to parse config file {path}: {error}") from error

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")

    unknown = sorted(set(data) - set(_YAML_KEYS))
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}")

    field_types = {item.name: item.type for item in fields(ControllerConfig)}
    overrides: dict[str, Any] = {}
    for yaml_key, value in data.items():
        attribute = _YAML_KEYS[yaml_key]
        if attribute == "credentials_dir" and value is not None:
            value = Path(value)
        elif field_types[attribute] == "int" and not isinstance(value, int):
            raise ConfigError(f"{yaml_key} must be an integer")
        overrides[attribute] = value
    return overrides
