from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
import os
import socket
from typing import Any

import yaml

from .errors import ConfigError

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env(name: str, default: str = "") -> Any:
    return field(default_factory=lambda: os.getenv(name, default))


def _env_int(name: str, default: int) -> Any:
    return field(default_factory=lambda: int(os.getenv(name, str(default))))


def _env_flag(name: str, default: bool = False) -> Any:
    def _read() -> bool:
        raw = os.getenv(name)
        if raw is None:
            return default
        return raw.strip().lower() in _TRUE_VALUES

    return field(default_factory=_read)


def _env_list(name: str) -> Any:
    def _read() -> tuple[str, ...]:
        raw = os.getenv(name, "")
        return tuple(item.strip() for item in raw.split(",") if item.strip())

    return field(default_factory=_read)


@dataclass(frozen=True)
class DuplicityConfig:
    image: str = _env("VBA_DUPLICITY_IMAGE", "camptocamp/duplicity:latest")
    target_url: str = _env("VBA_DUPLICITY_TARGET_URL")
    full_if_older_than: str = _env("VBA_DUPLICITY_FULL_IF_OLDER_THAN", "15D")
    remove_older_than: str = _env("VBA_DUPLICITY_REMOVE_OLDER_THAN", "30D")


@dataclass(frozen=True)
class RCloneConfig:
    image: str = _env("VBA_RCLONE_IMAGE", "camptocamp/rclone:1.33-1")
    target_url: str = _env("VBA_RCLONE_TARGET_URL")


@dataclass(frozen=True)
class AWSConfig:
    access_key_id: str = _env("AWS_ACCESS_KEY_ID")
    secret_access_key: str = _env("AWS_SECRET_ACCESS_KEY")


@dataclass(frozen=True)
class SwiftConfig:
    username: str = _env("SWIFT_USERNAME")
    password: str = _env("SWIFT_PASSWORD")
    auth_url: str = _env("SWIFT_AUTHURL")
    tenant_name: str = _env("SWIFT_TENANTNAME")
    region_name: str = _env("SWIFT_REGIONNAME")


@dataclass(frozen=True)
class MetricsConfig:
    pushgateway_url: str = _env("VBA_PUSHGATEWAY_URL")


@dataclass(frozen=True)
class KubernetesConfig:
    namespace: str = _env("VBA_K8S_NAMESPACE", "default")
    kubeconfig_path: str = _env("VBA_K8S_KUBECONFIG")
    context: str = _env("VBA_K8S_CONTEXT")
    in_cluster: bool = _env_flag("VBA_K8S_IN_CLUSTER")


@dataclass(frozen=True)
class AppConfig:
    engine: str = _env("VBA_ENGINE", "duplicity")
    runtime: str = _env("VBA_RUNTIME", "docker")
    hostname: str = field(default_factory=lambda: os.getenv("VBA_HOSTNAME") or socket.gethostname())
    no_verify: bool = _env_flag("VBA_NO_VERIFY")
    label_prefix: str = _env("VBA_LABEL_PREFIX", "io.volume-backup-agent")
    volumes_blacklist: tuple[str, ...] = _env_list("VBA_VOLUMES_BLACKLIST")
    operation_timeout_seconds: int = _env_int("VBA_OPERATION_TIMEOUT_SECONDS", 21600)
    poll_interval_seconds: int = _env_int("VBA_POLL_INTERVAL_SECONDS", 2)
    duplicity: DuplicityConfig = field(default_factory=DuplicityConfig)
    rclone: RCloneConfig = field(default_factory=RCloneConfig)
    aws: AWSConfig = field(default_factory=AWSConfig)
    swift: SwiftConfig = field(default_factory=SwiftConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)

    def __post_init__(self) -> None:
        if self.operation_timeout_seconds <= 0:
            raise ConfigError("operation_timeout_seconds must be positive")
        if self.poll_interval_seconds < 0:
            raise ConfigError("poll_interval_seconds must be >= 0")


def load_config(path: str | Path | None = None) -> AppConfig:
    """Build the configuration from the environment, then apply a YAML file on top."""
    config = AppConfig()
    if path is None:
        return config

    config_path = Path(path).expanduser()
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as error:
        raise ConfigError(f"Invalid YAML in {config_path}: {error}") from error

    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping at the top level")
    return apply_overrides(config, data)


def apply_overrides(config: Any, data: dict[str, Any], *, prefix: str = "") -> Any:
    known = {item.name for item in fields(config)}
    changes: dict[str, Any] = {}
    for key, value in data.items():
        qualified = f"{prefix}{key}"
        if key not in known:
            raise ConfigError(f"Unknown configuration key: {qualified}")

        current = getattr(config, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ConfigError(f"Configuration key {qualified} must be a mapping")
            changes[key] = apply_overrides(current, value, prefix=f"{qualified}.")
        else:
            changes[key] = _coerce(qualified, current, value)
    return replace(config, **changes)


def _coerce(key: str, current: Any, value: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_VALUES
        raise ConfigError(f"Configuration key {key} must be a boolean")
    if isinstance(current, int):
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ConfigError(f"Configuration key {key} must be an integer")
        try:
            return int(value)
        except ValueError as error:
            raise ConfigError(f"Configuration key {key} must be an integer") from error
    if isinstance(current, tuple):
        if not isinstance(value, list):
            raise ConfigError(f"Configuration key {key} must be a list")
        return tuple(str(item) for item in value)
    if value is None:
        return ""
    return str(value)
