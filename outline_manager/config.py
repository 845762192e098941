"""Frozen dataclasses for configuration and YAML loader with env-var interpolation."""

from __future__ import annotations

import os
import re
import types
import typing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _interpolate_env(value: str) -> str:
    """Replace ${ENV_VAR} placeholders with environment variable values."""

    def _replace(match: re.Match) -> str:
        env_key = match.group(1)
        env_val = os.environ.get(env_key)
        if env_val is None:
            raise ConfigError(f"Environment variable '{env_key}' is not set")
        return env_val

    return _ENV_PATTERN.sub(_replace, value)


def _walk_and_interpolate(obj: Any) -> Any:
    """Recursively interpolate env vars in strings throughout a nested structure."""
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(v) for v in obj]
    return obj


@dataclass(frozen=True)
class DigitalOceanConfig:
    account_id: str = "digitalocean"
    token: str = ""
    image: str = ""  # custom Shadowbox container image; empty = installer default
    metrics_url: str = ""
    sentry_api_url: str = ""
    ssh_public_key: str = ""  # registered at creation so DigitalOcean does not email a root password
    machine_size: str = "s-1vcpu-1gb"
    droplet_image: str = "docker-20-04"
    api_url: str = "https://api.digitalocean.com/v2"
    timeout: int = 30


@dataclass(frozen=True)
class GcpConfig:
    account_id: str = "gcp"
    project_id: str = ""
    refresh_token: str = ""
    client_id: str = ""
    client_secret: str = ""
    machine_type: str = "e2-micro"
    source_image: str = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts"
    timeout: int = 30


@dataclass(frozen=True)
class LightsailConfig:
    account_id: str = "lightsail"
    access_key_id: str = ""
    secret_access_key: str = ""
    region: str = "us-east-1"
    bundle_id: str = "nano_2_0"
    blueprint_id: str = "ubuntu_20_04"


@dataclass(frozen=True)
class ProvidersConfig:
    ignore_missing_on_delete: bool = True  # treat 404 on a deletion step as already deleted


@dataclass(frozen=True)
class InstallConfig:
    timeout_seconds: float = 300.0
    poll_interval_seconds: float = 3.0


@dataclass(frozen=True)
class ManagementConfig:
    timeout: int = 30
    health_timeout: int = 30


@dataclass(frozen=True)
class StorageConfig:
    path: str = "~/.outline-manager/state.json"


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"  # "json" or "text"


@dataclass(frozen=True)
class AppConfig:
    digitalocean: DigitalOceanConfig | None = None
    gcp: GcpConfig | None = None
    lightsail: LightsailConfig | None = None
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    install: InstallConfig = field(default_factory=InstallConfig)
    management: ManagementConfig = field(default_factory=ManagementConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_dataclass_type(ft: Any) -> type | None:
    """Return the underlying dataclass type from a type annotation (handles Optional/X|None)."""
    if isinstance(ft, type) and hasattr(ft, "__dataclass_fields__"):
        return ft
    if isinstance(ft, types.UnionType):
        args = [a for a in ft.__args__ if a is not type(None)]
        if len(args) == 1 and isinstance(args[0], type) and hasattr(args[0], "__dataclass_fields__"):
            return args[0]
    origin = getattr(ft, "__origin__", None)
    if origin is typing.Union:
        args = [a for a in ft.__args__ if a is not type(None)]
        if len(args) == 1 and isinstance(args[0], type) and hasattr(args[0], "__dataclass_fields__"):
            return args[0]
    return None


def _build_nested(cls: type, data: dict[str, Any]) -> Any:
    """Construct a frozen dataclass, recursively building nested dataclass fields."""
    if not isinstance(data, dict):
        return data
    field_types = {f.name: f.type for f in cls.__dataclass_fields__.values()}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in field_types:
            continue
        ft = field_types[key]
        # Resolve string annotations to actual types in the module scope
        if isinstance(ft, str):
            ft = eval(ft, globals(), {cls.__name__: cls})  # noqa: S307
        dc_type = _get_dataclass_type(ft)
        if dc_type is not None and isinstance(value, dict):
            kwargs[key] = _build_nested(dc_type, value)
        else:
            kwargs[key] = value
    return cls(**kwargs)


def load_config(path: str | Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must be a YAML mapping")

    raw = _walk_and_interpolate(raw)
    config = _build_nested(AppConfig, raw)
    validate(config)
    return config


def validate(config: AppConfig) -> None:
    """Validate configuration values."""
    if config.digitalocean is None and config.gcp is None and config.lightsail is None:
        raise ConfigError(
            "No cloud provider configured. Add a 'digitalocean', 'gcp' or 'lightsail' section "
            "to your config file."
        )

    if config.digitalocean is not None and not config.digitalocean.token:
        raise ConfigError("digitalocean.token is required")

    if config.gcp is not None:
        for name in ("project_id", "refresh_token", "client_id"):
            if not getattr(config.gcp, name):
                raise ConfigError(f"gcp.{name} is required")

    if config.lightsail is not None:
        if not config.lightsail.access_key_id or not config.lightsail.secret_access_key:
            raise ConfigError("lightsail.access_key_id and lightsail.secret_access_key are required")

    if config.install.poll_interval_seconds <= 0:
        raise ConfigError("install.poll_interval_seconds must be > 0")

    if config.install.poll_interval_seconds >= config.install.timeout_seconds:
        raise ConfigError("install.poll_interval_seconds must be less than install.timeout_seconds")

    if config.logging.format not in ("json", "text"):
        raise ConfigError("logging.format must be 'json' or 'text'")
