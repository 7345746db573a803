"""Platform configuration loaded from ``config.yaml`` and validated by schema."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Tuple

import yaml
from jsonschema import Draft202012Validator

from managerkit.resources import load_default_config, load_schema
from managerkit.settings import RuntimeSettings

_SCHEMA_RESOURCE = "config.schema.json"


class ConfigError(ValueError):
    """Raised when the platform configuration cannot be loaded or is invalid."""


@dataclass(frozen=True)
class EventBusConfig:
    host: str = "127.0.0.1"
    port: int = 4000
    max_events: int = 10000
    history_limit: int = 1000
    retry_attempts: int = 3
    retry_delay: float = 1.0
    process_interval: float = 1.0
    auth_token: str | None = None
    persistence: bool = True


@dataclass(frozen=True)
class RateLimitConfig:
    enabled: bool = True
    requests: int = 1000
    window: float = 3600.0


@dataclass(frozen=True)
class CorsConfig:
    enabled: bool = True
    origins: Tuple[str, ...] = ("*",)
    methods: Tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "OPTIONS")
    headers: Tuple[str, ...] = ("Content-Type", "Authorization", "X-Requested-With")


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    timeout: float = 30.0
    retries: int = 3
    services_file: str | None = None
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cors: CorsConfig = field(default_factory=CorsConfig)


@dataclass(frozen=True)
class PlatformConfig:
    event_bus: EventBusConfig
    gateway: GatewayConfig
    default_project_type: str
    report_formats: Tuple[str, ...]
    report_excludes: Tuple[str, ...]
    backup_keep: int
    backup_excludes: Tuple[str, ...]
    source: Path | None = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, source: Path | None = None) -> "PlatformConfig":
        bus = dict(data.get("event_bus", {}))
        gateway = dict(data.get("gateway", {}))
        rate_limit = RateLimitConfig(**gateway.pop("rate_limit", {}))
        cors_raw = gateway.pop("cors", {})
        cors = CorsConfig(**{key: tuple(value) for key, value in cors_raw.items() if key != "enabled"},
                          enabled=cors_raw.get("enabled", True))
        reports = data.get("reports", {})
        backup = data.get("backup", {})
        return cls(
            event_bus=EventBusConfig(**bus),
            gateway=GatewayConfig(rate_limit=rate_limit, cors=cors, **gateway),
            default_project_type=str(data.get("planner", {}).get("default_project_type", "web")),
            report_formats=tuple(reports.get("formats", ("json", "html"))),
            report_excludes=tuple(reports.get("excludes", ())),
            backup_keep=int(backup.get("keep", 10)),
            backup_excludes=tuple(backup.get("excludes", ())),
            source=source,
            raw=dict(data),
        )


def default_config() -> PlatformConfig:
    return PlatformConfig.from_mapping(load_default_config())


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def iter_config_errors(payload: Mapping[str, Any]) -> Iterator[Tuple[str, str]]:
    """Yield (path, message) pairs for schema violations."""
    validator = Draft202012Validator(load_schema(_SCHEMA_RESOURCE))
    for error in sorted(validator.iter_errors(payload), key=lambda err: list(err.absolute_path)):
        path = ".".join(str(item) for item in error.absolute_path) or "<root>"
        yield path, error.message


def load_config(settings: RuntimeSettings, path: Path | None = None) -> PlatformConfig:
    config_path = path or settings.config_file
    overrides: Dict[str, Any] = {}
    if config_path.exists():
        try:
            loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigError(f"config.invalid_yaml: {config_path}: {exc}") from exc
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"config.invalid: {config_path}: root must be a mapping")
        overrides = loaded
    elif path is not None:
        raise ConfigError(f"config.not_found: {config_path}")

    errors = list(iter_config_errors(overrides))
    if errors:
        details = "; ".join(f"{where}: {message}" for where, message in errors)
        raise ConfigError(f"config.schema: {details}")
    merged = _deep_merge(load_default_config(), overrides)
    return PlatformConfig.from_mapping(merged, source=config_path if config_path.exists() else None)


__all__ = [
    "ConfigError",
    "CorsConfig",
    "EventBusConfig",
    "GatewayConfig",
    "PlatformConfig",
    "RateLimitConfig",
    "default_config",
    "iter_config_errors",
    "load_config",
]
