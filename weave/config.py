from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ArgumentError, ConfigError

DEFAULT_SETTINGS_FILE = "weave.yaml"
DEFAULT_WORKERS = 2
DEFAULT_LOG_LEVEL = "info"
DEFAULT_LOG_FORMAT = "text"
VALID_LOG_LEVELS = ("debug", "info", "warn", "error")
VALID_LOG_FORMATS = ("text", "json")


@dataclass(frozen=True)
class HostConfig:
    addr: str
    user: str = ""

    @property
    def target(self) -> str:
        if self.user:
            return f"{self.user}@{self.addr}"
        return self.addr


@dataclass(frozen=True)
class Settings:
    workers: int = DEFAULT_WORKERS
    log_level: str = DEFAULT_LOG_LEVEL
    log_format: str = DEFAULT_LOG_FORMAT
    dry_run: bool = False
    hosts: Dict[str, HostConfig] = field(default_factory=dict)


def resolve_target(hosts: Mapping[str, HostConfig], alias: str) -> str:
    host = hosts.get(alias)
    if host is None:
        raise ArgumentError(f'unknown host "{alias}"')
    return host.target


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_choice(value: Any, field_path: str, default: str, choices: tuple) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or value.strip().lower() not in choices:
        raise ConfigError(f"Error: {field_path} must be one of {list(choices)}.")
    return value.strip().lower()


def parse_hosts(raw: Any, field_path: str = "hosts") -> Dict[str, HostConfig]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Error: {field_path} must be a mapping.")

    hosts: Dict[str, HostConfig] = {}
    for alias, entry in raw.items():
        path = f"{field_path}.{alias}"
        if not isinstance(alias, str) or not alias.strip():
            raise ConfigError(f"Error: {field_path} keys must be non-empty strings.")
        if ":" in alias:
            raise ConfigError(f'Error: {path} must not contain ":".')
        if not isinstance(entry, Mapping):
            raise ConfigError(f"Error: {path} must be a mapping with at least addr.")
        unknown = set(entry.keys()) - {"addr", "user"}
        if unknown:
            raise ConfigError(f"Error: Unknown keys in {path}: {sorted(unknown)}.")
        addr = entry.get("addr")
        if not isinstance(addr, str) or not addr.strip():
            raise ConfigError(f"Error: {path}.addr must be a non-empty string.")
        user = entry.get("user", "")
        if user is None:
            user = ""
        if not isinstance(user, str):
            raise ConfigError(f"Error: {path}.user must be a string.")
        hosts[alias] = HostConfig(addr=addr.strip(), user=user.strip())
    return hosts


def parse_source_config(raw: Any) -> Dict[str, HostConfig]:
    """Validate the ``config`` value a Weavefile may define."""
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigError("Error: config must be a mapping.")
    unknown = set(raw.keys()) - {"hosts"}
    if unknown:
        raise ConfigError(f"Error: Unknown keys in config: {sorted(unknown)}.")
    if "hosts" not in raw:
        raise ConfigError("Error: config.hosts is required when config is defined.")
    return parse_hosts(raw["hosts"], "config.hosts")


def _load_settings_payload(path: Path) -> Dict[str, Any]:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Error: Unable to read settings file {path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level settings must be a mapping.")
    return payload


def parse_settings(payload: Mapping[str, Any]) -> Settings:
    unknown_top = set(payload.keys()) - {"version", "defaults", "hosts"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    version = payload.get("version", 1)
    if version != 1:
        raise ConfigError(f"Error: Unsupported settings version: {version!r}.")

    defaults = payload.get("defaults", {}) or {}
    if not isinstance(defaults, Mapping):
        raise ConfigError("Error: defaults must be a mapping.")
    unknown = set(defaults.keys()) - {"workers", "log_level", "log_format", "dry_run"}
    if unknown:
        raise ConfigError(f"Error: Unknown keys in defaults: {sorted(unknown)}.")

    return Settings(
        workers=ensure_int(defaults.get("workers"), "defaults.workers", DEFAULT_WORKERS, 1),
        log_level=ensure_choice(
            defaults.get("log_level"), "defaults.log_level", DEFAULT_LOG_LEVEL, VALID_LOG_LEVELS
        ),
        log_format=ensure_choice(
            defaults.get("log_format"), "defaults.log_format", DEFAULT_LOG_FORMAT, VALID_LOG_FORMATS
        ),
        dry_run=ensure_bool(defaults.get("dry_run"), "defaults.dry_run", False),
        hosts=parse_hosts(payload.get("hosts"), "hosts"),
    )


def load_settings(path: Optional[Path], required: bool = False) -> Settings:
    """
    Read the YAML settings file.

    A missing file yields default settings unless ``required`` is set (the
    user named the file explicitly).
    """
    if path is None:
        return Settings()
    if not path.exists():
        if required:
            raise ConfigError(f"Error: Settings file not found: {path}")
        return Settings()
    return parse_settings(_load_settings_payload(path))
