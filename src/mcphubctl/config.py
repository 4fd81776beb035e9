"""Configuration loader for mcphubctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``~/.config/mcphubctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MCPHUBCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MCPHUBCTL_BACKUPS__RETENTION_DAYS=14
    export MCPHUBCTL_SYNC__WORKERS=4

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
import sys
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load mcphubctl configuration. Install with "
        "`pip install mcphubctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "MCPHUBCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_BACKUP_FAILURE_POLICIES = {"abort", "continue"}
ALLOWED_CONFLICT_POLICIES = {"fail", "overwrite"}
ALLOWED_CREDENTIAL_BACKENDS = {"keyring", "none"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


def default_data_dir(env: Mapping[str, str] | None = None) -> Path:
    """Return the per-user application data directory for this platform."""
    resolved_env = os.environ if env is None else env
    home = Path(resolved_env.get("HOME") or Path.home())
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "mcphubctl"
    if sys.platform.startswith("win"):
        appdata = resolved_env.get("APPDATA")
        return (Path(appdata) if appdata else home / "AppData" / "Roaming") / "mcphubctl"
    xdg = resolved_env.get("XDG_DATA_HOME")
    return (Path(xdg) if xdg else home / ".local" / "share") / "mcphubctl"


def default_config_file(env: Mapping[str, str] | None = None) -> Path:
    """Return the default location of ``config.yml``."""
    resolved_env = os.environ if env is None else env
    home = Path(resolved_env.get("HOME") or Path.home())
    xdg = resolved_env.get("XDG_CONFIG_HOME")
    return (Path(xdg) if xdg else home / ".config") / "mcphubctl" / "config.yml"


@dataclass(frozen=True)
class SyncSettings:
    """Settings consumed by the reconciliation engine on every call."""

    create_backups: bool = True
    backup_retention_days: int = 30
    backup_on_failure: str = "abort"
    on_conflict: str = "fail"


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and retention defaults."""

    root: Path
    index: Path
    enabled: bool = True
    retention_days: int = 30
    auto_prune: bool = True
    on_failure: str = "abort"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "enabled": self.enabled,
            "retention_days": self.retention_days,
            "auto_prune": self.auto_prune,
            "on_failure": self.on_failure,
        }


@dataclass(frozen=True)
class SyncConfig:
    """Reconciler tuning."""

    workers: int = 1
    on_conflict: str = "fail"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"workers": self.workers, "on_conflict": self.on_conflict}


@dataclass(frozen=True)
class CredentialsConfig:
    """Secret store selection."""

    backend: str = "keyring"
    service: str = "mcphubctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"backend": self.backend, "service": self.service}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for mcphubctl."""

    config_file: Path
    data_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    backups: BackupConfig
    sync: SyncConfig
    credentials: CredentialsConfig

    def sync_settings(self) -> SyncSettings:
        """Return the explicit settings value handed to the reconciler."""
        return SyncSettings(
            create_backups=self.backups.enabled,
            backup_retention_days=self.backups.retention_days,
            backup_on_failure=self.backups.on_failure,
            on_conflict=self.sync.on_conflict,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "data_dir": str(self.data_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "backups": self.backups.to_dict(),
            "sync": self.sync.to_dict(),
            "credentials": self.credentials.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": None,  # platform specific, see default_config_file()
    "data_dir": None,  # platform specific, see default_data_dir()
    "registry_dir": None,  # derived from data_dir when absent
    "logs_dir": None,  # derived from data_dir when absent
    "runtime_dir": None,  # derived from data_dir when absent
    "lock_timeout": 10.0,
    "backups": {
        "root": None,  # derived from data_dir when absent
        "index": None,
        "enabled": True,
        "retention_days": 30,
        "auto_prune": True,
        "on_failure": "abort",
    },
    "sync": {
        "workers": 1,
        "on_conflict": "fail",
    },
    "credentials": {
        "backend": "keyring",
        "service": "mcphubctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged, resolved_env)


def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return default_config_file(env)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=10.0)

    backups_map = _as_dict(raw.get("backups"), "backups")
    unknown = set(backups_map.keys()) - {
        "root",
        "index",
        "enabled",
        "retention_days",
        "auto_prune",
        "on_failure",
    }
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown backups configuration keys: {joined}.")
    policy = str(backups_map.get("on_failure", "abort"))
    if policy not in ALLOWED_BACKUP_FAILURE_POLICIES:
        allowed = ", ".join(sorted(ALLOWED_BACKUP_FAILURE_POLICIES))
        raise ConfigError(f"Unsupported backups.on_failure '{policy}'. Allowed: {allowed}.")

    sync_map = _as_dict(raw.get("sync"), "sync")
    unknown = set(sync_map.keys()) - {"workers", "on_conflict"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown sync configuration keys: {joined}.")
    conflict = str(sync_map.get("on_conflict", "fail"))
    if conflict not in ALLOWED_CONFLICT_POLICIES:
        allowed = ", ".join(sorted(ALLOWED_CONFLICT_POLICIES))
        raise ConfigError(f"Unsupported sync.on_conflict '{conflict}'. Allowed: {allowed}.")

    credentials_map = _as_dict(raw.get("credentials"), "credentials")
    unknown = set(credentials_map.keys()) - {"backend", "service"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown credentials configuration keys: {joined}.")
    backend = str(credentials_map.get("backend", "keyring"))
    if backend not in ALLOWED_CREDENTIAL_BACKENDS:
        allowed = ", ".join(sorted(ALLOWED_CREDENTIAL_BACKENDS))
        raise ConfigError(f"Unsupported credentials.backend '{backend}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object], env: Mapping[str, str]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    data_dir_value = raw.get("data_dir")
    data_dir = _to_path(data_dir_value) if data_dir_value else default_data_dir(env)

    registry_dir = _optional_path(raw.get("registry_dir")) or data_dir / "registry"
    logs_dir = _optional_path(raw.get("logs_dir")) or data_dir / "logs"
    runtime_dir = _optional_path(raw.get("runtime_dir")) or data_dir / "run"
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=10.0)

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _optional_path(backups_mapping.get("root")) or data_dir / "backups"
    backups_index = _optional_path(backups_mapping.get("index")) or backups_root / "backups.json"
    retention_days = _expect_int(
        backups_mapping.get("retention_days"), "backups.retention_days", default=30
    )
    if retention_days < 0:
        raise ConfigError("backups.retention_days must be non-negative.")
    backups = BackupConfig(
        root=backups_root,
        index=backups_index,
        enabled=_expect_bool(backups_mapping.get("enabled"), "backups.enabled", default=True),
        retention_days=retention_days,
        auto_prune=_expect_bool(
            backups_mapping.get("auto_prune"), "backups.auto_prune", default=True
        ),
        on_failure=str(backups_mapping.get("on_failure", "abort")),
    )

    sync_mapping = _as_dict(raw.get("sync"), "sync")
    workers = _expect_int(sync_mapping.get("workers"), "sync.workers", default=1)
    if workers < 1:
        raise ConfigError("sync.workers must be at least 1.")
    sync = SyncConfig(
        workers=workers,
        on_conflict=str(sync_mapping.get("on_conflict", "fail")),
    )

    credentials_mapping = _as_dict(raw.get("credentials"), "credentials")
    credentials = CredentialsConfig(
        backend=str(credentials_mapping.get("backend", "keyring")),
        service=str(credentials_mapping.get("service", "mcphubctl")),
    )

    return AppConfig(
        config_file=config_file,
        data_dir=data_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        backups=backups,
        sync=sync,
        credentials=credentials,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object) -> Path | None:
    if value in (None, ""):
        return None
    return _to_path(value)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "CredentialsConfig",
    "SyncConfig",
    "SyncSettings",
    "default_config_file",
    "default_data_dir",
    "load_config",
]
