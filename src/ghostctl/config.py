"""Effective configuration for ghostctl.

Later sources win over earlier ones:

1. ``DEFAULTS`` below.
2. The YAML file at ``/etc/ghostctl/config.yml``, ``--config-file`` or
   ``$GHOSTCTL_CONFIG_FILE``.
3. ``GHOSTCTL_*`` environment variables; ``__`` descends into sections::

    export GHOSTCTL_POLLING__MAX_TRIES=5
    export GHOSTCTL_ROLLBACK_POLICY=always

4. Overrides passed by the caller.

Environment values go through ``yaml.safe_load`` so ``true`` and ``5`` arrive
typed. The merged tree is validated and frozen into :class:`AppConfig`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load ghostctl configuration. Install with "
        "`pip install ghostctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "GHOSTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    f"{ENV_PREFIX}SKIP_NPM",
    f"{ENV_PREFIX}VERSIONS_CACHE",
    f"{ENV_PREFIX}NODE_VERSION_CHECK",
}

# Ghost 2.0.0 moved knex-migrator execution into the application itself.
# Releases at or above this major own their database migrations.
IN_PROCESS_MIGRATION_MAJOR = 2


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class HttpConfig:
    """HTTP client defaults for the admin API and downloads."""

    timeout: float = 30.0
    theme_check_path: str = "/themes/active/check/"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "theme_check_path": self.theme_check_path}


@dataclass(frozen=True)
class PollingConfig:
    """Liveness polling window used after starting the application."""

    max_tries: int = 20
    retry_interval: float = 2.0
    socket_timeout: float = 60.0
    delay_on_connect: float = 6.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_tries": self.max_tries,
            "retry_interval": self.retry_interval,
            "socket_timeout": self.socket_timeout,
            "delay_on_connect": self.delay_on_connect,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"
    unit_prefix: str = "ghost_"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin, "unit_prefix": self.unit_prefix}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ghostctl."""

    config_file: Path
    logs_dir: Path
    package_name: str
    npm_bin: str
    yarn_bin: str
    node_bin: str
    keep_versions: int
    migration_threshold_major: int
    min_release: str
    rollback_policy: str
    release_notes_url: str
    http: HttpConfig
    polling: PollingConfig
    systemd: SystemdConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "package_name": self.package_name,
            "npm_bin": self.npm_bin,
            "yarn_bin": self.yarn_bin,
            "node_bin": self.node_bin,
            "keep_versions": self.keep_versions,
            "migration_threshold_major": self.migration_threshold_major,
            "min_release": self.min_release,
            "rollback_policy": self.rollback_policy,
            "release_notes_url": self.release_notes_url,
            "http": self.http.to_dict(),
            "polling": self.polling.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/ghostctl/config.yml",
    "logs_dir": "~/.ghostctl/logs",
    "package_name": "ghost",
    "npm_bin": "npm",
    "yarn_bin": "yarn",
    "node_bin": "node",
    "keep_versions": 2,
    "migration_threshold_major": IN_PROCESS_MIGRATION_MAJOR,
    "min_release": "1.0.0",
    "rollback_policy": "confirm",
    "release_notes_url": "https://api.github.com/repos/TryGhost/Ghost/releases",
    "http": {
        "timeout": 30.0,
        "theme_check_path": "/themes/active/check/",
    },
    "polling": {
        "max_tries": 20,
        "retry_interval": 2.0,
        "socket_timeout": 60.0,
        "delay_on_connect": 6.0,
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "unit_prefix": "ghost_",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_ROLLBACK_POLICIES = {"confirm", "always", "never"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

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

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


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

    policy = raw.get("rollback_policy")
    if policy is not None and str(policy) not in ALLOWED_ROLLBACK_POLICIES:
        allowed = ", ".join(sorted(ALLOWED_ROLLBACK_POLICIES))
        raise ConfigError(f"Unsupported rollback policy '{policy}'. Allowed: {allowed}.")

    for section, allowed_keys in (
        ("http", {"timeout", "theme_check_path"}),
        ("polling", {"max_tries", "retry_interval", "socket_timeout", "delay_on_connect"}),
        ("systemd", {"systemctl_bin", "unit_prefix"}),
    ):
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed_keys
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    keep_versions = _expect_int(raw.get("keep_versions"), "keep_versions", default=2)
    if keep_versions < 1:
        raise ConfigError("keep_versions must be at least 1.")

    threshold = _expect_int(
        raw.get("migration_threshold_major"),
        "migration_threshold_major",
        default=IN_PROCESS_MIGRATION_MAJOR,
    )
    if threshold < 1:
        raise ConfigError("migration_threshold_major must be a positive integer.")

    http_mapping = _as_dict(raw.get("http"), "http")
    http = HttpConfig(
        timeout=_expect_positive_float(http_mapping.get("timeout"), "http.timeout", default=30.0),
        theme_check_path=str(http_mapping.get("theme_check_path", "/themes/active/check/")),
    )

    polling_mapping = _as_dict(raw.get("polling"), "polling")
    max_tries = _expect_int(polling_mapping.get("max_tries"), "polling.max_tries", default=20)
    if max_tries < 0:
        raise ConfigError("polling.max_tries must be non-negative.")
    polling = PollingConfig(
        max_tries=max_tries,
        retry_interval=_expect_positive_float(
            polling_mapping.get("retry_interval"), "polling.retry_interval", default=2.0
        ),
        socket_timeout=_expect_positive_float(
            polling_mapping.get("socket_timeout"), "polling.socket_timeout", default=60.0
        ),
        delay_on_connect=_expect_non_negative_float(
            polling_mapping.get("delay_on_connect"), "polling.delay_on_connect", default=6.0
        ),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        unit_prefix=str(systemd_mapping.get("unit_prefix", "ghost_")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        package_name=str(raw.get("package_name", "ghost")),
        npm_bin=str(raw.get("npm_bin", "npm")),
        yarn_bin=str(raw.get("yarn_bin", "yarn")),
        node_bin=str(raw.get("node_bin", "node")),
        keep_versions=keep_versions,
        migration_threshold_major=threshold,
        min_release=str(raw.get("min_release", "1.0.0")),
        rollback_policy=str(raw.get("rollback_policy", "confirm")),
        release_notes_url=str(raw.get("release_notes_url", "")),
        http=http,
        polling=polling,
        systemd=systemd,
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


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
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
    "ALLOWED_ROLLBACK_POLICIES",
    "AppConfig",
    "ConfigError",
    "HttpConfig",
    "IN_PROCESS_MIGRATION_MAJOR",
    "PollingConfig",
    "SystemdConfig",
    "load_config",
]
