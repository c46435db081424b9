"""Settings loader for convergectl.

This module centralises the logic for reading tool settings from multiple
sources, in increasing precedence:

1. Built-in defaults.
2. ``/etc/convergectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``CONVERGECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CONVERGECTL_BACKUPS__ROOT=/srv/backups
    export CONVERGECTL_FIREWALL__ENABLED=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting settings are exposed as immutable
``dataclasses``.

These are settings for the tool itself. The desired state of the server (the
resources and health probes) lives in the separate target document read by
:mod:`convergectl.model`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load convergectl settings. Install with "
        "`pip install convergectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CONVERGECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and compression defaults."""

    root: Path
    index: Path
    compression: str = "auto"
    compression_level: int | None = None
    extra_paths: tuple[Path, ...] = ()
    keep: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "compression": {
                "algorithm": self.compression,
                "level": self.compression_level,
            },
            "extra_paths": [str(path) for path in self.extra_paths],
            "keep": self.keep,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class NginxConfig:
    """Reverse proxy integration values.

    An empty ``service`` reloads by signalling the master with ``nginx -s reload``.
    """

    nginx_bin: str = "nginx"
    service: str = "nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"nginx_bin": self.nginx_bin, "service": self.service}


@dataclass(frozen=True)
class Pm2Config:
    """PM2 process manager integration values."""

    pm2_bin: str = "pm2"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"pm2_bin": self.pm2_bin}


@dataclass(frozen=True)
class FirewallConfig:
    """Firewall (ufw) integration values."""

    ufw_bin: str = "ufw"
    enabled: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"ufw_bin": self.ufw_bin, "enabled": self.enabled}


@dataclass(frozen=True)
class ConcurrencyConfig:
    """Thread pool limits for inspection and health probing."""

    inspect_workers: int = 8
    probe_workers: int = 8

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "inspect_workers": self.inspect_workers,
            "probe_workers": self.probe_workers,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved settings for convergectl."""

    config_file: Path
    target_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    backups: BackupConfig
    systemd: SystemdConfig
    nginx: NginxConfig
    pm2: Pm2Config
    firewall: FirewallConfig
    concurrency: ConcurrencyConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the settings."""
        return {
            "config_file": str(self.config_file),
            "target_file": str(self.target_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "backups": self.backups.to_dict(),
            "systemd": self.systemd.to_dict(),
            "nginx": self.nginx.to_dict(),
            "pm2": self.pm2.to_dict(),
            "firewall": self.firewall.to_dict(),
            "concurrency": self.concurrency.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/convergectl/config.yml",
    "target_file": "/etc/convergectl/target.yml",
    "logs_dir": "/var/log/convergectl",
    "runtime_dir": "/run/convergectl",
    "templates_dir": "/etc/convergectl/templates",
    "backups": {
        "root": "/var/backups/convergectl",
        "index": None,  # derived from root when absent
        "compression": {
            "algorithm": "auto",
            "level": None,
        },
        "extra_paths": [],
        "keep": None,
    },
    "systemd": {
        "systemctl_bin": "systemctl",
    },
    "nginx": {
        "nginx_bin": "nginx",
        "service": "nginx",
    },
    "pm2": {
        "pm2_bin": "pm2",
    },
    "firewall": {
        "ufw_bin": "ufw",
        "enabled": True,
    },
    "concurrency": {
        "inspect_workers": 8,
        "probe_workers": 8,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_BACKUP_COMPRESSION = {"auto", "zstd", "gzip", "none"}
_SECTION_KEYS: dict[str, set[str]] = {
    "backups": {"root", "index", "compression", "extra_paths", "keep"},
    "systemd": {"systemctl_bin"},
    "nginx": {"nginx_bin", "service"},
    "pm2": {"pm2_bin"},
    "firewall": {"ufw_bin", "enabled"},
    "concurrency": {"inspect_workers", "probe_workers"},
}


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

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backups = _as_dict(raw.get("backups"), "backups")
    compression = backups.get("compression")
    if compression is not None:
        if isinstance(compression, str):
            algorithm = compression
        else:
            compression_map = _as_dict(compression, "backups.compression")
            unknown = set(compression_map.keys()) - {"algorithm", "level"}
            if unknown:
                joined = ", ".join(sorted(unknown))
                raise ConfigError(f"Unknown backups.compression keys: {joined}.")
            algorithm = str(compression_map.get("algorithm", "auto"))
        if algorithm.lower() not in ALLOWED_BACKUP_COMPRESSION:
            allowed = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
            raise ConfigError(
                f"Unsupported backup compression '{algorithm}'. Allowed: {allowed}."
            )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    target_file = _to_path(raw.get("target_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))

    backups_raw = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_raw.get("root"))
    index_value = backups_raw.get("index")
    backups_index = (
        _to_path(index_value) if index_value is not None else backups_root / "backups.json"
    )
    compression_raw = backups_raw.get("compression")
    if isinstance(compression_raw, str):
        algorithm = compression_raw.lower()
        level_value: object | None = None
    else:
        compression_map = _as_dict(compression_raw, "backups.compression")
        algorithm = str(compression_map.get("algorithm", "auto")).lower()
        level_value = compression_map.get("level")
    level = _expect_int(level_value, "backups.compression.level", default=0) or None
    if level is not None and level <= 0:
        raise ConfigError("backups.compression.level must be greater than zero.")
    extra_paths = tuple(
        _to_path(item)
        for item in _as_sequence(backups_raw.get("extra_paths") or [], "backups.extra_paths")
    )
    keep_value = backups_raw.get("keep")
    keep: int | None = None
    if keep_value is not None:
        keep = _expect_int(keep_value, "backups.keep", default=0)
        if keep <= 0:
            raise ConfigError("backups.keep must be greater than zero when provided.")
    backups = BackupConfig(
        root=backups_root,
        index=backups_index,
        compression=algorithm,
        compression_level=level,
        extra_paths=extra_paths,
        keep=keep,
    )

    systemd_raw = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=_expect_str(systemd_raw.get("systemctl_bin", "systemctl"),
                                  "systemd.systemctl_bin"),
    )

    nginx_raw = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        nginx_bin=_expect_str(nginx_raw.get("nginx_bin", "nginx"), "nginx.nginx_bin"),
        service=_expect_str(nginx_raw.get("service", "nginx") or "", "nginx.service"),
    )

    pm2_raw = _as_dict(raw.get("pm2"), "pm2")
    pm2 = Pm2Config(pm2_bin=_expect_str(pm2_raw.get("pm2_bin", "pm2"), "pm2.pm2_bin"))

    firewall_raw = _as_dict(raw.get("firewall"), "firewall")
    firewall = FirewallConfig(
        ufw_bin=_expect_str(firewall_raw.get("ufw_bin", "ufw"), "firewall.ufw_bin"),
        enabled=_expect_bool(firewall_raw.get("enabled", True), "firewall.enabled"),
    )

    concurrency_raw = _as_dict(raw.get("concurrency"), "concurrency")
    concurrency = ConcurrencyConfig(
        inspect_workers=_expect_positive_int(
            concurrency_raw.get("inspect_workers"), "concurrency.inspect_workers", default=8
        ),
        probe_workers=_expect_positive_int(
            concurrency_raw.get("probe_workers"), "concurrency.probe_workers", default=8
        ),
    )

    return AppConfig(
        config_file=config_file,
        target_file=target_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        backups=backups,
        systemd=systemd,
        nginx=nginx,
        pm2=pm2,
        firewall=firewall,
        concurrency=concurrency,
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _expect_bool(value: object, label: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


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
    "ConcurrencyConfig",
    "ConfigError",
    "FirewallConfig",
    "NginxConfig",
    "Pm2Config",
    "SystemdConfig",
    "load_config",
    "ALLOWED_BACKUP_COMPRESSION",
]
