"""Configuration loader for squadctl.

This module centralises the logic for reading application settings from
multiple sources:

1. Built-in defaults.
2. ``/etc/squadctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SQUADCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SQUADCTL_STEAMCMD__BIN=/usr/games/steamcmd
    export SQUADCTL_MAX_CONCURRENCY=2

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

The server instance declarations themselves live in a separate file
(``servers_file``) and are parsed by :mod:`squadctl.models`.
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
        "PyYAML is required to load squadctl configuration. Install with "
        "`pip install squadctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SQUADCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
CREDENTIALS_ENV_VAR = "CREDENTIALS_DIRECTORY"


class ConfigurationError(RuntimeError):
    """Raised when configuration values are missing, malformed or out of range."""


@dataclass(frozen=True)
class SteamCmdConfig:
    """Content fetch tool settings."""

    bin: str = "steamcmd"
    app_id: int = 403240
    workshop_app_id: int = 393380
    mod_attempts: int = 5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "app_id": self.app_id,
            "workshop_app_id": self.workshop_app_id,
            "mod_attempts": self.mod_attempts,
        }


@dataclass(frozen=True)
class PatchelfConfig:
    """Binary patch tool settings."""

    bin: str = "patchelf"
    interpreter: str = "/lib64/ld-linux-x86-64.so.2"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin": self.bin, "interpreter": self.interpreter}


@dataclass(frozen=True)
class LaunchConfig:
    """How the server executable is started once provisioning is complete."""

    script: str = "./SquadGameServer.sh"
    library_path: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"script": self.script, "library_path": self.library_path}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    squadctl_bin: str = "squadctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "squadctl_bin": self.squadctl_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for squadctl."""

    config_file: Path
    servers_file: Path
    state_root: Path
    cache_root: Path
    logs_dir: Path
    templates_dir: Path
    max_concurrency: int
    credentials_dir: Path | None
    steamcmd: SteamCmdConfig
    patchelf: PatchelfConfig
    launch: LaunchConfig
    systemd: SystemdConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "servers_file": str(self.servers_file),
            "state_root": str(self.state_root),
            "cache_root": str(self.cache_root),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "max_concurrency": self.max_concurrency,
            "credentials": {
                "directory": str(self.credentials_dir) if self.credentials_dir else None,
            },
            "steamcmd": self.steamcmd.to_dict(),
            "patchelf": self.patchelf.to_dict(),
            "launch": self.launch.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/squadctl/config.yml",
    "servers_file": "/etc/squadctl/servers.yml",
    "state_root": "/var/lib",
    "cache_root": "/var/cache",
    "logs_dir": "/var/log/squadctl",
    "templates_dir": "/etc/squadctl/templates",
    "max_concurrency": 4,
    "credentials": {
        "directory": None,  # falls back to $CREDENTIALS_DIRECTORY
    },
    "steamcmd": {
        "bin": "steamcmd",
        "app_id": 403240,
        "workshop_app_id": 393380,
        "mod_attempts": 5,
    },
    "patchelf": {
        "bin": "patchelf",
        "interpreter": "/lib64/ld-linux-x86-64.so.2",
    },
    "launch": {
        "script": "./SquadGameServer.sh",
        "library_path": None,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "squadctl_bin": "squadctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "credentials": {"directory"},
    "steamcmd": {"bin", "app_id", "workshop_app_id", "mod_attempts"},
    "patchelf": {"bin", "interpreter"},
    "launch": {"script", "library_path"},
    "systemd": {"unit_dir", "systemctl_bin", "squadctl_bin"},
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

    file_values = load_yaml_mapping(config_path, missing_ok=True)
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


def load_yaml_mapping(path: Path, *, missing_ok: bool = False) -> dict[str, object]:
    """Parse *path* as YAML and return its top-level mapping."""
    if not path.exists():
        if missing_ok:
            return {}
        raise ConfigurationError(f"Configuration file {path} does not exist.")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigurationError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Config file {path} must contain a mapping at the top level.")
    return as_dict(data, f"file:{path}")


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


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigurationError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigurationError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object], env: Mapping[str, str]) -> AppConfig:
    max_concurrency = expect_int(raw.get("max_concurrency"), "max_concurrency", default=4)
    if max_concurrency < 1:
        raise ConfigurationError("max_concurrency must be at least 1.")

    credentials_mapping = as_dict(raw.get("credentials"), "credentials")
    credentials_value = credentials_mapping.get("directory") or env.get(CREDENTIALS_ENV_VAR)
    credentials_dir = _to_path(credentials_value) if credentials_value else None

    steamcmd_mapping = as_dict(raw.get("steamcmd"), "steamcmd")
    steamcmd = SteamCmdConfig(
        bin=str(steamcmd_mapping.get("bin", "steamcmd")),
        app_id=expect_int(steamcmd_mapping.get("app_id"), "steamcmd.app_id", default=403240),
        workshop_app_id=expect_int(
            steamcmd_mapping.get("workshop_app_id"),
            "steamcmd.workshop_app_id",
            default=393380,
        ),
        mod_attempts=expect_int(
            steamcmd_mapping.get("mod_attempts"), "steamcmd.mod_attempts", default=5
        ),
    )
    if steamcmd.mod_attempts < 1:
        raise ConfigurationError("steamcmd.mod_attempts must be at least 1.")

    patchelf_mapping = as_dict(raw.get("patchelf"), "patchelf")
    patchelf = PatchelfConfig(
        bin=str(patchelf_mapping.get("bin", "patchelf")),
        interpreter=str(
            patchelf_mapping.get("interpreter", "/lib64/ld-linux-x86-64.so.2")
        ),
    )

    launch_mapping = as_dict(raw.get("launch"), "launch")
    library_path = launch_mapping.get("library_path")
    launch = LaunchConfig(
        script=str(launch_mapping.get("script", "./SquadGameServer.sh")),
        library_path=str(library_path) if library_path else None,
    )

    systemd_mapping = as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        squadctl_bin=str(systemd_mapping.get("squadctl_bin", "squadctl")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        servers_file=_to_path(raw.get("servers_file")),
        state_root=_to_path(raw.get("state_root")),
        cache_root=_to_path(raw.get("cache_root")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        max_concurrency=max_concurrency,
        credentials_dir=credentials_dir,
        steamcmd=steamcmd,
        patchelf=patchelf,
        launch=launch,
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
        raise ConfigurationError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(as_dict(value, f"copy.{key}"))
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
        raise ConfigurationError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigurationError(f"Cannot convert value {value!r} to Path.")


def expect_int(value: object | None, label: str, *, default: int) -> int:
    """Return *value* as an integer, falling back to *default* when absent."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigurationError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigurationError(f"Expected {key} to resolve to a string. Got {value!r}.")


def as_dict(value: object | None, label: str) -> dict[str, object]:
    """Return *value* as a string-keyed dict (``None`` becomes empty)."""
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            f"Expected {label} to be a mapping. Got {type(value).__name__}."
        )
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigurationError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "LaunchConfig",
    "PatchelfConfig",
    "SteamCmdConfig",
    "SystemdConfig",
    "as_dict",
    "expect_int",
    "load_config",
    "load_yaml_mapping",
]
