"""Read-only registry of declared server instances.

Instances are declared in ``servers_file`` (``/etc/squadctl/servers.yml`` by
default) under a top-level ``servers`` mapping keyed by instance name::

    servers:
      main:
        enable: true
        game_port: 7787
        mods: [1959152751]
        config:
          server:
            settings:
              server_name: "My Squad Server"

The registry is immutable for the duration of a command; nothing is written
back.
"""
from __future__ import annotations

from collections import Counter
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

from .config import ConfigurationError, as_dict, load_yaml_mapping
from .models import ServerInstance, parse_instance


@dataclass(frozen=True)
class InstanceRegistry:
    """Validated instances keyed by name, in declaration order."""

    entries: Mapping[str, ServerInstance]

    def __post_init__(self) -> None:
        """Reject enabled instances that would share a name, directory or unit."""
        enabled = self.enabled()
        names = Counter(instance.config.server.settings.server_name for instance in enabled)
        clashes = sorted(name for name, count in names.items() if count > 1)
        if clashes:
            joined = ", ".join(repr(name) for name in clashes)
            raise ConfigurationError(
                f"Enabled instances must use unique server_name values. Duplicated: {joined}."
            )
        for label in ("state_dir", "cache_dir", "unit_name"):
            owners: dict[str, list[str]] = {}
            for instance in enabled:
                owners.setdefault(getattr(instance, label), []).append(instance.name)
            shared = [
                f"{value!r} ({', '.join(owned)})"
                for value, owned in sorted(owners.items())
                if len(owned) > 1
            ]
            if shared:
                joined = "; ".join(shared)
                raise ConfigurationError(
                    f"Enabled instances must use unique {label} values. Shared: {joined}."
                )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> InstanceRegistry:
        """Build a registry from the parsed servers document."""
        unknown = set(raw.keys()) - {"servers"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigurationError(f"Unknown keys in servers file: {joined}.")
        servers = as_dict(raw.get("servers"), "servers")
        entries: dict[str, ServerInstance] = {}
        for name, value in servers.items():
            if value is not None and not isinstance(value, Mapping):
                raise ConfigurationError(
                    f"Instance '{name}' must be a mapping. Got {type(value).__name__}."
                )
            entries[name] = parse_instance(name, value)
        return cls(entries=entries)

    @classmethod
    def load(cls, path: Path) -> InstanceRegistry:
        """Load and validate the servers file at *path*."""
        return cls.from_mapping(load_yaml_mapping(path))

    @property
    def instances(self) -> list[ServerInstance]:
        """Return every declared instance."""
        return list(self.entries.values())

    def enabled(self) -> list[ServerInstance]:
        """Return the instances flagged ``enable``."""
        return [instance for instance in self.entries.values() if instance.enable]

    def get(self, name: str) -> ServerInstance:
        """Return the instance called *name*."""
        try:
            return self.entries[name]
        except KeyError as exc:
            raise ConfigurationError(f"Instance '{name}' is not declared.") from exc

    def select(self, names: list[str] | None) -> list[ServerInstance]:
        """Return the named instances, or every enabled one when *names* is empty."""
        if not names:
            return self.enabled()
        return [self.get(name) for name in names]

    def __iter__(self) -> Iterator[ServerInstance]:
        return iter(self.entries.values())

    def __len__(self) -> int:
        return len(self.entries)


__all__ = ["InstanceRegistry"]
