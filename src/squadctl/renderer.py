"""Render a :class:`~squadctl.models.ServerConfig` into Squad ``.cfg`` files.

Rendering is a pure function: no filesystem access, no clock, no randomness.
The same configuration always yields byte-identical files, which is what
makes re-provisioning an instance idempotent.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields

from .models import (
    FIXED_SERVER_SETTINGS,
    AdminGroup,
    BanEntry,
    ScalarValue,
    ServerConfig,
)

COMMENT_MARKER = "//"
ENCODING = "utf-8"


@dataclass(frozen=True, slots=True)
class RenderedFile:
    """A logical configuration file and its content."""

    name: str
    content: bytes

    @property
    def text(self) -> str:
        """Return the decoded content."""
        return self.content.decode(ENCODING)


def render_config(config: ServerConfig) -> tuple[RenderedFile, ...]:
    """Return every configuration file for *config*, ordered by file name."""
    texts: dict[str, str] = {
        "Admins.cfg": render_admins(config.admins),
        "Bans.cfg": render_bans(config.bans),
        "CustomOptions.cfg": render_key_values(config.custom_options),
        "ExcludedFactionSetups.cfg": render_list(config.excluded_faction_setups),
        "ExcludedFactions.cfg": render_list(config.excluded_factions),
        "ExcludedLayers.cfg": render_list(config.excluded_layers),
        "ExcludedLevels.cfg": render_list(config.excluded_levels),
        "LayerRotation.cfg": render_list(config.layer_rotation),
        "LevelRotation.cfg": render_list(config.level_rotation),
        "License.cfg": config.license.content,
        "MOTD.cfg": config.motd,
        "Rcon.cfg": render_key_values(config.rcon),
        "RemoteAdminListHosts.cfg": render_list(config.remote_admin_lists),
        "RemoteBanListHosts.cfg": render_list(config.remote_ban_lists),
        "Server.cfg": render_key_values(config.server.settings, fixed=FIXED_SERVER_SETTINGS),
        "ServerMessages.cfg": render_list(config.server_messages),
    }
    return tuple(
        RenderedFile(name=name, content=texts[name].encode(ENCODING)) for name in sorted(texts)
    )


def render_key_values(
    record: object,
    *,
    fixed: Mapping[str, ScalarValue] | None = None,
) -> str:
    """Serialise the keyed fields of *record* as sorted ``Key=Value`` lines.

    Free-form ``extra`` options and *fixed* settings are merged in. Fields
    flagged ``numeric_bool`` render booleans as ``1``/``0``; fields with a
    ``join`` separator render sequences on a single line.
    """
    values: dict[str, str] = {}
    for item in fields(record):  # type: ignore[arg-type]
        key = item.metadata.get("key")
        if not key:
            continue
        value = getattr(record, item.name)
        if item.metadata.get("numeric_bool"):
            values[key] = "1" if value else "0"
        elif "join" in item.metadata:
            values[key] = item.metadata["join"].join(value)
        else:
            values[key] = format_value(value)
    for key, value in dict(getattr(record, "extra", {})).items():
        values[key] = format_value(value)
    for key, value in (fixed or {}).items():
        values[key] = format_value(value)
    return "".join(f"{key}={values[key]}\n" for key in sorted(values))


def format_value(value: object) -> str:
    """Return the ``.cfg`` representation of a scalar."""
    if isinstance(value, bool):
        return "True" if value else "False"
    enum_value = getattr(value, "value", None)
    if isinstance(enum_value, str):
        return enum_value
    return str(value)


def render_list(values: Iterable[str]) -> str:
    """Join *values* one per line; an empty list renders an empty file."""
    return "\n".join(values)


def render_admins(groups: Mapping[str, AdminGroup]) -> str:
    """Render ``Admins.cfg``: comment block, ``Group=`` line, ``Admin=`` lines."""
    lines: list[str] = []
    for name, group in groups.items():
        if group.comment is not None:
            for comment_line in group.comment.rstrip("\n").split("\n"):
                lines.append(f"{COMMENT_MARKER} {comment_line}".rstrip())
        levels = ",".join(level.value for level in group.access_levels)
        lines.append(f"Group={name}:{levels}")
        for member in group.members:
            line = f"Admin={member.id}:{name}"
            if member.comment:
                line += f" {COMMENT_MARKER} {member.comment}"
            lines.append(line)
    return "".join(f"{line}\n" for line in lines)


def render_bans(bans: Iterable[BanEntry]) -> str:
    """Render ``Bans.cfg`` as ``<id>:<expires>`` lines."""
    lines: list[str] = []
    for ban in bans:
        line = f"{ban.id}:{ban.expires}"
        if ban.comment:
            line += f" {COMMENT_MARKER} {ban.comment}"
        lines.append(line)
    return render_list(lines)


__all__ = [
    "RenderedFile",
    "format_value",
    "render_admins",
    "render_bans",
    "render_config",
    "render_key_values",
    "render_list",
]
