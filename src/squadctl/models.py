"""Typed configuration model for Squad server instances.

Every record is a frozen dataclass that validates itself in
``__post_init__`` so a value that exists is a value that is valid. Raw YAML
mappings are turned into records by :func:`parse_instance`, which also rejects
unknown keys and wrong types before the records check their own ranges.

Fields that end up in a ``Key=Value`` configuration file carry the rendered
key in their dataclass ``metadata``; :mod:`squadctl.renderer` reads it from
there.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from types import MappingProxyType

from .config import ConfigurationError, as_dict, expect_int

ScalarValue = str | int | float | bool

MAX_PORT = 65535


class AccessLevel(str, Enum):
    """Permissions that can be granted to an admin group."""

    STARTVOTE = "startvote"
    CHANGEMAP = "changemap"
    PAUSE = "pause"
    CHEAT = "cheat"
    PRIVATE = "private"
    BALANCE = "balance"
    CHAT = "chat"
    KICK = "kick"
    BAN = "ban"
    CONFIG = "config"
    CAMERAMAN = "cameraman"
    IMMUNE = "immune"
    MANAGESERVER = "manageserver"
    FEATURETEST = "featuretest"
    RESERVE = "reserve"
    DEMOS = "demos"
    CLIENTDEMOS = "clientdemos"
    DEBUG = "debug"
    TEAMCHANGE = "teamchange"
    FORCETEAMCHANGE = "forceteamchange"
    CANSEEADMINCHAT = "canseeadminchat"


class MapRotationMode(str, Enum):
    """How the server walks its level or layer rotation."""

    LEVEL_LIST = "LevelList"
    LAYER_LIST = "LayerList"
    LEVEL_LIST_RANDOMIZED = "LevelList_Randomized"
    LAYER_LIST_RANDOMIZED = "LayerList_Randomized"


# Always rendered with these values and never configurable.
FIXED_SERVER_SETTINGS: Mapping[str, ScalarValue] = MappingProxyType(
    {
        "RandomizeAtStart": False,
        "UseVoteFactions": False,
        "UseVoteLevel": False,
        "UseVoteLayer": False,
    }
)


def safe_name(name: str, replacement: str) -> str:
    """Return *name* with every non-alphanumeric character replaced."""
    return re.sub(r"[^0-9A-Za-z]", replacement, name)


# ----------------------------------------------------------------------
# Validation helpers
# ----------------------------------------------------------------------
def _check_int(
    label: str,
    value: object,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{label} must be an integer. Got {value!r}.")
    if minimum is not None and maximum is not None:
        if not minimum <= value <= maximum:
            raise ConfigurationError(
                f"{label} must satisfy {minimum} <= value <= {maximum}. Got {value}."
            )
    elif minimum is not None and value < minimum:
        raise ConfigurationError(f"{label} must be at least {minimum}. Got {value}.")


def _check_positive(label: str, value: object) -> None:
    _check_int(label, value, minimum=1)


def _check_single_line(label: str, value: object) -> None:
    if not isinstance(value, str):
        raise ConfigurationError(f"{label} must be a string. Got {value!r}.")
    if "\n" in value or "\r" in value:
        raise ConfigurationError(f"{label} must be a single line.")


def _check_port(label: str, value: object, *, span: int = 1) -> None:
    _check_int(label, value, minimum=1, maximum=MAX_PORT - (span - 1))


def _freeze_extra(
    label: str,
    extra: Mapping[str, object],
    reserved: Iterable[str],
) -> Mapping[str, ScalarValue]:
    reserved_keys = set(reserved)
    frozen: dict[str, ScalarValue] = {}
    for key, value in extra.items():
        if not isinstance(key, str) or not key.strip():
            raise ConfigurationError(f"{label} keys must be non-empty strings. Got {key!r}.")
        if "=" in key or any(ch.isspace() for ch in key):
            raise ConfigurationError(f"{label} key {key!r} must not contain '=' or whitespace.")
        if key in FIXED_SERVER_SETTINGS:
            raise ConfigurationError(
                f"{label}.{key} is fixed to {FIXED_SERVER_SETTINGS[key]!r} and cannot be set."
            )
        if key in reserved_keys:
            raise ConfigurationError(
                f"{label}.{key} duplicates a typed setting; set it through its own field."
            )
        if not isinstance(value, (str, int, float, bool)):
            raise ConfigurationError(
                f"{label}.{key} must be a string, number or boolean. Got {value!r}."
            )
        if isinstance(value, str):
            _check_single_line(f"{label}.{key}", value)
        frozen[key] = value
    return MappingProxyType(frozen)


def _rendered_keys(cls: type) -> set[str]:
    return {item.metadata["key"] for item in fields(cls) if "key" in item.metadata}


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RconSettings:
    """Remote console settings written to ``Rcon.cfg``."""

    ip: str = field(default="0.0.0.0", metadata={"key": "IP"})
    max_connections: int = field(default=5, metadata={"key": "MaxConnections"})
    password: str = field(default="", metadata={"key": "Password"})
    connection_timeout: int = field(default=300, metadata={"key": "ConnectionTimeout"})
    seconds_before_timeout_check: int = field(
        default=120, metadata={"key": "SecondsBeforeTimeoutCheck"}
    )
    authentication_timeout: int = field(default=5, metadata={"key": "AuthenticationTimeout"})
    password_file: Path | None = None
    extra: Mapping[str, ScalarValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate ranges and freeze free-form options."""
        _check_single_line("rcon.ip", self.ip)
        _check_single_line("rcon.password", self.password)
        _check_positive("rcon.max_connections", self.max_connections)
        _check_int("rcon.connection_timeout", self.connection_timeout, minimum=0, maximum=86400)
        _check_int(
            "rcon.seconds_before_timeout_check",
            self.seconds_before_timeout_check,
            minimum=30,
            maximum=3600,
        )
        _check_int(
            "rcon.authentication_timeout", self.authentication_timeout, minimum=0, maximum=3600
        )
        object.__setattr__(
            self, "extra", _freeze_extra("rcon.extra", self.extra, _rendered_keys(RconSettings))
        )


@dataclass(frozen=True, slots=True)
class AdminMember:
    """A single admin, identified by their steam64 id."""

    id: int
    comment: str | None = None

    def __post_init__(self) -> None:
        """Validate the identity and the optional comment."""
        _check_positive("admin member id", self.id)
        if self.comment is not None:
            _check_single_line("admin member comment", self.comment)


@dataclass(frozen=True, slots=True)
class AdminGroup:
    """A named set of access levels and the admins holding them."""

    access_levels: tuple[AccessLevel, ...] = ()
    members: tuple[AdminMember, ...] = ()
    comment: str | None = None

    def __post_init__(self) -> None:
        """Coerce access levels into the closed enumeration."""
        levels: list[AccessLevel] = []
        for level in self.access_levels:
            try:
                levels.append(AccessLevel(level))
            except ValueError as exc:
                allowed = ", ".join(item.value for item in AccessLevel)
                raise ConfigurationError(
                    f"Unknown admin access level {level!r}. Allowed: {allowed}."
                ) from exc
        object.__setattr__(self, "access_levels", tuple(levels))
        object.__setattr__(self, "members", tuple(self.members))
        if self.comment is not None and not isinstance(self.comment, str):
            raise ConfigurationError(f"admin group comment must be a string. Got {self.comment!r}.")


@dataclass(frozen=True, slots=True)
class BanEntry:
    """A manual ban: player identity and the unix timestamp it expires at."""

    id: int
    expires: int = 0
    comment: str | None = None

    def __post_init__(self) -> None:
        """Validate the identity and expiry."""
        _check_positive("ban id", self.id)
        _check_int("ban expires", self.expires, minimum=0)
        if self.comment is not None:
            _check_single_line("ban comment", self.comment)


@dataclass(frozen=True, slots=True)
class CustomOptions:
    """Mod and seeding options written to ``CustomOptions.cfg``."""

    seed_players_threshold: int = field(default=50, metadata={"key": "SeedPlayersThreshold"})
    seed_minimum_players_to_live: int = field(
        default=45, metadata={"key": "SeedMinimumPlayersToLive"}
    )
    seed_match_length_seconds: int = field(
        default=21600, metadata={"key": "SeedMatchLengthSeconds"}
    )
    seed_initial_tickets: int = field(default=100, metadata={"key": "SeedInitialTickets"})
    seed_all_kits_available: bool = field(
        default=True, metadata={"key": "SeedAllKitsAvailable", "numeric_bool": True}
    )
    seed_seconds_before_live: float = field(
        default=60.0, metadata={"key": "SeedSecondsBeforeLive"}
    )
    extra: Mapping[str, ScalarValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate seeding thresholds and freeze free-form options."""
        _check_positive("custom_options.seed_players_threshold", self.seed_players_threshold)
        _check_positive(
            "custom_options.seed_minimum_players_to_live", self.seed_minimum_players_to_live
        )
        _check_positive(
            "custom_options.seed_match_length_seconds", self.seed_match_length_seconds
        )
        _check_positive("custom_options.seed_initial_tickets", self.seed_initial_tickets)
        if not isinstance(self.seed_all_kits_available, bool):
            raise ConfigurationError("custom_options.seed_all_kits_available must be a boolean.")
        if isinstance(self.seed_seconds_before_live, bool) or not isinstance(
            self.seed_seconds_before_live, (int, float)
        ):
            raise ConfigurationError("custom_options.seed_seconds_before_live must be a number.")
        object.__setattr__(self, "seed_seconds_before_live", float(self.seed_seconds_before_live))
        object.__setattr__(
            self,
            "extra",
            _freeze_extra("custom_options.extra", self.extra, _rendered_keys(CustomOptions)),
        )


@dataclass(frozen=True, slots=True)
class ServerSettings:
    """Core server settings written to ``Server.cfg``."""

    server_name: str = field(metadata={"key": "ServerName"})
    server_password: str = field(default="", metadata={"key": "ServerPassword"})
    should_advertise: bool = field(default=True, metadata={"key": "ShouldAdvertise"})
    is_lan_match: bool = field(default=False, metadata={"key": "IsLANMatch"})
    max_players: int = field(default=100, metadata={"key": "MaxPlayers"})
    num_reserved_slots: int = field(default=2, metadata={"key": "NumReservedSlots"})
    public_queue_limit: int = field(default=25, metadata={"key": "PublicQueueLimit"})
    map_rotation_mode: MapRotationMode = field(
        default=MapRotationMode.LAYER_LIST, metadata={"key": "MapRotationMode"}
    )
    allow_team_changes: bool = field(default=True, metadata={"key": "AllowTeamChanges"})
    prevent_team_change_if_unbalanced: bool = field(
        default=True, metadata={"key": "PreventTeamChangeIfUnbalanced"}
    )
    num_players_diff_for_team_changes: int = field(
        default=2, metadata={"key": "NumPlayersDiffForTeamChanges"}
    )
    rejoin_squad_delay_after_kick: int = field(
        default=180, metadata={"key": "RejoinSquadDelayAfterKick"}
    )
    record_demos: bool = field(default=False, metadata={"key": "RecordDemos"})
    allow_public_clients_to_record: bool = field(
        default=False, metadata={"key": "AllowPublicClientsToRecord"}
    )
    server_message_interval: int = field(default=1200, metadata={"key": "ServerMessageInterval"})
    tk_auto_kick_enabled: bool = field(default=True, metadata={"key": "TKAutoKickEnabled"})
    auto_tk_ban_number_tks: int = field(default=10, metadata={"key": "AutoTKBanNumberTKs"})
    auto_tk_ban_time: int = field(default=300, metadata={"key": "AutoTKBanTime"})
    allow_dev_profiling: bool = field(default=True, metadata={"key": "AllowDevProfiling"})
    vehicle_claiming_disabled: bool = field(
        default=False, metadata={"key": "VehicleClaimingDisabled"}
    )
    tags: tuple[str, ...] = field(default=(), metadata={"key": "Tags", "join": " "})
    rules: tuple[str, ...] = field(default=(), metadata={"key": "Rules", "join": " "})
    extra: Mapping[str, ScalarValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate limits and thresholds."""
        _check_single_line("server.settings.server_name", self.server_name)
        if not self.server_name.strip():
            raise ConfigurationError("server.settings.server_name must not be empty.")
        _check_single_line("server.settings.server_password", self.server_password)
        _check_positive("server.settings.max_players", self.max_players)
        _check_positive("server.settings.num_reserved_slots", self.num_reserved_slots)
        _check_int("server.settings.public_queue_limit", self.public_queue_limit, minimum=-1)
        _check_int(
            "server.settings.num_players_diff_for_team_changes",
            self.num_players_diff_for_team_changes,
            minimum=0,
        )
        _check_int(
            "server.settings.rejoin_squad_delay_after_kick",
            self.rejoin_squad_delay_after_kick,
            minimum=0,
        )
        _check_positive("server.settings.server_message_interval", self.server_message_interval)
        _check_positive("server.settings.auto_tk_ban_number_tks", self.auto_tk_ban_number_tks)
        _check_int("server.settings.auto_tk_ban_time", self.auto_tk_ban_time, minimum=0)
        try:
            mode = MapRotationMode(self.map_rotation_mode)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in MapRotationMode)
            raise ConfigurationError(
                f"Unknown map rotation mode {self.map_rotation_mode!r}. Allowed: {allowed}."
            ) from exc
        object.__setattr__(self, "map_rotation_mode", mode)
        for label, values in (("tags", self.tags), ("rules", self.rules)):
            for value in values:
                _check_single_line(f"server.settings.{label}", value)
            object.__setattr__(self, label, tuple(values))
        object.__setattr__(
            self,
            "extra",
            _freeze_extra("server.settings.extra", self.extra, _rendered_keys(ServerSettings)),
        )


@dataclass(frozen=True, slots=True)
class ServerSection:
    """Server settings plus the values passed on the launch command line."""

    settings: ServerSettings
    max_tick_rate: int = 35
    password_file: Path | None = None

    def __post_init__(self) -> None:
        """Validate the tick rate."""
        _check_positive("server.max_tick_rate", self.max_tick_rate)


@dataclass(frozen=True, slots=True)
class LicenseSettings:
    """Server license, either by file reference or inline content."""

    file: Path | None = None
    content: str = ""


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Everything rendered into the instance's ``ServerConfig`` directory."""

    server: ServerSection
    rcon: RconSettings = field(default_factory=RconSettings)
    admins: Mapping[str, AdminGroup] = field(default_factory=dict)
    bans: tuple[BanEntry, ...] = ()
    custom_options: CustomOptions = field(default_factory=CustomOptions)
    excluded_factions: tuple[str, ...] = ()
    excluded_faction_setups: tuple[str, ...] = ()
    excluded_layers: tuple[str, ...] = ()
    excluded_levels: tuple[str, ...] = ()
    level_rotation: tuple[str, ...] = ()
    layer_rotation: tuple[str, ...] = ()
    server_messages: tuple[str, ...] = ()
    remote_admin_lists: tuple[str, ...] = ()
    remote_ban_lists: tuple[str, ...] = ()
    motd: str = ""
    license: LicenseSettings = field(default_factory=LicenseSettings)

    def __post_init__(self) -> None:
        """Validate admin group names and freeze collections."""
        for name in self.admins:
            _check_single_line("admin group name", name)
            if not name.strip() or any(ch in name for ch in ":,") or " " in name:
                raise ConfigurationError(
                    f"Admin group name {name!r} must be non-empty without ':', ',' or spaces."
                )
        object.__setattr__(self, "admins", MappingProxyType(dict(self.admins)))
        object.__setattr__(self, "bans", tuple(self.bans))
        for label in LIST_FIELDS:
            values = tuple(getattr(self, label))
            for value in values:
                _check_single_line(label, value)
            object.__setattr__(self, label, values)


LIST_FIELDS: tuple[str, ...] = (
    "excluded_factions",
    "excluded_faction_setups",
    "excluded_layers",
    "excluded_levels",
    "level_rotation",
    "layer_rotation",
    "server_messages",
    "remote_admin_lists",
    "remote_ban_lists",
)


@dataclass(frozen=True, slots=True)
class ServerInstance:
    """One declared server deployment."""

    name: str
    config: ServerConfig
    enable: bool = False
    open_firewall: bool = False
    game_port: int = 7787
    query_port: int = 27165
    rcon_port: int = 21114
    beacon_port: int = 15000
    state_dir: str = ""
    cache_dir: str = ""
    mods: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        """Validate ports and mods and derive directory defaults."""
        if not isinstance(self.name, str) or not self.name.strip():
            raise ConfigurationError("Instance name must be a non-empty string.")
        _check_port("game_port", self.game_port, span=2)
        _check_port("query_port", self.query_port, span=2)
        _check_port("rcon_port", self.rcon_port)
        _check_port("beacon_port", self.beacon_port)
        for mod in self.mods:
            _check_positive("mods entry", mod)
        object.__setattr__(self, "mods", tuple(self.mods))
        default_dir = f"squad/{safe_name(self.name, '_')}"
        if not self.state_dir:
            object.__setattr__(self, "state_dir", default_dir)
        if not self.cache_dir:
            object.__setattr__(self, "cache_dir", default_dir)

    @property
    def unit_name(self) -> str:
        """Return the systemd service name for this instance."""
        return f"squad-{safe_name(self.name, '-')}"


# ----------------------------------------------------------------------
# Parsing raw mappings
# ----------------------------------------------------------------------
class _Section:
    """Typed accessor over one raw mapping that remembers consumed keys."""

    def __init__(self, raw: object, label: str) -> None:
        self.label = label
        self._raw = as_dict(raw, label)
        self._seen: set[str] = set()

    def path(self, key: str) -> str:
        return f"{self.label}.{key}"

    def get(self, key: str) -> object:
        self._seen.add(key)
        return self._raw.get(key)

    def get_int(self, key: str, default: int) -> int:
        return expect_int(self.get(key), self.path(key), default=default)

    def get_bool(self, key: str, default: bool) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            raise ConfigurationError(f"Expected {self.path(key)} to be a boolean. Got {value!r}.")
        return value

    def get_float(self, key: str, default: float) -> float:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"Expected {self.path(key)} to be a number. Got {value!r}.")
        return float(value)

    def get_str(self, key: str, default: str) -> str:
        value = self.get(key)
        if value is None:
            return default
        if not isinstance(value, str):
            raise ConfigurationError(f"Expected {self.path(key)} to be a string. Got {value!r}.")
        return value

    def get_optional_str(self, key: str) -> str | None:
        value = self.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ConfigurationError(f"Expected {self.path(key)} to be a string. Got {value!r}.")
        return value

    def get_path(self, key: str) -> Path | None:
        value = self.get_optional_str(key)
        if value is None or not value.strip():
            return None
        return Path(value).expanduser()

    def get_str_list(self, key: str) -> tuple[str, ...]:
        value = self.get(key)
        if value is None:
            return ()
        if isinstance(value, (str, bytes)) or not isinstance(value, list):
            raise ConfigurationError(f"Expected {self.path(key)} to be a list of strings.")
        for item in value:
            if not isinstance(item, str):
                raise ConfigurationError(
                    f"Expected {self.path(key)} entries to be strings. Got {item!r}."
                )
        return tuple(value)

    def get_list(self, key: str) -> list[object]:
        value = self.get(key)
        if value is None:
            return []
        if not isinstance(value, list):
            raise ConfigurationError(f"Expected {self.path(key)} to be a list.")
        return value

    def child(self, key: str) -> _Section:
        return _Section(self.get(key), self.path(key))

    def extra(self) -> dict[str, object]:
        return as_dict(self.get("extra"), self.path("extra"))

    def finish(self) -> None:
        unknown = set(self._raw.keys()) - self._seen
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigurationError(f"Unknown keys in {self.label}: {joined}.")


def parse_instance(name: str, raw: Mapping[str, object] | None) -> ServerInstance:
    """Build a validated :class:`ServerInstance` from a raw mapping."""
    try:
        section = _Section(raw, name)
        mods: list[int] = []
        for index, value in enumerate(section.get_list("mods")):
            mods.append(expect_int(value, f"{name}.mods[{index}]", default=0))
        instance = ServerInstance(
            name=name,
            enable=section.get_bool("enable", False),
            open_firewall=section.get_bool("open_firewall", False),
            game_port=section.get_int("game_port", 7787),
            query_port=section.get_int("query_port", 27165),
            rcon_port=section.get_int("rcon_port", 21114),
            beacon_port=section.get_int("beacon_port", 15000),
            state_dir=section.get_str("state_dir", ""),
            cache_dir=section.get_str("cache_dir", ""),
            mods=tuple(mods),
            config=_parse_config(name, section.child("config")),
        )
        section.finish()
    except ConfigurationError as exc:
        raise ConfigurationError(f"Instance '{name}': {exc}") from exc
    return instance


def _parse_config(name: str, section: _Section) -> ServerConfig:
    rcon = section.child("rcon")
    rcon_settings = RconSettings(
        ip=rcon.get_str("ip", "0.0.0.0"),
        max_connections=rcon.get_int("max_connections", 5),
        password=rcon.get_str("password", ""),
        connection_timeout=rcon.get_int("connection_timeout", 300),
        seconds_before_timeout_check=rcon.get_int("seconds_before_timeout_check", 120),
        authentication_timeout=rcon.get_int("authentication_timeout", 5),
        password_file=rcon.get_path("password_file"),
        extra=rcon.extra(),
    )
    rcon.finish()

    admins: dict[str, AdminGroup] = {}
    admins_raw = section.child("admins")
    for group_name in as_dict(section.get("admins"), section.path("admins")):
        admins[group_name] = _parse_admin_group(admins_raw.child(group_name))
    admins_raw.finish()

    bans = tuple(
        _parse_ban(value, section.path(f"bans[{index}]"))
        for index, value in enumerate(section.get_list("bans"))
    )

    custom = section.child("custom_options")
    custom_options = CustomOptions(
        seed_players_threshold=custom.get_int("seed_players_threshold", 50),
        seed_minimum_players_to_live=custom.get_int("seed_minimum_players_to_live", 45),
        seed_match_length_seconds=custom.get_int("seed_match_length_seconds", 21600),
        seed_initial_tickets=custom.get_int("seed_initial_tickets", 100),
        seed_all_kits_available=custom.get_bool("seed_all_kits_available", True),
        seed_seconds_before_live=custom.get_float("seed_seconds_before_live", 60.0),
        extra=custom.extra(),
    )
    custom.finish()

    server = section.child("server")
    server_section = ServerSection(
        settings=_parse_server_settings(name, server.child("settings")),
        max_tick_rate=server.get_int("max_tick_rate", 35),
        password_file=server.get_path("password_file"),
    )
    server.finish()

    license_section = section.child("license")
    license_settings = LicenseSettings(
        file=license_section.get_path("file"),
        content=license_section.get_str("content", ""),
    )
    license_section.finish()

    lists = {label: section.get_str_list(label) for label in LIST_FIELDS}
    config = ServerConfig(
        server=server_section,
        rcon=rcon_settings,
        admins=admins,
        bans=bans,
        custom_options=custom_options,
        motd=section.get_str("motd", ""),
        license=license_settings,
        **lists,
    )
    section.finish()
    return config


def _parse_admin_group(section: _Section) -> AdminGroup:
    members: list[AdminMember] = []
    for index, value in enumerate(section.get_list("members")):
        member = _Section(value, section.path(f"members[{index}]"))
        members.append(
            AdminMember(
                id=member.get_int("id", 0),
                comment=member.get_optional_str("comment"),
            )
        )
        member.finish()
    group = AdminGroup(
        access_levels=section.get_str_list("access_levels"),
        members=tuple(members),
        comment=section.get_optional_str("comment"),
    )
    section.finish()
    return group


def _parse_ban(value: object, label: str) -> BanEntry:
    if isinstance(value, str):
        identity, sep, expires = value.partition(":")
        if not sep:
            raise ConfigurationError(f"{label} must use the '<id>:<expires>' form. Got {value!r}.")
        expires_value, _, comment = expires.partition("//")
        return BanEntry(
            id=expect_int(identity.strip(), f"{label}.id", default=0),
            expires=expect_int(expires_value.strip(), f"{label}.expires", default=0),
            comment=comment.strip() or None,
        )
    section = _Section(value, label)
    ban = BanEntry(
        id=section.get_int("id", 0),
        expires=section.get_int("expires", 0),
        comment=section.get_optional_str("comment"),
    )
    section.finish()
    return ban


def _parse_server_settings(name: str, section: _Section) -> ServerSettings:
    settings = ServerSettings(
        server_name=section.get_str("server_name", name),
        server_password=section.get_str("server_password", ""),
        should_advertise=section.get_bool("should_advertise", True),
        is_lan_match=section.get_bool("is_lan_match", False),
        max_players=section.get_int("max_players", 100),
        num_reserved_slots=section.get_int("num_reserved_slots", 2),
        public_queue_limit=section.get_int("public_queue_limit", 25),
        map_rotation_mode=section.get_str(  # type: ignore[arg-type] - coerced on init
            "map_rotation_mode", MapRotationMode.LAYER_LIST.value
        ),
        allow_team_changes=section.get_bool("allow_team_changes", True),
        prevent_team_change_if_unbalanced=section.get_bool(
            "prevent_team_change_if_unbalanced", True
        ),
        num_players_diff_for_team_changes=section.get_int("num_players_diff_for_team_changes", 2),
        rejoin_squad_delay_after_kick=section.get_int("rejoin_squad_delay_after_kick", 180),
        record_demos=section.get_bool("record_demos", False),
        allow_public_clients_to_record=section.get_bool("allow_public_clients_to_record", False),
        server_message_interval=section.get_int("server_message_interval", 1200),
        tk_auto_kick_enabled=section.get_bool("tk_auto_kick_enabled", True),
        auto_tk_ban_number_tks=section.get_int("auto_tk_ban_number_tks", 10),
        auto_tk_ban_time=section.get_int("auto_tk_ban_time", 300),
        allow_dev_profiling=section.get_bool("allow_dev_profiling", True),
        vehicle_claiming_disabled=section.get_bool("vehicle_claiming_disabled", False),
        tags=section.get_str_list("tags"),
        rules=section.get_str_list("rules"),
        extra=section.extra(),
    )
    section.finish()
    return settings


__all__ = [
    "FIXED_SERVER_SETTINGS",
    "LIST_FIELDS",
    "AccessLevel",
    "AdminGroup",
    "AdminMember",
    "BanEntry",
    "CustomOptions",
    "LicenseSettings",
    "MapRotationMode",
    "RconSettings",
    "ServerConfig",
    "ServerInstance",
    "ServerSection",
    "ServerSettings",
    "parse_instance",
    "safe_name",
]
