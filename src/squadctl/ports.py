"""Port expansion, cross-instance conflict checks and firewall planning."""
from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .models import ServerInstance

PORT_FAMILIES: tuple[str, ...] = ("game", "query", "rcon", "beacon")


class PortConflictError(RuntimeError):
    """Raised when enabled instances share one or more concrete ports."""

    def __init__(self, conflicts: Sequence[PortConflict]) -> None:
        """Store every conflict and build a message listing all of them."""
        self.conflicts = tuple(conflicts)
        super().__init__(_format_conflicts(self.conflicts))


@dataclass(frozen=True, slots=True)
class PortSet:
    """Concrete ports an instance occupies, per family."""

    game: tuple[int, ...]
    query: tuple[int, ...]
    rcon: tuple[int, ...]
    beacon: tuple[int, ...]

    @classmethod
    def for_instance(cls, instance: ServerInstance) -> PortSet:
        """Expand the declared base ports of *instance*."""
        return cls(
            game=(instance.game_port, instance.game_port + 1),
            query=(instance.query_port, instance.query_port + 1),
            rcon=(instance.rcon_port,),
            beacon=(instance.beacon_port,),
        )

    def family(self, name: str) -> tuple[int, ...]:
        """Return the ports for the family called *name*."""
        if name not in PORT_FAMILIES:
            raise KeyError(name)
        return getattr(self, name)

    def all_ports(self) -> tuple[int, ...]:
        """Return every port in family order."""
        return self.game + self.query + self.rcon + self.beacon


@dataclass(frozen=True, slots=True)
class PortConflict:
    """One violated uniqueness check."""

    family: str
    ports: tuple[int, ...]
    duplicates: tuple[int, ...]

    def describe(self) -> str:
        """Return a human readable description of the conflict."""
        if self.family == "all":
            heading = (
                "Squad servers have overlapping ports among game, query, rcon, and "
                "beacon ports. Ensure all ports are unique among all Squad servers."
            )
        else:
            heading = (
                f"Squad servers have overlapping {self.family} ports. "
                f"Ensure the {self.family} ports are unique."
            )
            if self.family in ("game", "query"):
                heading += (
                    f" Reminder: Squad uses the {self.family} port you define and "
                    f"`{self.family}_port + 1`."
                )
        found = ", ".join(str(port) for port in self.ports)
        duplicated = ", ".join(str(port) for port in self.duplicates)
        return f"{heading}\n  {self.family} ports found: [{found}]\n  duplicated: [{duplicated}]"


@dataclass(frozen=True, slots=True)
class PortAllocation:
    """Concrete ports for every enabled instance, keyed by instance name."""

    ports: dict[str, PortSet]

    def family(self, name: str) -> list[int]:
        """Return the concatenated ports of *name* across all instances."""
        collected: list[int] = []
        for port_set in self.ports.values():
            collected.extend(port_set.family(name))
        return collected

    def all_ports(self) -> list[int]:
        """Return game, query, rcon and beacon lists concatenated."""
        collected: list[int] = []
        for name in PORT_FAMILIES:
            collected.extend(self.family(name))
        return collected

    def conflicts(self) -> list[PortConflict]:
        """Return every violated uniqueness check (empty when valid)."""
        checks = [(name, self.family(name)) for name in PORT_FAMILIES]
        checks.append(("all", self.all_ports()))
        found: list[PortConflict] = []
        for family, ports in checks:
            duplicates = _duplicates(ports)
            if duplicates:
                found.append(
                    PortConflict(family=family, ports=tuple(ports), duplicates=duplicates)
                )
        return found


@dataclass(frozen=True, slots=True)
class FirewallRules:
    """Inbound ports to open, partitioned by transport."""

    tcp: tuple[int, ...]
    udp: tuple[int, ...]

    def to_dict(self) -> dict[str, list[int]]:
        """Return a serialisable representation."""
        return {"tcp": list(self.tcp), "udp": list(self.udp)}


def collect_ports(instances: Iterable[ServerInstance]) -> PortAllocation:
    """Expand the ports of every enabled instance in *instances*."""
    return PortAllocation(
        ports={
            instance.name: PortSet.for_instance(instance)
            for instance in instances
            if instance.enable
        }
    )


def validate_ports(instances: Iterable[ServerInstance]) -> PortAllocation:
    """Check cross-instance port uniqueness and return the allocation.

    Every check runs over every enabled instance before anything is raised,
    so a single :class:`PortConflictError` reports all collisions at once.
    """
    allocation = collect_ports(instances)
    conflicts = allocation.conflicts()
    if conflicts:
        raise PortConflictError(conflicts)
    return allocation


def firewall_rules(instances: Iterable[ServerInstance]) -> FirewallRules:
    """Return the ports to open for enabled instances that request it.

    Query and rcon accept both stream and datagram traffic; game and beacon
    are datagram only.
    """
    opened = [instance for instance in instances if instance.enable and instance.open_firewall]
    allocation = collect_ports(opened)
    tcp = allocation.family("rcon") + allocation.family("query")
    udp = (
        allocation.family("beacon")
        + allocation.family("game")
        + allocation.family("query")
        + allocation.family("rcon")
    )
    return FirewallRules(tcp=tuple(tcp), udp=tuple(udp))


def _duplicates(ports: Sequence[int]) -> tuple[int, ...]:
    counts = Counter(ports)
    return tuple(sorted(port for port, count in counts.items() if count > 1))


def _format_conflicts(conflicts: Sequence[PortConflict]) -> str:
    return "\n".join(conflict.describe() for conflict in conflicts)


__all__ = [
    "PORT_FAMILIES",
    "FirewallRules",
    "PortAllocation",
    "PortConflict",
    "PortConflictError",
    "PortSet",
    "collect_ports",
    "firewall_rules",
    "validate_ports",
]
