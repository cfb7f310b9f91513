"""Tests for port expansion, conflict detection and firewall planning."""
from __future__ import annotations

from collections.abc import Callable

import pytest

from squadctl.models import ServerInstance
from squadctl.ports import (
    PortConflictError,
    PortSet,
    collect_ports,
    firewall_rules,
    validate_ports,
)

InstanceFactory = Callable[..., ServerInstance]


def test_port_set_expands_game_and_query_pairs(make_instance: InstanceFactory) -> None:
    """Game and query occupy two ports; rcon and beacon one each."""
    port_set = PortSet.for_instance(make_instance(game_port=7787))

    assert port_set.game == (7787, 7788)
    assert port_set.query == (27165, 27166)
    assert port_set.rcon == (21114,)
    assert port_set.beacon == (15000,)
    assert port_set.all_ports() == (7787, 7788, 27165, 27166, 21114, 15000)


def test_validate_ports_accepts_disjoint_instances(make_instance: InstanceFactory) -> None:
    """Distinct ports across instances pass."""
    alpha = make_instance("alpha")
    beta = make_instance(
        "beta",
        game_port=7797,
        query_port=27175,
        rcon_port=21115,
        beacon_port=15001,
        config={"server": {"settings": {"server_name": "beta"}}},
    )

    allocation = validate_ports([alpha, beta])

    assert set(allocation.ports) == {"alpha", "beta"}


def test_disabled_instances_are_ignored(make_instance: InstanceFactory) -> None:
    """Only enabled instances reserve ports."""
    alpha = make_instance("alpha")
    clone = make_instance("clone", enable=False)

    allocation = validate_ports([alpha, clone])

    assert list(allocation.ports) == ["alpha"]


def test_adjacent_game_ports_collide(make_instance: InstanceFactory) -> None:
    """``game_port + 1`` of one instance clashes with the next game port."""
    alpha = make_instance("alpha", game_port=7787)
    beta = make_instance(
        "beta",
        game_port=7788,
        query_port=27175,
        rcon_port=21115,
        beacon_port=15001,
    )

    with pytest.raises(PortConflictError) as excinfo:
        validate_ports([alpha, beta])

    families = {conflict.family: conflict for conflict in excinfo.value.conflicts}
    assert set(families) == {"game", "all"}
    assert families["game"].ports == (7787, 7788, 7788, 7789)
    assert families["game"].duplicates == (7788,)
    assert "7788" in str(excinfo.value)


def test_cross_family_collision_is_reported(make_instance: InstanceFactory) -> None:
    """A port shared between different families fails only the combined check."""
    alpha = make_instance("alpha", rcon_port=15001)
    beta = make_instance(
        "beta",
        game_port=7797,
        query_port=27175,
        rcon_port=21115,
        beacon_port=15001,
    )

    with pytest.raises(PortConflictError) as excinfo:
        validate_ports([alpha, beta])

    assert [conflict.family for conflict in excinfo.value.conflicts] == ["all"]
    assert excinfo.value.conflicts[0].duplicates == (15001,)


def test_all_conflicts_are_reported_together(make_instance: InstanceFactory) -> None:
    """Identical instances violate every family in one error."""
    alpha = make_instance("alpha")
    beta = make_instance("beta")

    with pytest.raises(PortConflictError) as excinfo:
        validate_ports([alpha, beta])

    families = [conflict.family for conflict in excinfo.value.conflicts]
    assert families == ["game", "query", "rcon", "beacon", "all"]
    message = str(excinfo.value)
    assert "rcon ports found: [21114, 21114]" in message
    assert "Reminder" in message


def test_collect_ports_preserves_declaration_order(make_instance: InstanceFactory) -> None:
    """Concatenated family lists follow instance order."""
    alpha = make_instance("alpha", rcon_port=30000)
    beta = make_instance("beta", rcon_port=20000)

    allocation = collect_ports([alpha, beta])

    assert allocation.family("rcon") == [30000, 20000]


def test_firewall_rules_partition_by_transport(make_instance: InstanceFactory) -> None:
    """TCP opens rcon and query; UDP opens beacon, game, query and rcon."""
    alpha = make_instance("alpha", open_firewall=True)
    hidden = make_instance(
        "hidden",
        open_firewall=False,
        game_port=7797,
        query_port=27175,
        rcon_port=21115,
        beacon_port=15001,
    )

    rules = firewall_rules([alpha, hidden])

    assert rules.tcp == (21114, 27165, 27166)
    assert rules.udp == (15000, 7787, 7788, 27165, 27166, 21114)
    assert rules.to_dict() == {
        "tcp": [21114, 27165, 27166],
        "udp": [15000, 7787, 7788, 27165, 27166, 21114],
    }


def test_firewall_stays_closed_by_default(make_instance: InstanceFactory) -> None:
    """Instances only open ports when they ask for it."""
    rules = firewall_rules([make_instance("main")])

    assert rules.tcp == ()
    assert rules.udp == ()
