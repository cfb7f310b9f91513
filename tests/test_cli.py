"""Tests for the squadctl command line interface."""
from __future__ import annotations

import json
import os
import stat
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from squadctl import __version__
from squadctl.cli import app
from squadctl.providers import BinaryPatcher, FetchError, SteamCmd, SystemdProvider

runner = CliRunner()

BASE_SERVERS: dict[str, object] = {
    "servers": {
        "main": {
            "enable": True,
            "open_firewall": True,
            "mods": [111],
            "config": {
                "server": {"password_file": "/etc/squad/server-password"},
                "rcon": {"password": "inline-rcon"},
                "layer_rotation": ["Narva_RAAS_v1"],
            },
        },
        "seed": {
            "enable": True,
            "game_port": 7797,
            "query_port": 27175,
            "rcon_port": 21115,
            "beacon_port": 15001,
            "open_firewall": False,
        },
        "staging": {"enable": False},
    }
}


def _prepare_environment(
    tmp_path: Path,
    *,
    servers: Mapping[str, object] | None = None,
) -> dict[str, str]:
    creds = tmp_path / "creds"
    creds.mkdir(exist_ok=True)
    (creds / "SQUAD_SERVER_PASSWORD_FILE").write_text("join-me\n", encoding="utf-8")
    servers_file = tmp_path / "servers.yml"
    servers_file.write_text(yaml.safe_dump(dict(servers or BASE_SERVERS)), encoding="utf-8")
    config = {
        "servers_file": str(servers_file),
        "state_root": str(tmp_path / "state"),
        "cache_root": str(tmp_path / "cache"),
        "logs_dir": str(tmp_path / "logs"),
        "templates_dir": str(tmp_path / "templates"),
        "credentials": {"directory": str(creds)},
        "systemd": {"unit_dir": str(tmp_path / "units"), "squadctl_bin": "/usr/bin/squadctl"},
    }
    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"SQUADCTL_CONFIG_FILE": str(config_file)}


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _stub_tools(monkeypatch: pytest.MonkeyPatch, *, fail_mod: bool = False) -> list[object]:
    events: list[object] = []

    def install_app(self: SteamCmd, install_dir: Path, *, home: Path) -> None:
        events.append(("install", install_dir.name))

    def download_mod(self: SteamCmd, install_dir: Path, mod_id: int, *, home: Path) -> None:
        events.append(("mod", mod_id))
        if fail_mod:
            raise FetchError(f"steamcmd workshop_download_item {mod_id} failed (exit 10): x")

    def patch_tree(self: BinaryPatcher, root: Path) -> list[Path]:
        events.append(("patch", root.name))
        return []

    monkeypatch.setattr(SteamCmd, "install_app", install_app)
    monkeypatch.setattr(SteamCmd, "download_mod", download_mod)
    monkeypatch.setattr(BinaryPatcher, "patch_tree", patch_tree)
    return events


def test_version_option() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"squadctl {__version__}" in result.stdout


def test_validate_reports_success(tmp_path: Path) -> None:
    """A consistent declaration validates and is logged."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["validate"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Configuration valid" in result.stdout
    (record,) = _operations(tmp_path)
    assert record["command"] == "validate"
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_validate_reports_port_conflicts(tmp_path: Path) -> None:
    """Conflicting ports exit with the validation code and list each conflict."""
    servers = {
        "servers": {
            "a": {"enable": True},
            "b": {"enable": True, "config": {"server": {"settings": {"server_name": "b"}}}},
        }
    }
    env = _prepare_environment(tmp_path, servers=servers)

    result = runner.invoke(app, ["validate"], env=env)

    assert result.exit_code == 2
    assert "overlapping" in result.stdout
    (record,) = _operations(tmp_path)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert len(record["result"]["errors"]) == 5  # type: ignore[index,arg-type]


def test_validate_reports_invalid_instances(tmp_path: Path) -> None:
    """Model errors exit with the validation code."""
    servers = {"servers": {"main": {"config": {"rcon": {"connection_timeout": 90000}}}}}
    env = _prepare_environment(tmp_path, servers=servers)

    result = runner.invoke(app, ["validate"], env=env)

    assert result.exit_code == 2
    assert "86400" in result.stdout


def test_invalid_app_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Unknown application config keys stop every command."""
    config_file = tmp_path / "config.yml"
    config_file.write_text("bogus: 1\n", encoding="utf-8")

    result = runner.invoke(app, ["validate"], env={"SQUADCTL_CONFIG_FILE": str(config_file)})

    assert result.exit_code == 2
    assert "bogus" in result.stdout


def test_ports_json_reports_sets_and_firewall(tmp_path: Path) -> None:
    """``ports --json`` emits expanded ports and the firewall plan."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["ports", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["instances"]["main"]["game"] == [7787, 7788]
    assert payload["instances"]["seed"]["rcon"] == [21115]
    assert "staging" not in payload["instances"]
    assert payload["firewall"] == {
        "tcp": [21114, 27165, 27166],
        "udp": [15000, 7787, 7788, 27165, 27166, 21114],
    }
    assert payload["conflicts"] == []


def test_render_writes_preview_without_secrets(tmp_path: Path) -> None:
    """``render`` writes every file and leaves file-referenced secrets unresolved."""
    env = _prepare_environment(tmp_path)
    out = tmp_path / "preview"

    result = runner.invoke(app, ["render", "main", "--out", str(out)], env=env)

    assert result.exit_code == 0, result.stdout
    assert len(list(out.iterdir())) == 16
    server_cfg = (out / "Server.cfg").read_text(encoding="utf-8")
    assert "ServerPassword=\n" in server_cfg
    assert "join-me" not in server_cfg
    assert "Password=inline-rcon\n" in (out / "Rcon.cfg").read_text(encoding="utf-8")
    assert (out / "LayerRotation.cfg").read_text(encoding="utf-8") == "Narva_RAAS_v1"
    assert "server-password" in result.stdout


def test_render_unknown_instance(tmp_path: Path) -> None:
    """Rendering an undeclared instance is a validation error."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["render", "nope", "--out", str(tmp_path / "out")], env=env)

    assert result.exit_code == 2
    assert "not declared" in result.stdout


def test_provision_prepares_enabled_instances(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """``provision`` prepares every enabled instance and locks its files."""
    events = _stub_tools(monkeypatch)
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["provision", "--max-concurrency", "1"], env=env)

    assert result.exit_code == 0, result.stdout
    assert ("install", "main") in events
    assert ("install", "seed") in events
    assert ("install", "staging") not in events
    config_dir = tmp_path / "state" / "squad" / "main" / "SquadGame" / "ServerConfig"
    server_cfg = config_dir / "Server.cfg"
    assert "ServerPassword=join-me\n" in server_cfg.read_text(encoding="utf-8")
    assert stat.S_IMODE(server_cfg.stat().st_mode) == 0o400
    (record,) = _operations(tmp_path)
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert "join-me" not in json.dumps(record)


def test_provision_failure_uses_provider_exit_code(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A mod that never downloads fails its instance with the provider code."""
    events = _stub_tools(monkeypatch, fail_mod=True)
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["provision", "main"], env=env)

    assert result.exit_code == 4
    assert events.count(("mod", 111)) == 5
    assert ("patch", "main") not in events
    (record,) = _operations(tmp_path)
    assert record["result"]["status"] == "error"  # type: ignore[index]


def test_provision_unknown_instance(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Naming an undeclared instance is a validation error."""
    events = _stub_tools(monkeypatch)
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["provision", "ghost"], env=env)

    assert result.exit_code == 2
    assert events == []


def test_start_prepares_then_execs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """``start`` logs the prepared instance before handing over to the server."""
    _stub_tools(monkeypatch)
    monkeypatch.chdir(tmp_path)
    executed: list[tuple[str, list[str]]] = []

    def fake_execve(path: str, argv: Sequence[str], env: Mapping[str, str]) -> None:
        executed.append((path, list(argv)))

    monkeypatch.setattr(os, "execve", fake_execve)
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["start", "seed"], env=env)

    assert result.exit_code == 0, result.stdout
    assert executed == [
        (
            "./SquadGameServer.sh",
            [
                "./SquadGameServer.sh",
                "Port=7797",
                "QueryPort=27175",
                "FIXEDMAXTICKRATE=35",
                "FIXEDMAXPLAYERS=100",
                "beaconport=15001",
            ],
        )
    ]
    (record,) = _operations(tmp_path)
    assert record["command"] == "start"
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_start_missing_secret_uses_environment_code(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An unresolvable credential stops the start before launch."""
    _stub_tools(monkeypatch)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(os, "execve", lambda *_args: pytest.fail("must not exec"))
    env = _prepare_environment(tmp_path)
    (tmp_path / "creds" / "SQUAD_SERVER_PASSWORD_FILE").unlink()

    result = runner.invoke(app, ["start", "main"], env=env)

    assert result.exit_code == 3
    assert "injecting-secrets" in result.stdout


def test_units_render_and_enable(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """``units --enable`` writes one unit per enabled instance and enables it."""
    calls: list[tuple[str, str | None]] = []

    def fake_systemctl(
        self: SystemdProvider,
        command: str,
        unit: str | None = None,
    ) -> None:
        calls.append((command, unit))

    monkeypatch.setattr(SystemdProvider, "_systemctl", fake_systemctl)
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["units", "--enable"], env=env)

    assert result.exit_code == 0, result.stdout
    units_dir = tmp_path / "units"
    assert sorted(path.name for path in units_dir.iterdir()) == [
        "squad-main.service",
        "squad-seed.service",
    ]
    main_unit = (units_dir / "squad-main.service").read_text(encoding="utf-8")
    assert "LoadCredential=SQUAD_SERVER_PASSWORD_FILE:/etc/squad/server-password" in main_unit
    assert "ExecStart=/usr/bin/squadctl start main" in main_unit
    assert ("enable", "squad-main.service") in calls
    assert ("enable", "squad-seed.service") in calls
    assert calls.count(("daemon-reload", None)) == 2
