"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from squadctl.config import AppConfig, ConfigurationError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.servers_file == Path("/etc/squadctl/servers.yml")
    assert config.state_root == Path("/var/lib")
    assert config.cache_root == Path("/var/cache")
    assert config.logs_dir == Path("/var/log/squadctl")
    assert config.templates_dir == Path("/etc/squadctl/templates")
    assert config.max_concurrency == 4
    assert config.credentials_dir is None
    assert config.steamcmd.app_id == 403240
    assert config.steamcmd.workshop_app_id == 393380
    assert config.steamcmd.mod_attempts == 5
    assert config.patchelf.interpreter == "/lib64/ld-linux-x86-64.so.2"
    assert config.launch.script == "./SquadGameServer.sh"
    assert config.launch.library_path is None
    assert config.systemd.unit_dir == Path("/etc/systemd/system")


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "squadctl.yml"
    cfg.write_text(
        "servers_file: {servers}\n"
        "max_concurrency: 2\n"
        "steamcmd:\n"
        "  bin: /usr/games/steamcmd\n"
        "  mod_attempts: 3\n"
        "launch:\n"
        "  library_path: /opt/gcc/lib\n".format(servers=tmp_path / "servers.yml")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.servers_file == tmp_path / "servers.yml"
    assert config.max_concurrency == 2
    assert config.steamcmd.bin == "/usr/games/steamcmd"
    assert config.steamcmd.mod_attempts == 3
    assert config.steamcmd.app_id == 403240
    assert config.launch.library_path == "/opt/gcc/lib"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "squadctl.yml"
    cfg.write_text("max_concurrency: 2\n")
    env = {
        "SQUADCTL_MAX_CONCURRENCY": "6",
        "SQUADCTL_STATE_ROOT": str(tmp_path / "state"),
        "SQUADCTL_PATCHELF__BIN": "/nix/bin/patchelf",
        "SQUADCTL_SYSTEMD__UNIT_DIR": str(tmp_path / "units"),
    }

    config = load_config(config_file=cfg, env=env)

    assert config.max_concurrency == 6
    assert config.state_root == tmp_path / "state"
    assert config.patchelf.bin == "/nix/bin/patchelf"
    assert config.systemd.unit_dir == tmp_path / "units"


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """``SQUADCTL_CONFIG_FILE`` points at an alternate config file."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("logs_dir: /tmp/squad-logs\n")

    config = load_config(env={"SQUADCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.logs_dir == Path("/tmp/squad-logs")


def test_credentials_directory_falls_back_to_systemd_env(tmp_path: Path) -> None:
    """systemd's ``$CREDENTIALS_DIRECTORY`` is used when not configured."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"CREDENTIALS_DIRECTORY": str(tmp_path / "creds")},
    )

    assert config.credentials_dir == tmp_path / "creds"


def test_overrides_apply_last(tmp_path: Path) -> None:
    """Programmatic overrides win over every other source."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"SQUADCTL_MAX_CONCURRENCY": "6"},
        overrides={"max_concurrency": 1},
    )

    assert config.max_concurrency == 1


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A non-mapping document is rejected."""
    cfg = tmp_path / "squadctl.yml"
    cfg.write_text("- not\n- a mapping\n")

    with pytest.raises(ConfigurationError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Typos in top-level keys are reported."""
    cfg = tmp_path / "squadctl.yml"
    cfg.write_text("server_file: /etc/squadctl/servers.yml\n")

    with pytest.raises(ConfigurationError, match="server_file"):
        load_config(config_file=cfg, env={})


def test_unknown_nested_keys_raise(tmp_path: Path) -> None:
    """Unknown keys inside a section are reported."""
    cfg = tmp_path / "squadctl.yml"
    cfg.write_text("steamcmd:\n  retries: 3\n")

    with pytest.raises(ConfigurationError, match="steamcmd configuration keys: retries"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("max_concurrency: 0\n", "max_concurrency"),
        ("steamcmd:\n  mod_attempts: 0\n", "mod_attempts"),
        ("max_concurrency: many\n", "max_concurrency"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str, message: str) -> None:
    """Out-of-range and non-integer values are rejected."""
    cfg = tmp_path / "squadctl.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigurationError, match=message):
        load_config(config_file=cfg, env={})
