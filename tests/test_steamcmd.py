"""Tests for the steamcmd provider."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from squadctl.providers import FetchError, SteamCmd


def _capture(
    steamcmd: SteamCmd,
    monkeypatch: pytest.MonkeyPatch,
    *,
    returncode: int = 0,
    stderr: str = "",
) -> list[tuple[list[str], dict[str, str]]]:
    calls: list[tuple[list[str], dict[str, str]]] = []

    def fake_run(
        cmd: Sequence[str],
        *,
        env: Mapping[str, str],
    ) -> subprocess.CompletedProcess[str]:
        calls.append((list(cmd), dict(env)))
        return subprocess.CompletedProcess(cmd, returncode, stdout="", stderr=stderr)

    monkeypatch.setattr(steamcmd, "_run_command", fake_run)
    return calls


def test_install_app_runs_anonymous_validated_update(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The server is installed with ``app_update 403240 validate`` and HOME set."""
    steamcmd = SteamCmd(steamcmd_bin="/usr/bin/steamcmd")
    calls = _capture(steamcmd, monkeypatch)

    steamcmd.install_app(tmp_path / "server", home=tmp_path / "cache")

    (cmd, env), = calls
    assert cmd == [
        "/usr/bin/steamcmd",
        "+force_install_dir",
        str(tmp_path / "server"),
        "+login",
        "anonymous",
        "+app_update",
        "403240",
        "validate",
        "+quit",
    ]
    assert env["HOME"] == str(tmp_path / "cache")


def test_download_mod_targets_workshop_directory(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Workshop items are downloaded into ``steamapps/workshop/content/393380/<id>``."""
    steamcmd = SteamCmd()
    calls = _capture(steamcmd, monkeypatch)

    steamcmd.download_mod(tmp_path, 1959152751, home=tmp_path / "cache")

    (cmd, _env), = calls
    target = tmp_path / "steamapps" / "workshop" / "content" / "393380" / "1959152751"
    assert cmd[1:3] == ["+force_install_dir", str(target)]
    assert cmd[-4:] == ["+workshop_download_item", "393380", "1959152751", "+quit"]
    assert steamcmd.workshop_dir(tmp_path) == target.parent


def test_failures_raise_fetch_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Non-zero exits surface the last line of output."""
    steamcmd = SteamCmd()
    _capture(steamcmd, monkeypatch, returncode=8, stderr="Loading...\nERROR! Timeout downloading item")

    with pytest.raises(FetchError, match="Timeout downloading item"):
        steamcmd.download_mod(tmp_path, 42, home=tmp_path)
    with pytest.raises(FetchError, match="exit 8"):
        steamcmd.install_app(tmp_path, home=tmp_path)


def test_missing_binary_raises_fetch_error(tmp_path: Path) -> None:
    """A missing steamcmd executable is reported as a fetch failure."""
    steamcmd = SteamCmd(steamcmd_bin=str(tmp_path / "does-not-exist"))

    with pytest.raises(FetchError, match="not found"):
        steamcmd.install_app(tmp_path / "server", home=tmp_path)
