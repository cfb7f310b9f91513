"""SteamCMD wrapper used to install the server and download workshop mods."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path


class FetchError(RuntimeError):
    """Raised when steamcmd fails to install or download content."""


class SteamCmd:
    """Install the Squad dedicated server and its workshop content via steamcmd."""

    def __init__(
        self,
        *,
        steamcmd_bin: str = "steamcmd",
        app_id: int = 403240,
        workshop_app_id: int = 393380,
    ) -> None:
        """Initialise the wrapper with the binary and Steam application ids."""
        self.steamcmd_bin = steamcmd_bin
        self.app_id = app_id
        self.workshop_app_id = workshop_app_id

    def workshop_dir(self, install_dir: Path) -> Path:
        """Return where steamcmd places workshop items for this application."""
        return install_dir / "steamapps" / "workshop" / "content" / str(self.workshop_app_id)

    def install_app(self, install_dir: Path, *, home: Path) -> subprocess.CompletedProcess[str]:
        """Install or update (and validate) the server application in *install_dir*."""
        cmd = [
            self.steamcmd_bin,
            "+force_install_dir",
            str(install_dir),
            "+login",
            "anonymous",
            "+app_update",
            str(self.app_id),
            "validate",
            "+quit",
        ]
        result = self._run_command(cmd, env=self._env(home))
        if result.returncode != 0:
            raise FetchError(
                f"steamcmd app_update {self.app_id} failed (exit {result.returncode}): "
                f"{_summarise(result)}"
            )
        return result

    def download_mod(
        self,
        install_dir: Path,
        mod_id: int,
        *,
        home: Path,
    ) -> subprocess.CompletedProcess[str]:
        """Download workshop item *mod_id*, raising :class:`FetchError` on failure.

        A partial download is resumed by the next call, so callers retry.
        """
        target = self.workshop_dir(install_dir) / str(mod_id)
        cmd = [
            self.steamcmd_bin,
            "+force_install_dir",
            str(target),
            "+login",
            "anonymous",
            "+workshop_download_item",
            str(self.workshop_app_id),
            str(mod_id),
            "+quit",
        ]
        result = self._run_command(cmd, env=self._env(home))
        if result.returncode != 0:
            raise FetchError(
                f"steamcmd workshop_download_item {mod_id} failed (exit {result.returncode}): "
                f"{_summarise(result)}"
            )
        return result

    def _env(self, home: Path) -> dict[str, str]:
        env_vars = os.environ.copy()
        env_vars["HOME"] = str(home)
        return env_vars

    def _run_command(
        self,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str],
    ) -> subprocess.CompletedProcess[str]:
        """Execute steamcmd (isolated for testing)."""
        try:
            return subprocess.run(  # noqa: S603
                list(cmd),
                check=False,
                capture_output=True,
                text=True,
                env=dict(env),
            )
        except FileNotFoundError as exc:
            raise FetchError(f"{cmd[0]} not found: {exc}") from exc


def _summarise(result: subprocess.CompletedProcess[str]) -> str:
    stdout = (getattr(result, "stdout", "") or "").strip()
    stderr = (getattr(result, "stderr", "") or "").strip()
    message = stderr or stdout or "no output"
    return message.splitlines()[-1]


__all__ = ["FetchError", "SteamCmd"]
