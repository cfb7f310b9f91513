"""Systemd provider for Squad server service units."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..credentials import secret_references
from ..models import ServerInstance
from ..templates import TemplateEngine


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage one systemd service unit per server instance."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    squadctl_bin: str = "squadctl"
    state_root: Path = Path("/var/lib")
    config_file: Path | None = None

    def unit_name(self, instance: ServerInstance) -> str:
        """Return the systemd unit name for *instance*."""
        return f"{instance.unit_name}.service"

    def unit_path(self, instance: ServerInstance) -> Path:
        """Return the full path for the instance unit file."""
        return self.systemd_dir / self.unit_name(instance)

    def unit_context(self, instance: ServerInstance) -> dict[str, object]:
        """Return the template context for the unit of *instance*.

        Only credential names and source paths are exposed; systemd reads the
        files itself when the unit starts.
        """
        return {
            "instance_name": instance.name,
            "server_name": instance.config.server.settings.server_name,
            "state_dir": instance.state_dir,
            "cache_dir": instance.cache_dir,
            "working_directory": str(self.state_root / instance.state_dir),
            "credentials": [
                {"credential": ref.credential, "source": str(ref.source)}
                for ref in secret_references(instance.config)
            ],
            "config_file": str(self.config_file) if self.config_file else None,
            "exec_start": f"{self.squadctl_bin} start {instance.name}",
        }

    def render_unit(self, instance: ServerInstance) -> bool:
        """Render the unit file for *instance*; reload systemd when it changed."""
        template_name = "systemd/squad-server.service.j2"
        path = self.unit_path(instance)
        changed = self.templates.render_to_path(
            template_name, path, self.unit_context(instance), mode=0o644
        )
        if changed:
            self._reload_daemon()
        return changed

    def enable(self, instance: ServerInstance) -> subprocess.CompletedProcess[str]:
        """Enable the instance unit."""
        return self._systemctl("enable", self.unit_name(instance))

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(args, error_prefix=f"{self.systemctl_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
