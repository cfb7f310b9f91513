"""Provisioning state machine for Squad server instances.

An instance moves through::

    FETCHING -> PATCHING_BINARIES -> RENDERING -> INJECTING_SECRETS
             -> FINALIZING_PERMISSIONS -> LAUNCHING -> RUNNING

and stops in ``FAILED`` at the first failing step. Only workshop downloads
are retried; every other step is fail-fast. :meth:`Orchestrator.prepare`
covers everything up to ``LAUNCHING`` so that several instances can be
prepared side by side; :meth:`Orchestrator.launch` replaces the current
process with the server.
"""
from __future__ import annotations

import concurrent.futures
import os
import shutil
import tempfile
import traceback
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from rich.console import Console

from .config import LaunchConfig
from .credentials import CredentialStore, SecretResolutionError, inject_secret, plan_injections
from .logging import OperationScope
from .models import ServerInstance
from .ports import validate_ports
from .providers.patchelf import BinaryPatcher, PatchError
from .providers.steamcmd import FetchError, SteamCmd
from .renderer import render_config

CONFIG_SUBDIR = Path("SquadGame") / "ServerConfig"
MODS_SUBDIR = Path("SquadGame") / "Plugins" / "Mods"

ExecFunction = Callable[[str, Sequence[str], Mapping[str, str]], object]


class ProvisionState(str, Enum):
    """Steps of the provisioning sequence."""

    FETCHING = "fetching"
    PATCHING_BINARIES = "patching-binaries"
    RENDERING = "rendering"
    INJECTING_SECRETS = "injecting-secrets"
    FINALIZING_PERMISSIONS = "finalizing-permissions"
    LAUNCHING = "launching"
    # The server owns the process after exec, so squadctl never records RUNNING.
    RUNNING = "running"
    FAILED = "failed"


class ProvisioningError(RuntimeError):
    """Raised when a provisioning step fails for one instance."""

    def __init__(self, instance: str, state: ProvisionState, cause: BaseException) -> None:
        """Record the instance, the failed step and the underlying error."""
        self.instance = instance
        self.state = state
        self.cause = cause
        super().__init__(f"Instance '{instance}' failed during {state.value}: {cause}")


@dataclass(frozen=True, slots=True)
class InstancePaths:
    """Filesystem locations used while provisioning one instance."""

    install_dir: Path
    cache_dir: Path
    workshop_dir: Path

    @property
    def config_dir(self) -> Path:
        """Directory the game reads its ``.cfg`` files from."""
        return self.install_dir / CONFIG_SUBDIR

    @property
    def mods_dir(self) -> Path:
        """Directory the game loads workshop mods from."""
        return self.install_dir / MODS_SUBDIR


@dataclass(slots=True)
class ProvisionResult:
    """Outcome of preparing one instance."""

    instance: str
    state: ProvisionState
    steps: list[str] = field(default_factory=list)
    error: str | None = None
    cause: BaseException | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        """Return ``True`` unless the instance ended in ``FAILED``."""
        return self.state is not ProvisionState.FAILED

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance": self.instance,
            "state": self.state.value,
            "steps": list(self.steps),
            "error": self.error,
        }


_STEP_ERRORS = (FetchError, PatchError, SecretResolutionError, OSError)


class Orchestrator:
    """Drive the provisioning sequence for server instances."""

    def __init__(
        self,
        *,
        steamcmd: SteamCmd,
        patcher: BinaryPatcher,
        credentials: CredentialStore,
        state_root: Path,
        cache_root: Path,
        launch: LaunchConfig | None = None,
        mod_attempts: int = 5,
        console: Console | None = None,
        exec_function: ExecFunction | None = None,
    ) -> None:
        """Wire the orchestrator to its collaborators."""
        self.steamcmd = steamcmd
        self.patcher = patcher
        self.credentials = credentials
        self.state_root = state_root
        self.cache_root = cache_root
        self.launch_config = launch or LaunchConfig()
        self.mod_attempts = mod_attempts
        self.console = console
        self._exec = exec_function or os.execve

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def paths(self, instance: ServerInstance) -> InstancePaths:
        """Resolve the install and cache directories of *instance*."""
        install_dir = self.state_root / instance.state_dir
        return InstancePaths(
            install_dir=install_dir,
            cache_dir=self.cache_root / instance.cache_dir,
            workshop_dir=self.steamcmd.workshop_dir(install_dir),
        )

    # ------------------------------------------------------------------
    # Sequence
    # ------------------------------------------------------------------
    def prepare(
        self,
        instance: ServerInstance,
        *,
        op: OperationScope | None = None,
    ) -> ProvisionResult:
        """Run every step up to (not including) launch.

        Raises :class:`ProvisioningError` naming the failed step.
        """
        paths = self.paths(instance)
        result = ProvisionResult(instance=instance.name, state=ProvisionState.FETCHING)

        def run(state: ProvisionState, action: Callable[[], object]) -> None:
            result.state = state
            self._record(op, instance, state.value, status="started")
            try:
                action()
            except _STEP_ERRORS as exc:
                result.state = ProvisionState.FAILED
                result.error = str(exc)
                self._record(op, instance, state.value, status="error", detail=str(exc))
                raise ProvisioningError(instance.name, state, exc) from exc
            result.steps.append(state.value)
            self._record(op, instance, state.value)

        rendered: list[Path] = []
        run(ProvisionState.FETCHING, lambda: self.fetch(instance, paths, op=op))
        run(ProvisionState.PATCHING_BINARIES, lambda: self.patch_binaries(instance, paths))
        run(ProvisionState.RENDERING, lambda: rendered.extend(self.render(instance, paths)))
        run(ProvisionState.INJECTING_SECRETS, lambda: self.inject_secrets(instance, paths, op=op))
        run(ProvisionState.FINALIZING_PERMISSIONS, lambda: self.finalize_permissions(rendered))
        result.state = ProvisionState.LAUNCHING
        return result

    def fetch(
        self,
        instance: ServerInstance,
        paths: InstancePaths,
        *,
        op: OperationScope | None = None,
    ) -> None:
        """Install or update the server, then download and link every mod."""
        paths.install_dir.mkdir(parents=True, exist_ok=True)
        paths.cache_dir.mkdir(parents=True, exist_ok=True)
        self._say(instance, f"Installing/updating server in {paths.install_dir}")
        self.steamcmd.install_app(paths.install_dir, home=paths.cache_dir)
        for mod_id in instance.mods:
            self.fetch_mod(instance, paths, mod_id, op=op)

    def fetch_mod(
        self,
        instance: ServerInstance,
        paths: InstancePaths,
        mod_id: int,
        *,
        op: OperationScope | None = None,
    ) -> Path:
        """Download *mod_id* with retries and link it into the mods directory."""
        remaining = self.mod_attempts
        while True:
            try:
                self.steamcmd.download_mod(paths.install_dir, mod_id, home=paths.cache_dir)
                break
            except FetchError as exc:
                remaining -= 1
                self._record(
                    op,
                    instance,
                    "fetch.mod",
                    status="warning",
                    detail={"mod": mod_id, "remaining_attempts": remaining, "error": str(exc)},
                )
                self._say(
                    instance,
                    f"Did not fully download mod {mod_id}, remaining attempts: {remaining}",
                    style="yellow",
                )
                if remaining <= 0:
                    raise FetchError(
                        f"Too many attempts while downloading mod {mod_id}; giving up after "
                        f"{self.mod_attempts} attempts."
                    ) from exc
        link = self._link_mod(paths, mod_id)
        self._say(instance, f"Installed mod {mod_id}")
        return link

    def patch_binaries(self, instance: ServerInstance, paths: InstancePaths) -> list[Path]:
        """Point every server executable at the host dynamic loader."""
        patched = self.patcher.patch_tree(paths.install_dir)
        self._say(instance, f"Patched {len(patched)} executable(s)")
        return patched

    def render(self, instance: ServerInstance, paths: InstancePaths) -> list[Path]:
        """Write every rendered configuration file into the config directory."""
        paths.config_dir.mkdir(parents=True, exist_ok=True)
        written: list[Path] = []
        for rendered in render_config(instance.config):
            destination = paths.config_dir / rendered.name
            _replace_file(destination, rendered.content)
            written.append(destination)
        self._say(instance, f"Generated {len(written)} configuration file(s)")
        return written

    def inject_secrets(
        self,
        instance: ServerInstance,
        paths: InstancePaths,
        *,
        op: OperationScope | None = None,
    ) -> None:
        """Resolve and write every file-referenced secret of *instance*."""
        for injection in plan_injections(instance.config):
            value = self.credentials.resolve(injection.reference)
            inject_secret(paths.config_dir, injection, value)
            self._record(
                op,
                instance,
                "secret",
                detail={"name": injection.reference.name, "file": injection.filename},
            )

    def finalize_permissions(self, rendered: Iterable[Path]) -> None:
        """Make every rendered file read-only for its owner."""
        for path in rendered:
            os.chmod(path, 0o400)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------
    def launch_command(self, instance: ServerInstance) -> list[str]:
        """Return the argv used to start the server for *instance*."""
        server = instance.config.server
        return [
            self.launch_config.script,
            f"Port={instance.game_port}",
            f"QueryPort={instance.query_port}",
            f"FIXEDMAXTICKRATE={server.max_tick_rate}",
            f"FIXEDMAXPLAYERS={server.settings.max_players}",
            f"beaconport={instance.beacon_port}",
        ]

    def launch_environment(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return the environment for the server process."""
        env = dict(os.environ if base is None else base)
        if self.launch_config.library_path:
            env["LD_LIBRARY_PATH"] = self.launch_config.library_path
        return env

    def launch(self, instance: ServerInstance) -> None:
        """Replace the current process with the server.

        With the default exec function this call does not return.
        """
        paths = self.paths(instance)
        argv = self.launch_command(instance)
        self._say(instance, f"Starting server from {paths.install_dir}")
        try:
            os.chdir(paths.install_dir)
            self._exec(argv[0], argv, self.launch_environment())
        except OSError as exc:
            raise ProvisioningError(instance.name, ProvisionState.LAUNCHING, exc) from exc

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------
    def provision_instances(
        self,
        instances: Sequence[ServerInstance],
        *,
        declared: Iterable[ServerInstance] | None = None,
        max_workers: int = 4,
        op: OperationScope | None = None,
    ) -> list[ProvisionResult]:
        """Prepare *instances* concurrently, one result per instance in order.

        Port uniqueness across *declared* (defaults to *instances*) is checked
        before any instance starts fetching. A failing instance does not stop
        the others.
        """
        validate_ports(list(declared) if declared is not None else instances)
        if not instances:
            return []

        results: list[ProvisionResult | None] = [None] * len(instances)
        workers = max(1, min(max_workers, len(instances)))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_index: dict[concurrent.futures.Future[ProvisionResult], int] = {}
            for index, instance in enumerate(instances):
                future = executor.submit(self._prepare_isolated, instance, op)
                future_to_index[future] = index

            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()

        return [result for result in results if result is not None]

    def _prepare_isolated(
        self,
        instance: ServerInstance,
        op: OperationScope | None,
    ) -> ProvisionResult:
        try:
            return self.prepare(instance, op=op)
        except ProvisioningError as exc:
            self._say(instance, str(exc), style="red")
            return ProvisionResult(
                instance=instance.name,
                state=ProvisionState.FAILED,
                error=str(exc),
                cause=exc,
            )
        except Exception as exc:  # noqa: BLE001
            message = f"Instance '{instance.name}' raised an unexpected error: {exc}"
            self._record(
                op,
                instance,
                "unexpected",
                status="error",
                detail={"exception": repr(exc), "traceback": traceback.format_exc()},
            )
            self._say(instance, message, style="red")
            return ProvisionResult(
                instance=instance.name,
                state=ProvisionState.FAILED,
                error=message,
                cause=exc,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _link_mod(self, paths: InstancePaths, mod_id: int) -> Path:
        paths.mods_dir.mkdir(parents=True, exist_ok=True)
        link = paths.mods_dir / str(mod_id)
        if link.is_symlink() or link.is_file():
            link.unlink()
        elif link.is_dir():
            shutil.rmtree(link)
        link.symlink_to(paths.workshop_dir / str(mod_id), target_is_directory=True)
        return link

    def _record(
        self,
        op: OperationScope | None,
        instance: ServerInstance,
        name: str,
        *,
        status: str = "success",
        detail: object = None,
    ) -> None:
        if op is not None:
            op.add_step(f"{instance.name}.{name}", status=status, detail=detail)

    def _say(self, instance: ServerInstance, message: str, *, style: str | None = None) -> None:
        if self.console is not None:
            self.console.print(f"[{instance.name}] {message}", style=style, markup=False)


def _replace_file(path: Path, content: bytes) -> None:
    """Atomically replace *path* with *content* via an owner-only temporary file."""
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(content)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "InstancePaths",
    "Orchestrator",
    "ProvisionResult",
    "ProvisionState",
    "ProvisioningError",
]
