"""Typer-powered command line interface for ``squadctl``.

Every command loads the application config, opens one structured operation
record and reports progress through ``rich``. Errors are mapped onto
:class:`~squadctl.exit_codes.ExitCode` values.
"""
from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigurationError, load_config
from .credentials import CredentialStore, secret_references
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .orchestrator import Orchestrator, ProvisioningError
from .ports import PortConflictError, collect_ports, firewall_rules, validate_ports
from .providers import BinaryPatcher, SteamCmd, SystemdError, SystemdProvider
from .registry import InstanceRegistry
from .renderer import render_config
from .templates import TemplateEngine, TemplateError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to squadctl's YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Squad dedicated server provisioning CLI.

        Declares server instances in YAML, validates their ports, renders the
        game configuration, injects secrets and launches each server.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    credentials: CredentialStore
    orchestrator: Orchestrator
    systemd_provider: SystemdProvider


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    credentials = CredentialStore(config.credentials_dir)
    steamcmd = SteamCmd(
        steamcmd_bin=config.steamcmd.bin,
        app_id=config.steamcmd.app_id,
        workshop_app_id=config.steamcmd.workshop_app_id,
    )
    patcher = BinaryPatcher(
        patchelf_bin=config.patchelf.bin,
        interpreter=config.patchelf.interpreter,
    )
    orchestrator = Orchestrator(
        steamcmd=steamcmd,
        patcher=patcher,
        credentials=credentials,
        state_root=config.state_root,
        cache_root=config.cache_root,
        launch=config.launch,
        mod_attempts=config.steamcmd.mod_attempts,
        console=console,
    )
    systemd_provider = SystemdProvider(
        templates=templates,
        systemd_dir=config.systemd.unit_dir,
        systemctl_bin=config.systemd.systemctl_bin,
        squadctl_bin=config.systemd.squadctl_bin,
        state_root=config.state_root,
        config_file=config.config_file if config.config_file.exists() else None,
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        templates=templates,
        credentials=credentials,
        orchestrator=orchestrator,
        systemd_provider=systemd_provider,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the squadctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"squadctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _load_registry(runtime: RuntimeContext, op: OperationScope) -> InstanceRegistry:
    servers_file = runtime.config.servers_file
    try:
        registry = InstanceRegistry.load(servers_file)
    except ConfigurationError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    op.add_step(
        "registry.load",
        detail={"servers_file": servers_file, "declared": len(registry)},
    )
    return registry


def _check_ports(registry: InstanceRegistry, op: OperationScope) -> None:
    try:
        validate_ports(registry.instances)
    except PortConflictError as exc:
        _command_error(
            op,
            "Port conflicts detected between enabled instances.",
            rc=ExitCode.VALIDATION,
            errors=[conflict.describe() for conflict in exc.conflicts],
        )
    op.add_step("ports.validate", detail={"enabled": len(registry.enabled())})


@app.command()
def validate(ctx: typer.Context) -> None:
    """Validate the declared instances and their port assignments."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        target={"kind": "servers", "path": runtime.config.servers_file},
    ) as op:
        registry = _load_registry(runtime, op)
        try:
            validate_ports(registry.instances)
        except PortConflictError as exc:
            for conflict in exc.conflicts:
                console.print(f"[red]{conflict.describe()}[/red]")
            op.error(
                "Port conflicts detected between enabled instances.",
                errors=[conflict.describe() for conflict in exc.conflicts],
                rc=int(ExitCode.VALIDATION),
            )
            raise typer.Exit(code=ExitCode.VALIDATION) from exc

        enabled = registry.enabled()
        console.print(
            f"[green]Configuration valid[/green]: {len(registry)} instance(s) declared, "
            f"{len(enabled)} enabled."
        )
        op.success(
            "Configuration valid.",
            changed=0,
            context={"declared": len(registry), "enabled": [i.name for i in enabled]},
        )


@app.command()
def ports(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit port sets and the firewall plan as JSON instead of a table.",
    ),
) -> None:
    """Show the concrete ports of every enabled instance and the firewall plan."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        registry = _load_registry(runtime, op)
        allocation = collect_ports(registry.instances)
        rules = firewall_rules(registry.instances)
        conflicts = allocation.conflicts()

        if json_output:
            console.print_json(
                data={
                    "instances": {
                        name: {
                            "game": list(port_set.game),
                            "query": list(port_set.query),
                            "rcon": list(port_set.rcon),
                            "beacon": list(port_set.beacon),
                        }
                        for name, port_set in allocation.ports.items()
                    },
                    "firewall": rules.to_dict(),
                    "conflicts": [
                        {
                            "family": conflict.family,
                            "ports": list(conflict.ports),
                            "duplicates": list(conflict.duplicates),
                        }
                        for conflict in conflicts
                    ],
                }
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Instance", style="bold")
            table.add_column("Game")
            table.add_column("Query")
            table.add_column("RCON")
            table.add_column("Beacon")
            if not allocation.ports:
                table.add_row("(none)", "", "", "", "")
            for name, port_set in allocation.ports.items():
                table.add_row(
                    name,
                    _join_ports(port_set.game),
                    _join_ports(port_set.query),
                    _join_ports(port_set.rcon),
                    _join_ports(port_set.beacon),
                )
            console.print(table)
            console.print(f"Firewall TCP: {_join_ports(rules.tcp) or '(none)'}")
            console.print(f"Firewall UDP: {_join_ports(rules.udp) or '(none)'}")

        if conflicts:
            _command_error(
                op,
                "Port conflicts detected between enabled instances.",
                rc=ExitCode.VALIDATION,
                errors=[conflict.describe() for conflict in conflicts],
            )
        op.success("Reported port assignments.", changed=0, context=rules.to_dict())


def _join_ports(values: Sequence[int]) -> str:
    return ", ".join(str(value) for value in values)


@app.command()
def render(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to render."),
    out: Path = typer.Option(
        ...,
        "--out",
        file_okay=False,
        dir_okay=True,
        help="Directory that receives the rendered configuration files.",
    ),
) -> None:
    """Write the rendered configuration of one instance for inspection.

    Secrets referenced by file are not resolved; their lines keep the inline
    value.
    """
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "render",
        args={"out": out},
        target={"kind": "instance", "name": name},
    ) as op:
        registry = _load_registry(runtime, op)
        try:
            instance = registry.get(name)
        except ConfigurationError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        try:
            out.mkdir(parents=True, exist_ok=True)
            for rendered in render_config(instance.config):
                (out / rendered.name).write_bytes(rendered.content)
                op.add_step("render.file", detail={"file": rendered.name})
        except OSError as exc:
            _command_error(
                op,
                f"Failed to write rendered files to {out}: {exc}",
                rc=ExitCode.ENVIRONMENT,
            )

        pending = [ref.name for ref in secret_references(instance.config)]
        console.print(f"[green]Rendered[/green] configuration for '{name}' into {out}.")
        if pending:
            console.print(
                f"[yellow]Not injected[/yellow] (resolved at provision time): {', '.join(pending)}"
            )
        op.success(
            f"Rendered configuration for '{name}'.",
            changed=1,
            context={"out": out, "secrets_pending": pending},
        )


@app.command()
def provision(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(
        None,
        help="Instances to provision (defaults to every enabled instance).",
    ),
    max_concurrency: int | None = typer.Option(
        None,
        "--max-concurrency",
        min=1,
        help="Maximum number of instances provisioned at once.",
    ),
) -> None:
    """Fetch, patch, render and secure instances without launching them."""
    runtime = _get_runtime(ctx)
    workers = max_concurrency or runtime.config.max_concurrency
    with runtime.logger.operation(
        "provision",
        args={"names": list(names or []), "max_concurrency": workers},
        target={"kind": "instances"},
    ) as op:
        registry = _load_registry(runtime, op)
        try:
            selected = registry.select(names)
        except ConfigurationError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        _check_ports(registry, op)

        results = runtime.orchestrator.provision_instances(
            selected,
            declared=registry.instances,
            max_workers=workers,
            op=op,
        )

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Instance", style="bold")
        table.add_column("State")
        table.add_column("Detail")
        if not results:
            table.add_row("(none)", "", "")
        for result in results:
            state = result.state.value
            styled = f"[green]{state}[/green]" if result.ok else f"[red]{state}[/red]"
            table.add_row(result.instance, styled, result.error or "")
        console.print(table)

        failures = [result for result in results if not result.ok]
        context = {"results": [result.to_dict() for result in results]}
        if failures:
            rc = ExitCode.for_error(failures[0].cause) if failures[0].cause else ExitCode.PROVIDER
            message = f"{len(failures)} of {len(results)} instance(s) failed to provision."
            console.print(f"[red]{message}[/red]")
            op.error(
                message,
                errors=[result.error or result.instance for result in failures],
                rc=int(rc),
                context=context,
            )
            raise typer.Exit(code=int(rc))
        op.success(
            f"Provisioned {len(results)} instance(s).",
            changed=len(results),
            context=context,
        )


@app.command()
def start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to provision and launch."),
) -> None:
    """Provision one instance, then replace this process with the server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "start",
        target={"kind": "instance", "name": name},
    ) as op:
        registry = _load_registry(runtime, op)
        try:
            instance = registry.get(name)
        except ConfigurationError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        _check_ports(registry, op)

        try:
            runtime.orchestrator.prepare(instance, op=op)
        except ProvisioningError as exc:
            _command_error(op, str(exc), rc=ExitCode.for_error(exc))
        op.success(
            f"Instance '{name}' prepared; launching.",
            changed=1,
            context={"argv": runtime.orchestrator.launch_command(instance)},
        )

    try:
        runtime.orchestrator.launch(instance)
    except ProvisioningError as exc:
        with runtime.logger.operation(
            "start launch",
            target={"kind": "instance", "name": name},
        ) as launch_op:
            _command_error(launch_op, str(exc), rc=ExitCode.for_error(exc))


@app.command()
def units(
    ctx: typer.Context,
    enable: bool = typer.Option(
        False,
        "--enable",
        help="Also enable each rendered unit with systemctl.",
    ),
) -> None:
    """Render a systemd service unit for every enabled instance."""
    runtime = _get_runtime(ctx)
    provider = runtime.systemd_provider
    with runtime.logger.operation(
        "units",
        args={"enable": enable},
        target={"kind": "systemd", "unit_dir": provider.systemd_dir},
    ) as op:
        registry = _load_registry(runtime, op)
        _check_ports(registry, op)

        changed = 0
        for instance in registry.enabled():
            unit = provider.unit_name(instance)
            try:
                if provider.render_unit(instance):
                    changed += 1
                    op.add_step("systemd.render", detail={"unit": unit})
                if enable:
                    provider.enable(instance)
                    op.add_step("systemd.enable", detail={"unit": unit})
            except (SystemdError, TemplateError, OSError) as exc:
                _command_error(op, f"{unit}: {exc}", rc=ExitCode.for_error(exc))
            console.print(f"[green]{unit}[/green] -> {provider.unit_path(instance)}")

        op.success(
            f"Rendered {len(registry.enabled())} unit(s).",
            changed=changed,
        )


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
