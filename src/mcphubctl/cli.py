"""Typer-powered command line interface for ``mcphubctl``.

Commands share a lazily built :class:`RuntimeContext` (config, registry,
locks, structured logger, backup manager, credential store and reconciler).
Every command runs inside ``logger.operation`` so its outcome lands in the
operations log; validation problems exit with ``ExitCode.VALIDATION``,
environment problems with ``ExitCode.ENVIRONMENT`` and failed syncs with
``ExitCode.SYNC``.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .adapters import adapter_for
from .backups import BackupError, BackupManager, BackupsRegistry
from .config import AppConfig, ConfigError, load_config
from .credentials import (
    CredentialError,
    CredentialStore,
    build_credential_store,
    server_env_key,
)
from .detect import default_config_path, detect_clients
from .drift import drift_report
from .errors import InstanceNotFoundError, SyncError
from .exit_codes import ExitCode
from .importer import import_servers
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .models import ClientInstance, ClientKind, ServerDefinition, format_timestamp
from .reconcile import Reconciler, SyncOutcome
from .state import StateRegistry, StateRegistryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to mcphubctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Report the actions that would be taken without applying changes.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        MCP Hub control CLI.

        Keep one registry of MCP tool servers and reconcile it into the
        configuration files of every client application you use.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    backups: BackupManager
    credentials: CredentialStore
    reconciler: Reconciler


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    registry = StateRegistry(config.registry_dir)
    registry.ensure_root()
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    settings = config.sync_settings()
    backups = BackupManager(
        BackupsRegistry(config.backups.root, config.backups.index),
        settings,
    )
    try:
        credentials = build_credential_store(
            config.credentials.backend, config.credentials.service
        )
    except CredentialError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    reconciler = Reconciler(
        registry,
        backups,
        locks,
        settings,
        credentials=credentials,
        workers=config.sync.workers,
        auto_prune=config.backups.auto_prune,
        lock_timeout=config.lock_timeout,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        backups=backups,
        credentials=credentials,
        reconciler=reconciler,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mcphubctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"mcphubctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# Shared helpers -----------------------------------------------------------
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


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


@contextmanager
def _registry_lock(runtime: RuntimeContext, op: OperationScope) -> Iterator[None]:
    """Hold the global lock for a registry read-modify-write."""
    with ExitStack() as stack:
        try:
            handle = stack.enter_context(runtime.locks.global_lock())
        except LockError as exc:
            _command_error(op, f"Registry is busy: {exc}", rc=ExitCode.ENVIRONMENT)
        op.set_lock_wait_ms(handle.wait_ms)
        yield


def _require_server(
    runtime: RuntimeContext, key: str, op: OperationScope
) -> ServerDefinition:
    try:
        server = runtime.registry.get_server(key)
    except StateRegistryError as exc:
        _command_error(op, str(exc))
    if server is None:
        _command_error(op, f"Server '{key}' not found.")
    return server


def _require_instance(
    runtime: RuntimeContext, key: str, op: OperationScope
) -> ClientInstance:
    try:
        instance = runtime.registry.get_instance(key)
    except StateRegistryError as exc:
        _command_error(op, str(exc))
    if instance is None:
        _command_error(op, f"Instance '{key}' not found.")
    return instance


def _parse_env_pairs(pairs: Sequence[str], op: OperationScope) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            _command_error(op, f"Invalid --env value '{pair}'; expected NAME=VALUE.")
        env[name.strip()] = value
    return env


def _server_names(runtime: RuntimeContext, ids: Sequence[str]) -> list[str]:
    servers = runtime.registry.server_map()
    return [servers[item].name if item in servers else f"{item} (missing)" for item in ids]


def _render_mapping(data: Mapping[str, object]) -> None:
    table = Table(show_header=False)
    for key, value in data.items():
        if value in (None, "", [], {}):
            continue
        if isinstance(value, (dict, list)):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        table.add_row(key.replace("_", " ").title(), rendered)
    console.print(table)


server_app = typer.Typer(help="Manage MCP server definitions in the registry.")
instance_app = typer.Typer(help="Manage client instances and their enabled servers.")
backup_app = typer.Typer(help="Inspect, prune and restore config backups.")
secret_app = typer.Typer(help="Manage secret environment values in the credential store.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(server_app, name="server")
app.add_typer(instance_app, name="instance")
app.add_typer(backup_app, name="backup")
app.add_typer(secret_app, name="secret")
app.add_typer(config_app, name="config")


# config -------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


# server -------------------------------------------------------------------
@server_app.command("list")
def server_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered server definitions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server list",
        args={"json": json_output},
        target={"kind": "server", "scope": "registry"},
    ) as op:
        try:
            servers = runtime.registry.list_servers()
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        if json_output:
            console.print_json(data={"servers": [server.to_dict() for server in servers]})
            op.success("Reported server list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Command")
        table.add_column("Source")
        table.add_column("Id")
        if not servers:
            table.add_row("(none)", "", "", "")
        for server in servers:
            table.add_row(
                server.name,
                " ".join([server.command, *server.args]),
                server.source.kind.value,
                server.id,
            )
        console.print(table)
        op.success("Reported server list.", changed=0)


@server_app.command("show")
def server_show(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Server id or name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a single server definition."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server show",
        args={"key": key, "json": json_output},
        target={"kind": "server", "name": key},
    ) as op:
        server = _require_server(runtime, key, op)
        payload = server.to_dict()
        payload["env"] = {name: "***" for name in server.env} if server.env else {}
        if json_output:
            console.print_json(data=payload)
        else:
            _render_mapping(payload)
        op.success("Displayed server details.", changed=0)


@server_app.command("add")
def server_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name; also used to derive the config key."),
    command: str = typer.Argument(..., help="Executable that launches the server."),
    args: list[str] | None = typer.Argument(
        None, help="Arguments passed to the command (use -- before dashed arguments)."
    ),
    env: list[str] | None = typer.Option(
        None, "--env", "-e", help="Environment variable as NAME=VALUE (repeatable)."
    ),
    secret_env: list[str] | None = typer.Option(
        None,
        "--secret-env",
        help="Environment variable whose value lives in the credential store (repeatable).",
    ),
    description: str | None = typer.Option(None, "--description", help="Free-form notes."),
    tags: list[str] | None = typer.Option(None, "--tag", help="Tag (repeatable)."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Register a new server definition."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server add",
        args={"name": name, "command": command, "args": list(args or [])},
        target={"kind": "server", "name": name},
    ) as op:
        if not name.strip() or not command.strip():
            _command_error(op, "Server name and command must be non-empty.")
        env_values = _parse_env_pairs(env or [], op)
        server = ServerDefinition.create(
            name.strip(),
            command.strip(),
            args or [],
            env=env_values,
            secret_env=secret_env or [],
            description=description,
            tags=tags or [],
        )
        with _registry_lock(runtime, op):
            if runtime.registry.get_server(server.name) is not None:
                _command_error(op, f"Server name '{server.name}' already in use.")
            try:
                runtime.registry.add_server(server)
            except StateRegistryError as exc:
                _command_error(op, str(exc))
        op.add_step("registry.add", detail=server.id)
        if json_output:
            console.print_json(data=server.to_dict())
        else:
            console.print(f"[green]Server '{server.name}' registered ({server.id}).[/green]")
        op.success("Server registered.", changed=1, context={"id": server.id})


@server_app.command("remove")
def server_remove(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Server id or name."),
    purge_secrets: bool = typer.Option(
        True,
        "--purge-secrets/--keep-secrets",
        help="Delete the server's secret values from the credential store.",
    ),
) -> None:
    """Remove a server definition.

    Instances that still enable the server keep the reference; it is skipped
    the next time they are synced.
    """
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server remove",
        args={"key": key, "purge_secrets": purge_secrets},
        target={"kind": "server", "name": key},
    ) as op:
        with _registry_lock(runtime, op):
            server = _require_server(runtime, key, op)
            runtime.registry.remove_server(server.id)
        op.add_step("registry.remove", detail=server.id)
        warnings: list[str] = []
        if purge_secrets:
            for variable in server.secret_env:
                try:
                    runtime.credentials.delete(server_env_key(server.id, variable))
                except CredentialError as exc:
                    warnings.append(str(exc))
        users = [
            instance.name
            for instance in runtime.registry.list_instances()
            if server.id in instance.enabled_servers
        ]
        console.print(f"[green]Server '{server.name}' removed.[/green]")
        if users:
            console.print(
                "[yellow]Still enabled on:[/yellow] "
                + ", ".join(users)
                + " (run `mcphubctl sync` to drop it from their configs)"
            )
        if warnings:
            op.warning("Server removed with warnings.", warnings=warnings, changed=1)
            return
        op.success("Server removed.", changed=1, context={"enabled_on": users})


@server_app.command("import")
def server_import(
    ctx: typer.Context,
    path: Path = typer.Argument(..., dir_okay=False, help="Client config file to read."),
    kind: ClientKind = typer.Option(..., "--kind", "-k", help="Client kind of the file."),
    enable_on: str | None = typer.Option(
        None,
        "--enable-on",
        help="Also enable the imported servers on this instance.",
    ),
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Import server definitions from an existing client config file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server import",
        args={"path": path, "kind": kind.value, "enable_on": enable_on, "dry_run": dry_run},
        target={"kind": "server", "scope": "import", "path": path},
    ) as op:
        try:
            candidates = import_servers(path.expanduser(), kind)
        except SyncError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        op.add_step("import.decode", detail=f"{len(candidates)} entries")

        existing = {server.name for server in runtime.registry.list_servers()}
        fresh = [server for server in candidates if server.name not in existing]
        skipped = [server.name for server in candidates if server.name in existing]

        if dry_run:
            if json_output:
                console.print_json(
                    data={
                        "would_import": [server.to_dict() for server in fresh],
                        "skipped": skipped,
                    }
                )
            _dry_run_complete(
                op,
                f"{len(fresh)} server(s) would be imported, {len(skipped)} already registered.",
                context={"skipped": skipped},
            )
            return

        with _registry_lock(runtime, op):
            instance = _require_instance(runtime, enable_on, op) if enable_on else None
            for server in fresh:
                runtime.registry.add_server(server)
                if instance is not None:
                    runtime.registry.set_server_enabled(instance.id, server.id, True)
        op.add_step("registry.add", detail=f"{len(fresh)} servers")

        if json_output:
            console.print_json(
                data={"imported": [server.to_dict() for server in fresh], "skipped": skipped}
            )
        else:
            console.print(
                f"[green]Imported {len(fresh)} server(s) from {path}.[/green]"
                + (f" Skipped existing: {', '.join(skipped)}." if skipped else "")
            )
        op.success("Servers imported.", changed=len(fresh), context={"skipped": skipped})


# instance -----------------------------------------------------------------
@instance_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List client instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        try:
            instances = runtime.registry.list_instances()
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        if json_output:
            console.print_json(data={"instances": [entry.to_dict() for entry in instances]})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Client")
        table.add_column("Servers")
        table.add_column("Last Synced")
        table.add_column("Config Path")
        if not instances:
            table.add_row("(none)", "", "", "", "")
        for entry in instances:
            table.add_row(
                entry.name + (" *" if entry.is_default else ""),
                entry.client_kind.display_name,
                str(len(entry.enabled_servers)),
                format_timestamp(entry.last_synced) or "never",
                entry.config_path or "(unset)",
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instance_app.command("show")
def instance_show(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Instance id or name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a single instance and its enabled servers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"key": key, "json": json_output},
        target={"kind": "instance", "name": key},
    ) as op:
        instance = _require_instance(runtime, key, op)
        payload = instance.to_dict()
        payload["format"] = adapter_for(instance.client_kind).format_name
        payload["servers"] = _server_names(runtime, instance.enabled_servers)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_mapping(payload)
        op.success("Displayed instance details.", changed=0)


@instance_app.command("add")
def instance_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Unique instance name."),
    kind: ClientKind = typer.Option(..., "--kind", "-k", help="Client application kind."),
    path: Path | None = typer.Option(
        None,
        "--path",
        dir_okay=False,
        help="Config file path (defaults to the client's conventional location).",
    ),
    servers: list[str] | None = typer.Option(
        None, "--server", "-s", help="Server id or name to enable (repeatable)."
    ),
    is_default: bool = typer.Option(False, "--default", help="Mark as the default instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Register a client instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance add",
        args={"name": name, "kind": kind.value, "path": path, "servers": list(servers or [])},
        target={"kind": "instance", "name": name},
    ) as op:
        config_path = path.expanduser() if path else default_config_path(kind)
        if config_path is None:
            _command_error(
                op, f"{kind.display_name} has no conventional config file; pass --path."
            )
        config_path = config_path.resolve()
        with _registry_lock(runtime, op):
            server_ids = [_require_server(runtime, item, op).id for item in servers or []]
            instance = ClientInstance.create(
                name.strip(),
                kind,
                config_path,
                enabled_servers=server_ids,
                is_default=is_default,
            )
            try:
                runtime.registry.add_instance(instance)
            except StateRegistryError as exc:
                _command_error(op, str(exc))
        op.add_step("registry.add", detail=instance.id)
        if json_output:
            console.print_json(data=instance.to_dict())
        else:
            console.print(
                f"[green]Instance '{instance.name}' registered for "
                f"{kind.display_name} at {config_path}.[/green]"
            )
        op.success("Instance registered.", changed=1, context={"id": instance.id})


@instance_app.command("remove")
def instance_remove(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Instance id or name."),
) -> None:
    """Remove an instance from the registry (its config file is left alone)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance remove",
        args={"key": key},
        target={"kind": "instance", "name": key},
    ) as op:
        with _registry_lock(runtime, op):
            instance = _require_instance(runtime, key, op)
            runtime.registry.remove_instance(instance.id)
        console.print(f"[green]Instance '{instance.name}' removed.[/green]")
        op.success("Instance removed.", changed=1)


def _set_enablement(
    ctx: typer.Context,
    key: str,
    server_keys: Sequence[str],
    *,
    enabled: bool,
) -> None:
    runtime = _get_runtime(ctx)
    verb = "enable" if enabled else "disable"
    with runtime.logger.operation(
        f"instance {verb}",
        args={"instance": key, "servers": list(server_keys)},
        target={"kind": "instance", "name": key},
    ) as op:
        with _registry_lock(runtime, op):
            instance = _require_instance(runtime, key, op)
            updated = instance
            for server_key in server_keys:
                server = runtime.registry.get_server(server_key)
                if server is not None:
                    server_id = server.id
                elif not enabled and server_key in instance.enabled_servers:
                    server_id = server_key
                else:
                    _command_error(op, f"Server '{server_key}' not found.")
                updated = runtime.registry.set_server_enabled(instance.id, server_id, enabled)
                op.add_step(f"registry.{verb}", detail=server_id)
        changed = updated.enabled_servers != instance.enabled_servers
        state = "enabled" if enabled else "disabled"
        console.print(
            f"[green]{len(server_keys)} server(s) {state} on '{instance.name}'.[/green]"
            + ("" if changed else " (no change)")
        )
        if changed:
            console.print("Run `mcphubctl sync` to apply the change.")
        op.success(f"Servers {state}.", changed=1 if changed else 0)


@instance_app.command("enable")
def instance_enable(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Instance id or name."),
    servers: list[str] = typer.Argument(..., help="Server ids or names to enable."),
) -> None:
    """Enable servers on an instance."""
    _set_enablement(ctx, key, servers, enabled=True)


@instance_app.command("disable")
def instance_disable(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Instance id or name."),
    servers: list[str] = typer.Argument(..., help="Server ids or names to disable."),
) -> None:
    """Disable servers on an instance."""
    _set_enablement(ctx, key, servers, enabled=False)


@instance_app.command("status")
def instance_status(
    ctx: typer.Context,
    check_files: bool = typer.Option(
        True,
        "--check-files/--no-check-files",
        help="Also compare each config file with what a sync would write.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report which instances need a sync."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance status",
        args={"check_files": check_files, "json": json_output},
        target={"kind": "instance", "scope": "drift"},
    ) as op:
        report = drift_report(
            runtime.registry.list_instances(),
            previewer=runtime.reconciler.preview if check_files else None,
        )
        stale = [status.name for status in report if status.needs_sync or status.file_drift]
        if json_output:
            console.print_json(data={"instances": [status.to_dict() for status in report]})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Name", style="bold")
            table.add_column("Needs Sync")
            table.add_column("File Drift")
            table.add_column("Last Synced")
            table.add_column("Detail")
            if not report:
                table.add_row("(none)", "", "", "", "")
            for status in report:
                drift = "-" if status.file_drift is None else ("yes" if status.file_drift else "no")
                table.add_row(
                    status.name,
                    "[yellow]yes[/yellow]" if status.needs_sync else "no",
                    drift,
                    format_timestamp(status.last_synced) or "never",
                    status.detail or "",
                )
            console.print(table)
        op.success("Reported drift status.", changed=0, context={"stale": stale})


# sync ---------------------------------------------------------------------
def _render_outcomes(outcomes: Sequence[SyncOutcome]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Instance", style="bold")
    table.add_column("Status")
    table.add_column("Servers")
    table.add_column("Backup")
    table.add_column("Detail")
    if not outcomes:
        table.add_row("(none)", "", "", "", "")
    for outcome in outcomes:
        if outcome.ok and outcome.result is not None:
            result = outcome.result
            table.add_row(
                outcome.instance_name,
                "[green]updated[/green]" if result.changed else "unchanged",
                str(len(result.merge.managed)),
                result.backup.id if result.backup else "",
                "; ".join(result.merge.diagnostics + result.warnings),
            )
        else:
            table.add_row(
                outcome.instance_name,
                f"[red]{outcome.error_kind}[/red]",
                "",
                "",
                outcome.message or "",
            )
    console.print(table)


@app.command()
def sync(
    ctx: typer.Context,
    instance: str | None = typer.Argument(None, help="Instance id or name (default: all)."),
    all_instances: bool = typer.Option(False, "--all", help="Sync every instance."),
    dry_run: bool = DRY_RUN_OPTION,
    workers: int | None = typer.Option(
        None, "--workers", min=1, help="Maximum parallel workers for --all."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Write the enabled servers into client config files."""
    runtime = _get_runtime(ctx)
    if instance and all_instances:
        console.print("[red]Pass an instance or --all, not both.[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION)

    with runtime.logger.operation(
        "sync",
        args={"instance": instance, "all": all_instances, "dry_run": dry_run, "workers": workers},
        target={"kind": "instance", "name": instance or "*"},
    ) as op:
        if dry_run:
            _sync_preview(runtime, op, instance, json_output=json_output)
            return

        with _registry_lock(runtime, op):
            if instance:
                target = _require_instance(runtime, instance, op)
                try:
                    result = runtime.reconciler.sync_one(target.id)
                except SyncError as exc:
                    _command_error(
                        op, f"Sync of '{target.name}' failed ({exc.kind}): {exc}", rc=ExitCode.SYNC
                    )
                outcomes = [
                    SyncOutcome(
                        instance_id=target.id, instance_name=target.name, ok=True, result=result
                    )
                ]
            else:
                outcomes = runtime.reconciler.sync_all(workers=workers)

        for outcome in outcomes:
            op.add_step(
                f"sync.{outcome.instance_name}",
                status="success" if outcome.ok else "error",
                detail=outcome.error_kind,
            )
        prune = runtime.reconciler.last_prune
        if json_output:
            console.print_json(
                data={
                    "outcomes": [outcome.to_dict() for outcome in outcomes],
                    "pruned": prune.count if prune else 0,
                }
            )
        else:
            _render_outcomes(outcomes)

        failures = [outcome for outcome in outcomes if not outcome.ok]
        changed = sum(
            1 for outcome in outcomes if outcome.result is not None and outcome.result.changed
        )
        backups = [
            outcome.result.backup.id
            for outcome in outcomes
            if outcome.result is not None and outcome.result.backup is not None
        ]
        if failures:
            messages = [f"{item.instance_name}: {item.message}" for item in failures]
            op.error(
                f"{len(failures)} of {len(outcomes)} instance(s) failed to sync.",
                errors=messages,
                rc=ExitCode.SYNC,
                context={"changed": changed, "backups": backups},
            )
            raise typer.Exit(code=ExitCode.SYNC)
        op.success(f"Synced {len(outcomes)} instance(s).", changed=changed, backups=backups)


def _sync_preview(
    runtime: RuntimeContext,
    op: OperationScope,
    instance: str | None,
    *,
    json_output: bool,
) -> None:
    targets = (
        [_require_instance(runtime, instance, op)]
        if instance
        else runtime.registry.list_instances()
    )
    rows: list[dict[str, object]] = []
    for target in targets:
        try:
            merge = runtime.reconciler.preview(target.id)
        except SyncError as exc:
            rows.append({"instance": target.name, "ok": False, "error": exc.kind, "detail": str(exc)})
            continue
        except InstanceNotFoundError as exc:
            _command_error(op, str(exc))
        rows.append(
            {
                "instance": target.name,
                "ok": True,
                "changed": merge.changed,
                "added": merge.added,
                "removed": merge.removed,
                "updated": merge.updated,
                "skipped": list(merge.skipped),
                "diagnostics": list(merge.diagnostics),
            }
        )
    if json_output:
        console.print_json(data={"dry_run": True, "instances": rows})
    else:
        for row in rows:
            if not row["ok"]:
                console.print(f"[red]{row['instance']}[/red]: {row['error']} - {row['detail']}")
            elif row["changed"]:
                console.print(
                    f"{row['instance']}: +{len(row['added'])} "  # type: ignore[arg-type]
                    f"-{len(row['removed'])} ~{len(row['updated'])}"  # type: ignore[arg-type]
                )
            else:
                console.print(f"{row['instance']}: up to date")
    pending = sum(1 for row in rows if row.get("changed"))
    _dry_run_complete(
        op, f"{pending} of {len(rows)} instance(s) would change.", context={"instances": rows}
    )


# detect -------------------------------------------------------------------
@app.command()
def detect(
    ctx: typer.Context,
    register: bool = typer.Option(
        False,
        "--register",
        help="Register an instance for every detected config file not yet tracked.",
    ),
    show_all: bool = typer.Option(
        False, "--all", help="Include clients whose config file was not found."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Look for installed MCP clients at their conventional config paths."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "detect",
        args={"register": register, "all": show_all, "json": json_output},
        target={"kind": "client", "scope": "detect"},
    ) as op:
        detected = detect_clients()
        visible = [item for item in detected if show_all or item.has_config or item.installed]

        registered: list[str] = []
        if register:
            with _registry_lock(runtime, op):
                known = {
                    str(entry.resolved_path)
                    for entry in runtime.registry.list_instances()
                    if entry.resolved_path is not None
                }
                names = {entry.name for entry in runtime.registry.list_instances()}
                for item in detected:
                    if not item.has_config or str(item.config_path) in known:
                        continue
                    name = item.client_kind.value
                    suffix = 2
                    while name in names:
                        name = f"{item.client_kind.value}-{suffix}"
                        suffix += 1
                    runtime.registry.add_instance(
                        ClientInstance.create(name, item.client_kind, item.config_path)
                    )
                    names.add(name)
                    registered.append(name)

        if json_output:
            console.print_json(
                data={
                    "clients": [item.to_dict() for item in visible],
                    "registered": registered,
                }
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Client", style="bold")
            table.add_column("Config")
            table.add_column("Path")
            if not visible:
                table.add_row("(none)", "", "")
            for item in visible:
                table.add_row(
                    item.client_kind.display_name,
                    "[green]found[/green]" if item.has_config else "missing",
                    str(item.config_path),
                )
            console.print(table)
            if registered:
                console.print(f"[green]Registered: {', '.join(registered)}[/green]")
        op.success(
            f"Detected {sum(1 for item in detected if item.has_config)} client config(s).",
            changed=len(registered),
        )


# backup -------------------------------------------------------------------
@backup_app.command("list")
def backup_list(
    ctx: typer.Context,
    instance: str | None = typer.Option(
        None, "--instance", "-i", help="Only show backups of this instance."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List config backups, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"instance": instance, "json": json_output},
        target={"kind": "backup", "instance": instance},
    ) as op:
        instance_id = _require_instance(runtime, instance, op).id if instance else None
        try:
            records = runtime.backups.records(instance_id)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        names = {entry.id: entry.name for entry in runtime.registry.list_instances()}

        if json_output:
            console.print_json(data={"backups": [record.to_dict() for record in records]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Id", style="bold")
        table.add_column("Instance")
        table.add_column("Created")
        table.add_column("Size")
        table.add_column("Source")
        if not records:
            table.add_row("(none)", "", "", "", "")
        for record in records:
            table.add_row(
                record.id,
                names.get(record.instance_id, record.instance_id),
                format_timestamp(record.created_at) or "",
                str(record.size_bytes),
                str(record.source or ""),
            )
        console.print(table)
        op.success("Reported backups.", changed=0)


@backup_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    older_than: int | None = typer.Option(
        None,
        "--older-than",
        min=0,
        help="Delete backups older than this many days (default: backups.retention_days).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Delete backups past the retention window."""
    runtime = _get_runtime(ctx)
    days = runtime.config.backups.retention_days if older_than is None else older_than
    with runtime.logger.operation(
        "backup prune",
        args={"older_than": days, "json": json_output},
        target={"kind": "backup", "scope": "prune"},
    ) as op:
        try:
            report = runtime.backups.prune(days)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        removed = [record.id for record in report.removed]
        missing = [record.id for record in report.missing]
        if json_output:
            console.print_json(
                data={
                    "cutoff": format_timestamp(report.cutoff),
                    "removed": removed,
                    "missing": missing,
                }
            )
        else:
            console.print(
                f"[green]Pruned {report.count} backup(s) older than {days} day(s).[/green]"
            )
        op.success("Backups pruned.", changed=report.count, context={"removed": removed})


@backup_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Backup identifier from `backup list`."),
    target: Path | None = typer.Option(
        None, "--target", dir_okay=False, help="Restore here instead of the original path."
    ),
    no_pre_backup: bool = typer.Option(
        False,
        "--no-pre-backup",
        help="Do not snapshot the current file before overwriting it.",
    ),
) -> None:
    """Copy a backup back over its config file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={"backup_id": backup_id, "target": target, "no_pre_backup": no_pre_backup},
        target={"kind": "backup", "id": backup_id},
    ) as op:
        try:
            record = next(
                (item for item in runtime.backups.records() if item.id == backup_id), None
            )
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        if record is None:
            _command_error(op, f"Backup '{backup_id}' not found.")
        destination = target.expanduser() if target else record.source
        if destination is None:
            _command_error(op, f"Backup '{backup_id}' has no recorded source; pass --target.")

        safety: list[str] = []
        try:
            with runtime.locks.mutate_paths([destination]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                if not no_pre_backup:
                    snapshot = runtime.backups.backup(record.instance_id, destination)
                    if snapshot is not None:
                        safety.append(snapshot.id)
                        op.add_step("backup.pre-restore", detail=snapshot.id)
                runtime.backups.restore(backup_id, target=destination)
        except LockError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        op.add_step("backup.restore", detail=str(destination))
        console.print(f"[green]Restored {backup_id} to {destination}.[/green]")
        op.success("Backup restored.", changed=1, backups=safety)


# secret -------------------------------------------------------------------
@secret_app.command("set")
def secret_set(
    ctx: typer.Context,
    server_key: str = typer.Argument(..., help="Server id or name."),
    variable: str = typer.Argument(..., help="Environment variable name."),
    value: str | None = typer.Option(
        None, "--value", help="Secret value (prompted for when omitted)."
    ),
) -> None:
    """Store a secret environment value for a server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "secret set",
        args={"server": server_key, "variable": variable},
        target={"kind": "secret", "server": server_key},
    ) as op:
        if not variable.strip():
            _command_error(op, "Variable name must be non-empty.")
        secret = value if value is not None else typer.prompt(variable, hide_input=True)
        with _registry_lock(runtime, op):
            server = _require_server(runtime, server_key, op)
            try:
                runtime.credentials.set(server_env_key(server.id, variable), secret)
            except CredentialError as exc:
                _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
            if variable not in server.secret_env:
                runtime.registry.update_server(
                    server.touched(secret_env=(*server.secret_env, variable))
                )
                op.add_step("registry.update", detail=f"secret_env+={variable}")
        console.print(f"[green]Stored {variable} for '{server.name}'.[/green]")
        op.success("Secret stored.", changed=1)


@secret_app.command("delete")
def secret_delete(
    ctx: typer.Context,
    server_key: str = typer.Argument(..., help="Server id or name."),
    variable: str = typer.Argument(..., help="Environment variable name."),
) -> None:
    """Delete a secret environment value for a server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "secret delete",
        args={"server": server_key, "variable": variable},
        target={"kind": "secret", "server": server_key},
    ) as op:
        with _registry_lock(runtime, op):
            server = _require_server(runtime, server_key, op)
            try:
                runtime.credentials.delete(server_env_key(server.id, variable))
            except CredentialError as exc:
                _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
            if variable in server.secret_env:
                remaining = tuple(name for name in server.secret_env if name != variable)
                runtime.registry.update_server(server.touched(secret_env=remaining))
                op.add_step("registry.update", detail=f"secret_env-={variable}")
        console.print(f"[green]Deleted {variable} for '{server.name}'.[/green]")
        op.success("Secret deleted.", changed=1)


def main() -> None:
    """Console script entry point."""
    app()
