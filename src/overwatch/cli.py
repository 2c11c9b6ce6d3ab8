"""Typer-powered command line front end for ``overwatch``.

Commands stay thin: each one resolves the shared runtime objects, calls the
library, and renders the outcome with Rich. Library errors carry their own
exit code (see :mod:`overwatch.exit_codes`), which the CLI passes through
unchanged.
"""
from __future__ import annotations

import logging
import textwrap
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .apps import AppRegistry, list_tenant_ids
from .backups import BackupCoordinator, BackupError, BackupResult
from .config import OverwatchConfig, load_config
from .discovery import FleetDiscovery
from .envvars import EnvVarResolver
from .errors import OverwatchError
from .events import BACKUP_COMPLETE, HEALTH_CHANGE
from .exit_codes import ExitCode
from .health import HealthMonitor
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import EffectiveEnvVar, LockInfo, StepOutcome
from .providers import (
    DatabaseAdapter,
    DockerRuntime,
    TemplateComposeGenerator,
    create_database_adapter,
)
from .scheduler import DEFAULT_CHECK_INTERVAL, BackupScheduler
from .state import StateStore
from .templates import TemplateEngine
from .tenants import TenantLifecycleManager

console = Console()
err_console = Console(stderr=True)

MASK = "********"

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to Overwatch's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Do not prompt for confirmation.",
)

REVEAL_OPTION = typer.Option(
    False,
    "--reveal",
    help="Show values of sensitive variables instead of masking them.",
)

DEFINITION_FILE_OPTION = typer.Option(
    ...,
    "--file",
    "-f",
    exists=True,
    dir_okay=False,
    help="YAML or JSON document describing the app.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Overwatch multi-tenant fleet orchestration CLI.

        Registers applications, provisions their tenants as container groups,
        manages layered environment variables, drives restic backups, and
        polls container health.
        """
    ).strip(),
)

apps_app = typer.Typer(help="Register and inspect application definitions.")
tenants_app = typer.Typer(help="Provision, update, and remove tenants.")
env_app = typer.Typer(help="Manage global variables and per-tenant overrides.")
backups_app = typer.Typer(help="Back up, restore, and prune tenant data.")
monitor_app = typer.Typer(help="Poll container health and run scheduled backups.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(apps_app, name="apps")
app.add_typer(tenants_app, name="tenants")
app.add_typer(env_app, name="env")
app.add_typer(backups_app, name="backups")
app.add_typer(monitor_app, name="monitor")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: OverwatchConfig
    store: StateStore
    locks: LockManager
    logger: StructuredLogger
    apps: AppRegistry
    env: EnvVarResolver
    runtime: DockerRuntime
    database: DatabaseAdapter
    templates: TemplateEngine
    tenants: TenantLifecycleManager
    discovery: FleetDiscovery
    backups: BackupCoordinator

    def health_monitor(self, interval: float | None = None) -> HealthMonitor:
        """Build a monitor using the configured polling parameters."""
        return HealthMonitor(
            self.apps,
            self.runtime,
            self.config.project.prefix,
            interval=interval or self.config.monitor.interval,
            timeout=self.config.monitor.timeout,
        )

    def backup_scheduler(self, interval: float | None = None) -> BackupScheduler:
        """Build a scheduler over the shared backup coordinator."""
        return BackupScheduler(
            self.apps, self.backups, interval=interval or DEFAULT_CHECK_INTERVAL
        )


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

    with _reported_errors():
        config = load_config(config_file=config_file, overrides=overrides)
    store = StateStore(config.data_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    apps = AppRegistry(store, locks, config.apps_dir)
    env = EnvVarResolver(store, locks, apps, config.apps_dir)
    docker = DockerRuntime(docker_bin=config.tools.docker_bin, timeout=config.tools.timeout)
    database = create_database_adapter(config, docker)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    compose = TemplateComposeGenerator(
        templates=templates,
        prefix=config.project.prefix,
        network=config.shared_network,
    )
    tenants = TenantLifecycleManager(
        config=config,
        apps=apps,
        env=env,
        database=database,
        compose=compose,
        runtime=docker,
        locks=locks,
        logger=logger,
    )
    runtime = RuntimeContext(
        config=config,
        store=store,
        locks=locks,
        logger=logger,
        apps=apps,
        env=env,
        runtime=docker,
        database=database,
        templates=templates,
        tenants=tenants,
        discovery=FleetDiscovery(apps, docker, config.project.prefix, config.apps_dir),
        backups=BackupCoordinator(config, apps, database, docker, logger),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the overwatch version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print diagnostic log output to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    if version:
        console.print(f"overwatch {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    op: OperationScope | None = None,
) -> NoReturn:
    """Print *message* and terminate the command with *rc*."""
    console.print(f"[red]{message}[/red]")
    if op is not None:
        op.error(message, rc=rc)
    raise typer.Exit(code=rc)


@contextmanager
def _reported_errors(op: OperationScope | None = None) -> Iterator[None]:
    """Translate library errors into a printed message and exit code."""
    try:
        yield
    except OverwatchError as exc:
        _command_error(str(exc), rc=int(exc.exit_code), op=op)


def _confirm(prompt: str, assume_yes: bool) -> None:
    if assume_yes:
        return
    if not typer.confirm(prompt, default=False):
        console.print("[yellow]Aborted.[/yellow]")
        raise typer.Exit(code=1)


def _load_document(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        _command_error(f"Cannot read {path}: {exc}")
    if not isinstance(data, Mapping):
        _command_error(f"{path} must contain a mapping at the top level.")
    return dict(data)


def _print_steps(steps: Sequence[StepOutcome]) -> None:
    if not steps:
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Step", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    colours = {"ok": "green", "skipped": "yellow", "failed": "red"}
    for step in steps:
        colour = colours.get(step.status, "white")
        table.add_row(step.name, f"[{colour}]{step.status}[/{colour}]", step.detail or "")
    console.print(table)


def _print_lock_info(lock_info: LockInfo | None) -> None:
    if lock_info is None:
        return
    details = {key: value for key, value in lock_info.to_dict().items() if value}
    for key, value in details.items():
        console.print(f"  {key}: {value}")


def _finish_backup(result: BackupResult, json_output: bool, success_message: str) -> None:
    if json_output:
        console.print_json(data=result.to_dict())
    if not result.success:
        if not json_output:
            _print_steps(result.steps)
            console.print(f"[red]{result.error}[/red]")
            _print_lock_info(result.lock_info)
        raise typer.Exit(code=int(ExitCode.PROVIDER))
    if not json_output:
        _print_steps(result.steps)
        console.print(f"[green]{success_message}[/green]")


def _display_value(variable: EffectiveEnvVar, reveal: bool) -> str:
    if variable.sensitive and not reveal:
        return MASK
    return variable.value


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    if json_output:
        console.print_json(data=data)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, Mapping):
            rendered = ", ".join(f"{name}={item}" for name, item in value.items())
        else:
            rendered = str(value)
        table.add_row(key, rendered)
    console.print(table)


# ----------------------------------------------------------------------
# apps
# ----------------------------------------------------------------------
@apps_app.command("list")
def apps_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered apps."""
    runtime = _get_runtime(ctx)
    apps = runtime.apps.list_apps()
    if json_output:
        console.print_json(data={"apps": [item.to_dict() for item in apps]})
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Domain template")
    table.add_column("Services")
    table.add_column("Tenants", justify="right")
    if not apps:
        table.add_row("(none)", "", "", "", "")
    for item in apps:
        tenants = list_tenant_ids(runtime.config.apps_dir, item.id)
        table.add_row(
            item.id,
            item.name,
            item.domain_template,
            ", ".join(item.service_names),
            str(len(tenants)),
        )
    console.print(table)


@apps_app.command("show")
def apps_show(ctx: typer.Context, app_id: str = typer.Argument(..., help="App id.")) -> None:
    """Print one app definition as JSON."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        definition = runtime.apps.require_app(app_id)
    console.print_json(data=definition.to_dict())


@apps_app.command("create")
def apps_create(ctx: typer.Context, definition: Path = DEFINITION_FILE_OPTION) -> None:
    """Register a new app from a definition file."""
    runtime = _get_runtime(ctx)
    data = _load_document(definition)
    with runtime.logger.operation(
        "app.create", args={"file": definition}, target={"app": data.get("id")}
    ) as op:
        with _reported_errors(op):
            created = runtime.apps.create_app(data)
        op.success(f"Registered app '{created.id}'.", changed=1)
    console.print(f"[green]Registered app '{created.id}'.[/green]")


@apps_app.command("update")
def apps_update(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    definition: Path = DEFINITION_FILE_OPTION,
) -> None:
    """Merge the fields of a definition file into an existing app."""
    runtime = _get_runtime(ctx)
    changes = _load_document(definition)
    with runtime.logger.operation(
        "app.update", args={"file": definition}, target={"app": app_id}
    ) as op:
        with _reported_errors(op):
            runtime.apps.update_app(app_id, changes)
        op.success(f"Updated app '{app_id}'.", changed=1)
    console.print(f"[green]Updated app '{app_id}'.[/green]")


@apps_app.command("delete")
def apps_delete(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    force: bool = typer.Option(
        False,
        "--force",
        help="Remove the definition even though tenants still exist.",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Remove an app definition. Tenant directories are never touched."""
    runtime = _get_runtime(ctx)
    _confirm(f"Delete app '{app_id}'?", yes)
    with runtime.logger.operation(
        "app.delete", args={"force": force}, target={"app": app_id}
    ) as op:
        with _reported_errors(op):
            runtime.apps.delete_app(app_id, force=force)
        op.success(f"Deleted app '{app_id}'.", changed=1)
    console.print(f"[green]Deleted app '{app_id}'.[/green]")


# ----------------------------------------------------------------------
# tenants
# ----------------------------------------------------------------------
@tenants_app.command("list")
def tenants_list(
    ctx: typer.Context,
    app_id: str | None = typer.Argument(None, help="Restrict the listing to one app."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List tenants from their directories (no container runtime access)."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        app_ids = [runtime.apps.require_app(app_id).id] if app_id else runtime.apps.app_ids()
    tenants = [tenant for current in app_ids for tenant in runtime.tenants.list_tenants(current)]
    if json_output:
        console.print_json(data={"tenants": [tenant.to_dict() for tenant in tenants]})
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("App", style="bold")
    table.add_column("Tenant", style="bold")
    table.add_column("Domain")
    table.add_column("Image tag")
    table.add_column("Created")
    if not tenants:
        table.add_row("(none)", "", "", "", "")
    for tenant in tenants:
        table.add_row(
            tenant.app_id, tenant.tenant_id, tenant.domain, tenant.image_tag, tenant.created_at
        )
    console.print(table)


@tenants_app.command("status")
def tenants_status(
    ctx: typer.Context,
    app_id: str | None = typer.Argument(None, help="Restrict to one app."),
    tenant_id: str | None = typer.Argument(None, help="Show containers of one tenant."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Reconcile running containers against declared tenants."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        if tenant_id is not None and app_id is not None:
            statuses = [
                runtime.discovery.tenant_status(runtime.apps.require_app(app_id), tenant_id)
            ]
        else:
            if app_id is not None:
                runtime.apps.require_app(app_id)
            statuses = runtime.discovery.list_tenant_statuses(app_id)
    if json_output:
        console.print_json(data={"tenants": [status.to_dict() for status in statuses]})
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("App", style="bold")
    table.add_column("Tenant", style="bold")
    table.add_column("Domain")
    table.add_column("Version")
    table.add_column("Running", justify="right")
    table.add_column("Healthy")
    if not statuses:
        table.add_row("(none)", "", "", "", "", "")
    for status in statuses:
        table.add_row(
            status.app_id,
            status.tenant_id,
            status.domain,
            status.version,
            f"{status.running_containers}/{status.total_containers}",
            "[green]yes[/green]" if status.healthy else "[red]no[/red]",
        )
    console.print(table)

    if tenant_id is not None and statuses:
        containers = Table(show_header=True, header_style="bold magenta")
        containers.add_column("Container", style="bold")
        containers.add_column("State")
        containers.add_column("Status")
        containers.add_column("Image")
        for container in statuses[0].containers:
            containers.add_row(container.name, container.state, container.status, container.image)
        console.print(containers)


@tenants_app.command("create")
def tenants_create(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str = typer.Argument(..., help="New tenant id."),
    domain: str = typer.Option(..., "--domain", help="Domain the tenant is served on."),
    tag: str | None = typer.Option(
        None,
        "--tag",
        help="Image tag to deploy (defaults to the app's default tag).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision database, files, and containers for a new tenant."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        tenant = runtime.tenants.create_tenant(app_id, tenant_id, domain, tag)
    if json_output:
        console.print_json(data=tenant.to_dict())
        return
    console.print(
        f"[green]Tenant '{tenant.tenant_id}' created[/green] "
        f"({tenant.domain}, image tag {tenant.image_tag})."
    )


@tenants_app.command("delete")
def tenants_delete(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str = typer.Argument(..., help="Tenant id."),
    keep_data: bool = typer.Option(
        False,
        "--keep-data",
        help="Keep the tenant database.",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Stop containers, drop the database, and remove the tenant directory."""
    runtime = _get_runtime(ctx)
    _confirm(f"Delete tenant '{tenant_id}' of app '{app_id}'?", yes)
    with _reported_errors():
        outcomes = runtime.tenants.delete_tenant(app_id, tenant_id, keep_data=keep_data)
    _print_steps(outcomes)
    if any(outcome.status == "failed" for outcome in outcomes):
        console.print(f"[yellow]Tenant '{tenant_id}' deleted with warnings.[/yellow]")
    else:
        console.print(f"[green]Tenant '{tenant_id}' deleted.[/green]")


@tenants_app.command("update")
def tenants_update(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str = typer.Argument(..., help="Tenant id."),
    tag: str = typer.Option(..., "--tag", help="Image tag to move the tenant to."),
) -> None:
    """Pull a new image tag and recreate the tenant's containers."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        tenant = runtime.tenants.update_tenant(app_id, tenant_id, tag)
    console.print(f"[green]Tenant '{tenant.tenant_id}' now runs {tenant.image_tag}.[/green]")


@tenants_app.command("start")
def tenants_start(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str = typer.Argument(..., help="Tenant id."),
) -> None:
    """Start the tenant's containers."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        runtime.tenants.start_tenant(app_id, tenant_id)
    console.print(f"[green]Tenant '{tenant_id}' started.[/green]")


@tenants_app.command("stop")
def tenants_stop(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str = typer.Argument(..., help="Tenant id."),
) -> None:
    """Stop the tenant's containers, keeping files and data."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        runtime.tenants.stop_tenant(app_id, tenant_id)
    console.print(f"[green]Tenant '{tenant_id}' stopped.[/green]")


@tenants_app.command("restart")
def tenants_restart(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str = typer.Argument(..., help="Tenant id."),
) -> None:
    """Recreate the tenant's containers so env changes take effect."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        runtime.tenants.restart_tenant(app_id, tenant_id)
    console.print(f"[green]Tenant '{tenant_id}' restarted.[/green]")


# ----------------------------------------------------------------------
# env
# ----------------------------------------------------------------------
@env_app.command("list")
def env_list(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    reveal: bool = REVEAL_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the global variables of an app."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        runtime.apps.require_app(app_id)
    variables = runtime.env.list_env_vars(app_id)
    if json_output:
        payload = []
        for variable in variables:
            entry = variable.to_dict()
            if variable.sensitive and not reveal:
                entry["value"] = MASK
            payload.append(entry)
        console.print_json(data={"variables": payload})
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_column("Description")
    if not variables:
        table.add_row("(none)", "", "")
    for variable in variables:
        value = MASK if variable.sensitive and not reveal else variable.value
        table.add_row(variable.key, value, variable.description or "")
    console.print(table)


@env_app.command("set")
def env_set(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    key: str = typer.Argument(..., help="Variable name."),
    value: str = typer.Argument(..., help="Variable value."),
    sensitive: bool = typer.Option(False, "--sensitive", help="Mask the value in listings."),
    description: str | None = typer.Option(None, "--description", help="Free-form note."),
) -> None:
    """Create or update a global variable and regenerate every tenant's shared.env."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env.set", args={"key": key, "sensitive": sensitive}, target={"app": app_id}
    ) as op:
        with _reported_errors(op):
            mutation = runtime.env.set_env_var(
                app_id, key, value, sensitive=sensitive, description=description
            )
        op.success(
            f"Variable {mutation.key} {mutation.action}.",
            changed=1,
            context={"regenerated": mutation.regenerated},
        )
    console.print(
        f"[green]{mutation.key} {mutation.action}[/green]; "
        f"regenerated {mutation.regenerated} shared.env file(s)."
    )


@env_app.command("unset")
def env_unset(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    key: str = typer.Argument(..., help="Variable name."),
) -> None:
    """Delete a global variable."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("env.unset", args={"key": key}, target={"app": app_id}) as op:
        with _reported_errors(op):
            mutation = runtime.env.delete_env_var(app_id, key)
        op.success(f"Variable {key} deleted.", changed=1)
    console.print(
        f"[green]{key} deleted[/green]; regenerated {mutation.regenerated} shared.env file(s)."
    )


@env_app.command("override")
def env_override(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str = typer.Argument(..., help="Tenant id."),
    key: str = typer.Argument(..., help="Variable name."),
    value: str = typer.Argument(..., help="Override value."),
    sensitive: bool = typer.Option(False, "--sensitive", help="Mask the value in listings."),
) -> None:
    """Set a tenant-level override (or tenant-only variable)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env.override.set",
        args={"key": key, "sensitive": sensitive},
        target={"app": app_id, "tenant": tenant_id},
    ) as op:
        with _reported_errors(op):
            mutation = runtime.env.set_tenant_override(
                app_id, tenant_id, key, value, sensitive=sensitive
            )
        op.success(f"Override {mutation.key} {mutation.action}.", changed=1)
    console.print(f"[green]Override {mutation.key} {mutation.action} for '{tenant_id}'.[/green]")


@env_app.command("override-unset")
def env_override_unset(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str = typer.Argument(..., help="Tenant id."),
    key: str = typer.Argument(..., help="Variable name."),
) -> None:
    """Remove a tenant-level override."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env.override.unset", args={"key": key}, target={"app": app_id, "tenant": tenant_id}
    ) as op:
        with _reported_errors(op):
            runtime.env.delete_tenant_override(app_id, tenant_id, key)
        op.success(f"Override {key} deleted.", changed=1)
    console.print(f"[green]Override {key} removed from '{tenant_id}'.[/green]")


@env_app.command("show")
def env_show(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str = typer.Argument(..., help="Tenant id."),
    reveal: bool = REVEAL_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a tenant's effective environment and where each value comes from."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        runtime.apps.require_app(app_id)
    effective = runtime.env.effective_env_vars(app_id, tenant_id)
    if json_output:
        console.print_json(
            data={"variables": [item.to_dict(reveal=reveal) for item in effective]}
        )
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_column("Source")
    if not effective:
        table.add_row("(none)", "", "")
    for item in effective:
        table.add_row(item.key, _display_value(item, reveal), item.source)
    console.print(table)


@env_app.command("regenerate")
def env_regenerate(
    ctx: typer.Context,
    app_id: str | None = typer.Argument(None, help="Restrict to one app."),
) -> None:
    """Rewrite shared.env for every tenant."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        if app_id is not None:
            runtime.apps.require_app(app_id)
    count = runtime.env.regenerate_all(app_id)
    console.print(f"Regenerated {count} shared.env file(s).")


# ----------------------------------------------------------------------
# backups
# ----------------------------------------------------------------------
@backups_app.command("info")
def backups_info(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether the app's repository is configured, initialised, or locked."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        info = runtime.backups.get_backup_info(app_id)
    if json_output:
        console.print_json(data=info.to_dict())
        return
    console.print(f"configured:  {info.configured}")
    console.print(f"initialized: {info.initialized}")
    console.print(f"locked:      {info.is_locked}")
    _print_lock_info(info.lock_info)
    if info.error:
        console.print(f"[yellow]{info.error}[/yellow]")


@backups_app.command("list")
def backups_list(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str | None = typer.Option(None, "--tenant", help="Only this tenant's snapshots."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List snapshots, newest first."""
    runtime = _get_runtime(ctx)
    try:
        snapshots = runtime.backups.list_snapshots(app_id, tenant_id)
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        _print_lock_info(exc.lock_info)
        raise typer.Exit(code=int(exc.exit_code)) from exc
    except OverwatchError as exc:
        _command_error(str(exc), rc=int(exc.exit_code))
    if json_output:
        console.print_json(data={"snapshots": [item.to_dict() for item in snapshots]})
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="bold")
    table.add_column("Time")
    table.add_column("Tenant")
    table.add_column("Host")
    if not snapshots:
        table.add_row("(none)", "", "", "")
    for snapshot in snapshots:
        table.add_row(snapshot.short_id, snapshot.time, snapshot.tenant_id or "", snapshot.hostname)
    console.print(table)


@backups_app.command("create")
def backups_create(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    tenant_id: str | None = typer.Argument(None, help="Tenant id (omit with --all)."),
    all_tenants: bool = typer.Option(False, "--all", help="Back up every tenant of the app."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Back up one tenant, or every tenant of an app."""
    runtime = _get_runtime(ctx)
    if all_tenants and tenant_id is not None:
        _command_error("Pass either a tenant id or --all, not both.")
    if all_tenants:
        with _reported_errors():
            summary = runtime.backups.backup_all(app_id)
        if json_output:
            console.print_json(data=summary.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Tenant", style="bold")
            table.add_column("Result")
            table.add_column("Snapshot / error")
            for name, result in summary.results.items():
                table.add_row(
                    name,
                    "[green]ok[/green]" if result.success else "[red]failed[/red]",
                    result.snapshot_id or result.error or "",
                )
            console.print(table)
            console.print(f"{summary.success_count} succeeded, {summary.fail_count} failed.")
        if not summary.success:
            raise typer.Exit(code=int(ExitCode.PROVIDER))
        return

    if tenant_id is None:
        _command_error("Pass either a tenant id or --all.")
    with _reported_errors():
        result = runtime.backups.create_backup(app_id, tenant_id)
    _finish_backup(result, json_output, f"Snapshot {result.snapshot_id} created.")


@backups_app.command("restore")
def backups_restore(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    snapshot_id: str = typer.Argument(..., help="Snapshot id."),
    tenant_id: str = typer.Argument(..., help="Tenant to restore into."),
    create_new: bool = typer.Option(
        False,
        "--create-new",
        help="Provision the target tenant first (requires --domain).",
    ),
    domain: str | None = typer.Option(None, "--domain", help="Domain for a new tenant."),
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore a snapshot's database and files into a tenant."""
    runtime = _get_runtime(ctx)
    if create_new and not domain:
        _command_error("--domain is required with --create-new.")
    if not create_new:
        _confirm(f"Overwrite the data of tenant '{tenant_id}'?", yes)
    with _reported_errors():
        if create_new:
            runtime.tenants.create_tenant(app_id, tenant_id, domain or "")
        result = runtime.backups.restore_backup(
            app_id, snapshot_id, tenant_id, create_new=create_new, new_domain=domain
        )
    _finish_backup(result, json_output, f"Snapshot {snapshot_id} restored into '{tenant_id}'.")


@backups_app.command("delete")
def backups_delete(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    snapshot_id: str = typer.Argument(..., help="Snapshot id."),
    yes: bool = YES_OPTION,
) -> None:
    """Forget one snapshot."""
    runtime = _get_runtime(ctx)
    _confirm(f"Delete snapshot {snapshot_id}?", yes)
    with _reported_errors():
        result = runtime.backups.delete_snapshot(app_id, snapshot_id)
    _finish_backup(result, False, f"Snapshot {snapshot_id} deleted.")


@backups_app.command("prune")
def backups_prune(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    keep_daily: int = typer.Option(7, "--keep-daily", min=0),
    keep_weekly: int = typer.Option(4, "--keep-weekly", min=0),
    keep_monthly: int = typer.Option(12, "--keep-monthly", min=0),
) -> None:
    """Apply the retention policy and prune unreferenced data."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        result = runtime.backups.prune_backups(
            app_id,
            keep_daily=keep_daily,
            keep_weekly=keep_weekly,
            keep_monthly=keep_monthly,
        )
    _finish_backup(result, False, "Prune completed.")


@backups_app.command("init")
def backups_init(ctx: typer.Context, app_id: str = typer.Argument(..., help="App id.")) -> None:
    """Initialise the app's restic repository."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        result = runtime.backups.initialize_repository(app_id)
    _finish_backup(result, False, "Repository initialised.")


@backups_app.command("unlock")
def backups_unlock(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App id."),
    yes: bool = YES_OPTION,
) -> None:
    """Remove stale repository locks."""
    runtime = _get_runtime(ctx)
    _confirm("Only unlock when no other backup process is running. Continue?", yes)
    with _reported_errors():
        result = runtime.backups.unlock_repository(app_id)
    _finish_backup(result, False, "Repository unlocked.")


@backups_app.command("schedule")
def backups_schedule(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List backup schedules and when each fires next."""
    runtime = _get_runtime(ctx)
    with _reported_errors():
        entries = runtime.backup_scheduler().schedules()
    if json_output:
        console.print_json(data={"schedules": [entry.to_dict() for entry in entries]})
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("App", style="bold")
    table.add_column("Schedule")
    table.add_column("Next run")
    if not entries:
        table.add_row("(none)", "", "")
    for entry in entries:
        next_run = entry.next_run.strftime("%Y-%m-%d %H:%M") if entry.next_run else "never"
        table.add_row(entry.app_id, entry.expression, next_run)
    console.print(table)


# ----------------------------------------------------------------------
# monitor
# ----------------------------------------------------------------------
def _print_health(monitor: HealthMonitor) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Container", style="bold")
    table.add_column("State")
    table.add_column("Failures", justify="right")
    table.add_column("Last check")
    states = monitor.states()
    if not states:
        table.add_row("(none)", "", "", "")
    for state in states:
        colour = "green" if state.state == "healthy" else "red"
        table.add_row(
            state.container_name,
            f"[{colour}]{state.state}[/{colour}]",
            str(state.consecutive_failures),
            state.last_check or "",
        )
    console.print(table)


@monitor_app.command("check")
def monitor_check(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Run one polling pass and print every probed container."""
    runtime = _get_runtime(ctx)
    monitor = runtime.health_monitor()
    monitor.run_once()
    if json_output:
        console.print_json(data={"containers": [state.to_dict() for state in monitor.states()]})
        return
    _print_health(monitor)


@monitor_app.command("run")
def monitor_run(
    ctx: typer.Context,
    interval: float | None = typer.Option(
        None,
        "--interval",
        min=1.0,
        help="Seconds between polling passes (defaults to monitor.interval).",
    ),
    backups: bool = typer.Option(
        True,
        "--backups/--no-backups",
        help="Also run scheduled backups for apps with a backup schedule.",
    ),
) -> None:
    """Poll until interrupted, printing health transitions and scheduled backups."""
    runtime = _get_runtime(ctx)
    monitor = runtime.health_monitor(interval)
    scheduler = runtime.backup_scheduler() if backups else None

    def _announce(payload: Mapping[str, object]) -> None:
        colour = "green" if payload.get("new_state") == "healthy" else "red"
        console.print(
            f"{payload.get('container_name')}: {payload.get('previous_state')} -> "
            f"[{colour}]{payload.get('new_state')}[/{colour}]"
        )

    def _announce_backup(payload: Mapping[str, object]) -> None:
        if payload.get("error"):
            console.print(
                f"[red]Backup of {payload.get('app_id')} failed:[/red] {payload['error']}"
            )
            return
        console.print(
            f"Backup of {payload.get('app_id')}: {payload.get('success_count')} succeeded, "
            f"{payload.get('fail_count')} failed."
        )

    monitor.events.subscribe(HEALTH_CHANGE, _announce)
    monitor.start()
    if scheduler is not None:
        scheduler.events.subscribe(BACKUP_COMPLETE, _announce_backup)
        scheduler.start()
        for entry in scheduler.schedules():
            console.print(f"Backups for {entry.app_id} scheduled at '{entry.expression}'.")
    console.print(f"Monitoring every {monitor.interval:g}s. Press Ctrl+C to stop.")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        console.print("Stopping.")
    finally:
        monitor.stop()
        if scheduler is not None:
            scheduler.stop()


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
