"""Typer-powered command line for ``ghostctl``.

Every command runs inside a structured operation scope (see
:mod:`ghostctl.logging`) and operates on the Ghost instance in the working
directory unless ``--dir`` points elsewhere. Failures raised as
:class:`~ghostctl.errors.CliError` are rendered once, here, with the error's
exit code.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table
from rich.traceback import Traceback

from . import __version__
from .admin_api import (
    AdminApiClient,
    AdminApiError,
    AdminCredentials,
    CompatibilityReport,
    read_export_owner,
)
from .config import AppConfig, ConfigError, load_config
from .errors import CliError, SystemEnvironmentError, ValidationError
from .exit_codes import ExitCode
from .gate import MajorVersionGate
from .logging import OperationScope, StructuredLogger
from .migrations import MigrationRunner, needed_migrations, run_system_migrations
from .node_runtime import detect_node_version, node_version_check_enabled
from .providers import ProcessManager, ReleaseFetcher, VersionProvider, get_process_manager
from .release_notes import ReleaseNotesUnavailable, fetch_release_notes
from .runner import CommandRunner, install_signal_handlers
from .state import InstanceState, InstanceStore
from .ui import Prompter
from .update import RollbackPolicy, UpdateOrchestrator, UpdateRequest, UpdateResult

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to ghostctl's YAML config file.",
)

INSTANCE_DIR_OPTION = typer.Option(
    None,
    "--dir",
    "-d",
    file_okay=False,
    help="Ghost instance directory (defaults to the working directory).",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Auto-confirm prompts (non-interactive mode).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage a self-hosted Ghost instance.

        Updates are staged: the release is fetched next to the running one, the
        process is stopped, migrations run, the current link is switched and the
        process restarted. Failures part-way through offer a rollback.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    runner: CommandRunner
    version_provider: VersionProvider
    prompter: Prompter
    instance_dir: Path
    verbose: bool = False

    @property
    def store(self) -> InstanceStore:
        """Return the metadata store of the selected instance."""
        return InstanceStore(self.instance_dir)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    instance_dir: Path | None = None,
    verbose: bool = False,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    # ``main`` hands over the runner its signal handlers watch.
    runner = ctx.obj if isinstance(ctx.obj, CommandRunner) else CommandRunner()
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    version_cache = config.logs_dir.parent / "remote-versions.json"
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        runner=runner,
        version_provider=VersionProvider(cache_path=version_cache, npm_bin=config.npm_bin),
        prompter=Prompter(console=console),
        instance_dir=(instance_dir or Path.cwd()).expanduser().absolute(),
        verbose=verbose,
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
        help="Show the ghostctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    instance_dir: Path | None = INSTANCE_DIR_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show stack traces and command output for failures.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file, instance_dir, verbose)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"ghostctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _cli_error(runtime: RuntimeContext, op: OperationScope, exc: CliError) -> NoReturn:
    """Render a classified error, record it and exit with its code."""
    rc = int(exc.exit_code)
    console.print(exc.render(verbose=runtime.verbose), style="red", markup=False)
    if exc.wants_traceback(verbose=runtime.verbose):
        console.print(Traceback.from_exception(type(exc), exc, exc.__traceback__))
    op.error(exc.message, errors=[f"{exc.kind}: {exc.message}"], rc=rc)
    raise typer.Exit(code=rc) from exc


def _instance_target(runtime: RuntimeContext) -> dict[str, object]:
    return {"kind": "instance", "path": str(runtime.instance_dir)}


def _process_manager(runtime: RuntimeContext, state: InstanceState) -> ProcessManager:
    return get_process_manager(
        runtime.instance_dir,
        state,
        config=runtime.config,
        runner=runtime.runner,
    )


def _instance_url(state: InstanceState) -> str:
    return state.url or f"http://{state.host}:{state.port}"


def _admin_credentials(runtime: RuntimeContext, username: str | None = None) -> AdminCredentials:
    if username is None:
        username = runtime.prompter.ask("Enter your Ghost administrator email address")
    password = runtime.prompter.ask("Enter your Ghost administrator password", secret=True)
    if not username or not password:
        raise ValidationError(
            "Administrator credentials are required.",
            help="Run the command from an interactive terminal.",
        )
    return AdminCredentials(username=username, password=password)


def _admin_client(runtime: RuntimeContext, state: InstanceState) -> AdminApiClient:
    return AdminApiClient(
        _instance_url(state),
        timeout=runtime.config.http.timeout,
        theme_check_path=runtime.config.http.theme_check_path,
    )


def _theme_report_source(
    runtime: RuntimeContext, state: InstanceState
) -> Callable[[str, str], CompatibilityReport]:
    def _report(active: str, target: str) -> CompatibilityReport:
        if not state.url:
            raise AdminApiError("The instance URL is not recorded in its metadata.")
        with _admin_client(runtime, state) as client:
            headers = client.authenticate(active, _admin_credentials(runtime))
            return client.theme_report(active, target, headers=headers)

    return _report


def _release_notes_printer(runtime: RuntimeContext) -> Callable[[str], None] | None:
    url = runtime.config.release_notes_url
    if not url:
        return None

    def _print(version: str) -> None:
        try:
            notes = fetch_release_notes(version, url=url, timeout=runtime.config.http.timeout)
        except ReleaseNotesUnavailable as exc:
            console.print(f"[yellow]{exc}[/yellow]")
            return
        if notes:
            console.print(f"[bold]Ghost {version} release notes[/bold]")
            console.print(notes, markup=False)

    return _print


def _run_system_migrations(
    runtime: RuntimeContext,
    store: InstanceStore,
    op: OperationScope,
    *,
    quiet: bool,
) -> list[str]:
    state = store.load()
    pending = needed_migrations(state.cli_version)
    if not pending:
        if not quiet:
            console.print("[green]No migrations needed[/green]")
        op.add_step("migrations.system", status="skipped")
        return []
    applied = run_system_migrations(store.root, pending)
    with store.mutate() as updated:
        updated.cli_version = __version__
    for title in applied:
        op.add_step("migrations.system", status="success", detail=title)
        if not quiet:
            console.print(f"[green]✓[/green] {title}")
    return applied


def _rollback_policy(
    runtime: RuntimeContext,
    op: OperationScope,
    *,
    auto_rollback: bool,
    requested: str | None,
) -> RollbackPolicy:
    if auto_rollback:
        return RollbackPolicy.ALWAYS
    value = (requested or runtime.config.rollback_policy).lower()
    try:
        return RollbackPolicy(value)
    except ValueError:
        allowed = ", ".join(policy.value for policy in RollbackPolicy)
        _command_error(op, f"Invalid rollback policy '{value}'. Use one of: {allowed}.")


def _build_orchestrator(
    runtime: RuntimeContext,
    store: InstanceStore,
    state: InstanceState,
    policy: RollbackPolicy,
    op: OperationScope,
) -> UpdateOrchestrator:
    config = runtime.config
    node_info = detect_node_version(config.node_bin)
    fetcher = ReleaseFetcher(
        runner=runtime.runner,
        provider=runtime.version_provider,
        package_name=config.package_name,
        yarn_bin=config.yarn_bin,
        npm_bin=config.npm_bin,
        timeout=config.http.timeout,
    )
    return UpdateOrchestrator(
        store=store,
        config=config,
        provider=runtime.version_provider,
        fetcher=fetcher,
        migrations=MigrationRunner(store.root, runner=runtime.runner),
        manager=_process_manager(runtime, state),
        gate=MajorVersionGate(runtime.prompter, _theme_report_source(runtime, state)),
        prompter=runtime.prompter,
        policy=policy,
        cli_version=__version__,
        node_version=node_info.version if node_info else None,
        node_check=node_version_check_enabled(),
        release_notes=_release_notes_printer(runtime),
        op=op,
    )


def _report_update(runtime: RuntimeContext, op: OperationScope, result: UpdateResult) -> None:
    context: Mapping[str, object] = {
        "version": result.version,
        "states": [state.value for state in result.history],
        "removed_versions": list(result.removed_versions),
    }
    if result.up_to_date:
        console.print("[green]All up to date[/green]")
        op.success("All up to date", changed=0, context=context)
        return
    if result.error is not None:
        console.print(
            f"[yellow]Update failed; Ghost was rolled back to {result.version}.[/yellow]"
        )
        _cli_error(runtime, op, result.error)
    if result.rolled_back:
        console.print(f"[green]Rolled back to Ghost {result.version}.[/green]")
        op.success(f"Rolled back to Ghost {result.version}.", changed=2, context=context)
        return
    console.print(f"[green]Ghost updated to {result.version}.[/green]")
    op.success(f"Updated Ghost to {result.version}.", changed=2, context=context)


@app.command()
def update(
    ctx: typer.Context,
    version: str | None = typer.Argument(None, help="Version to update to (default: next compatible release)."),
    zip_path: Path | None = typer.Option(
        None,
        "--zip",
        dir_okay=False,
        help="Install the release from a local zip archive.",
    ),
    rollback: bool = typer.Option(
        False,
        "--rollback",
        "-r",
        help="Roll back to the version installed before the last update.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Reinstall even if the version is already installed.",
    ),
    restart: bool | None = typer.Option(
        None,
        "--restart/--no-restart",
        help="Start Ghost after the update (default: only if it was running).",
    ),
    v1: bool = typer.Option(False, "--v1", help="Limit updates to the Ghost 1.x line."),
    auto_rollback: bool = typer.Option(
        False,
        "--auto-rollback",
        help="Roll back without asking if the update fails (same as --rollback-policy always).",
    ),
    rollback_policy: str | None = typer.Option(
        None,
        "--rollback-policy",
        case_sensitive=False,
        help="What to do when an update fails part-way (confirm | always | never).",
    ),
    channel: str = typer.Option("stable", "--channel", help="Release channel (stable | next)."),
    yes: bool = YES_OPTION,
) -> None:
    """Update Ghost to a newer version, or roll back the last update."""
    runtime = _get_runtime(ctx)
    if yes:
        runtime.prompter.auto_confirm = True

    with runtime.logger.operation(
        "update",
        args={
            "version": version,
            "zip": str(zip_path) if zip_path else None,
            "rollback": rollback,
            "force": force,
            "restart": restart,
            "v1": v1,
            "channel": channel,
        },
        target=_instance_target(runtime),
    ) as op:
        policy = _rollback_policy(runtime, op, auto_rollback=auto_rollback, requested=rollback_policy)
        if rollback and (version or zip_path):
            _command_error(op, "--rollback cannot be combined with a version or --zip.")
        store = runtime.store
        try:
            _run_system_migrations(runtime, store, op, quiet=True)
            state = store.load()
            orchestrator = _build_orchestrator(runtime, store, state, policy, op)
            result = orchestrator.run(
                UpdateRequest(
                    version=version,
                    zip_path=zip_path,
                    rollback=rollback,
                    force=force,
                    restart=restart,
                    v1=v1,
                    channel=channel,
                )
            )
        except CliError as exc:
            _cli_error(runtime, op, exc)
        _report_update(runtime, op, result)


@app.command()
def migrate(
    ctx: typer.Context,
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only report failures."),
) -> None:
    """Apply pending ghostctl layout migrations to the instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "migrate",
        args={"quiet": quiet},
        target=_instance_target(runtime),
    ) as op:
        try:
            applied = _run_system_migrations(runtime, runtime.store, op, quiet=quiet)
        except CliError as exc:
            _cli_error(runtime, op, exc)
        op.success(f"Applied {len(applied)} migration(s).", changed=len(applied))


def _ensure_running(runtime: RuntimeContext, manager: ProcessManager, op: OperationScope) -> None:
    if manager.is_running():
        return
    should_start = runtime.prompter.confirm(
        "Ghost instance is not currently running. Would you like to start it?",
        default=True,
    )
    if not should_start:
        raise SystemEnvironmentError(
            "Ghost instance is not currently running",
            help="Start it with 'ghostctl start' and try again.",
        )
    manager.start()
    op.add_step("process.start", status="success", detail=manager.name)


@app.command("export")
def export_content(
    ctx: typer.Context,
    file: Path | None = typer.Argument(None, dir_okay=False, help="Where to write the export."),
    yes: bool = YES_OPTION,
) -> None:
    """Export posts, settings and users to a JSON file."""
    runtime = _get_runtime(ctx)
    if yes:
        runtime.prompter.auto_confirm = True
    with runtime.logger.operation(
        "export",
        args={"file": str(file) if file else None},
        target=_instance_target(runtime),
    ) as op:
        try:
            state = runtime.store.load()
            if not state.version:
                raise SystemEnvironmentError("No active Ghost version is recorded for this instance.")
            stamp = datetime.now(tz=UTC).strftime("%Y-%m-%d-%H-%M-%S")
            output = file or Path(f"{state.name}.ghost.{stamp}.json")
            _ensure_running(runtime, _process_manager(runtime, state), op)
            with _admin_client(runtime, state) as client:
                client.export_content(state.version, _admin_credentials(runtime), output)
        except CliError as exc:
            _cli_error(runtime, op, exc)
        console.print(f"[green]Content exported to {output}[/green]")
        op.success("Content exported.", changed=1, context={"file": str(output)})


def _setup_blog(
    runtime: RuntimeContext,
    client: AdminApiClient,
    version: str,
    export_file: Path,
    op: OperationScope,
) -> AdminCredentials:
    """Create the owner recorded in *export_file* and return its credentials."""
    owner = read_export_owner(export_file)
    if not owner.email:
        raise ValidationError(
            "The import file does not name a blog owner.",
            help=f"Complete the setup at {client.url}/ghost/ and run the import again.",
        )
    credentials = _admin_credentials(runtime, owner.email)
    client.setup(
        version,
        name=owner.name or owner.email,
        email=owner.email,
        password=credentials.password,
        blog_title=owner.blog_title or "Ghost",
    )
    op.add_step("blog.setup", status="success", detail=owner.email)
    console.print(f"[green]Blog set up for {owner.email}[/green]")
    return credentials


@app.command("import")
def import_content(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Export file to import."),
    yes: bool = YES_OPTION,
) -> None:
    """Import a content export into the instance."""
    runtime = _get_runtime(ctx)
    if yes:
        runtime.prompter.auto_confirm = True
    with runtime.logger.operation(
        "import",
        args={"file": str(file)},
        target=_instance_target(runtime),
    ) as op:
        try:
            state = runtime.store.load()
            if not state.version:
                raise SystemEnvironmentError("No active Ghost version is recorded for this instance.")
            _ensure_running(runtime, _process_manager(runtime, state), op)
            with _admin_client(runtime, state) as client:
                if client.is_setup(state.version):
                    credentials = _admin_credentials(runtime)
                else:
                    credentials = _setup_blog(runtime, client, state.version, file, op)
                client.import_content(state.version, credentials, file)
        except CliError as exc:
            _cli_error(runtime, op, exc)
        console.print(f"[green]Content imported from {file}[/green]")
        op.success("Content imported.", changed=1)


@app.command()
def start(ctx: typer.Context) -> None:
    """Start the Ghost instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("start", target=_instance_target(runtime)) as op:
        try:
            state = runtime.store.load()
            started = _process_manager(runtime, state).start()
        except CliError as exc:
            _cli_error(runtime, op, exc)
        if not started:
            console.print("[yellow]Ghost is already running.[/yellow]")
            op.success("Ghost is already running.", changed=0)
            return
        console.print(f"[green]Ghost is running at {_instance_url(state)}[/green]")
        op.success("Ghost started.", changed=1)


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop the Ghost instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("stop", target=_instance_target(runtime)) as op:
        try:
            stopped = _process_manager(runtime, runtime.store.load()).stop()
        except CliError as exc:
            _cli_error(runtime, op, exc)
        if not stopped:
            console.print("[yellow]Ghost is already stopped.[/yellow]")
            op.success("Ghost is already stopped.", changed=0)
            return
        console.print("[green]Ghost stopped.[/green]")
        op.success("Ghost stopped.", changed=1)


@app.command()
def restart(ctx: typer.Context) -> None:
    """Restart the Ghost instance (starting it if stopped)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("restart", target=_instance_target(runtime)) as op:
        try:
            manager = _process_manager(runtime, runtime.store.load())
            if manager.is_running():
                manager.restart()
                op.add_step("process.restart", status="success", detail=manager.name)
            else:
                manager.start()
                op.add_step("process.start", status="success", detail=manager.name)
        except CliError as exc:
            _cli_error(runtime, op, exc)
        console.print("[green]Ghost restarted.[/green]")
        op.success("Ghost restarted.", changed=1)


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit status as JSON instead of a table.",
    ),
) -> None:
    """Show the recorded metadata and process state of the instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target=_instance_target(runtime),
    ) as op:
        try:
            store = runtime.store
            state = store.load()
            running = _process_manager(runtime, state).is_running()
        except CliError as exc:
            _cli_error(runtime, op, exc)
        data = state.to_dict()
        data["status"] = "running" if running else "stopped"
        current = store.active_version_dir()
        data["current"] = str(current) if current else None

        if json_output:
            console.print_json(data=data)
            op.success("Rendered status as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            table.add_row(key, "" if value is None else str(value))
        console.print(table)
        op.success("Rendered status table.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
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


def main() -> None:
    """Console script entry point."""
    runner = CommandRunner()
    install_signal_handlers(runner)
    app(obj=runner)


__all__ = ["app", "main"]
