"""Typer-powered command line for ``wod``.

Every command resolves the shared :class:`RuntimeContext`, runs inside a
structured logging operation, and maps the core result onto the process exit
code. Invocations against the same instance are not serialised; run one
command per instance at a time.
"""
from __future__ import annotations

import json
import sys
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, CreateConfig, load_config, resolve_create_config
from .docker import ContainerInspector
from .exit_codes import ExitCode
from .filesystem import FileStore, LocalFileStore
from .instances import (
    InstanceInfo,
    InstanceOrchestrator,
    PortOverrides,
    validate_instance_name,
)
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .process import ProcessRunner, SubprocessRunner
from .restore import RestoreEngine
from .templates import TemplateEngine, install_bundled_templates

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to wod's YAML config file.",
)

HTTP_PORT_OPTION = typer.Option(None, "--http-port", help="Host port published for HTTP.")
HTTPS_PORT_OPTION = typer.Option(None, "--https-port", help="Host port published for HTTPS.")
PHP_VERSION_OPTION = typer.Option(None, "--php-version", help="PHP version of the image.")
WORDPRESS_VERSION_OPTION = typer.Option(
    None,
    "--wordpress-version",
    help="WordPress version of the image.",
)
TEMPLATE_OPTION = typer.Option(None, "--template", help="Template to render the instance from.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Disposable WordPress-on-Docker instances.

        Each instance lives in its own directory below the wod home and runs as
        a docker compose project. Commands touching the same instance must not
        run concurrently.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    runner: ProcessRunner
    files: FileStore
    inspector: ContainerInspector
    restorer: RestoreEngine
    orchestrator: InstanceOrchestrator
    logger: StructuredLogger


def build_runtime(
    config: AppConfig,
    *,
    runner: ProcessRunner | None = None,
    files: FileStore | None = None,
) -> RuntimeContext:
    """Wire the core services for *config*."""
    runner = runner or SubprocessRunner()
    files = files or LocalFileStore()
    inspector = ContainerInspector.from_config(runner, config)
    restorer = RestoreEngine(runner=runner, files=files, config=config, inspector=inspector)
    orchestrator = InstanceOrchestrator(
        runner=runner,
        files=files,
        config=config,
        inspector=inspector,
        restorer=restorer,
        templates=TemplateEngine(),
    )
    return RuntimeContext(
        config=config,
        runner=runner,
        files=files,
        inspector=inspector,
        restorer=restorer,
        orchestrator=orchestrator,
        logger=StructuredLogger(config.logs_dir),
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.USAGE) from exc
    runtime = build_runtime(config)
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
        help="Show the wod version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every external command to stderr.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_console_logging(verbose)
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"wod {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _print_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


def _finish(
    op: OperationScope,
    message: str,
    warnings: Sequence[str],
    *,
    changed: int,
    context: dict[str, object] | None = None,
) -> None:
    """Record success, downgraded to a warning outcome when warnings exist."""
    if warnings:
        op.warning(message, warnings=list(warnings), changed=changed, context=context)
    else:
        op.success(message, changed=changed, context=context)


def _checked_name(op: OperationScope, name: str) -> str:
    try:
        return validate_instance_name(name)
    except ValueError as exc:
        _command_error(op, str(exc), rc=ExitCode.FAILURE)


def _resolve_create_config(op: OperationScope, overrides: dict[str, object]) -> CreateConfig:
    try:
        return resolve_create_config(overrides)
    except ConfigError as exc:
        _command_error(op, str(exc), rc=ExitCode.USAGE)


def _instance_target(name: str) -> dict[str, object]:
    return {"kind": "instance", "name": name}


@app.command("create")
def create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the new instance."),
    backup_dir: Path | None = typer.Argument(
        None,
        help="UpdraftPlus backup directory to restore after install.",
    ),
    http_port: int | None = HTTP_PORT_OPTION,
    https_port: int | None = HTTPS_PORT_OPTION,
    php_version: str | None = PHP_VERSION_OPTION,
    wordpress_version: str | None = WORDPRESS_VERSION_OPTION,
    template: str | None = TEMPLATE_OPTION,
) -> None:
    """Provision, start and install a new instance."""
    runtime = _get_runtime(ctx)
    args = {
        "backup_dir": backup_dir,
        "http_port": http_port,
        "https_port": https_port,
        "php_version": php_version,
        "wordpress_version": wordpress_version,
        "template": template,
    }
    with runtime.logger.operation("create", args=args, target=_instance_target(name)) as op:
        _checked_name(op, name)
        create_config = _resolve_create_config(
            op,
            {
                "http_port": http_port,
                "https_port": https_port,
                "php_version": php_version,
                "wordpress_version": wordpress_version,
                "template_name": template,
            },
        )
        op.add_step("config.resolve", detail=create_config.to_dict())

        result = runtime.orchestrator.create(name, create_config, backup_dir)
        _print_warnings(result.warnings)
        if result.exit_code != 0:
            if result.admin_password:
                console.print(f"Admin password: {result.admin_password}")
            _command_error(op, result.error or "Create failed.", rc=result.exit_code)

        if result.admin_password:
            console.print(f"Admin password: {result.admin_password}")
        console.print(f"[green]Website ready at {result.site_url}[/green]")
        _finish(
            op,
            f"Created instance {name}.",
            result.warnings,
            changed=1,
            context={"site_url": result.site_url},
        )


@app.command("up")
def up(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to start."),
    http_port: int | None = HTTP_PORT_OPTION,
    https_port: int | None = HTTPS_PORT_OPTION,
) -> None:
    """Start an existing instance."""
    runtime = _get_runtime(ctx)
    args = {"http_port": http_port, "https_port": https_port}
    with runtime.logger.operation("up", args=args, target=_instance_target(name)) as op:
        _checked_name(op, name)
        ports = None
        if http_port is not None or https_port is not None:
            ports = PortOverrides(http_port=http_port, https_port=https_port)

        result = runtime.orchestrator.up(name, ports)
        if result.exit_code != 0:
            _command_error(op, result.error or "Start failed.", rc=result.exit_code)

        if result.site_url:
            console.print(f"[green]Website ready at {result.site_url}[/green]")
        else:
            console.print(f"Started {name}.")
        op.success(f"Started instance {name}.", changed=1, context={"site_url": result.site_url})


@app.command("down")
def down(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to stop."),
) -> None:
    """Stop a running instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("down", target=_instance_target(name)) as op:
        _checked_name(op, name)
        result = runtime.orchestrator.down(name)
        if result.exit_code != 0:
            _command_error(op, result.error or "Stop failed.", rc=result.exit_code)
        console.print(f"Stopped {name}.")
        op.success(f"Stopped instance {name}.", changed=1)


@app.command("rm")
def remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to delete."),
) -> None:
    """Stop an instance and delete its directory and database volume."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("rm", target=_instance_target(name)) as op:
        _checked_name(op, name)
        result = runtime.orchestrator.remove(name)
        if result.exit_code != 0:
            _command_error(op, result.error or "Remove failed.", rc=result.exit_code)
        console.print(f"Removed {name}.")
        op.success(f"Removed instance {name}.", changed=1)


@app.command("update")
def update(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to rebuild."),
    php_version: str | None = PHP_VERSION_OPTION,
    wordpress_version: str | None = WORDPRESS_VERSION_OPTION,
    template: str | None = TEMPLATE_OPTION,
) -> None:
    """Re-render an instance's template and rebuild its image."""
    runtime = _get_runtime(ctx)
    args = {
        "php_version": php_version,
        "wordpress_version": wordpress_version,
        "template": template,
    }
    with runtime.logger.operation("update", args=args, target=_instance_target(name)) as op:
        _checked_name(op, name)
        create_config = _resolve_create_config(
            op,
            {
                "php_version": php_version,
                "wordpress_version": wordpress_version,
                "template_name": template,
            },
        )
        op.add_step("config.resolve", detail=create_config.to_dict())

        result = runtime.orchestrator.update(name, create_config)
        if result.exit_code != 0:
            _command_error(op, result.error or "Update failed.", rc=result.exit_code)
        console.print(f"[green]Website ready at {result.site_url}[/green]")
        op.success(f"Updated instance {name}.", changed=1, context={"site_url": result.site_url})


@app.command("restore")
def restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to restore into."),
    backup_dir: Path = typer.Argument(..., help="UpdraftPlus backup directory."),
) -> None:
    """Restore an UpdraftPlus backup into an existing instance."""
    runtime = _get_runtime(ctx)
    args = {"backup_dir": backup_dir}
    with runtime.logger.operation("restore", args=args, target=_instance_target(name)) as op:
        _checked_name(op, name)
        result = runtime.restorer.restore(name, backup_dir)
        _print_warnings(result.warnings)
        if not result.ok:
            _command_error(op, result.error or "Restore failed.", rc=result.exit_code)
        console.print(f"[green]Restored {backup_dir} into {name}.[/green]")
        _finish(op, f"Restored backup into {name}.", result.warnings, changed=1)


def _state_cell(running: bool | None) -> str:
    if running is None:
        return "[red]error[/red]"
    return "[green]running[/green]" if running else "stopped"


def _render_instance_table(instances: Sequence[InstanceInfo]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Name", style="bold")
    table.add_column("DB")
    table.add_column("WordPress")
    table.add_column("URL")
    for info in instances:
        table.add_row(
            info.name,
            _state_cell(info.db_running),
            _state_cell(info.wordpress_running),
            info.site_url or "",
        )
    return table


@app.command("ls")
def list_instances(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List instances and whether their containers are running."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ls",
        args={"json": json_output},
        target={"kind": "instances"},
    ) as op:
        listing = runtime.orchestrator.list_instances()
        context = {"count": len(listing.instances), "docker_running": listing.docker_running}
        if json_output:
            console.print_json(
                data={
                    "docker_running": listing.docker_running,
                    "instances": [info.to_dict() for info in listing.instances],
                }
            )
            op.success("Rendered instances as JSON.", changed=0, context=context)
            return

        if not listing.instances:
            console.print("No wod instances found.")
            op.success("No instances found.", changed=0, context=context)
            return

        console.print(_render_instance_table(listing.instances))
        if not listing.docker_running:
            console.print("[red]Docker is not running.[/red]")
        op.success("Rendered instance table.", changed=0, context=context)


@app.command("install")
def install(ctx: typer.Context) -> None:
    """Copy the bundled templates to the user template directory."""
    runtime = _get_runtime(ctx)
    templates_dir = runtime.config.templates_dir
    with runtime.logger.operation(
        "install",
        target={"kind": "templates", "path": templates_dir},
    ) as op:
        written = install_bundled_templates(runtime.files, templates_dir)
        console.print(f"Installed {len(written)} template files into {templates_dir}.")
        op.success("Installed bundled templates.", changed=len(written))


@app.command(
    "wp",
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def wp(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance to run wp-cli against."),
    wp_args: list[str] | None = typer.Argument(None, help="Arguments passed to wp."),
) -> None:
    """Run wp-cli inside an instance's network and volumes."""
    runtime = _get_runtime(ctx)
    arguments = [*(wp_args or []), *ctx.args]
    with runtime.logger.operation(
        "wp",
        args={"wp_args": arguments},
        target=_instance_target(name),
    ) as op:
        _checked_name(op, name)
        prepared = runtime.orchestrator.wp_command(name, arguments, tty=sys.stdin.isatty())
        if prepared.command is None:
            _command_error(op, prepared.error or "wp-cli unavailable.", rc=prepared.exit_code)

        result = runtime.runner.run(prepared.command, capture_output=False)
        if result.returncode != 0:
            op.error(f"wp exited {result.returncode}.", rc=result.returncode)
            raise typer.Exit(code=result.returncode)
        op.success("wp-cli finished.", changed=0)


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
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
