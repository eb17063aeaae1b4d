"""Typer-powered command line interface for ``sitectl``.

Every lifecycle command resolves a :class:`DeploymentTarget`, hands it to the
:class:`DeploymentOrchestrator` and records the run in the structured
operations log. Output is a Rich table by default or the raw outcome with
``--json``. Any failed step, an unknown command or an invalid argument exits
with status 1.
"""
from __future__ import annotations

import textwrap
from dataclasses import dataclass
from pathlib import Path

import click
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from typer.core import TyperGroup

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logging import StructuredLogger
from .models import ENVIRONMENTS, DeploymentOutcome
from .orchestrator import DeploymentOrchestrator, build_target
from .templates import TemplateEngine

console = Console()

MUTATING_STEPS = frozenset(
    {
        "repository.sync",
        "repository.build",
        "repository.rollback",
        "service.install",
        "service.start",
        "service.stop",
        "service.restart",
        "proxy.configure",
    }
)

STATUS_STYLES = {
    "success": "green",
    "skipped": "dim",
    "warning": "yellow",
    "error": "red",
}

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sitectl's YAML config file.",
)
TARGET_ARGUMENT = typer.Argument(
    "localhost",
    help="Host or public domain to act on.",
)
ENVIRONMENT_ARGUMENT = typer.Argument(
    "dev",
    help=f"Deployment environment ({'|'.join(ENVIRONMENTS)}).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the outcome as JSON.",
)


class LifecycleGroup(TyperGroup):
    """Command group that reports every usage error with exit status 1.

    Click exits with 2 for unknown commands, unknown options and surplus
    arguments. Those surface from the root parser (``parse_args``) or from
    the subcommand context built during ``invoke``.
    """

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as exc:
            exc.exit_code = int(ExitCode.FAILURE)
            raise

    def invoke(self, ctx: click.Context) -> object:
        try:
            return super().invoke(ctx)
        except click.UsageError as exc:
            exc.exit_code = int(ExitCode.FAILURE)
            raise


app = typer.Typer(
    cls=LifecycleGroup,
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help=textwrap.dedent(
        """
        Deployment lifecycle manager for a single static website.

        Target defaults to localhost and environment to dev.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    orchestrator: DeploymentOrchestrator


@dataclass
class _CliState:
    config_file: Path | None = None
    runtime: RuntimeContext | None = None


def _build_runtime(config_file: Path | None) -> RuntimeContext:
    config = load_config(config_file=config_file)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    orchestrator = DeploymentOrchestrator.from_config(config, templates)
    return RuntimeContext(
        config=config,
        logger=logger,
        templates=templates,
        orchestrator=orchestrator,
    )


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    root = ctx.find_root()
    state = root.obj if isinstance(root.obj, _CliState) else _CliState()
    root.obj = state
    if state.runtime is None:
        try:
            state.runtime = _build_runtime(state.config_file)
        except ConfigError as exc:
            console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
            raise typer.Exit(code=ExitCode.FAILURE) from exc
    return state.runtime


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the sitectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    ctx.obj = _CliState(config_file=config_file)
    if version:
        console.print(f"sitectl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _render_outcome(outcome: DeploymentOutcome, runtime: RuntimeContext) -> None:
    target = outcome.target
    table = Table(title=f"sitectl {outcome.command} {target.domain} ({target.environment})")
    table.add_column("Step", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Detail", overflow="fold")
    for step in outcome.steps:
        style = STATUS_STYLES.get(step.status, "white")
        table.add_row(step.name, f"[{style}]{step.status}[/{style}]", escape(step.detail))
    console.print(table)

    if outcome.command == "status":
        config = runtime.config
        console.print(f"Site directory: {config.site_dir}")
        console.print(f"Port: {target.port}")
        service = outcome.service
        if service is not None:
            console.print(f"Service: {service.state.value} ({service.log_reference})")
        if outcome.commits:
            console.print("Recent commits:")
            for line in outcome.commits:
                console.print(f"  {escape(line)}")
        else:
            console.print("Recent commits: not a git repository")

    if outcome.revision and outcome.command in {"deploy", "rollback"}:
        console.print(f"Revision: {outcome.revision}")

    failure = outcome.failure
    if failure is None:
        reached = outcome.reached.value if outcome.reached is not None else "nothing"
        console.print(f"[green]{outcome.command} completed (reached {reached}).[/green]")
    else:
        reached = outcome.reached.value if outcome.reached is not None else "none"
        console.print(
            f"[red]{outcome.command} failed at {failure.state.value} during {failure.step} "
            f"({failure.kind}): {escape(failure.message)}[/red]"
        )
        console.print(f"Furthest state reached: {reached}")


def _run_lifecycle(
    ctx: typer.Context,
    command: str,
    target: str,
    environment: str,
    json_output: bool,
) -> None:
    runtime = _get_runtime(ctx)
    try:
        deployment_target = build_target(runtime.config, target, environment)
    except ValueError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    with runtime.logger.operation(
        command,
        args={"environment": environment, "json": json_output},
        target={"kind": "site", **deployment_target.to_dict()},
    ) as op:
        outcome = runtime.orchestrator.run(command, deployment_target)
        for step in outcome.steps:
            op.add_step(step.name, status=step.status, detail=step.detail)
        context = outcome.to_dict()
        if outcome.failure is None:
            changed = sum(
                1
                for step in outcome.steps
                if step.name in MUTATING_STEPS and step.status == "success"
            )
            warnings = [step.detail for step in outcome.steps if step.status == "warning"]
            op.success(
                f"{command} completed.",
                changed=changed,
                warnings=warnings,
                context=context,
            )
        else:
            failure = outcome.failure
            op.error(
                f"{command} failed at {failure.state.value}: {failure.message}",
                errors=[f"{failure.kind}: {failure.message}"],
                context=context,
            )

        if json_output:
            console.print_json(data=context)
        else:
            _render_outcome(outcome, runtime)

    if not outcome.success:
        raise typer.Exit(code=ExitCode.FAILURE)


@app.command()
def deploy(
    ctx: typer.Context,
    target: str = TARGET_ARGUMENT,
    environment: str = ENVIRONMENT_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Sync the site, (re)start its service, route the proxy and verify."""
    _run_lifecycle(ctx, "deploy", target, environment, json_output)


@app.command()
def start(
    ctx: typer.Context,
    target: str = TARGET_ARGUMENT,
    environment: str = ENVIRONMENT_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Install and start the site service and configure the proxy."""
    _run_lifecycle(ctx, "start", target, environment, json_output)


@app.command()
def stop(
    ctx: typer.Context,
    target: str = TARGET_ARGUMENT,
    environment: str = ENVIRONMENT_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop the site service."""
    _run_lifecycle(ctx, "stop", target, environment, json_output)


@app.command()
def restart(
    ctx: typer.Context,
    target: str = TARGET_ARGUMENT,
    environment: str = ENVIRONMENT_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restart the site service."""
    _run_lifecycle(ctx, "restart", target, environment, json_output)


@app.command()
def status(
    ctx: typer.Context,
    target: str = TARGET_ARGUMENT,
    environment: str = ENVIRONMENT_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show service state and the most recent site revisions."""
    _run_lifecycle(ctx, "status", target, environment, json_output)


@app.command()
def rollback(
    ctx: typer.Context,
    target: str = TARGET_ARGUMENT,
    environment: str = ENVIRONMENT_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Check out the previous revision and restart the service."""
    _run_lifecycle(ctx, "rollback", target, environment, json_output)


@app.command()
def verify(
    ctx: typer.Context,
    target: str = TARGET_ARGUMENT,
    environment: str = ENVIRONMENT_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Probe the backend and the public endpoint."""
    _run_lifecycle(ctx, "verify", target, environment, json_output)


@app.command("help")
def help_command(ctx: typer.Context) -> None:
    """Show usage information."""
    parent = ctx.parent if ctx.parent is not None else ctx
    typer.echo(parent.get_help())


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
