"""Typer application for one-time host provisioning (``sitectl-provision``)."""
from __future__ import annotations

import os
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .bootstrap import HardeningSpec, apply_hardening_plan, plan_hardening
from .config import ConfigError, load_config
from .exit_codes import ExitCode
from .logging import StructuredLogger
from .templates import TemplateEngine

console = Console()

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help="One-time host provisioning for sitectl. Not part of the deploy lifecycle.",
)


@app.callback()
def _root() -> None:
    """Provision a fresh host before the first deploy."""


@app.command()
def harden(
    hostname: str = typer.Argument("site", help="Hostname to assign to the machine."),
    deploy_user: str = typer.Option("deploy", "--deploy-user", help="Deployment account."),
    sudo_nopasswd: bool = typer.Option(
        False,
        "--sudo-nopasswd",
        help="Grant the deployment account passwordless sudo.",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without applying it."),
    json_output: bool = typer.Option(False, "--json", help="Emit the plan and results as JSON."),
    config_file: Path | None = typer.Option(
        None,
        "--config-file",
        dir_okay=False,
        help="Override the path to sitectl's YAML config file.",
    ),
) -> None:
    """Apply the baseline security configuration to this host."""
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    if not dry_run and os.geteuid() != 0:
        console.print("[red]Hardening must run as root (use --dry-run to preview).[/red]")
        raise typer.Exit(code=ExitCode.FAILURE)

    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    spec = HardeningSpec(
        hostname=hostname,
        deploy_user=deploy_user,
        deploy_sudo_nopasswd=sudo_nopasswd,
    )

    with logger.operation(
        "provision harden",
        args={"dry_run": dry_run, "deploy_user": deploy_user},
        target={"kind": "host", "hostname": hostname},
    ) as op:
        plan = plan_hardening(spec, templates)
        results = apply_hardening_plan(plan, dry_run=dry_run)
        for result in results:
            op.add_step(result.action.description, status=result.status, detail=result.detail)
        errors = [result.detail for result in results if result.status == "error"]
        payload = {**plan.to_dict(), "dry_run": dry_run, "results": [r.to_dict() for r in results]}

        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(title=f"Hardening {hostname}" + (" (dry run)" if dry_run else ""))
            table.add_column("Action", style="cyan")
            table.add_column("Status")
            table.add_column("Detail", overflow="fold")
            for result in results:
                table.add_row(
                    escape(result.action.description),
                    result.status,
                    escape(result.action.render() if dry_run else result.detail),
                )
            console.print(table)
            for warning in plan.warnings:
                console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")

        if errors:
            op.error("Hardening stopped at a failed action.", errors=errors, context=payload)
        else:
            changed = 0 if dry_run else sum(1 for result in results if result.status == "success")
            op.success(
                "Hardening plan completed." if not dry_run else "Hardening plan previewed.",
                changed=changed,
                warnings=plan.warnings,
                context=payload,
            )

    if errors:
        console.print("[red]Hardening stopped at the first failed action.[/red]")
        raise typer.Exit(code=ExitCode.FAILURE)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
