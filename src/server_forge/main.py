"""
server-forge — CLI entrypoint.

Usage:
    server-forge --help
    server-forge plan
    server-forge run --dry-run
    server-forge rollback RUN_ID
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from server_forge import __version__
from server_forge.core.engine.executor import DEFAULT_MAX_WORKERS
from server_forge.core.observability.logging_config import setup_logging

_STATUS_COLORS = {
    "completed": "green",
    "rolled_back": "yellow",
    "failed": "red",
    "rollback_error": "red",
    "running": "blue",
    "pending": "white",
}


@click.group()
@click.version_option(version=__version__, prog_name="server-forge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to server-forge.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """server-forge — provision Linux servers with automatic rollback."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("SERVER_FORGE_LOG_LEVEL", "WARNING")

    setup_logging(
        level=level,
        log_file=os.environ.get("SERVER_FORGE_LOG_FILE"),
        log_file_level=os.environ.get("SERVER_FORGE_LOG_FILE_LEVEL"),
    )


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(ctx: click.Context, as_json: bool) -> None:
    """Show the steps a run would execute, in order."""
    from server_forge.core.use_cases.provision import plan_provisioning

    result = plan_provisioning(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    assert result.plan is not None and result.configuration is not None
    configuration = result.configuration
    click.secho(
        f"\n📋 {configuration.server_role} server on {configuration.distro_family}"
        f" — {result.plan.total_steps} steps",
        fg="cyan",
        bold=True,
    )
    for index, step in enumerate(result.plan.steps, 1):
        marker = " 🔒" if step.is_exclusive else ""
        after = f"  ← {', '.join(sorted(step.requires))}" if step.requires else ""
        click.echo(f"   {index:>2}. {step.id}{marker}{after}")
        if ctx.obj.get("verbose"):
            click.echo(f"       {step.label}")
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--dry-run", is_flag=True, help="Show the commands without running them.")
@click.option("--mock", is_flag=True, help="Use mock command execution.")
@click.option(
    "--workers",
    "-w",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_WORKERS,
    show_default=True,
    help="Maximum steps running at once.",
)
@click.pass_context
def run(ctx: click.Context, as_json: bool, dry_run: bool, mock: bool, workers: int) -> None:
    """Provision the server described by the configuration.

    Examples:

        server-forge run --dry-run

        server-forge run --mock --workers 1

        server-forge run
    """
    from server_forge.core.use_cases.provision import run_provisioning

    result = run_provisioning(
        config_path=ctx.obj.get("config_path"),
        dry_run=dry_run,
        mock_mode=mock,
        max_workers=workers,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    mode_label = "[dry-run] " if dry_run else "[mock] " if mock else ""
    assert result.run is not None
    click.secho(f"\n⚡ {mode_label}run {result.run.run_id}", fg="cyan", bold=True)

    if dry_run:
        for command in result.commands:
            click.echo(f"   $ {command}")
        click.echo()
        sys.exit(result.exit_code)

    _print_run(result.run, quiet=ctx.obj.get("quiet", False))
    sys.exit(result.exit_code)


@cli.command()
@click.argument("run_id")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--mock", is_flag=True, help="Use mock command execution.")
@click.option(
    "--workers",
    "-w",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_WORKERS,
    show_default=True,
    help="Maximum steps running at once.",
)
@click.pass_context
def resume(ctx: click.Context, run_id: str, as_json: bool, mock: bool, workers: int) -> None:
    """Continue an interrupted run, skipping steps it already applied."""
    from server_forge.core.use_cases.provision import resume_provisioning

    result = resume_provisioning(
        run_id,
        config_path=ctx.obj.get("config_path"),
        mock_mode=mock,
        max_workers=workers,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    assert result.run is not None
    click.secho(f"\n⚡ resumed {run_id} as {result.run.run_id}", fg="cyan", bold=True)
    _print_run(result.run, quiet=ctx.obj.get("quiet", False))
    sys.exit(result.exit_code)


@cli.command()
@click.argument("run_id")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--mock", is_flag=True, help="Use mock command execution.")
@click.pass_context
def rollback(ctx: click.Context, run_id: str, as_json: bool, mock: bool) -> None:
    """Undo the completed steps of a previous run."""
    from server_forge.core.use_cases.provision import rollback_provisioning

    result = rollback_provisioning(
        run_id,
        config_path=ctx.obj.get("config_path"),
        mock_mode=mock,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    assert result.rollback is not None
    _print_rollback(result.rollback)
    sys.exit(result.exit_code)


@cli.command("log")
@click.argument("run_id", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def log_cmd(ctx: click.Context, run_id: str | None, as_json: bool) -> None:
    """List runs, or show the steps of one run."""
    from server_forge.core.use_cases.provision import show_log

    result = show_log(run_id, config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(1 if result.error else 0)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    if run_id is None:
        if not result.runs:
            click.echo("No runs recorded.")
            return
        for name in result.runs:
            click.echo(f"   • {name}")
        return

    click.secho(f"\n📜 {run_id}", fg="cyan", bold=True)
    for record in result.records:
        click.secho(f"   {record.status.value:<15}", fg=_STATUS_COLORS.get(record.status.value, "white"), nl=False)
        click.echo(f"{record.step_id}")
        if record.error:
            click.echo(f"                  {record.error}")
    click.echo()


# ── Output helpers ──────────────────────────────────────────────


def _print_run(run, quiet: bool = False) -> None:
    for record in run.records:
        if quiet and record.status.value == "completed":
            continue
        status = record.status.value
        reused = " (already applied)" if record.reused_from else ""
        click.secho(f"   {status:<15}", fg=_STATUS_COLORS.get(status, "white"), nl=False)
        click.echo(f"{record.step_id}{reused}")
        if record.error:
            click.echo(f"                  {record.error}")

    click.echo()
    if run.ok:
        click.secho(f"✅ {len(run.records)} step(s) applied", fg="green", bold=True)
    else:
        reason = "cancelled" if run.cancelled else f"step '{run.failed_step}' failed"
        click.secho(f"❌ Run {reason}", fg="red", bold=True)
        if run.rollback is not None:
            _print_rollback(run.rollback)
    click.echo()


def _print_rollback(result) -> None:
    if result.fully_rolled_back:
        click.secho(f"↩️  Rolled back {len(result.rolled_back)} step(s)", fg="yellow")
        return
    click.secho("⚠️  Partial rollback — manual remediation needed:", fg="red", bold=True)
    for record in result.remediation:
        detail = f": {record.error}" if record.error else ""
        click.echo(f"   • {record.step_id} ({record.status.value}){detail}")


if __name__ == "__main__":
    cli()
