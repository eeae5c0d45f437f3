"""branchpod command line."""

from __future__ import annotations

import asyncio
import shutil
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from branchpod import __version__
from branchpod.config import Settings, load_settings
from branchpod.deps import Orchestrator
from branchpod.errors import BranchpodError
from branchpod.models import KillResult, ServerStatus
from branchpod.sentry import configure_logging
from branchpod.validation import ValidationError

T = TypeVar("T")

STATUS_COLORS = {
    ServerStatus.STARTING: "yellow",
    ServerStatus.RUNNING: "green",
    ServerStatus.STOPPED: "white",
    ServerStatus.ERROR: "red",
}


def _run(ctx: click.Context, action: Callable[[Orchestrator], Awaitable[T]]) -> T:
    """Run one orchestrator operation, turning domain errors into a clean exit."""
    settings: Settings = ctx.obj["settings"]
    orchestrator = Orchestrator.build(settings)
    try:
        return asyncio.run(action(orchestrator))
    except (BranchpodError, ValidationError) as e:
        click.echo(click.style("Error: ", fg="red", bold=True) + str(e), err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="branchpod")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file (default ~/.config/branchpod/config.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Path | None) -> None:
    """branchpod - dev servers and consoles per git branch."""
    ctx.ensure_object(dict)
    settings = load_settings(config_file)
    ctx.obj["settings"] = settings
    if ctx.invoked_subcommand != "serve":
        configure_logging("branchpod", log_level="WARNING")


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=int, default=None, help="Bind port (overrides config)")
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Run the HTTP API."""
    import uvicorn

    settings: Settings = ctx.obj["settings"]

    if not shutil.which(settings.tmux_binary):
        click.echo(
            click.style("Warning: ", fg="yellow", bold=True)
            + "tmux is not installed. Console features will not work without tmux.\n"
            "Install it with: brew install tmux (macOS) or apt install tmux (Linux)",
            err=True,
        )

    uvicorn.run(
        "branchpod.main:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_config=None,
    )


@cli.command()
@click.argument("project")
@click.pass_context
def servers(ctx: click.Context, project: str) -> None:
    """List a project's dev servers (reconciled against running processes)."""
    entries = _run(ctx, lambda o: o.servers.list(project))

    if not entries:
        click.echo(click.style(f"No servers for {project}.", fg="yellow"))
        return

    for entry in entries:
        status = click.style(entry.status.value, fg=STATUS_COLORS[entry.status])
        click.echo(f"  {click.style(entry.branch, bold=True)}  {status}")
        click.echo(f"    Port: {entry.port}  PID: {entry.pid or '-'}")
        click.echo(f"    Command: {entry.command}")
        if entry.exit_code is not None:
            click.echo(f"    Exit code: {entry.exit_code}")


@cli.command()
@click.argument("project")
@click.argument("branch")
@click.pass_context
def stop(ctx: click.Context, project: str, branch: str) -> None:
    """Stop the dev server of a branch."""
    entry = _run(ctx, lambda o: o.servers.stop(project, branch))
    click.echo(click.style("Stopped ", fg="green") + f"{project}/{entry.branch} (port {entry.port})")


@cli.command()
@click.option("--project", default=None, help="Only sessions of this project")
@click.pass_context
def sessions(ctx: click.Context, project: str | None) -> None:
    """List console sessions."""
    found = _run(ctx, lambda o: o.consoles.list(project))

    if not found:
        click.echo(click.style("No console sessions.", fg="yellow"))
        return

    for session in found:
        click.echo(f"  {click.style(session.session_name, bold=True)}")
        if session.project is not None:
            click.echo(
                f"    {session.project} / {session.branch} / {session.console_id}"
            )
        if session.activity_at is not None:
            click.echo(f"    Last activity: {session.activity_at.isoformat()}")


@cli.command("kill-session")
@click.argument("project")
@click.argument("branch")
@click.option("--console", "console_id", default=None, help="Console id (default console if omitted)")
@click.pass_context
def kill_session(ctx: click.Context, project: str, branch: str, console_id: str | None) -> None:
    """Kill a console session."""

    async def action(orchestrator: Orchestrator) -> tuple[str, KillResult]:
        name = orchestrator.consoles.session_name(project, branch, console_id)
        return name, await orchestrator.consoles.kill(name)

    name, result = _run(ctx, action)
    if result == KillResult.KILLED:
        click.echo(click.style("Killed ", fg="green") + name)
    else:
        click.echo(click.style("Not found: ", fg="yellow") + name)
        sys.exit(1)


if __name__ == "__main__":
    cli()
