"""Deployment CLI commands.

This module provides the commands that deploy an app from its deployment
document, roll an app back to an earlier version, recover an interrupted
cutover and remove an app from the host.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from unideploy.models import DeploymentContext, DeploymentState
from unideploy.orchestrator.cleanup import CleanupService
from unideploy.orchestrator.deployer import DeploymentResult
from unideploy.orchestrator.rollback import RollbackService

app = typer.Typer(help="Deployment commands")
console = Console()

STATE_STYLES = {
    DeploymentState.DONE: "green",
    DeploymentState.ROLLED_BACK: "yellow",
    DeploymentState.FAILED: "red",
}


def render_result(result: DeploymentResult) -> Panel:
    """Build the summary panel of a finished deployment."""
    style = STATE_STYLES.get(result.state, "white")
    lines = [
        f"[bold]App:[/bold] {result.app_name}",
        f"[bold]Deployment:[/bold] {result.deployment_id}",
        f"[bold]State:[/bold] [{style}]{result.state.value}[/{style}]"
        + (" (dry run)" if result.dry_run else ""),
        f"[bold]Version:[/bold] {result.image}:{result.tag}",
    ]
    if result.port is not None:
        lines.append(f"[bold]Port:[/bold] {result.port}")
    if result.url:
        lines.append(f"[bold]URL:[/bold] {result.url}")
    if result.restored_version:
        lines.append(f"[bold]Restored:[/bold] {result.restored_version}")
    if result.error is not None:
        lines.append(f"[bold]Error:[/bold] [red]{result.error.kind.value}[/red] {result.error.message}")
    if result.critical:
        lines.append("[bold red]Manual intervention required; backups were preserved[/bold red]")
        if result.backup_dir is not None:
            lines.append(f"[bold]Backup:[/bold] {result.backup_dir}")
    for warning in result.warnings:
        lines.append(f"[yellow]warning:[/yellow] {warning}")
    lines.append(f"[dim]Duration: {result.duration_seconds:.1f}s[/dim]")

    return Panel(
        "\n".join(lines),
        title="Deployment Result",
        border_style="red" if result.critical else style,
    )


@app.command()
def run(
    config_file: Annotated[
        Path,
        typer.Argument(
            help="Deployment document (JSON or TOML)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ],
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Validate and prepare only; start nothing"),
    ] = False,
    multi_stage: Annotated[
        Optional[bool],
        typer.Option("--multi-stage/--single-stage", help="Stage, cut over and verify"),
    ] = None,
    check_dependencies: Annotated[
        bool,
        typer.Option("--check-dependencies", help="Wait for service dependencies first"),
    ] = False,
    auto_rollback: Annotated[
        Optional[bool],
        typer.Option("--auto-rollback/--no-rollback", help="Roll back automatically on failure"),
    ] = None,
    keep_backup: Annotated[
        bool,
        typer.Option("--keep-backup", help="Keep the previous version's backup directory"),
    ] = False,
) -> None:
    """Deploy an app from its deployment document.

    Exit codes: 0 when the app ends done or rolled back, 1 when the
    deployment failed, 2 when a rollback failed and the app needs manual
    recovery.
    """
    from unideploy.main import get_app_context

    app_ctx = get_app_context()

    try:
        ctx = DeploymentContext.from_file(config_file)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid deployment document:[/red] {e}")
        raise typer.Exit(code=1)

    if multi_stage is not None:
        ctx.multi_stage = multi_stage
    elif "multi_stage" not in ctx.model_fields_set:
        ctx.multi_stage = app_ctx.config.deploy.multi_stage
    if check_dependencies:
        ctx.check_dependencies = True
    ctx.dry_run = dry_run

    if auto_rollback is not None:
        app_ctx.config.deploy.auto_rollback = auto_rollback
    if keep_backup:
        app_ctx.config.deploy.keep_backup = True

    orchestrator = app_ctx.orchestrator()

    async def _deploy() -> DeploymentResult:
        try:
            return await orchestrator.deploy(ctx)
        finally:
            # Backups left by a short-lived CLI run are pruned by the next deployment
            await orchestrator.shutdown()

    console.print(
        f"[bold cyan]Deploying[/bold cyan] {ctx.app_name} "
        f"({ctx.image}:{ctx.tag}, {'multi-stage' if ctx.multi_stage else 'single-stage'})"
    )
    result = asyncio.run(_deploy())
    console.print(render_result(result))
    raise typer.Exit(code=result.exit_code)


@app.command()
def rollback(
    app_name: Annotated[str, typer.Argument(help="Registered app name")],
    version: Annotated[
        Optional[str],
        typer.Option("--version", "-v", help="Tag or image:tag to restore (default: previous)"),
    ] = None,
    config_file: Annotated[
        Optional[Path],
        typer.Option(
            "--deploy-config",
            help="Deployment document to reuse instead of the registry record",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
) -> None:
    """Roll an app back to an earlier version."""
    from unideploy.main import get_app_context

    app_ctx = get_app_context()

    context = None
    if config_file is not None:
        try:
            context = DeploymentContext.from_file(config_file)
        except (FileNotFoundError, ValueError) as e:
            console.print(f"[red]Invalid deployment document:[/red] {e}")
            raise typer.Exit(code=1)

    orchestrator = app_ctx.orchestrator()
    service = RollbackService(orchestrator)

    async def _rollback():
        try:
            return await service.rollback(app_name, version=version, context=context)
        finally:
            await orchestrator.shutdown()

    outcome = asyncio.run(_rollback())
    if outcome.deployment is not None:
        console.print(render_result(outcome.deployment))
    if outcome.success:
        console.print(f"[green]Rolled back {app_name} to {outcome.target}[/green]")
    else:
        message = outcome.error.message if outcome.error else "unknown error"
        console.print(f"[red]Rollback of {app_name} failed:[/red] {message}")
    raise typer.Exit(code=outcome.exit_code)


@app.command()
def recover(
    app_name: Annotated[str, typer.Argument(help="App whose cutover was interrupted")],
    no_restart: Annotated[
        bool,
        typer.Option("--no-restart", help="Do not restart containers after restoring a backup"),
    ] = False,
) -> None:
    """Bring an interrupted cutover back to a consistent state."""
    from unideploy.main import get_app_context
    from unideploy.errors import LockTimeoutError

    app_ctx = get_app_context()
    orchestrator = app_ctx.orchestrator()

    try:
        result = asyncio.run(orchestrator.recover(app_name, restart=not no_restart))
    except LockTimeoutError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    table = Table(title=f"Recovery of {app_name}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Action", result.action.value)
    table.add_row("Interrupted phase", result.phase.value if result.phase else "-")
    table.add_row("Production", str(result.production))
    table.add_row("Restored from", str(result.restored_from) if result.restored_from else "-")
    table.add_row("Removed", "\n".join(str(p) for p in result.removed) or "-")
    console.print(table)

    if not result.success:
        message = result.error.message if result.error else "unrecoverable"
        console.print(f"[bold red]Recovery failed:[/bold red] {message}")
        raise typer.Exit(code=2)


@app.command()
def cleanup(
    app_name: Annotated[str, typer.Argument(help="App to remove from the host")],
    force: Annotated[
        bool,
        typer.Option("--force", help="Also remove services registered as persistent"),
    ] = False,
    keep_data: Annotated[
        bool,
        typer.Option("--keep-data", help="Leave the app's data directory in place"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be removed without removing it"),
    ] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Stop an app and remove its containers, route, directories and registry record."""
    from unideploy.main import get_app_context

    app_ctx = get_app_context()
    if not (yes or dry_run):
        typer.confirm(f"Remove {app_name} and its files from this host?", abort=True)

    orchestrator = app_ctx.orchestrator()
    service = CleanupService(orchestrator)

    async def _cleanup():
        try:
            return await service.cleanup(
                app_name, force=force, keep_data=keep_data, dry_run=dry_run
            )
        finally:
            await orchestrator.shutdown()

    result = asyncio.run(_cleanup())
    if not result.success:
        message = result.error.message if result.error else "unknown error"
        console.print(f"[red]Cleanup of {app_name} failed:[/red] {message}")
        raise typer.Exit(code=result.exit_code)

    verb = "Would remove" if result.dry_run else "Removed"
    for path in result.removed:
        console.print(f"{verb} {path}")
    if result.kept_data is not None:
        console.print(f"Kept data directory {result.kept_data}")
    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    if not result.dry_run:
        console.print(f"[green]Cleaned up {app_name}[/green]")
