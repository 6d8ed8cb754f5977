"""Service registry CLI commands.

This module provides read access to the service registry (list, show,
history, url) and the removal of a service's registry entry.
"""

from __future__ import annotations

import asyncio
import json
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from unideploy.registry.service_registry import DEFAULT_HISTORY_LIMIT, service_url

app = typer.Typer(help="Service registry commands")
console = Console()


@app.command("list")
def list_services(
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """List registered services."""
    from unideploy.main import get_app_context

    ctx = get_app_context()
    records = asyncio.run(ctx.registry.list_records())

    if format == "json":
        output = [r.model_dump(mode="json", exclude={"version_history"}) for r in records]
        console.print_json(json.dumps(output))
        return

    if not records:
        console.print("[yellow]No services registered[/yellow]")
        return

    table = Table(title="Services")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Version", style="bold")
    table.add_column("Port", justify="right")
    table.add_column("Route")
    table.add_column("Deployed", style="dim")
    table.add_column("History", justify="right", style="magenta")

    for r in records:
        route = f"{r.route_type.value}:{r.route or '/'}" if r.domain else "-"
        name = f"{r.name} [dim](persistent)[/dim]" if r.is_persistent else r.name
        table.add_row(
            name,
            r.image_ref,
            str(r.port),
            route,
            r.deployed_at,
            str(len(r.version_history)),
        )
    console.print(table)


@app.command()
def show(
    name: Annotated[str, typer.Argument(help="Service name")],
) -> None:
    """Show the registry record of a service."""
    from unideploy.main import get_app_context

    ctx = get_app_context()
    record = asyncio.run(ctx.registry.get(name))
    if record is None:
        console.print(f"[red]Service not found:[/red] {name}")
        raise typer.Exit(code=1)

    url = service_url(record) if record.domain else "-"
    panel = Panel(
        f"[bold]Name:[/bold] {record.name}\n"
        f"[bold]Version:[/bold] {record.image_ref}\n"
        f"[bold]Port:[/bold] {record.port}\n"
        f"[bold]URL:[/bold] {url}\n"
        f"[bold]Health check:[/bold] {record.health_check} ({record.health_check_type.value})\n"
        f"[bold]Persistent:[/bold] {'yes' if record.is_persistent else 'no'}\n"
        f"[bold]Registered:[/bold] {record.registered_at}\n"
        f"[bold]Deployed:[/bold] {record.deployed_at}\n"
        f"[bold]Previous versions:[/bold] {len(record.version_history)}",
        title=f"Service {record.name}",
        border_style="cyan",
    )
    console.print(panel)


@app.command()
def history(
    name: Annotated[str, typer.Argument(help="Service name")],
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Number of entries to show", min=1),
    ] = DEFAULT_HISTORY_LIMIT,
) -> None:
    """Show previously deployed versions of a service, oldest first."""
    from unideploy.main import get_app_context

    ctx = get_app_context()

    async def _history():
        record = await ctx.registry.get(name)
        entries = await ctx.registry.history(name, limit=limit)
        return record, entries

    record, entries = asyncio.run(_history())
    if record is None:
        console.print(f"[red]Service not found:[/red] {name}")
        raise typer.Exit(code=1)

    table = Table(title=f"Version history of {name}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Image", style="cyan")
    table.add_column("Tag", style="bold")
    table.add_column("Deployed", style="dim")
    for i, entry in enumerate(entries, start=1):
        table.add_row(str(i), entry.image, entry.tag, entry.deployed_at)
    table.add_row("", record.image, f"[green]{record.tag}[/green]", f"{record.deployed_at} (current)")
    console.print(table)


@app.command()
def url(
    name: Annotated[str, typer.Argument(help="Service name")],
    no_ssl: Annotated[bool, typer.Option("--no-ssl", help="Use http instead of https")] = False,
) -> None:
    """Print the public URL of a service."""
    from unideploy.main import get_app_context

    ctx = get_app_context()
    result = asyncio.run(ctx.registry.get_service_url(name, ssl=not no_ssl))
    if result is None:
        console.print(f"[red]Service not found:[/red] {name}")
        raise typer.Exit(code=1)
    console.print(result, highlight=False)


@app.command()
def remove(
    name: Annotated[str, typer.Argument(help="Service name")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Remove a service from the registry. Containers and files are left untouched."""
    from unideploy.main import get_app_context

    ctx = get_app_context()
    if not yes:
        typer.confirm(f"Remove {name} from the registry?", abort=True)

    result = asyncio.run(ctx.registry.unregister(name))
    if not result.success:
        message = result.error.message if result.error else "unknown error"
        console.print(f"[red]Cannot remove {name}:[/red] {message}")
        raise typer.Exit(code=1)
    console.print(f"[green]Removed {name} from the registry[/green]")
