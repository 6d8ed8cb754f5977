"""Plugin CLI commands.

This module lists the installed plugins, verifies their dependency graph
and renders it as a tree.
"""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(help="Plugin commands")
console = Console()


@app.command("list")
def list_plugins(
    details: Annotated[
        bool,
        typer.Option("--details", "-d", help="Show arguments, hooks and dependencies"),
    ] = False,
) -> None:
    """List discovered plugins."""
    from unideploy.main import get_app_context

    ctx = get_app_context()
    plugins = ctx.plugins
    enabled = set(ctx.config.plugins.enabled)

    if not plugins.names:
        console.print("[yellow]No plugins found[/yellow]")
        return

    table = Table(title="Plugins")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Version", style="dim")
    table.add_column("Enabled")
    table.add_column("Description")
    if details:
        table.add_column("Arguments")
        table.add_column("Hooks")
        table.add_column("Depends on")

    for name in plugins.names:
        descriptor = plugins.descriptor(name)
        row = [
            name,
            descriptor.version,
            "[green]yes[/green]" if name in enabled else "no",
            descriptor.description,
        ]
        if details:
            row.append("\n".join(f"{k}={v}" for k, v in descriptor.args.items()) or "-")
            row.append(", ".join(event.value for event in descriptor.hooks) or "-")
            row.append(
                ", ".join(
                    f"{d.name} (optional)" if d.optional else d.name
                    for d in plugins.dependencies(name)
                )
                or "-"
            )
        table.add_row(*row)
    console.print(table)


@app.command()
def verify(
    names: Annotated[
        Optional[list[str]],
        typer.Argument(help="Plugins to verify (default: all)"),
    ] = None,
) -> None:
    """Check that plugin dependencies exist and contain no cycles."""
    from unideploy.main import get_app_context

    ctx = get_app_context()
    report = ctx.plugins.verify(names or None)

    for plugin, missing in report.missing_required.items():
        console.print(f"[red]missing[/red] {plugin}: requires {', '.join(missing)}")
    for plugin, missing in report.missing_optional.items():
        console.print(f"[yellow]optional[/yellow] {plugin}: {', '.join(missing)} not installed")
    for cycle in report.cycles:
        console.print(f"[red]cycle[/red] {cycle}")
    for suggestion in report.suggestions:
        console.print(f"[dim]hint:[/dim] {suggestion}")

    if not report.ok:
        raise typer.Exit(code=1)
    console.print(f"[green]{len(report.plugins)} plugin(s) verified[/green]")


@app.command()
def tree(
    names: Annotated[
        Optional[list[str]],
        typer.Argument(help="Root plugins (default: all)"),
    ] = None,
) -> None:
    """Render the plugin dependency graph."""
    from unideploy.main import get_app_context

    ctx = get_app_context()
    rendered = ctx.plugins.visualize(names or None)
    if not rendered:
        console.print("[yellow]No plugins found[/yellow]")
        return
    # Tree markers such as [MISSING] are not rich markup
    console.print(rendered, highlight=False, markup=False)
