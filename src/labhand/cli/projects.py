# Copyright (c) Syntropy Systems
"""labhand projects command."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from labhand.catalog import load_catalog
from labhand.config import load_config
from labhand.errors import CatalogError

console = Console()


def projects(
    projects_file: Optional[Path] = typer.Option(
        None,
        "--projects", "-p",
        help="Project catalog file",
    ),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        envvar="LABHAND_CONFIG",
        help="Config file",
    ),
) -> None:
    """List the projects this machine can run."""
    config = load_config(config_file)
    path = projects_file or config.projects_file

    try:
        catalog = load_catalog(path)
    except CatalogError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from e

    if len(catalog) == 0:
        console.print(f"[dim]No projects in {path}[/dim]")
        return

    table = Table(title=f"Projects ({path})")
    table.add_column("ID", style="cyan")
    table.add_column("Command")
    table.add_column("Options")
    table.add_column("Capacity", justify="right")
    table.add_column("Slots", justify="right")
    table.add_column("Results", style="dim")

    for project_id, project in catalog.items():
        command = " ".join([project.command, *project.args])
        table.add_row(
            project_id,
            command,
            project.options.value,
            str(project.capacity),
            str(config.max_capacity // project.capacity),
            project.results,
        )

    console.print(table)
