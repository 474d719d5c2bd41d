# Copyright (c) Syntropy Systems
"""Main CLI entry point for labhand."""

import typer

from labhand.cli.machine import machine
from labhand.cli.projects import projects
from labhand.cli.serve import serve

app = typer.Typer(
    name="labhand",
    help=(
        "Experiment worker agent. Advertise capacity, run experiments, "
        "report results back to the lab."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(serve)
_ = app.command()(projects)
_ = app.command()(machine)


if __name__ == "__main__":
    app()
