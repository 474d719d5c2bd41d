"""labhand serve command."""

import logging
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.logging import RichHandler

from labhand.catalog import load_catalog
from labhand.client import CoordinatorClient
from labhand.config import load_config
from labhand.errors import CatalogError
from labhand.ledger import CapacityLedger
from labhand.lifecycle import ExperimentLifecycle
from labhand.machine import ensure_registered
from labhand.notify import Notifier
from labhand.runner import ProcessRunner
from labhand.server.app import create_app

console = Console()


def configure_logging(verbose: bool = False) -> None:
    """Send agent and experiment logs through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def serve(
    coordinator_url: Optional[str] = typer.Option(
        None,
        "--coordinator", "-c",
        envvar="LABHAND_COORDINATOR_URL",
        help="Coordinator URL (e.g., http://lab-host:5080)",
    ),
    machine_url: Optional[str] = typer.Option(
        None,
        "--address", "-a",
        envvar="LABHAND_MACHINE_URL",
        help="URL this machine is reachable at; its port is the listen port",
    ),
    max_capacity: Optional[int] = typer.Option(
        None,
        "--capacity",
        envvar="LABHAND_MAX_CAPACITY",
        help="Unit-cost experiments this machine can run at once",
        min=0,
    ),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        envvar="LABHAND_CONFIG",
        help="Config file (default: ./labhand.yaml or ~/.labhand/config.yaml)",
    ),
    projects_file: Optional[Path] = typer.Option(
        None,
        "--projects", "-p",
        help="Project catalog file",
    ),
    host: Optional[str] = typer.Option(None, "--host", help="Interface to bind to"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """
    Run the agent: register with the coordinator and serve experiment requests.

    Examples:

        labhand serve --coordinator http://lab-host:5080 --address http://gpu-box:5081

        LABHAND_COORDINATOR_URL=http://lab-host:5080 labhand serve -a http://gpu-box:5081 --capacity 4
    """
    configure_logging(verbose)

    config = load_config(config_file)
    if coordinator_url:
        config.coordinator_url = coordinator_url
    if machine_url:
        config.machine_url = machine_url
    if max_capacity is not None:
        config.max_capacity = max_capacity
    if projects_file is not None:
        config.projects_file = projects_file
    if host:
        config.host = host

    try:
        config.validate()
        port = config.port
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    try:
        catalog = load_catalog(config.projects_file)
    except CatalogError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    client = CoordinatorClient(config.coordinator_url, timeout=config.request_timeout)
    notifier = Notifier(client, max_pending=config.max_pending_reports)
    identity = ensure_registered(client, config.identity_file, config.machine_url)

    lifecycle = ExperimentLifecycle(
        catalog=catalog,
        ledger=CapacityLedger(config.max_capacity),
        runner=ProcessRunner(
            kill_grace_period=config.kill_grace_period,
            log_dir=config.log_dir,
        ),
        notifier=notifier,
        results_suffix=config.results_suffix,
    )
    app = create_app(lifecycle, identity)

    console.print("[bold]labhand agent[/bold]")
    console.print(f"  Coordinator: {config.coordinator_url}")
    console.print(f"  Address: {config.machine_url}")
    console.print(f"  Listening: {config.host}:{port}")
    console.print(f"  Capacity: {config.max_capacity}")
    console.print(f"  Projects: {len(catalog)} ({config.projects_file})")
    console.print()

    try:
        uvicorn.run(app, host=config.host, port=port, log_level="debug" if verbose else "info")
    finally:
        active = len(lifecycle.active())
        if active:
            console.print(f"[yellow]Stopping {active} running experiment(s)...[/yellow]")
        lifecycle.shutdown(timeout=config.kill_grace_period + 5)
        notifier.close()
        client.close()
        console.print("[dim]Agent stopped[/dim]")
