# Copyright (c) Syntropy Systems
"""labhand machine command."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from labhand.catalog import load_identity
from labhand.config import load_config
from labhand.machine import collect_machine_spec

console = Console()


def machine(
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        envvar="LABHAND_CONFIG",
        help="Config file",
    ),
    json_output: bool = typer.Option(False, "--json", help="Print the machine spec as JSON"),
) -> None:
    """Show the machine specification sent to the coordinator."""
    config = load_config(config_file)
    spec = collect_machine_spec(config.machine_url)

    if json_output:
        console.print_json(spec.model_dump_json())
        return

    identity = load_identity(config.identity_file)
    if identity is not None and identity.id:
        console.print(f"[green]✓[/green] Registered as {identity.id}")
    else:
        console.print("[yellow]![/yellow] Not registered yet")

    console.print(f"  Hostname: {spec.hostname}")
    console.print(f"  Address: {spec.address or '[dim]not set[/dim]'}")
    console.print(f"  OS: {spec.os.type} {spec.os.release} ({spec.os.arch})")
    cpu_names = sorted(set(spec.cpus))
    console.print(f"  CPUs: {len(spec.cpus)} x {', '.join(cpu_names)}")
    console.print(f"  Memory: {spec.mem}")
    if spec.gpus:
        for gpu in spec.gpus:
            console.print(f"  GPU: {gpu}")
    else:
        console.print("  GPUs: [dim]none found[/dim]")
