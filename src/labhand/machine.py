# Copyright (c) Syntropy Systems
"""Machine specification discovery and registration."""
from __future__ import annotations

import logging
import platform
import shutil
import socket
import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING, cast

import psutil

from labhand.catalog import load_identity, save_identity
from labhand.errors import ReportingError
from labhand.models.api import MachineIdentity, MachineOS, MachineSpec

if TYPE_CHECKING:
    from labhand.client import CoordinatorClient

logger = logging.getLogger(__name__)

CPUINFO_PATH = Path("/proc/cpuinfo")
_UNITS = ("B", "kB", "MB", "GB", "TB", "PB")


def format_bytes(size: int) -> str:
    """Human-readable byte count, e.g. ``15.5GB``."""
    value = float(size)
    for unit in _UNITS:
        if value < 1024 or unit == _UNITS[-1]:
            text = f"{value:.2f}".rstrip("0").rstrip(".")
            return f"{text}{unit}"
        value /= 1024
    return f"{size}B"


def _run_command(argv: list[str], *, timeout: float = 5.0) -> str | None:
    cmd_path = shutil.which(argv[0])
    if cmd_path is None:
        return None
    try:
        result = subprocess.run(  # noqa: S603
            [cmd_path, *argv[1:]],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def get_cpu_models(cpuinfo: Path = CPUINFO_PATH) -> list[str]:
    """One model name per logical CPU."""
    try:
        lines = cpuinfo.read_text().splitlines()
    except OSError:
        lines = []
    models = [
        line.split(":", 1)[1].strip()
        for line in lines
        if line.startswith("model name") and ":" in line
    ]
    if models:
        return models

    count = psutil.cpu_count(logical=True) or 1
    name = platform.processor() or platform.machine() or "unknown"
    return [name] * count


def parse_lspci(output: str) -> list[str]:
    """Extract VGA controller names from ``lspci`` output."""
    gpus: list[str] = []
    for line in output.splitlines():
        if "vga" not in line.lower():
            continue
        _, sep, name = line.partition("controller: ")
        gpus.append(name.strip() if sep else line.strip())
    return gpus


def get_gpu_models() -> list[str]:
    """GPU names from lspci, falling back to nvidia-smi."""
    if sys.platform == "linux":
        output = _run_command(["lspci"])
        if output:
            gpus = parse_lspci(output)
            if gpus:
                return gpus

    output = _run_command(["nvidia-smi", "--query-gpu=name", "--format=csv,noheader"])
    if output:
        return [line.strip() for line in output.splitlines() if line.strip()]
    return []


def collect_machine_spec(address: str | None) -> MachineSpec:
    """Take an inventory of this machine."""
    total = cast("int", psutil.virtual_memory().total)
    uname = platform.uname()
    return MachineSpec(
        address=address,
        hostname=socket.gethostname(),
        os=MachineOS(
            type=uname.system,
            platform=sys.platform,
            arch=uname.machine,
            release=uname.release,
        ),
        cpus=get_cpu_models(),
        mem=format_bytes(total),
        gpus=get_gpu_models(),
    )


def ensure_registered(
    client: CoordinatorClient,
    identity_path: Path,
    address: str | None,
) -> MachineIdentity:
    """Return this machine's identity, registering with the coordinator if needed.

    A cached identity is reused as-is. Otherwise the machine is registered and
    the coordinator's answer is saved. If registration fails the agent keeps
    running with an identity that carries only the address.
    """
    cached = load_identity(identity_path)
    if cached is not None:
        logger.info("Using cached machine identity %s", cached.id)
        return cached

    spec = collect_machine_spec(address)
    try:
        identity = client.register_machine(spec)
    except ReportingError as e:
        logger.error("Could not register with coordinator: %s", e)
        return MachineIdentity(address=address)

    if identity.address is None:
        identity.address = address
    save_identity(identity_path, identity)
    logger.info("Registered with coordinator as %s", identity.id)
    return identity
