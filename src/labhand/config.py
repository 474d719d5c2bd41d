# Copyright (c) Syntropy Systems
"""Configuration management for labhand."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, cast
from urllib.parse import urlparse

import yaml

CONFIG_FILENAME = "labhand.yaml"


@dataclass
class AgentConfig:
    """Configuration for the labhand agent."""

    # Base URL of the coordinator
    coordinator_url: Optional[str] = None

    # URL this machine advertises to the coordinator
    machine_url: Optional[str] = None

    # Interface to bind the HTTP server to
    host: str = "0.0.0.0"

    # Unit-cost experiments this machine can run at once
    max_capacity: int = 1

    # Grace period before SIGKILL after SIGTERM (seconds)
    kill_grace_period: int = 10

    # Timeout for coordinator requests (seconds)
    request_timeout: int = 30

    # Reports allowed to wait for delivery before new ones are dropped
    max_pending_reports: int = 1000

    # Project catalog and cached machine identity
    projects_file: Path = Path("projects.json")
    identity_file: Path = Path("specs.json")

    # Suffix of result files harvested after an experiment exits
    results_suffix: str = ".json"

    # Directory for per-experiment output logs (disabled when unset)
    log_dir: Optional[Path] = None

    @property
    def port(self) -> int:
        """Port to listen on, taken from the advertised URL."""
        if self.machine_url is None:
            msg = "No machine address configured"
            raise RuntimeError(msg)
        parsed = urlparse(self.machine_url)
        if parsed.port is not None:
            return parsed.port
        return 443 if parsed.scheme == "https" else 80

    def validate(self) -> None:
        """Check the startup preconditions.

        Raises:
            RuntimeError: If the coordinator or machine address is missing

        """
        if not self.coordinator_url:
            msg = "No coordinator address specified"
            raise RuntimeError(msg)
        if not self.machine_url:
            msg = "No machine address specified"
            raise RuntimeError(msg)
        if self.max_capacity < 0:
            msg = f"max_capacity must be >= 0, got {self.max_capacity}"
            raise RuntimeError(msg)


def get_global_config_dir() -> Path:
    """Get the global labhand config directory (~/.labhand)."""
    return Path.home() / ".labhand"


def find_config_file(start_path: Path | None = None) -> Path | None:
    """Locate the config file to use.

    Looks for:
    1. labhand.yaml in start_path (default: cwd)
    2. ~/.labhand/config.yaml
    """
    if start_path is None:
        start_path = Path.cwd()

    local = start_path / CONFIG_FILENAME
    if local.is_file():
        return local

    global_config = get_global_config_dir() / "config.yaml"
    if global_config.is_file():
        return global_config

    return None


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def load_config(config_path: Path | None = None) -> AgentConfig:
    """Load configuration from a YAML file or defaults.

    Missing keys keep their defaults; values of the wrong type are ignored.
    """
    config = AgentConfig()

    if config_path is None:
        config_path = find_config_file()

    if config_path is None or not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    for key in ("coordinator_url", "machine_url", "host", "results_suffix"):
        value = data.get(key)
        if isinstance(value, str) and value:
            setattr(config, key, value)

    for key in ("max_capacity", "kill_grace_period", "request_timeout", "max_pending_reports"):
        number = _as_int(data.get(key))
        if number is not None:
            setattr(config, key, number)

    # Relative paths are resolved against the config file's directory
    for key in ("projects_file", "identity_file", "log_dir"):
        value = data.get(key)
        if isinstance(value, str) and value:
            path = Path(value).expanduser()
            if not path.is_absolute():
                path = config_path.parent / path
            setattr(config, key, path)

    return config
