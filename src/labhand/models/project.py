# Copyright (c) Syntropy Systems
"""Project descriptors and hyperparameter-to-argv formatting."""

from __future__ import annotations

import json
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar

from pydantic import ConfigDict, Field

from .base import JSONValue, LabhandBaseModel

if TYPE_CHECKING:
    from collections.abc import Mapping


def format_value(value: JSONValue) -> str:
    """Render a hyperparameter value the way it appears in the request JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        # JSON has a single number type, so 1.0 and 1 render the same
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"))


def format_plain(key: str, value: JSONValue) -> list[str]:
    """``key value``"""
    return [key, format_value(value)]


def format_single_dash(key: str, value: JSONValue) -> list[str]:
    """``-key value``"""
    return [f"-{key}", format_value(value)]


def format_double_dash(key: str, value: JSONValue) -> list[str]:
    """``--key=value``"""
    return [f"--{key}={format_value(value)}"]


ArgFormatter = Callable[[str, Any], "list[str]"]


class ArgStyle(str, Enum):
    """How hyperparameters are turned into command-line flags."""

    PLAIN = "plain"
    SINGLE_DASH = "single-dash"
    DOUBLE_DASH = "double-dash"

    @property
    def formatter(self) -> ArgFormatter:
        return _FORMATTERS[self]


_FORMATTERS: dict[ArgStyle, ArgFormatter] = {
    ArgStyle.PLAIN: format_plain,
    ArgStyle.SINGLE_DASH: format_single_dash,
    ArgStyle.DOUBLE_DASH: format_double_dash,
}


class Project(LabhandBaseModel):
    """A configured class of experiment.

    Loaded once from the project catalog and never mutated afterwards.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )

    command: str
    args: list[str] = Field(default_factory=list)
    cwd: str = "."
    capacity: int = Field(default=1, ge=1)
    options: ArgStyle = ArgStyle.PLAIN
    results: str = "results"


def build_argv(project: Project, hyperparameters: Mapping[str, JSONValue]) -> list[str]:
    """Build the argument vector for one experiment of ``project``.

    The project's fixed args come first, followed by one flag (or flag pair)
    per hyperparameter in the mapping's iteration order.
    """
    argv = list(project.args)
    fmt = project.options.formatter
    for key, value in hyperparameters.items():
        argv.extend(fmt(key, value))
    return argv
