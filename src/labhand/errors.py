# Copyright (c) Syntropy Systems
"""Exceptions raised by the labhand agent."""
from __future__ import annotations

from pathlib import Path


class LabhandError(Exception):
    """Base class for labhand errors."""


class CapacityExhausted(LabhandError):
    """Admission refused because the machine has no capacity left."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"No capacity available for project {project_id}")


class SpawnError(LabhandError):
    """The experiment process could not be launched."""


class ResultReadError(LabhandError):
    """A result file could not be read or parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Could not read result file {path}: {reason}")


class ReportingError(LabhandError):
    """The coordinator was unreachable or rejected a report."""


class UnknownExperiment(LabhandError):
    """No active experiment has the given ID."""


class UnknownProject(LabhandError):
    """The project is not in the local catalog."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"Unknown project {project_id}")


class DuplicateExperiment(LabhandError):
    """An experiment with the same ID is already running."""


class CatalogError(LabhandError):
    """The project catalog file is malformed."""


class InvalidExperimentId(LabhandError, ValueError):
    """The experiment ID cannot be used as a single path segment."""
