# Copyright (c) Syntropy Systems
"""Pydantic models for the agent's HTTP surfaces and coordinator payloads."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field, field_validator

from ..errors import InvalidExperimentId
from .base import ExtraAllowModel, JSONValue, LabhandBaseModel

ExperimentStatusValue = Literal["success", "fail"]


def check_experiment_id(experiment_id: str) -> str:
    """Return the ID unchanged if it names exactly one directory entry.

    Experiment IDs become results directories, log file names and URL path
    segments, so empty IDs, "." and "..", and IDs containing "/" or NUL are
    refused.

    Raises:
        InvalidExperimentId: If the ID is unusable

    """
    if experiment_id in ("", ".", "..") or "/" in experiment_id or "\x00" in experiment_id:
        msg = f"Invalid experiment ID {experiment_id!r}"
        raise InvalidExperimentId(msg)
    return experiment_id


# --- Machine Models ---


class MachineOS(LabhandBaseModel):
    """Operating system description."""

    type: str
    platform: str
    arch: str
    release: str


class MachineSpec(LabhandBaseModel):
    """Hardware inventory sent to the coordinator on registration."""

    address: Optional[str] = None
    hostname: str
    os: MachineOS
    cpus: list[str] = Field(default_factory=list)
    mem: str
    gpus: list[str] = Field(default_factory=list)


class MachineIdentity(ExtraAllowModel):
    """Machine document as returned by the coordinator.

    Keeps whatever extra fields the coordinator adds so the cached copy can be
    written back unchanged.
    """

    id: Optional[str] = Field(default=None, alias="_id")
    address: Optional[str] = None


# --- Experiment Models ---


class StartRequest(ExtraAllowModel):
    """Body of a start request: the experiment ID plus hyperparameters."""

    id: str = Field(alias="_id")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: object) -> object:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        return check_experiment_id(value)

    @property
    def hyperparameters(self) -> dict[str, JSONValue]:
        """Every field of the body other than the experiment ID."""
        return dict(self.model_extra or {})


class StatusReport(LabhandBaseModel):
    """Terminal status sent to the coordinator."""

    status: ExperimentStatusValue


class CapacityResponse(LabhandBaseModel):
    """Response to a capacity check."""

    capacity: int
    address: Optional[str] = None
    id: Optional[str] = None


class KillResponse(LabhandBaseModel):
    """Response to a kill request."""

    status: Literal["killed"] = "killed"


class ExperimentResponse(LabhandBaseModel):
    """Active experiment information."""

    id: str
    project_id: str
    state: str
    pid: Optional[int] = None
    hyperparameters: dict[str, JSONValue] = Field(default_factory=dict)


class ExperimentListResponse(LabhandBaseModel):
    """Response containing active experiments."""

    experiments: list[ExperimentResponse]
    count: int


class HealthResponse(LabhandBaseModel):
    """Health check response."""

    status: str


class ErrorResponse(LabhandBaseModel):
    """Error response."""

    detail: str
