"""FastAPI application exposing the agent to the coordinator."""

from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response
from pydantic import ValidationError

from ..errors import (
    CapacityExhausted,
    DuplicateExperiment,
    InvalidExperimentId,
    SpawnError,
    UnknownExperiment,
    UnknownProject,
)
from ..lifecycle import Experiment, ExperimentLifecycle
from ..models.api import (
    CapacityResponse,
    ExperimentListResponse,
    ExperimentResponse,
    HealthResponse,
    KillResponse,
    MachineIdentity,
    StartRequest,
)

NO_CAPACITY = "No capacity available"


def get_lifecycle(request: Request) -> ExperimentLifecycle:
    """Get the lifecycle instance."""
    return request.app.state.lifecycle


def get_identity(request: Request) -> MachineIdentity:
    """Get this machine's identity."""
    return request.app.state.identity


def _experiment_response(experiment: Experiment) -> ExperimentResponse:
    return ExperimentResponse(
        id=experiment.id,
        project_id=experiment.project_id,
        state=experiment.state.value,
        pid=experiment.pid,
        hyperparameters=experiment.hyperparameters,
    )


def create_app(
    lifecycle: ExperimentLifecycle,
    identity: Optional[MachineIdentity] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        lifecycle: Experiment lifecycle serving the requests
        identity: This machine's identity as known to the coordinator

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="labhand agent",
        description="Experiment worker agent",
        version="0.3.0",
    )

    app.state.lifecycle = lifecycle
    app.state.identity = identity or MachineIdentity()

    # --- Project Endpoints ---

    @app.get("/projects/{project_id}/capacity", response_model=CapacityResponse)
    def check_capacity(
        project_id: str,
        lifecycle: ExperimentLifecycle = Depends(get_lifecycle),
        identity: MachineIdentity = Depends(get_identity),
    ):
        """Report how many experiments of the project this machine can take."""
        capacity = lifecycle.capacity(project_id)
        if capacity == 0:
            raise HTTPException(status_code=501, detail=NO_CAPACITY)
        return CapacityResponse(capacity=capacity, address=identity.address, id=identity.id)

    @app.post("/projects/{project_id}")
    def start_experiment(
        project_id: str,
        body: dict[str, Any] = Body(...),
        lifecycle: ExperimentLifecycle = Depends(get_lifecycle),
    ):
        """Start an experiment and echo the request body."""
        try:
            request = StartRequest.model_validate(body)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=f"Invalid start request: {e}")

        try:
            lifecycle.start(project_id, request.id, request.hyperparameters)
        except CapacityExhausted:
            raise HTTPException(status_code=501, detail=NO_CAPACITY)
        except UnknownProject as e:
            raise HTTPException(status_code=404, detail=str(e))
        except DuplicateExperiment as e:
            raise HTTPException(status_code=409, detail=str(e))
        except InvalidExperimentId as e:
            raise HTTPException(status_code=422, detail=str(e))
        except SpawnError as e:
            raise HTTPException(status_code=500, detail=str(e))

        return body

    # --- Experiment Endpoints ---

    @app.post("/experiments/{experiment_id}/kill", response_model=KillResponse)
    def kill_experiment(
        experiment_id: str,
        response: Response,
        lifecycle: ExperimentLifecycle = Depends(get_lifecycle),
    ):
        """Kill an experiment. Always acknowledged, even for unknown IDs."""
        lifecycle.kill(experiment_id)
        response.headers["Access-Control-Allow-Origin"] = "*"
        return KillResponse()

    @app.get("/experiments", response_model=ExperimentListResponse)
    def list_experiments(lifecycle: ExperimentLifecycle = Depends(get_lifecycle)):
        """List active experiments."""
        experiments = [_experiment_response(e) for e in lifecycle.active()]
        return ExperimentListResponse(experiments=experiments, count=len(experiments))

    @app.get("/experiments/{experiment_id}", response_model=ExperimentResponse)
    def get_experiment(
        experiment_id: str,
        lifecycle: ExperimentLifecycle = Depends(get_lifecycle),
    ):
        """Get an active experiment."""
        try:
            return _experiment_response(lifecycle.get(experiment_id))
        except UnknownExperiment as e:
            raise HTTPException(status_code=404, detail=str(e))

    # --- Status Endpoints ---

    @app.get("/health", response_model=HealthResponse)
    def health_check():
        """Health check endpoint."""
        return HealthResponse(status="healthy")

    return app
