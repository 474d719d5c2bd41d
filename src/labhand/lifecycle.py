# Copyright (c) Syntropy Systems
"""Admission and lifecycle of experiments on this machine."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from threading import Lock
from typing import TYPE_CHECKING, Optional

from labhand.errors import (
    CapacityExhausted,
    DuplicateExperiment,
    SpawnError,
    UnknownExperiment,
    UnknownProject,
)
from labhand.harvest import DEFAULT_SUFFIX, harvest, results_dir
from labhand.models.api import check_experiment_id
from labhand.models.project import Project, build_argv

if TYPE_CHECKING:
    from collections.abc import Mapping

    from labhand.catalog import ProjectCatalog
    from labhand.ledger import CapacityLedger
    from labhand.models.base import JSONValue
    from labhand.notify import Notifier
    from labhand.runner import ExperimentProcess, ProcessRunner

logger = logging.getLogger(__name__)


class ExperimentState(str, Enum):
    """Where an experiment is in its lifecycle."""

    ADMITTED = "admitted"
    RUNNING = "running"
    COMPLETING = "completing"
    RELEASED = "released"


class ExperimentStatus(str, Enum):
    """Terminal status reported to the coordinator."""

    SUCCESS = "success"
    FAIL = "fail"

    @classmethod
    def from_exit_code(cls, exit_code: int) -> ExperimentStatus:
        return cls.SUCCESS if exit_code == 0 else cls.FAIL


@dataclass
class Experiment:
    """One admitted experiment.

    ``process`` is set once the experiment is running; ``status`` is assigned
    exactly once, when the process exits.
    """

    id: str
    project_id: str
    project: Project
    hyperparameters: dict[str, JSONValue] = field(default_factory=dict)
    argv: list[str] = field(default_factory=list)
    state: ExperimentState = ExperimentState.ADMITTED
    process: Optional[ExperimentProcess] = None
    status: Optional[ExperimentStatus] = None
    exit_code: Optional[int] = None
    kill_requested: bool = False

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None


class ExperimentLifecycle:
    """Admits experiments, runs them, and reports how they ended.

    Holds the registry of active experiments. Capacity comes from the ledger,
    processes from the runner, and every coordinator call goes through the
    notifier so that no admission waits on the network.

    States: ADMITTED -> RUNNING -> COMPLETING -> RELEASED. An experiment leaves
    the registry when it reaches RELEASED.
    """

    catalog: ProjectCatalog
    results_suffix: str
    _ledger: CapacityLedger
    _runner: ProcessRunner
    _notifier: Notifier
    _lock: Lock
    _experiments: dict[str, Experiment]

    def __init__(
        self,
        catalog: ProjectCatalog,
        ledger: CapacityLedger,
        runner: ProcessRunner,
        notifier: Notifier,
        results_suffix: str = DEFAULT_SUFFIX,
    ) -> None:
        self.catalog = catalog
        self.results_suffix = results_suffix
        self._ledger = ledger
        self._runner = runner
        self._notifier = notifier
        self._lock = Lock()
        self._experiments = {}

    @property
    def ledger(self) -> CapacityLedger:
        return self._ledger

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    def capacity(self, project_id: str) -> int:
        """How many more experiments of the project could start right now."""
        return self._ledger.query(self.catalog.get(project_id))

    def start(
        self,
        project_id: str,
        experiment_id: str,
        hyperparameters: Mapping[str, JSONValue] | None = None,
    ) -> Experiment:
        """Admit and launch an experiment.

        Raises:
            InvalidExperimentId: If the ID cannot name a results directory
            UnknownProject: If the project is not in the catalog
            DuplicateExperiment: If an experiment with this ID is active
            CapacityExhausted: If the machine has no capacity for the project
            SpawnError: If the process could not be launched (capacity is
                released before this is raised)

        """
        _ = check_experiment_id(experiment_id)
        project = self.catalog.get(project_id)
        if project is None:
            raise UnknownProject(project_id)

        params = dict(hyperparameters or {})
        experiment = Experiment(
            id=experiment_id,
            project_id=project_id,
            project=project,
            hyperparameters=params,
            argv=build_argv(project, params),
        )

        with self._lock:
            if experiment_id in self._experiments:
                msg = f"Experiment {experiment_id} is already active"
                raise DuplicateExperiment(msg)
            if not self._ledger.reserve(project):
                raise CapacityExhausted(project_id)
            self._experiments[experiment_id] = experiment

        env = {
            "LABHAND_EXPERIMENT_ID": experiment_id,
            "LABHAND_PROJECT_ID": project_id,
            "LABHAND_RESULTS_DIR": str(results_dir(project.results, experiment_id).resolve()),
        }
        try:
            process = self._runner.start(experiment_id, project, experiment.argv, env=env)
        except SpawnError as e:
            with self._lock:
                _ = self._experiments.pop(experiment_id, None)
                experiment.state = ExperimentState.RELEASED
            self._ledger.release(project)
            logger.error("Could not start experiment %s: %s", experiment_id, e)
            raise

        _ = self._notifier.started(experiment_id)
        with self._lock:
            experiment.process = process
            experiment.state = ExperimentState.RUNNING
            kill_requested = experiment.kill_requested

        # Armed last: the exit sequence must find the experiment registered
        # and must come after the started notification.
        process.on_exit(partial(self._on_exit, experiment))
        if kill_requested:
            logger.info("Experiment %s was killed while starting", experiment_id)
            _ = process.kill()
        return experiment

    def _on_exit(self, experiment: Experiment, exit_code: int) -> None:
        """Completion sequence, run once from the process watcher thread."""
        status = ExperimentStatus.from_exit_code(exit_code)
        with self._lock:
            experiment.state = ExperimentState.COMPLETING
            experiment.exit_code = exit_code
            experiment.status = status

        try:
            # Capacity goes back before any reporting work
            self._ledger.release(experiment.project)
            logger.info(
                "Experiment %s exited with code %d (%s)",
                experiment.id,
                exit_code,
                status.value,
            )

            for result in harvest(experiment.project.results, experiment.id, self.results_suffix):
                if result.payload is not None:
                    _ = self._notifier.result(experiment.id, result.payload)
                else:
                    logger.warning("Skipping result for %s: %s", experiment.id, result.error)

            _ = self._notifier.status(experiment.id, status.value)
            _ = self._notifier.finished(experiment.id)
        finally:
            with self._lock:
                _ = self._experiments.pop(experiment.id, None)
                experiment.state = ExperimentState.RELEASED

    def kill(self, experiment_id: str) -> bool:
        """Ask a running experiment to terminate.

        The experiment's normal exit sequence does the cleanup. Unknown or
        already finished IDs are ignored. An experiment that is still being
        spawned is signalled as soon as its process exists.

        Returns:
            True if termination was requested

        """
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            if experiment is None:
                process = None
            elif experiment.process is None:
                experiment.kill_requested = True
                logger.info("Kill for %s deferred until its process starts", experiment_id)
                return True
            else:
                process = experiment.process

        if process is None:
            logger.debug("Kill for inactive experiment %s ignored", experiment_id)
            return False
        return process.kill()

    def get(self, experiment_id: str) -> Experiment:
        """Return an active experiment.

        Raises:
            UnknownExperiment: If no active experiment has this ID

        """
        with self._lock:
            experiment = self._experiments.get(experiment_id)
        if experiment is None:
            msg = f"Experiment {experiment_id} is not active"
            raise UnknownExperiment(msg)
        return experiment

    def active(self) -> list[Experiment]:
        """Snapshot of the active experiments."""
        with self._lock:
            return list(self._experiments.values())

    def shutdown(self, timeout: float | None = None) -> None:
        """Kill every active experiment and wait for their exit sequences."""
        experiments = self.active()
        for experiment in experiments:
            _ = self.kill(experiment.id)
        for experiment in experiments:
            if experiment.process is not None:
                _ = experiment.process.wait(timeout=timeout)
        _ = self._notifier.flush(timeout=timeout)
