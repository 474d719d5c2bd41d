# Copyright (c) Syntropy Systems
"""Pytest fixtures for labhand tests."""

from __future__ import annotations

import sys
import tempfile
from collections.abc import Generator
from pathlib import Path
from threading import Lock
from typing import Callable

import pytest

from labhand.catalog import ProjectCatalog
from labhand.errors import ReportingError
from labhand.ledger import CapacityLedger
from labhand.lifecycle import ExperimentLifecycle
from labhand.models.project import Project
from labhand.notify import Notifier
from labhand.runner import ProcessRunner

PYTHON = sys.executable

# Child scripts used as experiment commands (run as ``python -c SCRIPT args...``)
SLEEP_SCRIPT = "import time; time.sleep(30)"

GATE_SCRIPT = """
import os, sys, time
gate = sys.argv[sys.argv.index('gate') + 1]
deadline = time.time() + 20
while not os.path.exists(gate) and time.time() < deadline:
    time.sleep(0.02)
"""

RESULTS_SCRIPT = """
import json, os, pathlib, sys
out = pathlib.Path(os.environ['LABHAND_RESULTS_DIR'])
out.mkdir(parents=True, exist_ok=True)
(out / 'out.json').write_text(json.dumps({'loss': 0.5, 'argv': sys.argv[1:]}))
(out / 'notes.txt').write_text('not a result')
print('done training', flush=True)
sys.exit(int(os.environ.get('LABHAND_TEST_EXIT', '0')))
"""


class RecordingClient:
    """Stand-in coordinator client that records every call."""

    calls: list[tuple[object, ...]]
    fail: bool

    def __init__(self, fail: bool = False) -> None:
        self.calls = []
        self.fail = fail
        self._lock = Lock()

    def _record(self, *call: object) -> None:
        with self._lock:
            self.calls.append(call)
        if self.fail:
            msg = "Connection error: coordinator down"
            raise ReportingError(msg)

    def mark_started(self, experiment_id: str) -> None:
        self._record("started", experiment_id)

    def report_result(self, experiment_id: str, payload: dict[str, object]) -> None:
        self._record("result", experiment_id, payload)

    def report_status(self, experiment_id: str, status: str) -> None:
        self._record("status", experiment_id, status)

    def mark_finished(self, experiment_id: str) -> None:
        self._record("finished", experiment_id)

    def calls_for(self, experiment_id: str) -> list[tuple[object, ...]]:
        with self._lock:
            return [c for c in self.calls if c[1] == experiment_id]

    def kinds_for(self, experiment_id: str) -> list[object]:
        return [c[0] for c in self.calls_for(experiment_id)]


def python_project(script: str, results: Path, capacity: int = 1, **kwargs: object) -> Project:
    """Project whose command is ``python -c script``."""
    return Project.model_validate(
        {
            "command": PYTHON,
            "args": ["-c", script],
            "cwd": str(results.parent),
            "capacity": capacity,
            "results": str(results),
            **kwargs,
        }
    )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def results_root(temp_dir: Path) -> Path:
    """Results root shared by the test projects."""
    root = temp_dir / "results"
    root.mkdir()
    return root


@pytest.fixture
def recording_client() -> RecordingClient:
    return RecordingClient()


LifecycleFactory = Callable[..., ExperimentLifecycle]


@pytest.fixture
def make_lifecycle(
    recording_client: RecordingClient,
) -> Generator[LifecycleFactory, None, None]:
    """Build lifecycles over real processes and a recording coordinator."""
    created: list[tuple[ExperimentLifecycle, Notifier]] = []

    def factory(
        projects: dict[str, Project],
        max_capacity: int = 1,
        client: RecordingClient | None = None,
        kill_grace_period: float = 2.0,
        runner: ProcessRunner | None = None,
    ) -> ExperimentLifecycle:
        notifier = Notifier(client or recording_client)  # type: ignore[arg-type]
        lifecycle = ExperimentLifecycle(
            catalog=ProjectCatalog(projects),
            ledger=CapacityLedger(max_capacity),
            runner=runner or ProcessRunner(kill_grace_period=kill_grace_period),
            notifier=notifier,
        )
        created.append((lifecycle, notifier))
        return lifecycle

    yield factory

    for lifecycle, notifier in created:
        lifecycle.shutdown(timeout=10.0)
        notifier.close()


def drain(lifecycle: ExperimentLifecycle) -> None:
    """Wait until every queued coordinator notification has been delivered."""
    assert lifecycle.notifier.flush(timeout=10.0)
