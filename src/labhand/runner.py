# Copyright (c) Syntropy Systems
"""Process runner for experiments."""
from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import signal
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from threading import Lock, Thread, Timer
from typing import IO, TYPE_CHECKING, Callable, Optional

from labhand.errors import SpawnError
from labhand.models.api import check_experiment_id

if TYPE_CHECKING:
    from collections.abc import Mapping

    from labhand.models.project import Project

logger = logging.getLogger(__name__)

# Experiment stdout/stderr goes here, separate from the agent's own messages
experiment_logger = logging.getLogger("labhand.experiment")

ExitCallback = Callable[[int], None]

# PR_SET_PDEATHSIG fires when the thread that forked the child exits, not the
# process. Every spawn goes through this one thread, which lives as long as the
# agent, so request threads coming and going never kill their experiments.
_spawner = ThreadPoolExecutor(max_workers=1, thread_name_prefix="labhand-spawn")


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    This prevents orphan experiments when the agent crashes.
    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


class ExperimentProcess:
    """Handle to one running experiment process.

    Owned by the lifecycle's registry entry for the experiment. The exit
    callback registered with ``on_exit`` fires exactly once, from a watcher
    thread, after the output streams have been drained.
    """

    experiment_id: str
    kill_grace_period: float
    _process: subprocess.Popen[bytes]
    _log_file: IO[str] | None
    _log_lock: Lock
    _state_lock: Lock
    _drain_threads: list[Thread]
    _watcher: Thread | None
    _kill_timer: Timer | None
    _exit_code: int | None

    def __init__(
        self,
        experiment_id: str,
        process: subprocess.Popen[bytes],
        kill_grace_period: float = 10.0,
        log_file: IO[str] | None = None,
    ) -> None:
        self.experiment_id = experiment_id
        self.kill_grace_period = kill_grace_period
        self._process = process
        self._log_file = log_file
        self._log_lock = Lock()
        self._state_lock = Lock()
        self._watcher = None
        self._kill_timer = None
        self._exit_code = None
        self._drain_threads = [
            Thread(
                target=self._drain,
                args=(process.stdout, logging.INFO, "stdout"),
                name=f"drain-{experiment_id}-stdout",
                daemon=True,
            ),
            Thread(
                target=self._drain,
                args=(process.stderr, logging.WARNING, "stderr"),
                name=f"drain-{experiment_id}-stderr",
                daemon=True,
            ),
        ]
        for thread in self._drain_threads:
            thread.start()

    def _drain(self, stream: IO[bytes] | None, level: int, label: str) -> None:
        """Forward one output stream, line by line, to the diagnostic sink."""
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                experiment_logger.log(level, "[%s] %s", self.experiment_id, line)
                self._write_log(label, line)
        except (OSError, ValueError) as e:
            logger.warning("Stopped reading %s of %s: %s", label, self.experiment_id, e)
        finally:
            with contextlib.suppress(OSError):
                stream.close()

    def _write_log(self, label: str, line: str) -> None:
        with self._log_lock:
            if self._log_file is None:
                return
            try:
                _ = self._log_file.write(f"[{label}] {line}\n")
                self._log_file.flush()
            except (OSError, ValueError) as e:
                logger.warning("Disabling output log for %s: %s", self.experiment_id, e)
                self._log_file = None

    def on_exit(self, callback: ExitCallback) -> None:
        """Register the exit callback and start watching the process.

        Raises:
            RuntimeError: If a callback was already registered

        """
        with self._state_lock:
            if self._watcher is not None:
                msg = f"Exit callback already registered for {self.experiment_id}"
                raise RuntimeError(msg)
            self._watcher = Thread(
                target=self._watch,
                args=(callback,),
                name=f"watch-{self.experiment_id}",
                daemon=True,
            )
        self._watcher.start()

    def _watch(self, callback: ExitCallback) -> None:
        code = self._process.wait()
        for thread in self._drain_threads:
            thread.join(timeout=5.0)

        with self._state_lock:
            self._exit_code = code
            if self._kill_timer is not None:
                self._kill_timer.cancel()
                self._kill_timer = None
        self._cleanup()

        callback(code)

    def kill(self) -> bool:
        """Request termination of the process group.

        Sends SIGTERM now and SIGKILL after ``kill_grace_period`` if the
        process is still alive. Does not wait for the exit.

        Returns:
            True if a signal was sent, False if the process had already exited

        """
        with self._state_lock:
            if self._exit_code is not None or self._process.poll() is not None:
                return False
            if self._kill_timer is not None:
                # Termination already requested
                return True

            try:
                pgid = os.getpgid(self._process.pid)
            except (OSError, ProcessLookupError):
                # Process already gone
                return False

            with contextlib.suppress(OSError, ProcessLookupError):
                os.killpg(pgid, signal.SIGTERM)

            self._kill_timer = Timer(self.kill_grace_period, self._escalate, args=(pgid,))
            self._kill_timer.daemon = True
            self._kill_timer.start()
        logger.info("Sent SIGTERM to experiment %s (pgid %d)", self.experiment_id, pgid)
        return True

    def _escalate(self, pgid: int) -> None:
        if self._process.poll() is not None:
            return
        logger.warning("Experiment %s ignored SIGTERM, sending SIGKILL", self.experiment_id)
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the exit callback to have run and return the exit code."""
        if self._watcher is None:
            return self._process.wait(timeout=timeout)
        self._watcher.join(timeout=timeout)
        return self._exit_code

    def _cleanup(self) -> None:
        """Cleanup resources."""
        with self._log_lock:
            if self._log_file:
                with contextlib.suppress(Exception):
                    self._log_file.close()
                self._log_file = None

    @property
    def pid(self) -> int:
        """Get the process ID."""
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        """Get the exit code if finished."""
        return self._exit_code

    @property
    def is_running(self) -> bool:
        """Check if the process is still running."""
        return self._exit_code is None and self._process.poll() is None


def _popen(argv: list[str], cwd: str, env: dict[str, str]) -> subprocess.Popen[bytes]:
    return subprocess.Popen(  # noqa: S603
        argv,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        env=env,
        cwd=cwd,
        start_new_session=True,  # Creates new process group
        preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
    )


class ProcessRunner:
    """Spawns experiment processes.

    Features:
    - Uses start_new_session=True so kills reach the whole process group
    - Sets PDEATHSIG on Linux to prevent orphans, forking from one
      long-lived spawner thread
    - Drains stdout/stderr to the ``labhand.experiment`` logger
    - Optionally appends output to ``<log_dir>/<experiment_id>.log``
    """

    kill_grace_period: float
    log_dir: Optional[Path]

    def __init__(self, kill_grace_period: float = 10.0, log_dir: Path | None = None) -> None:
        self.kill_grace_period = kill_grace_period
        self.log_dir = log_dir

    def _open_log(self, experiment_id: str) -> IO[str] | None:
        if self.log_dir is None:
            return None
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            return (self.log_dir / f"{experiment_id}.log").open("a")
        except OSError as e:
            logger.warning("Cannot open output log for %s: %s", experiment_id, e)
            return None

    def start(
        self,
        experiment_id: str,
        project: Project,
        argv: list[str],
        env: Mapping[str, str] | None = None,
    ) -> ExperimentProcess:
        """Launch ``project.command`` with ``argv`` in the project's directory.

        The fork happens on the shared spawner thread; this call blocks until
        the process exists or the launch has failed.

        Raises:
            InvalidExperimentId: If the ID cannot be used as a file name
            SpawnError: If the executable cannot be launched

        """
        _ = check_experiment_id(experiment_id)
        child_env = os.environ.copy()
        if env:
            child_env.update(env)

        command_argv = [project.command, *argv]
        log_file = self._open_log(experiment_id)
        try:
            process = _spawner.submit(_popen, command_argv, project.cwd, child_env).result()
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            if log_file is not None:
                with contextlib.suppress(OSError):
                    log_file.close()
            msg = f"Cannot launch {project.command!r} in {project.cwd!r}: {e}"
            raise SpawnError(msg) from e

        logger.info(
            "Started experiment %s (pid %d): %s",
            experiment_id,
            process.pid,
            " ".join(command_argv),
        )
        return ExperimentProcess(
            experiment_id,
            process,
            kill_grace_period=self.kill_grace_period,
            log_file=log_file,
        )
