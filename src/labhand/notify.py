# Copyright (c) Syntropy Systems
"""Fire-and-forget delivery of coordinator notifications."""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import Lock
from typing import TYPE_CHECKING, Callable

from labhand.errors import ReportingError

if TYPE_CHECKING:
    from labhand.client import CoordinatorClient
    from labhand.models.api import ExperimentStatusValue
    from labhand.models.base import JSONObject

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 1000


class Notifier:
    """Queue coordinator calls onto one background thread.

    Calls are delivered in the order they were queued, which keeps every
    experiment's started/result/status/finished sequence in order. Failures
    are logged at the dispatch boundary and never reach the caller; nothing
    is retried. At most ``max_pending`` reports wait at once; further reports
    are dropped with a warning while the coordinator is slow or down.
    """

    _client: CoordinatorClient
    _executor: ThreadPoolExecutor
    _max_pending: int
    _pending: int
    _pending_lock: Lock

    def __init__(self, client: CoordinatorClient, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self._client = client
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify")
        self._max_pending = max_pending
        self._pending = 0
        self._pending_lock = Lock()

    @property
    def pending(self) -> int:
        """Reports queued or being delivered."""
        with self._pending_lock:
            return self._pending

    def _dispatch(self, description: str, call: Callable[[], None]) -> Future[None]:
        with self._pending_lock:
            full = self._pending >= self._max_pending
            if not full:
                self._pending += 1
            pending = self._pending
        if full:
            logger.warning("%d reports pending, dropping report of %s", pending, description)
            return _done()

        try:
            return self._executor.submit(self._deliver, description, call)
        except RuntimeError:
            # Executor already shut down
            self._settle()
            logger.warning("Notifier closed, dropping report of %s", description)
            return _done()

    def _settle(self) -> None:
        with self._pending_lock:
            self._pending -= 1

    def _deliver(self, description: str, call: Callable[[], None]) -> None:
        try:
            call()
        except ReportingError as e:
            logger.warning("Failed to report %s: %s", description, e)
        except Exception:
            logger.exception("Unexpected error reporting %s", description)
        else:
            logger.debug("Reported %s", description)
        finally:
            self._settle()

    def started(self, experiment_id: str) -> Future[None]:
        """Queue the started marker."""
        return self._dispatch(
            f"start of {experiment_id}",
            lambda: self._client.mark_started(experiment_id),
        )

    def result(self, experiment_id: str, payload: JSONObject) -> Future[None]:
        """Queue one result payload."""
        return self._dispatch(
            f"result of {experiment_id}",
            lambda: self._client.report_result(experiment_id, payload),
        )

    def status(self, experiment_id: str, status: ExperimentStatusValue) -> Future[None]:
        """Queue the terminal status."""
        return self._dispatch(
            f"status {status} of {experiment_id}",
            lambda: self._client.report_status(experiment_id, status),
        )

    def finished(self, experiment_id: str) -> Future[None]:
        """Queue the finished marker."""
        return self._dispatch(
            f"finish of {experiment_id}",
            lambda: self._client.mark_finished(experiment_id),
        )

    def flush(self, timeout: float | None = None) -> bool:
        """Block until everything queued so far has been delivered.

        Returns False if the queue did not drain within ``timeout``.
        """
        try:
            marker = self._executor.submit(lambda: None)
        except RuntimeError:
            return True
        try:
            marker.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning("Coordinator reports still pending after %ss", timeout)
            return False
        return True

    def close(self, wait: bool = True) -> None:
        """Stop accepting notifications, optionally draining the queue."""
        self._executor.shutdown(wait=wait)


def _done() -> Future[None]:
    future: Future[None] = Future()
    future.set_result(None)
    return future
