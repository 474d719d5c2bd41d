# Copyright (c) Syntropy Systems
"""Capacity accounting for experiment admission."""
from __future__ import annotations

import logging
from threading import Lock
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from labhand.models.project import Project

logger = logging.getLogger(__name__)


class CapacityLedger:
    """Shared admission budget for this machine.

    A single integer pool, initialised to ``maximum``. Each running experiment
    holds ``project.capacity`` units of it. ``reserve`` and ``release`` are the
    only ways to change the pool, and both run under one lock so concurrent
    admissions can never overdraw it.
    """

    _maximum: int
    _available: int
    _lock: Lock

    def __init__(self, maximum: int) -> None:
        """Initialize the ledger.

        Args:
            maximum: Capacity units available when nothing is running

        """
        if maximum < 0:
            msg = f"maximum capacity must be >= 0, got {maximum}"
            raise ValueError(msg)
        self._maximum = maximum
        self._available = maximum
        self._lock = Lock()

    @property
    def maximum(self) -> int:
        """Configured capacity."""
        return self._maximum

    @property
    def available(self) -> int:
        """Capacity units not currently reserved."""
        with self._lock:
            return self._available

    def query(self, project: Project | None) -> int:
        """Return how many more experiments of ``project`` could be admitted now.

        Returns 0 for an unknown project (``None``).
        """
        if project is None:
            return 0
        with self._lock:
            return self._available // project.capacity

    def reserve(self, project: Project) -> bool:
        """Reserve capacity for one experiment of ``project``.

        Returns False, leaving the pool untouched, when there is not enough
        capacity left.
        """
        with self._lock:
            if self._available // project.capacity < 1:
                return False
            self._available -= project.capacity
            available = self._available
        logger.debug("Reserved %d unit(s), %d left", project.capacity, available)
        return True

    def release(self, project: Project) -> None:
        """Return the capacity held by one experiment of ``project``.

        Raises:
            RuntimeError: If the release would exceed the configured maximum

        """
        with self._lock:
            if self._available + project.capacity > self._maximum:
                msg = (
                    f"Releasing {project.capacity} unit(s) would exceed "
                    f"maximum capacity {self._maximum}"
                )
                raise RuntimeError(msg)
            self._available += project.capacity
            available = self._available
        logger.debug("Released %d unit(s), %d left", project.capacity, available)
