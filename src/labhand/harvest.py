# Copyright (c) Syntropy Systems
"""Collect result files written by a finished experiment."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from labhand.errors import ResultReadError
from labhand.models.api import check_experiment_id

if TYPE_CHECKING:
    from collections.abc import Iterator

    from labhand.models.base import JSONObject

logger = logging.getLogger(__name__)

DEFAULT_SUFFIX = ".json"


@dataclass
class HarvestedResult:
    """One candidate result file: either its parsed payload or the error."""

    path: Path
    payload: Optional[JSONObject] = None
    error: Optional[ResultReadError] = None

    @property
    def ok(self) -> bool:
        """True when the file was read and parsed."""
        return self.error is None


def results_dir(results_root: Union[str, Path], experiment_id: str) -> Path:
    """Directory where an experiment writes its result files.

    Raises:
        InvalidExperimentId: If the ID would leave ``results_root``

    """
    return Path(results_root) / check_experiment_id(experiment_id)


def _read_payload(path: Path) -> JSONObject:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ResultReadError(path, str(e)) from e

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ResultReadError(path, f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        msg = f"expected a JSON object, got {type(data).__name__}"
        raise ResultReadError(path, msg)
    return data


def harvest(
    results_root: Union[str, Path],
    experiment_id: str,
    suffix: str = DEFAULT_SUFFIX,
) -> Iterator[HarvestedResult]:
    """Yield the result files under ``results_root/experiment_id``.

    Files are taken in name order and each is read once, when the generator
    reaches it. A missing or unreadable directory yields nothing. A file that
    cannot be read or parsed is yielded with ``error`` set and does not stop
    the remaining files.
    """
    directory = results_dir(results_root, experiment_id)
    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as e:
        logger.debug("No results for experiment %s (%s)", experiment_id, e)
        return

    for entry in entries:
        if not entry.name.endswith(suffix) or not entry.is_file():
            continue
        try:
            payload = _read_payload(entry)
        except ResultReadError as e:
            yield HarvestedResult(path=entry, error=e)
        else:
            yield HarvestedResult(path=entry, payload=payload)
