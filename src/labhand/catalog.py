# Copyright (c) Syntropy Systems
"""Local project catalog and cached machine identity."""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Optional, cast

import yaml
from pydantic import TypeAdapter, ValidationError

from labhand.errors import CatalogError
from labhand.models.api import MachineIdentity
from labhand.models.project import Project

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)

_PROJECTS_ADAPTER = TypeAdapter(dict[str, Project])


class ProjectCatalog:
    """Read-only mapping of project ID to project descriptor."""

    _projects: dict[str, Project]

    def __init__(self, projects: Mapping[str, Project] | None = None) -> None:
        self._projects = dict(projects or {})

    def get(self, project_id: str) -> Optional[Project]:
        """Look up a project, returning None when it is not configured."""
        return self._projects.get(project_id)

    def ids(self) -> list[str]:
        """Configured project IDs, sorted."""
        return sorted(self._projects)

    def items(self) -> Iterator[tuple[str, Project]]:
        """Iterate over (project_id, project) pairs in ID order."""
        for project_id in self.ids():
            yield project_id, self._projects[project_id]

    def __contains__(self, project_id: object) -> bool:
        return project_id in self._projects

    def __len__(self) -> int:
        return len(self._projects)


def load_catalog(path: Path) -> ProjectCatalog:
    """Load the project catalog from a JSON or YAML file.

    A missing or empty file gives an empty catalog.

    Raises:
        CatalogError: If the file cannot be parsed or a project is invalid

    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("No project catalog at %s, starting with no projects", path)
        return ProjectCatalog()
    except OSError as e:
        msg = f"Cannot read project catalog {path}: {e}"
        raise CatalogError(msg) from e

    if not text.strip():
        return ProjectCatalog()

    try:
        if path.suffix == ".json":
            data = cast("object", json.loads(text))
        else:
            data = cast("object", yaml.safe_load(text))
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        msg = f"Malformed project catalog {path}: {e}"
        raise CatalogError(msg) from e

    if data is None:
        return ProjectCatalog()

    try:
        projects = _PROJECTS_ADAPTER.validate_python(data)
    except ValidationError as e:
        msg = f"Invalid project catalog {path}: {e}"
        raise CatalogError(msg) from e

    logger.info("Loaded %d project(s) from %s", len(projects), path)
    return ProjectCatalog(projects)


def load_identity(path: Path) -> Optional[MachineIdentity]:
    """Load the cached machine identity, or None if there is none."""
    try:
        return MachineIdentity.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValidationError) as e:
        logger.warning("Ignoring unreadable machine identity %s: %s", path, e)
        return None


def save_identity(path: Path, identity: MachineIdentity) -> None:
    """Write the machine identity returned by the coordinator."""
    path.parent.mkdir(parents=True, exist_ok=True)
    _ = path.write_text(identity.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
