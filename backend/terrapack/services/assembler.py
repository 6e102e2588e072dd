"""Project assembly: turning a complete layer set into a ready project."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from terrapack.core import errors
from terrapack.db import models
from terrapack.services import layering

if TYPE_CHECKING:
    from collections.abc import Mapping

    from terrapack.db import database

logger = logging.getLogger(__name__)


class ProjectAssembler:
    """Marks projects ready and persists them.

    Args:
        repository: Project store the ready project is written to.
    """

    def __init__(self, repository: database.ProjectRepositoryProtocol) -> None:
        self.repository = repository

    def assemble(
        self,
        project: models.Project,
        layers: Mapping[str, models.Layer],
    ) -> models.Project:
        """Attach layers to a project, check them and mark it ready.

        Assembling a project that is already ready is a no-op returning the
        stored record, whatever layers are passed.

        Args:
            project: Project being built.
            layers: Complete layer set of the project.

        Returns:
            The ready project as persisted.

        Raises:
            LayeringError: if a layer is missing, unexpected or
                inconsistent; the project is left building.
        """
        stored = self.repository.get(project.id)
        if stored is not None and stored.is_ready:
            logger.debug("Project %s already ready", project.id)
            return stored
        if project.is_ready:
            return project

        unexpected = sorted(set(layers) - models.REQUIRED_LAYERS)
        if unexpected:
            raise errors.LayeringError(
                ", ".join(unexpected), "layer is not part of a project"
            )
        layering.validate_layers(layers, project.aoi)

        project.layers = dict(layers)
        project.status = "ready"
        project.missing = []
        self.repository.add(project)
        logger.info(
            "Project %s (%s) ready with %d layers",
            project.name,
            project.id,
            len(project.layers),
        )
        return project
