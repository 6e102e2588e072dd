"""Project creation, listing, export and progress API endpoints.

A project is created from a name and the corners of its area of interest
in Lambert-93 metres. Creation validates the area and resolves its regions
synchronously, then builds the project in the background; the response is
``202 Accepted`` with the "building" project. Build and export progress is
streamed as server-sent events.

Example:
    Create a 10 km x 15 km project and follow its build:
        >>> response = client.post(
        ...     "/api/projects",
        ...     json={"name": "Vercors", "bounds": [880000, 6420000, 890000, 6435000]},
        ... )
        >>> project_id = response.json()["id"]
        >>> with client.stream("GET", f"/api/projects/{project_id}/progress") as r:
        ...     for line in r.iter_lines():
        ...         print(line)

    Export it once ready:
        >>> client.post(f"/api/projects/{project_id}/export").json()["path"]
        '/tmp/terrapack/exports/Vercors.zip'
"""

from __future__ import annotations

import json
import pathlib
from typing import TYPE_CHECKING, Any

import fastapi
import pydantic
from fastapi import responses

from terrapack.core import errors
from terrapack.services import runtime as services_runtime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from terrapack.db import models

router = fastapi.APIRouter(prefix="/api/projects", tags=["projects"])


class ProjectRequest(pydantic.BaseModel):
    name: str = pydantic.Field(min_length=1)
    bounds: list[float] = pydantic.Field(min_length=4, max_length=4)


class ExportRequest(pydantic.BaseModel):
    output_dir: str | None = None


def _get_runtime() -> services_runtime.Runtime:
    """Resolve the shared service graph (overridden in tests)."""
    return services_runtime.get_runtime()


def _get_project(
    project_id: str,
    runtime: services_runtime.Runtime,
) -> models.Project:
    project = runtime.repository.get(project_id)
    if project is None:
        raise errors.ProjectNotFoundError(
            f"Project {project_id} not found", project_id=project_id
        )
    return project


@router.post("", status_code=202)
async def create_project(
    request: ProjectRequest,
    runtime: services_runtime.Runtime = fastapi.Depends(_get_runtime),  # noqa: B008
) -> dict[str, Any]:
    """Create a project and start building it in the background.

    Args:
        request: Project name and AOI corners (xmin, ymin, xmax, ymax).
        runtime: Service graph (injected via FastAPI Depends).

    Returns:
        The stored "building" project.

    Raises:
        AreaOfInterestError: mapped to 422 when the area is not a whole
            number of 500 px tiles on the 10 m grid.
        CoverageError: mapped to 422 when no region covers the area.
    """
    project = runtime.builder.create(request.name, request.bounds)
    runtime.builder.start(project)
    return project.to_dict()


@router.get("")
async def list_projects(
    runtime: services_runtime.Runtime = fastapi.Depends(_get_runtime),  # noqa: B008
) -> list[dict[str, Any]]:
    """List stored projects, newest first."""
    return [project.to_dict() for project in runtime.repository.all()]


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    runtime: services_runtime.Runtime = fastapi.Depends(_get_runtime),  # noqa: B008
) -> dict[str, Any]:
    """Return one project with its layers and status."""
    return _get_project(project_id, runtime).to_dict()


@router.post("/{project_id}/build", status_code=202)
async def rebuild_project(
    project_id: str,
    runtime: services_runtime.Runtime = fastapi.Depends(_get_runtime),  # noqa: B008
) -> dict[str, Any]:
    """Retry the build of a project left "building" by failed acquisitions.

    Datasets acquired by the previous attempt are served from the cache.
    """
    project = _get_project(project_id, runtime)
    if project.is_ready:
        raise errors.ProjectStateError(
            f"Project {project_id} is already ready", project_id=project_id
        )
    runtime.builder.start(project)
    return project.to_dict()


@router.post("/{project_id}/export")
async def export_project(
    project_id: str,
    request: ExportRequest | None = None,
    runtime: services_runtime.Runtime = fastapi.Depends(_get_runtime),  # noqa: B008
) -> dict[str, Any]:
    """Export a ready project and return the bundle.

    Raises:
        ProjectStateError: mapped to 409 when the project is not ready.
        ExportError: mapped to 500 when a step failed after its retries.
    """
    project = _get_project(project_id, runtime)
    output_dir = (
        pathlib.Path(request.output_dir)
        if request is not None and request.output_dir
        else None
    )
    bundle = await runtime.exporter.export(project, output_dir)
    return {
        "path": bundle.path,
        "project_id": bundle.project_id,
        "tile_count": bundle.tile_count,
        "created_at": bundle.created_at.isoformat(),
    }


@router.get("/{project_id}/progress")
async def stream_progress(
    project_id: str,
    runtime: services_runtime.Runtime = fastapi.Depends(_get_runtime),  # noqa: B008
) -> responses.StreamingResponse:
    """Stream the project's progress events as server-sent events.

    The stream ends after the final event of the running build or export.
    When nothing is running and the last event was final, that event is
    sent alone.
    """
    _get_project(project_id, runtime)
    bus = runtime.bus

    async def events() -> AsyncIterator[str]:
        latest = bus.latest(project_id)
        if latest is not None and latest.final:
            yield _sse(latest.to_dict())
            return
        async for event in bus.stream(project_id):
            yield _sse(event.to_dict())

    return responses.StreamingResponse(events(), media_type="text/event-stream")


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"
