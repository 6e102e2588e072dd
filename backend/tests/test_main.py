"""Tests for the FastAPI main application factory and health checks.

This module validates that:
    - The FastAPI app is correctly instantiated via main.create_app,
    - OpenAPI metadata (title, version) matches the project contract,
    - The project and cache routers are registered,
    - The health check reports missing external tools,
    - Pipeline errors map to the documented HTTP status codes.

See Also:
    - backend/terrapack/main.py for the application factory.
"""

from __future__ import annotations

from typing import cast

import pytest
from fastapi import testclient

from terrapack import main
from terrapack.core import errors
from terrapack.utils import gdal_helpers


def test_create_app() -> None:
    """Test that create_app returns a configured FastAPI instance."""
    app = main.create_app()
    assert app is not None
    assert app.title == "Terrapack"
    assert app.version == "0.1.0"


def test_health_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test the health check endpoint returns ok status."""
    monkeypatch.setattr(gdal_helpers.shutil, "which", lambda name: f"/usr/bin/{name}")
    app = main.create_app()
    client = testclient.TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "dependencies": {"ogr2ogr": True, "gdal_translate": True, "7z": True},
    }


def test_health_reports_missing_tool(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing 7-Zip degrades the health status."""
    monkeypatch.setattr(
        gdal_helpers.shutil,
        "which",
        lambda name: None if name == "7z" else f"/usr/bin/{name}",
    )
    response = testclient.TestClient(main.create_app()).get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "degraded"
    assert body["dependencies"]["7z"] is False
    assert body["dependencies"]["ogr2ogr"] is True


def test_app_includes_routers() -> None:
    """Test that the project and cache routers are included in the app."""
    app = main.create_app()
    routes: list[str] = [
        cast(str, getattr(route, "path", ""))
        for route in app.routes  # type: ignore[attr-defined]
        if hasattr(route, "path")
    ]
    assert "/health" in routes
    assert "/api/projects" in routes
    assert "/api/projects/{project_id}/export" in routes
    assert "/api/projects/{project_id}/progress" in routes
    assert "/api/cache" in routes


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (errors.AreaOfInterestError("off grid"), 422),
        (errors.CoverageError("outside"), 422),
        (errors.ProjectNotFoundError("unknown"), 404),
        (errors.ProjectStateError("not ready"), 409),
        (errors.AcquisitionError("91", "vegetation"), 502),
        (errors.BuildError("p-1", [errors.AcquisitionError("91", "vegetation")]), 502),
        (errors.LayeringError("roads", "outside"), 500),
        (errors.ExportError("packaging"), 500),
    ],
)
def test_status_for(error: errors.PipelineError, status: int) -> None:
    assert main.status_for(error) == status
