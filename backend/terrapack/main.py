"""FastAPI application entrypoint and configuration.

This module provides the application factory that configures logging,
sets up CORS middleware, includes the project and cache routers, maps
pipeline errors to HTTP responses and exposes a health check endpoint
reporting whether the GDAL and 7-Zip tools are installed.

Pipeline errors are returned as ``{"error": <class>, "message": ...,
"details": {...}}`` with these status codes:

- 422: AreaOfInterestError, CoverageError
- 404: ProjectNotFoundError
- 409: ProjectStateError
- 502: AcquisitionError, BuildError
- 500: LayeringError, ExportError and anything else

Example:
    The application can be run with uvicorn:
        $ uvicorn terrapack.main:app --reload

    Or imported and used programmatically:
        >>> from terrapack.main import create_app
        >>> app = create_app()
"""

from typing import Any

import fastapi
from fastapi import responses
from fastapi.middleware import cors

from terrapack.api import cache, projects
from terrapack.core import config, errors, log
from terrapack.utils import gdal_helpers

ERROR_STATUS: tuple[tuple[type[errors.PipelineError], int], ...] = (
    (errors.AreaOfInterestError, 422),
    (errors.CoverageError, 422),
    (errors.ProjectNotFoundError, 404),
    (errors.ProjectStateError, 409),
    (errors.AcquisitionError, 502),
    (errors.BuildError, 502),
)


def status_for(exc: errors.PipelineError) -> int:
    """Return the HTTP status code of a pipeline error."""
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


async def _pipeline_error_handler(
    request: fastapi.Request,
    exc: errors.PipelineError,
) -> responses.JSONResponse:
    return responses.JSONResponse(status_code=status_for(exc), content=exc.to_dict())


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures logging from settings, logs missing GDAL or 7-Zip tools,
    includes the project and cache routers, registers the pipeline error handler, and adds a health check
    endpoint. CORS origins are configured from settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    log.setup_logging(settings.log_level)
    gdal_helpers.check_dependencies(settings)
    app = fastapi.FastAPI(title="Terrapack", version="0.1.0")

    app.include_router(projects.router)
    app.include_router(cache.router)
    app.add_exception_handler(
        errors.PipelineError,
        _pipeline_error_handler,  # type: ignore[arg-type]
    )

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, Any]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" when every external tool is
            installed, "degraded" otherwise, and the tools found.
        """
        tools = gdal_helpers.check_dependencies(settings)
        return {
            "status": "ok" if all(tools.values()) else "degraded",
            "dependencies": {name: path is not None for name, path in tools.items()},
        }

    return app


app = create_app()
