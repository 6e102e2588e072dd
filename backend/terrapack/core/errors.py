"""Error taxonomy of the acquisition, layering and export pipeline.

Every failure the pipeline reports derives from PipelineError, which can be
rendered as a structured status (error class, human-readable message and
details) for callers such as the HTTP surface.

    - AreaOfInterestError: the requested rectangle is not on the 500 px grid.
    - CoverageError: no region intersects the area of interest.
    - AcquisitionError: one (region, dataset kind) could not be fetched.
    - BuildError: a build stopped because some acquisitions failed.
    - LayeringError: a layer violates the extent/resolution contract.
    - ExportError: an export step exhausted its retries.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class of all structured pipeline failures."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a structured status.

        Returns:
            Dictionary with the error class name, message and details.
        """
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": {k: _plain(v) for k, v in self.details.items()},
        }


class AreaOfInterestError(PipelineError, ValueError):
    """The area of interest is not a positive multiple of the tile size."""


class CoverageError(PipelineError):
    """No region of the reference catalog intersects the area of interest."""


class AcquisitionError(PipelineError):
    """A dataset could not be acquired for one region after all retries."""

    def __init__(
        self,
        region: str,
        kind: str,
        cause: BaseException | str | None = None,
    ) -> None:
        message = f"Could not acquire {kind} data for region {region}"
        if cause:
            message = f"{message}: {cause}"
        super().__init__(message, region=region, kind=kind)
        self.region = region
        self.kind = kind
        self.cause = cause

    @property
    def key(self) -> str:
        """Return the "region/kind" key identifying the failed acquisition."""
        return f"{self.region}/{self.kind}"


class BuildError(PipelineError):
    """A project build stopped with some acquisitions missing."""

    def __init__(
        self,
        project_id: str,
        failures: list[AcquisitionError],
    ) -> None:
        keys = [failure.key for failure in failures]
        super().__init__(
            f"Project {project_id} is missing data for {', '.join(keys)}",
            project_id=project_id,
            missing=keys,
        )
        self.project_id = project_id
        self.failures = failures


class LayeringError(PipelineError):
    """A layer does not match the project's extent or resolution."""

    def __init__(
        self,
        layer: str,
        reason: str,
        region: str | None = None,
    ) -> None:
        where = f" (region {region})" if region else ""
        super().__init__(
            f"Layer {layer}{where}: {reason}",
            layer=layer,
            region=region,
        )
        self.layer = layer
        self.region = region


class ExportError(PipelineError):
    """An export step failed after exhausting its retries."""

    def __init__(
        self,
        step: str,
        cause: BaseException | str | None = None,
    ) -> None:
        message = f"Export step '{step}' failed"
        if cause:
            message = f"{message}: {cause}"
        super().__init__(message, step=step)
        self.step = step
        self.cause = cause


class ProjectNotFoundError(PipelineError, LookupError):
    """No project is stored under the requested identifier."""


class ProjectStateError(PipelineError):
    """The project is not in a state that allows the requested operation."""


def _plain(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool, type(None))):
        return value
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return str(value)
