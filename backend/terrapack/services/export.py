"""Tiled export bundle of a ready project.

The bundle is a zip with a fixed layout read by the fire simulator::

    <slug>.zip
    ├── tiles/ortho/<row>_<col>.jpg
    ├── tiles/vegetation/<row>_<col>.jpg
    ├── vectors/<slug>.gpkg
    └── raster/<slug>.tif

Everything is written to a staging directory first, zipped to a hidden
``.<slug>.zip.partial`` file next to the target and moved into place with
``os.replace``, so a reader never sees a half-written bundle. Re-exporting
overwrites the previous bundle of the same name.

Every step is retried under the export RetryPolicy. Tiling is the
exception: the vegetation rendering and each tile are retried on their own
worker thread, so one bad read does not redo the tiles already written.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import os
import pathlib
import shutil
import tempfile
import threading
import zipfile
from typing import TYPE_CHECKING, Any, TypeVar

import geopandas
import rasterio
from rasterio import crs as rio_crs
from rio_tiler import io as rio_tiler_io

from terrapack.core import errors
from terrapack.core import progress as core_progress
from terrapack.core import retry as core_retry
from terrapack.db import models
from terrapack.services import rasterize
from terrapack.utils import text

if TYPE_CHECKING:
    from collections.abc import Callable

    from terrapack.core import config
    from terrapack.db import database

T = TypeVar("T")

logger = logging.getLogger(__name__)

STEPS = ("tiling", "vectors", "raster", "packaging", "placement")
TILE_CRS = rio_crs.CRS.from_string(models.CRS)

# Vegetation rendering cut by the tiling step, then moved to raster/.
_RENDERED = "rendered.tif"


class _Cancelled(Exception):
    """Raised inside worker threads once the export has been abandoned."""


async def _drain(futures: list[concurrent.futures.Future]) -> None:
    """Cancel queued jobs and wait for the running ones to return."""
    for future in futures:
        future.cancel()
    await asyncio.to_thread(concurrent.futures.wait, futures)


def render_tile(
    source: pathlib.Path,
    tile: models.Tile,
    destination: pathlib.Path,
) -> pathlib.Path:
    """Cut one tile out of a raster and write it as JPEG.

    Args:
        source: Raster on the project grid (orthophoto or vegetation).
        tile: Tile to cut.
        destination: Staging root; the tile goes to ``tile.archive_name``.

    Returns:
        Path of the written JPEG.
    """
    with rio_tiler_io.Reader(input=str(source)) as src:
        image = src.part(
            tile.bounds,
            dst_crs=TILE_CRS,
            bounds_crs=TILE_CRS,
            indexes=(1, 2, 3),
            max_size=None,
            width=models.TILE_SIZE,
            height=models.TILE_SIZE,
        )
    content = image.render(add_mask=False, img_format="JPEG", quality=95)
    path = destination / tile.archive_name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def render_vegetation_raster(
    project: models.Project,
    path: pathlib.Path,
) -> pathlib.Path:
    """Render the project's vegetation image to an RGBA GeoTIFF.

    Land-cover classes take the simulator palette; buildings, roads and
    railways are burned in black.
    """
    with rasterio.open(project.layers["landcover"].path) as src:
        landcover = src.read(1)
    polygons = _geometries(project.layers["buildings"])
    lines = _geometries(project.layers["roads"]) + _geometries(
        project.layers["railways"]
    )
    image = rasterize.render_vegetation(landcover, project.aoi, polygons, lines)
    path.parent.mkdir(parents=True, exist_ok=True)
    rasterize.write_rgba(path, image, project.aoi)
    return path


def _geometries(layer: models.Layer) -> list:
    frame = geopandas.read_file(layer.path, layer=layer.name)
    return [geom for geom in frame.geometry if geom is not None]


def write_vector_package(project: models.Project, path: pathlib.Path) -> int:
    """Copy every vector layer of a project into one GeoPackage.

    Returns:
        Number of layers written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.unlink(missing_ok=True)
    written = 0
    for name in models.VECTOR_LAYERS:
        layer = project.layers[name]
        frame = geopandas.read_file(layer.path, layer=layer.name)
        frame.to_file(path, layer=name, driver="GPKG")
        written += 1
    return written


def write_archive(staging: pathlib.Path, partial: pathlib.Path) -> int:
    """Zip the staging tree into ``partial``.

    Entries are added in sorted order so that two exports of the same
    project produce the same member list.

    Returns:
        Number of files archived.
    """
    files = sorted(p for p in staging.rglob("*") if p.is_file())
    with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in files:
            zf.write(path, arcname=path.relative_to(staging).as_posix())
    with open(partial, "rb") as fh:
        os.fsync(fh.fileno())
    return len(files)


class ExportPipeline:
    """Exports ready projects as tiled zip bundles.

    Args:
        settings: Application settings.
        repository: Project store; updated with the bundle path on success.
        executor: Pool the tiles are rendered on.
        bus: Optional progress bus.
        policy: Retry policy of every step and of every tile, defaults
            to RetryPolicy.for_exports(settings).
    """

    def __init__(
        self,
        settings: config.Settings,
        repository: database.ProjectRepositoryProtocol,
        executor: concurrent.futures.Executor,
        bus: core_progress.ProgressBus | None = None,
        policy: core_retry.RetryPolicy | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.executor = executor
        self.bus = bus
        self.policy = policy or core_retry.RetryPolicy.for_exports(settings)

    async def export(
        self,
        project: models.Project | str,
        output_dir: pathlib.Path | None = None,
    ) -> models.ExportBundle:
        """Write the bundle of a ready project.

        Args:
            project: Project or project id.
            output_dir: Directory receiving ``<slug>.zip``, defaults to
                ``settings.output_dir``.

        Returns:
            The placed bundle.

        Raises:
            ProjectNotFoundError: if the id is unknown.
            ProjectStateError: if the project is not ready.
            ExportError: if a step failed after its retries; nothing is
                left behind and the project record is unchanged.
        """
        if isinstance(project, str):
            stored = self.repository.get(project)
            if stored is None:
                raise errors.ProjectNotFoundError(
                    f"Project {project} not found", project_id=project
                )
            project = stored
        if not project.is_ready:
            raise errors.ProjectStateError(
                f"Project {project.id} is not ready",
                project_id=project.id,
                status=project.status,
            )

        output_dir = pathlib.Path(output_dir or self.settings.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
        slug = text.slugify(project.name)
        target = output_dir / f"{slug}.zip"
        partial = output_dir / f".{slug}.zip.partial"
        staging = pathlib.Path(
            tempfile.mkdtemp(prefix=f"export_{slug}_", dir=self.settings.temp_dir)
        )
        reporter = core_progress.ProgressReporter(self.bus, project.id)
        cancelled = threading.Event()
        logger.info("Exporting project %s to %s", project.id, target)

        try:
            tile_count = await self._step(
                "tiling",
                lambda: self._tiles(project, staging, reporter, cancelled),
                reporter,
                # Retried tile by tile.
                policy=core_retry.RetryPolicy(max_attempts=1),
            )
            await self._step(
                "vectors",
                lambda: asyncio.to_thread(
                    write_vector_package,
                    project,
                    staging / "vectors" / f"{slug}.gpkg",
                ),
                reporter,
            )
            await self._step(
                "raster",
                lambda: asyncio.to_thread(
                    self._place_raster, staging, staging / "raster" / f"{slug}.tif"
                ),
                reporter,
            )
            await self._step(
                "packaging",
                lambda: asyncio.to_thread(write_archive, staging, partial),
                reporter,
            )
            await self._step(
                "placement",
                lambda: asyncio.to_thread(os.replace, partial, target),
                reporter,
            )
        except BaseException as exc:
            cancelled.set()
            partial.unlink(missing_ok=True)
            reason = "cancelled" if isinstance(exc, asyncio.CancelledError) else str(exc)
            reporter.emit("export", project.name, "failed", message=reason, final=True)
            raise
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        bundle = models.ExportBundle(
            path=str(target), project_id=project.id, tile_count=tile_count
        )
        project.export_path = bundle.path
        project.exported_at = bundle.created_at
        await asyncio.to_thread(self.repository.add, project)
        reporter.emit("export", project.name, "done", 100.0, final=True)
        logger.info("Project %s exported with %d tiles", project.id, tile_count)
        return bundle

    async def _step(
        self,
        step: str,
        operation: Callable[[], object],
        reporter: core_progress.ProgressReporter,
        policy: core_retry.RetryPolicy | None = None,
    ) -> Any:
        reporter.emit(
            "export",
            step,
            "running",
            done=STEPS.index(step),
            total=len(STEPS),
        )
        outcome = await (policy or self.policy).run(
            operation, label=f"Export step {step}"  # type: ignore[arg-type]
        )
        if not outcome.ok:
            raise errors.ExportError(step, outcome.error) from outcome.error
        return outcome.value

    async def _tiles(
        self,
        project: models.Project,
        staging: pathlib.Path,
        reporter: core_progress.ProgressReporter,
        cancelled: threading.Event,
    ) -> int:
        render = self.executor.submit(
            self._retried,
            f"Vegetation rendering of {project.id}",
            render_vegetation_raster,
            project,
            staging / "scratch" / _RENDERED,
        )
        try:
            rendered = await asyncio.wrap_future(render)
        except BaseException:
            await _drain([render])
            raise
        sources = {
            "ortho": pathlib.Path(project.layers["orthophoto"].path),
            "vegetation": rendered,
        }
        tiles = [tile for kind in models.TILE_KINDS for tile in project.aoi.tiles(kind)]
        total = len(tiles)
        # Set once a tile has failed all its attempts.
        abandoned = threading.Event()

        def job(tile: models.Tile) -> pathlib.Path:
            if cancelled.is_set() or abandoned.is_set():
                raise _Cancelled(tile.archive_name)
            return self._retried(
                f"Tile {tile.archive_name}",
                render_tile,
                sources[tile.kind],
                tile,
                staging,
            )

        futures = [self.executor.submit(job, tile) for tile in tiles]
        try:
            pending = [asyncio.wrap_future(future) for future in futures]
            for done, finished in enumerate(asyncio.as_completed(pending), start=1):
                await finished
                reporter.emit("export", "tiling", "running", done=done, total=total)
        except BaseException:
            abandoned.set()
            await _drain(futures)
            raise
        return total

    def _retried(self, label: str, function: Callable[..., T], *args: Any) -> T:
        outcome = self.policy.run_sync(lambda: function(*args), label=label)
        if outcome.error is not None:
            raise outcome.error
        return outcome.value  # type: ignore[return-value]

    @staticmethod
    def _place_raster(staging: pathlib.Path, path: pathlib.Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(staging / "scratch" / _RENDERED, path)
        shutil.rmtree(staging / "scratch", ignore_errors=True)
