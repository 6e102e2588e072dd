"""Project build orchestration.

A build runs in four stages and publishes progress for each:

1. **resolve**: the area of interest is validated and the intersecting
   regions resolved; a CoverageError here means no project is created.
2. **acquisition**: every (region, dataset kind) is ensured through the
   shared DatasetCache, all in parallel. Failures are collected per key;
   if any key failed the project stays "building", records the missing
   keys and the build raises BuildError. Successful keys stay cached, so
   a retried build only downloads what is missing.
3. **layering**: vector layers and the land-cover raster are built on the
   CPU pool while the orthophoto is fetched on an I/O thread. A cancelled
   build signals the layering engine and waits for both threads before it
   releases the project.
4. **assembly**: the layer set is validated and the project marked ready.

A project is built by one task at a time; starting a second build of a
project that is already building raises ProjectStateError.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import TYPE_CHECKING

from terrapack.core import errors
from terrapack.core import progress as core_progress
from terrapack.db import models
from terrapack.services import assembler, layering, orthophoto, regions

if TYPE_CHECKING:
    from collections.abc import Sequence

    from terrapack.core import config
    from terrapack.db import database
    from terrapack.services import cache as dataset_cache

logger = logging.getLogger(__name__)


class ProjectBuilder:
    """Creates projects and drives their builds.

    Args:
        settings: Application settings.
        cache: Dataset cache shared by every build.
        repository: Project store.
        catalog: Reference regions.
        executor: Pool running CPU-bound layering work.
        bus: Optional progress bus.
    """

    def __init__(
        self,
        settings: config.Settings,
        cache: dataset_cache.DatasetCache,
        repository: database.ProjectRepositoryProtocol,
        catalog: regions.RegionCatalog,
        executor: concurrent.futures.Executor,
        bus: core_progress.ProgressBus | None = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.repository = repository
        self.catalog = catalog
        self.executor = executor
        self.bus = bus
        self.assembler = assembler.ProjectAssembler(repository)
        self._building: set[str] = set()
        self._tasks: dict[str, asyncio.Task[models.Project]] = {}

    def create(
        self,
        name: str,
        bounds: Sequence[float],
    ) -> models.Project:
        """Validate a request and store a new "building" project.

        Args:
            name: Project name.
            bounds: AOI corners (xmin, ymin, xmax, ymax) in EPSG:2154.

        Returns:
            The stored project with its resolved regions.

        Raises:
            AreaOfInterestError: if the AOI is not a whole number of tiles.
            CoverageError: if no region intersects the AOI.
        """
        aoi = models.AreaOfInterest.from_bounds(list(bounds))
        resolved = regions.resolve_regions(aoi, self.catalog)
        project = models.Project(
            name=name,
            aoi=aoi,
            regions=[region.code for region in resolved],
        )
        self.repository.add(project)
        logger.info(
            "Created project %s (%s) over regions %s",
            project.name,
            project.id,
            ", ".join(project.regions),
        )
        return project

    def start(self, project: models.Project) -> asyncio.Task[models.Project]:
        """Run build() in a background task kept until it finishes."""
        existing = self._tasks.get(project.id)
        if existing is not None and not existing.done():
            raise errors.ProjectStateError(
                f"Project {project.id} is already building",
                project_id=project.id,
            )
        # Supersedes the final event of any previous build.
        core_progress.ProgressReporter(self.bus, project.id).emit(
            "resolve", project.name, "queued"
        )
        task = asyncio.get_running_loop().create_task(
            self._run_logged(project), name=f"build-{project.id}"
        )
        self._tasks[project.id] = task
        task.add_done_callback(lambda t: self._finished(project.id, t))
        return task

    def _finished(self, project_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(project_id, None)
        if not task.cancelled():
            # Already logged by _run_logged.
            task.exception()

    def cancel(self, project_id: str) -> bool:
        """Cancel a running background build.

        Returns:
            True if a build was running and has been asked to stop.
        """
        task = self._tasks.get(project_id)
        if task is None or task.done():
            return False
        return task.cancel()

    async def _run_logged(self, project: models.Project) -> models.Project:
        try:
            return await self.build(project)
        except errors.PipelineError as exc:
            logger.error("Build of %s failed: %s", project.id, exc)
            raise
        except Exception:
            logger.exception("Build of %s crashed", project.id)
            raise

    async def build(self, project: models.Project) -> models.Project:
        """Acquire, layer and assemble a project.

        Args:
            project: Project created by create(); a ready project is
                returned unchanged.

        Returns:
            The ready project.

        Raises:
            BuildError: if some acquisitions failed; the project stays
                building with the failing keys in ``missing``.
            LayeringError: if a layer breaks the extent contract.
            ProjectStateError: if the project is already being built.
        """
        if project.is_ready:
            return project
        if project.id in self._building:
            raise errors.ProjectStateError(
                f"Project {project.id} is already building",
                project_id=project.id,
            )
        self._building.add(project.id)
        reporter = core_progress.ProgressReporter(self.bus, project.id)
        try:
            project = await self._build(project, reporter)
        except asyncio.CancelledError:
            reporter.emit(
                "assembly", project.name, "failed", message="cancelled", final=True
            )
            raise
        except Exception as exc:
            reporter.emit(
                "assembly", project.name, "failed", message=str(exc), final=True
            )
            raise
        finally:
            self._building.discard(project.id)
        reporter.emit("assembly", project.name, "done", 100.0, final=True)
        return project

    async def _build(
        self,
        project: models.Project,
        reporter: core_progress.ProgressReporter,
    ) -> models.Project:
        resolved = []
        for code in project.regions:
            region = self.catalog.get(code)
            if region is None:
                raise errors.CoverageError(
                    f"Region {code} is not in the catalog", region=code
                )
            resolved.append(region)
        reporter.emit("resolve", project.name, "done", 100.0)

        sources = await self._acquire_all(project, resolved, reporter)

        workdir = self.settings.projects_dir / project.id
        loop = asyncio.get_running_loop()
        cancelled = threading.Event()
        engine = layering.LayeringEngine(self.settings, reporter, cancelled)
        jobs = [
            asyncio.wrap_future(
                self.executor.submit(
                    engine.build_layers, project.aoi, sources, workdir
                )
            ),
            asyncio.ensure_future(
                asyncio.to_thread(
                    orthophoto.fetch_orthophoto, project.aoi, workdir, self.settings
                )
            ),
        ]
        try:
            results = await asyncio.gather(
                *(asyncio.shield(job) for job in jobs), return_exceptions=True
            )
        except asyncio.CancelledError:
            cancelled.set()
            # Threads cannot be interrupted: the project stays owned by this
            # build until they have left its directory.
            await asyncio.gather(*jobs, return_exceptions=True)
            raise
        for result in results:
            if isinstance(result, errors.AcquisitionError):
                await self._record_missing(project, [result])
                raise errors.BuildError(project.id, [result]) from result
            if isinstance(result, BaseException):
                raise result
        layers, ortho = results
        layers = dict(layers)  # type: ignore[call-overload]
        layers["orthophoto"] = ortho

        reporter.emit("assembly", project.name, "running")
        return await loop.run_in_executor(
            self.executor, self.assembler.assemble, project, layers
        )

    async def _acquire_all(
        self,
        project: models.Project,
        resolved: list[models.Region],
        reporter: core_progress.ProgressReporter,
    ) -> dict[models.DatasetKind, list[tuple[models.Region, models.CacheEntry]]]:
        pairs = [
            (region, kind) for region in resolved for kind in models.DatasetKind
        ]
        results = await asyncio.gather(
            *(self.cache.ensure(region, kind, reporter) for region, kind in pairs),
            return_exceptions=True,
        )
        failures: list[errors.AcquisitionError] = []
        sources: dict[
            models.DatasetKind, list[tuple[models.Region, models.CacheEntry]]
        ] = {kind: [] for kind in models.DatasetKind}
        for (region, kind), result in zip(pairs, results, strict=True):
            if isinstance(result, errors.AcquisitionError):
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                sources[kind].append((region, result))
        if failures:
            await self._record_missing(project, failures)
            raise errors.BuildError(project.id, failures)
        return sources

    async def _record_missing(
        self,
        project: models.Project,
        failures: list[errors.AcquisitionError],
    ) -> None:
        project.status = "building"
        project.missing = sorted({failure.key for failure in failures})
        await asyncio.to_thread(self.repository.add, project)
        logger.warning(
            "Project %s is missing %s", project.id, ", ".join(project.missing)
        )
