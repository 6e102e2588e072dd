"""Process-wide service graph shared by the HTTP surface.

One Runtime holds the objects that must be shared by every request: the
dataset cache (one in-flight acquisition per key across all builds), the
progress bus, the CPU pool and the project store.

Example:
    Build the runtime of the current settings:
        >>> runtime = get_runtime()
        >>> project = runtime.builder.create("Vercors", bounds)
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import functools
import logging

from terrapack.core import config
from terrapack.core import progress as core_progress
from terrapack.db import database
from terrapack.services import cache as dataset_cache
from terrapack.services import export, pipeline, regions

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Runtime:
    settings: config.Settings
    repository: database.ProjectRepositoryProtocol
    cache: dataset_cache.DatasetCache
    bus: core_progress.ProgressBus
    executor: concurrent.futures.Executor
    builder: pipeline.ProjectBuilder
    exporter: export.ExportPipeline

    @classmethod
    def from_settings(
        cls,
        settings: config.Settings,
        catalog: regions.RegionCatalog | None = None,
        repository: database.ProjectRepositoryProtocol | None = None,
        cache: dataset_cache.DatasetCache | None = None,
    ) -> Runtime:
        """Wire the services of one process.

        Args:
            settings: Application settings.
            catalog: Region catalog, loaded from ``regions_path`` if omitted.
            repository: Project store, picked from ``project_store`` if
                omitted.
            cache: Dataset cache, created on ``cache_dir`` if omitted.
        """
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=settings.cpu_workers,
            thread_name_prefix="terrapack-cpu",
        )
        bus = core_progress.ProgressBus()
        if repository is None:
            repository = database.get_project_repository(settings)
        if cache is None:
            cache = dataset_cache.DatasetCache(settings)
        if catalog is None:
            catalog = regions.get_catalog(settings)
        logger.info("Loaded %d reference regions", len(catalog))
        return cls(
            settings=settings,
            repository=repository,
            cache=cache,
            bus=bus,
            executor=executor,
            builder=pipeline.ProjectBuilder(
                settings, cache, repository, catalog, executor, bus
            ),
            exporter=export.ExportPipeline(settings, repository, executor, bus),
        )

    def close(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)


@functools.lru_cache
def get_runtime() -> Runtime:
    """Return the runtime of the current settings, created on first use."""
    return Runtime.from_settings(config.get_settings())
