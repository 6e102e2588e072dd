"""Dataset cache and acquisition manager.

The cache stores one verified, extracted source archive per
(partition code, dataset kind) under::

    <cache_dir>/<kind>/<code>/entry.json
    <cache_dir>/<kind>/<code>/data/...

An entry is valid while the fingerprint recorded in ``entry.json`` still
matches the extracted tree; valid entries are served without any network
access. Missing or damaged entries are acquired: the remote archive URL is
resolved from the IGN listing page, the archive is streamed to a staging
directory inside the cache, verified, extracted, fingerprinted and moved
into place with a single rename.

Concurrency rules:
    - one in-flight acquisition per key; concurrent callers for the same key
      await the same task and observe the same CacheEntry;
    - acquisitions of different keys run in parallel, at most
      ``max_concurrent_downloads`` at a time;
    - an acquisition still queued for a download slot is cancelled once
      every caller awaiting it has been cancelled; one already downloading
      runs to completion and is cached;
    - clear() takes the cache lock exclusively and waits for in-flight
      acquisitions, which hold it shared.

Example:
    Ensure the vegetation dataset of a department is available:
        >>> cache = DatasetCache(settings)
        >>> entry = await cache.ensure(region, models.DatasetKind.VEGETATION)
        >>> entry.path
        '/tmp/terrapack/cache/vegetation/75/data'
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import hashlib
import json
import logging
import os
import pathlib
import shutil
import uuid
from typing import TYPE_CHECKING

import httpx

from terrapack.core import errors
from terrapack.core import retry as core_retry
from terrapack.db import models
from terrapack.services import archives, sources
from terrapack.utils import checksum

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from terrapack.core import config
    from terrapack.core import progress as core_progress

logger = logging.getLogger(__name__)

CacheKey = tuple[str, models.DatasetKind]

_CHUNK_SIZE = 1024 * 1024


class _ReadWriteLock:
    """asyncio lock shared by acquisitions and held exclusively by clear()."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False

    @contextlib.asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @contextlib.asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._writer and self._readers == 0
            )
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


def acquisition_label(region: models.Region, kind: models.DatasetKind) -> str:
    """Return the human-readable progress label of an acquisition."""
    return f"{region.name} ({region.code}) - {kind.value}"


class DatasetCache:
    """Explicit cache service shared by every project build.

    Args:
        settings: Settings (cache directory, limits, retry schedule, source
            pages, 7z executable).
        policy: Retry policy wrapped around each download; defaults to the
            download policy built from settings.
        transport: Optional httpx transport, e.g. ``httpx.MockTransport``.
    """

    ENTRY_NAME = "entry.json"
    DATA_DIR = "data"
    STAGING_DIR = ".staging"

    def __init__(
        self,
        settings: config.Settings,
        policy: core_retry.RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.root = settings.cache_dir
        self.policy = policy or core_retry.RetryPolicy.for_downloads(settings)
        self._transport = transport
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_downloads)
        self._lock = _ReadWriteLock()
        self._inflight: dict[CacheKey, asyncio.Task[models.CacheEntry]] = {}
        self._waiters: collections.Counter[asyncio.Task] = collections.Counter()
        self._downloading: set[asyncio.Task] = set()
        self._watchers: dict[
            CacheKey, list[tuple[core_progress.ProgressReporter, str]]
        ] = collections.defaultdict(list)
        self.root.mkdir(parents=True, exist_ok=True)

    # Paths

    def _entry_dir(self, key: CacheKey) -> pathlib.Path:
        code, kind = key
        return self.root / kind.value / code

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds,
            follow_redirects=True,
            transport=self._transport,
        )

    # Public API

    async def ensure(
        self,
        region: models.Region,
        kind: models.DatasetKind,
        reporter: core_progress.ProgressReporter | None = None,
    ) -> models.CacheEntry:
        """Return the cache entry of a region's dataset, acquiring it if needed.

        Args:
            region: Region whose data is needed.
            kind: Dataset kind.
            reporter: Optional progress sink; events are labelled
                "<region name> (<code>) - <kind>".

        Returns:
            The valid CacheEntry for ``(kind.source_code(region), kind)``.

        Raises:
            AcquisitionError: if the dataset could not be acquired after all
                retries.
        """
        key = (kind.source_code(region), kind)
        label = acquisition_label(region, kind)
        watcher = (reporter, label) if reporter is not None else None

        async with self._lock.read():
            task = self._inflight.get(key)
            if task is None:
                entry = await asyncio.to_thread(self._load_valid, key)
                if entry is not None:
                    if reporter is not None:
                        reporter.emit("acquisition", label, "ready", 100.0)
                    return entry
                task = self._inflight.get(key)
            if task is None:
                task = asyncio.get_running_loop().create_task(
                    self._acquire(key, region)
                )
                self._inflight[key] = task
                task.add_done_callback(
                    lambda t, key=key: self._forget(key, t)
                )
            if watcher is not None:
                self._watchers[key].append(watcher)
                reporter.emit("acquisition", label, "queued")

        self._waiters[task] += 1
        abandoned = False
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            abandoned = True
            raise
        except errors.AcquisitionError as exc:
            if exc.region != region.code:
                raise errors.AcquisitionError(
                    region.code, kind.value, exc.cause
                ) from exc
            raise
        finally:
            self._waiters[task] -= 1
            if self._waiters[task] <= 0:
                del self._waiters[task]
                if abandoned:
                    self._abandon(key, task)

    async def clear(self) -> None:
        """Remove every cache entry and its storage.

        Waits for in-flight acquisitions to finish and blocks new ones while
        the cache is being wiped.
        """
        async with self._lock.write():
            await asyncio.to_thread(self._wipe)
        logger.info("Cleared dataset cache %s", self.root)

    async def invalidate(
        self,
        region: models.Region,
        kind: models.DatasetKind,
    ) -> None:
        """Remove one entry so the next ensure() downloads it again."""
        key = (kind.source_code(region), kind)
        async with self._lock.write():
            await asyncio.to_thread(
                shutil.rmtree, self._entry_dir(key), True
            )

    def entries(self) -> list[models.CacheEntry]:
        """List the entries currently valid on disk."""
        found = []
        for path in sorted(self.root.glob(f"*/*/{self.ENTRY_NAME}")):
            try:
                kind = models.DatasetKind(path.parent.parent.name)
            except ValueError:
                continue
            entry = self._load_valid((path.parent.name, kind))
            if entry is not None:
                found.append(entry)
        return found

    # Internals

    def _forget(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
            self._watchers.pop(key, None)

    def _abandon(self, key: CacheKey, task: asyncio.Task) -> None:
        """Cancel an acquisition nobody awaits unless it is downloading."""
        if task.done() or task in self._downloading:
            return
        logger.info("Cancelling queued acquisition of %s/%s", key[1].value, key[0])
        # Detached so a later ensure() starts a fresh acquisition.
        self._forget(key, task)
        task.cancel()

    def _notify(
        self,
        key: CacheKey,
        status: core_progress.Status,
        percent: float | None = None,
        message: str | None = None,
    ) -> None:
        for reporter, label in list(self._watchers.get(key, ())):
            reporter.emit("acquisition", label, status, percent, message=message)

    def _load_valid(self, key: CacheKey) -> models.CacheEntry | None:
        directory = self._entry_dir(key)
        record = directory / self.ENTRY_NAME
        data_dir = directory / self.DATA_DIR
        if not record.is_file() or not data_dir.is_dir():
            return None
        try:
            with record.open(encoding="utf-8") as fh:
                entry = models.CacheEntry.from_dict(json.load(fh))
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Discarding unreadable cache entry %s: %s", record, exc)
            return None
        if entry.content_fingerprint != checksum.tree_fingerprint(data_dir):
            logger.warning(
                "Cache entry %s/%s no longer matches its fingerprint",
                key[0],
                key[1].value,
            )
            return None
        entry.path = str(data_dir)
        return entry

    async def _acquire(
        self,
        key: CacheKey,
        region: models.Region,
    ) -> models.CacheEntry:
        code, kind = key
        async with self._lock.read():
            entry = await asyncio.to_thread(self._load_valid, key)
            if entry is not None:
                self._notify(key, "ready", 100.0)
                return entry
            async with self._semaphore:
                current = asyncio.current_task()
                self._downloading.add(current)
                try:
                    outcome = await self.policy.run(
                        lambda: self._download_and_install(key),
                        label=f"Acquisition of {kind.value}/{code}",
                    )
                finally:
                    self._downloading.discard(current)
        if not outcome.ok:
            self._notify(key, "failed", message=str(outcome.error))
            raise errors.AcquisitionError(region.code, kind.value, outcome.error)
        self._notify(key, "ready", 100.0)
        logger.info("Cached %s/%s", kind.value, code)
        return outcome.value  # type: ignore[return-value]

    async def _download_and_install(self, key: CacheKey) -> models.CacheEntry:
        code, kind = key
        staging = (
            self.root / self.STAGING_DIR / f"{kind.value}_{code}_{uuid.uuid4().hex}"
        )
        staging.mkdir(parents=True)
        try:
            async with self._client() as client:
                url = await sources.resolve_source_url(
                    client, kind, code, self.settings
                )
                suffix = pathlib.PurePosixPath(httpx.URL(url).path).suffix
                archive = staging / f"archive{suffix or '.7z'}"
                self._notify(key, "downloading", 0.0)
                sha256 = await self._download(client, url, archive, key)
            self._notify(key, "extracting")
            return await asyncio.to_thread(
                self._install, key, archive, staging, url, sha256
            )
        finally:
            await asyncio.to_thread(shutil.rmtree, staging, True)

    async def _download(
        self,
        client: httpx.AsyncClient,
        url: str,
        target: pathlib.Path,
        key: CacheKey,
    ) -> str:
        digest = hashlib.sha256()
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length") or 0)
            received = 0
            last_percent = -1
            with target.open("wb") as fh:
                async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                    fh.write(chunk)
                    digest.update(chunk)
                    received += len(chunk)
                    if total:
                        percent = int(100 * received / total)
                        if percent != last_percent:
                            last_percent = percent
                            self._notify(key, "downloading", float(percent))
        if total and received != total:
            raise httpx.ReadError(
                f"Truncated download: {received} of {total} bytes"
            )
        return digest.hexdigest()

    def _install(
        self,
        key: CacheKey,
        archive: pathlib.Path,
        staging: pathlib.Path,
        url: str,
        sha256: str,
    ) -> models.CacheEntry:
        code, kind = key
        archives.verify_archive(archive, self.settings)
        data_dir = staging / self.DATA_DIR
        archives.extract_archive(archive, data_dir, self.settings)
        archive.unlink()

        entry = models.CacheEntry(
            region_code=code,
            kind=kind,
            path="",
            archive_sha256=sha256,
            content_fingerprint=checksum.tree_fingerprint(data_dir),
            source_url=url,
        )
        with (staging / self.ENTRY_NAME).open("w", encoding="utf-8") as fh:
            json.dump(entry.to_dict(), fh, indent=2)

        target = self._entry_dir(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            shutil.rmtree(target)
        os.replace(staging, target)
        entry.path = str(target / self.DATA_DIR)
        return entry

    def _wipe(self) -> None:
        if self.root.exists():
            for child in self.root.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        self.root.mkdir(parents=True, exist_ok=True)
