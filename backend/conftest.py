"""Pytest configuration exposing the terrapack package and shared fixtures.

The geodata fixtures describe two departments, Seine-et-Marne (77) and
Essonne (91), meeting in the middle of a 10 km x 15 km area of interest.
Their cached source datasets are plain directories holding empty
shapefile placeholders; ogr2ogr and gdal_translate are replaced by fakes
returning the frames below and a synthetic orthophoto, so builds run
without GDAL command-line tools or network access.
"""

from __future__ import annotations

import asyncio
import collections
import concurrent.futures
import dataclasses
import pathlib
import re
import sys
from typing import TYPE_CHECKING, Any

import geopandas
import numpy as np
import pytest
import rasterio
import shapely.geometry
from rasterio import transform as rio_transform

if TYPE_CHECKING:
    from collections.abc import Iterator

BACKEND_ROOT = pathlib.Path(__file__).resolve().parent

if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from terrapack.core import config, errors, progress  # noqa: E402
from terrapack.db import database, models  # noqa: E402
from terrapack.services import (  # noqa: E402
    assembler,
    layering,
    orthophoto,
    regions,
)
from terrapack.utils import gdal_helpers  # noqa: E402

# 10 km x 15 km on the 10 m grid: 1000 x 1500 px, 3 rows x 2 columns of tiles.
AOI_BOUNDS = (650000.0, 6860000.0, 660000.0, 6875000.0)
# The two departments meet at x = 655000, splitting the area in half.
SPLIT_X = 655000.0

box = shapely.geometry.box
line = shapely.geometry.LineString

# Shared by both departmental datasets: must appear once after merging.
SHARED_STAND = box(654000, 6861000, 656000, 6862000)
MAIN_ROAD = line([(640000, 6867500), (670000, 6867500)])

# (department, shapefile) -> features, in EPSG:2154.
SOURCE_FEATURES: dict[tuple[str, str], list[dict[str, Any]]] = {
    ("77", "FORMATION_VEGETALE"): [
        {"ID": "V1", "ESSENCE": "Feuillus", "geometry": box(649000, 6866000, 655000, 6870000)},
        {"ID": "V3", "ESSENCE": "NC", "geometry": SHARED_STAND},
    ],
    ("91", "FORMATION_VEGETALE"): [
        {"ID": "V2", "ESSENCE": "Pin maritime", "geometry": box(655000, 6866000, 658000, 6870000)},
        {"ID": "V3", "ESSENCE": "NC", "geometry": SHARED_STAND},
    ],
    ("77", "PLAN_D_EAU"): [
        {"ID": "H1", "NATURE": "Lac", "geometry": box(651000, 6872000, 652000, 6873000)},
    ],
    ("91", "COURS_D_EAU"): [
        {"ID": "H2", "NATURE": "Ruisseau", "geometry": line([(656500, 6858000), (656500, 6876000)])},
    ],
    ("77", "TRONCON_DE_ROUTE"): [
        {"ID": "R1", "NATURE": "Route à 2 chaussées", "geometry": MAIN_ROAD},
    ],
    ("91", "TRONCON_DE_ROUTE"): [
        {"ID": "R1", "NATURE": "Route à 2 chaussées", "geometry": MAIN_ROAD},
        {"ID": "R2", "NATURE": "Chemin", "geometry": line([(700000, 6800000), (701000, 6800000)])},
    ],
    ("91", "VOIE_NOMMEE"): [
        {"ID": "N1", "NATURE": "Chemin", "geometry": line([(658000, 6873500), (659500, 6873500)])},
    ],
    ("91", "TRONCON_DE_VOIE_FERREE"): [
        {"ID": "F1", "NATURE": "Voie ferrée principale", "geometry": line([(657000, 6860000), (657000, 6875000)])},
    ],
    ("77", "BATIMENT"): [
        {"ID": "B1", "NATURE": "Indifférenciée", "geometry": box(652000, 6868000, 652050, 6868050)},
    ],
    # Themes without features in a department still ship a shapefile.
    ("77", "TRONCON_DE_VOIE_FERREE"): [],
    ("91", "BATIMENT"): [],
    ("11", "PARCELLES_GRAPHIQUES"): [
        {"ID_PARCEL": "P1", "CODE_GROUP": "1", "geometry": box(650000, 6860000, 653000, 6863000)},
    ],
}

SOURCE_KINDS = {
    "FORMATION_VEGETALE": models.DatasetKind.VEGETATION,
    "PARCELLES_GRAPHIQUES": models.DatasetKind.PARCELS,
}


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    """Settings with every directory under tmp_path and no retry delay."""
    return config.Settings(
        cache_dir=tmp_path / "cache",
        projects_dir=tmp_path / "projects",
        temp_dir=tmp_path / "tmp",
        output_dir=tmp_path / "exports",
        regions_path=tmp_path / "regions.geojson",
        download_backoff_seconds=0.0,
        export_backoff_seconds=0.0,
        max_concurrent_downloads=2,
        cpu_workers=2,
        raster_supersample=2,
    )


@pytest.fixture
def aoi() -> models.AreaOfInterest:
    return models.AreaOfInterest(*AOI_BOUNDS)


@pytest.fixture
def catalog() -> regions.RegionCatalog:
    """Two departments sharing the area of interest, and a distant third."""
    west = box(600000, 6800000, SPLIT_X, 6900000)
    east = box(SPLIT_X, 6800000, 700000, 6900000)
    far = box(900000, 6200000, 950000, 6250000)
    return regions.RegionCatalog(
        [
            models.Region(code="77", name="Seine-et-Marne", geometry=west, parcel_code="11"),
            models.Region(code="91", name="Essonne", geometry=east, parcel_code="11"),
            models.Region(code="13", name="Bouches-du-Rhône", geometry=far, parcel_code="93"),
        ]
    )


@dataclasses.dataclass
class SourceDatasets:
    """Cache entries of the two departments and the frames behind them."""

    entries: dict[tuple[str, models.DatasetKind], models.CacheEntry]
    frames: dict[str, geopandas.GeoDataFrame]
    extracted: list[str] = dataclasses.field(default_factory=list)

    def sources(
        self,
        catalog: regions.RegionCatalog,
    ) -> dict[models.DatasetKind, list[tuple[models.Region, models.CacheEntry]]]:
        """Entries per kind for the departments 77 and 91, in that order."""
        result: dict[models.DatasetKind, list] = {}
        for kind in models.DatasetKind:
            result[kind] = [
                (region, self.entries[(kind.source_code(region), kind)])
                for region in (catalog.get("77"), catalog.get("91"))
            ]
        return result

    def extract(
        self,
        shapefile: pathlib.Path,
        layer_name: str,
        aoi: models.AreaOfInterest,
        workdir: pathlib.Path,
    ) -> geopandas.GeoDataFrame:
        """Stand-in for LayeringEngine.extract_source (no ogr2ogr)."""
        self.extracted.append(str(shapefile))
        return self.frames[str(shapefile)].copy()


@pytest.fixture
def source_datasets(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> SourceDatasets:
    """Cached datasets of both departments with ogr2ogr patched out."""
    entries: dict[tuple[str, models.DatasetKind], models.CacheEntry] = {}
    frames: dict[str, geopandas.GeoDataFrame] = {}
    for (code, layer_name), features in SOURCE_FEATURES.items():
        kind = SOURCE_KINDS.get(layer_name, models.DatasetKind.TOPOGRAPHY)
        data_dir = tmp_path / "datasets" / kind.value / code / "data"
        shapefile = data_dir / "1_DONNEES" / f"{layer_name}.shp"
        shapefile.parent.mkdir(parents=True, exist_ok=True)
        shapefile.write_bytes(b"")
        if features:
            frame = geopandas.GeoDataFrame(
                features, geometry="geometry", crs=models.CRS
            )
        else:
            frame = layering.empty_frame(["ID", "NATURE"])
        frames[str(shapefile)] = frame
        entries.setdefault(
            (code, kind),
            models.CacheEntry(
                region_code=code,
                kind=kind,
                path=str(data_dir),
                archive_sha256="0" * 64,
                content_fingerprint="0" * 64,
                source_url=f"https://files.example.org/{kind.value}_{code}.7z",
            ),
        )
    datasets = SourceDatasets(entries=entries, frames=frames)
    monkeypatch.setattr(layering.LayeringEngine, "extract_source", datasets.extract)
    return datasets


def _tag(description: str, name: str) -> float:
    match = re.search(rf"<{name}>([^<]+)</{name}>", description)
    assert match is not None, name
    return float(match.group(1))


@pytest.fixture
def fake_wms(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    """Replace gdal_translate with a writer of a synthetic RGB orthophoto.

    Returns:
        The commands run, for inspection.
    """
    calls: list[list[str]] = []
    real_run = gdal_helpers.run_command

    def fake_run(command: Any, workdir: Any = None, bin_dir: Any = None) -> str:
        args = [str(part) for part in command]
        if args[0] != "gdal_translate":
            return real_run(command, workdir=workdir, bin_dir=bin_dir)
        calls.append(args)
        description = pathlib.Path(args[-2]).read_text(encoding="utf-8")
        xmin = _tag(description, "UpperLeftX")
        ymax = _tag(description, "UpperLeftY")
        width = int(_tag(description, "SizeX"))
        height = int(_tag(description, "SizeY"))
        rows = np.arange(height, dtype=np.uint16)[:, None] % 256
        cols = np.arange(width, dtype=np.uint16)[None, :] % 256
        image = np.stack(
            [
                np.broadcast_to(rows, (height, width)),
                np.broadcast_to(cols, (height, width)),
                np.full((height, width), 128),
            ]
        ).astype(np.uint8)
        with rasterio.open(
            args[-1],
            "w",
            driver="GTiff",
            height=height,
            width=width,
            count=3,
            dtype="uint8",
            crs=models.CRS,
            transform=rio_transform.from_origin(xmin, ymax, 10.0, 10.0),
        ) as dst:
            dst.write(image)
        return ""

    monkeypatch.setattr(gdal_helpers, "run_command", fake_run)
    return calls


@pytest.fixture
def ready_project(
    settings: config.Settings,
    aoi: models.AreaOfInterest,
    catalog: regions.RegionCatalog,
    source_datasets: SourceDatasets,
    fake_wms: list[list[str]],
) -> tuple[models.Project, database.InMemoryProjectRepository]:
    """A two-department project built and assembled without the pipeline."""
    repository = database.InMemoryProjectRepository()
    project = models.Project(name="Forêt de Sénart", aoi=aoi, regions=["77", "91"])
    repository.add(project)
    workdir = settings.projects_dir / project.id
    layers = layering.LayeringEngine(settings).build_layers(
        aoi, source_datasets.sources(catalog), workdir
    )
    layers["orthophoto"] = orthophoto.fetch_orthophoto(aoi, workdir, settings)
    project = assembler.ProjectAssembler(repository).assemble(project, layers)
    return project, repository


class FakeCache:
    """Dataset cache answering from the fixture entries.

    Keys listed in ``failing`` ("region/kind") raise AcquisitionError.
    """

    def __init__(self, datasets: SourceDatasets) -> None:
        self.datasets = datasets
        self.failing: set[str] = set()
        self.calls: collections.Counter[str] = collections.Counter()
        self.cleared = False

    async def ensure(
        self,
        region: models.Region,
        kind: models.DatasetKind,
        reporter: progress.ProgressReporter | None = None,
    ) -> models.CacheEntry:
        key = f"{region.code}/{kind.value}"
        self.calls[key] += 1
        await asyncio.sleep(0)
        if key in self.failing:
            raise errors.AcquisitionError(region.code, kind.value, "HTTP 503")
        return self.datasets.entries[(kind.source_code(region), kind)]

    def entries(self) -> list[models.CacheEntry]:
        return [] if self.cleared else list(self.datasets.entries.values())

    async def clear(self) -> None:
        self.cleared = True


@pytest.fixture
def fake_cache(source_datasets: SourceDatasets, fake_wms: list[list[str]]) -> FakeCache:
    """FakeCache over the two departments, with the WMS faked too."""
    return FakeCache(source_datasets)


@pytest.fixture
def executor() -> Iterator[concurrent.futures.ThreadPoolExecutor]:
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=True)
