"""Tests for clipping, cross-region merging and layer building.

ogr2ogr is replaced by the ``source_datasets`` fixture, which serves the
two departments' features straight from memory.

See Also:
    - backend/terrapack/services/layering.py
    - backend/conftest.py
"""

from __future__ import annotations

import dataclasses
import pathlib
import shutil
import threading
from typing import TYPE_CHECKING

import geopandas
import numpy as np
import pytest
import rasterio
import shapely.geometry

from terrapack.core import errors
from terrapack.db import models
from terrapack.services import layering, rasterize

if TYPE_CHECKING:
    from conftest import SourceDatasets
    from terrapack.core import config
    from terrapack.services import regions

box = shapely.geometry.box
line = shapely.geometry.LineString


def _frame(rows: list[dict]) -> geopandas.GeoDataFrame:
    return geopandas.GeoDataFrame(rows, geometry="geometry", crs=models.CRS)


def test_clip_to_aoi(aoi: models.AreaOfInterest) -> None:
    frame = _frame(
        [
            {"ID": "crossing", "geometry": box(645000, 6861000, 651000, 6862000)},
            {"ID": "road", "geometry": line([(640000, 6867500), (670000, 6867500)])},
            {"ID": "outside", "geometry": box(600000, 6800000, 601000, 6801000)},
        ]
    )
    clipped = layering.clip_to_aoi(frame, aoi)

    assert list(clipped["ID"]) == ["crossing", "road"]
    polygon, road = clipped.geometry
    assert polygon.geom_type == "MultiPolygon"
    assert polygon.bounds == (650000.0, 6861000.0, 651000.0, 6862000.0)
    assert road.geom_type == "MultiLineString"
    assert road.bounds == (650000.0, 6867500.0, 660000.0, 6867500.0)


def test_clip_drops_boundary_slivers(aoi: models.AreaOfInterest) -> None:
    # Touching the west edge only: intersection is a line, not a polygon.
    frame = _frame([{"ID": "edge", "geometry": box(640000, 6861000, 650000, 6862000)}])
    assert layering.clip_to_aoi(frame, aoi).empty


def test_merge_frames_drops_copies() -> None:
    shared = box(0, 0, 100, 100)
    west = _frame(
        [
            {"ID": "A", "NATURE": "x", "geometry": shared},
            {"ID": "B", "NATURE": "x", "geometry": box(200, 0, 300, 100)},
        ]
    )
    # Same feature, vertices listed from another start and off by < 1 mm.
    east = _frame(
        [
            {
                "ID": "A",
                "NATURE": "x",
                "geometry": shapely.geometry.Polygon(
                    [(100, 100.0004), (100, 0), (0, 0), (0, 100), (100, 100.0004)]
                ),
            },
            {"ID": "C", "NATURE": "x", "geometry": shared},
        ]
    )
    merged = layering.merge_frames([west, east], ["NATURE", "ID"], 0.01)
    assert list(merged["ID"]) == ["A", "B", "C"]


def test_merge_frames_empty() -> None:
    merged = layering.merge_frames([], ["ID"], 0.01)
    assert merged.empty
    assert "ID" in merged.columns


def test_build_layers(
    tmp_path: pathlib.Path,
    settings: config.Settings,
    aoi: models.AreaOfInterest,
    catalog: regions.RegionCatalog,
    source_datasets: SourceDatasets,
) -> None:
    layers = layering.LayeringEngine(settings).build_layers(
        aoi, source_datasets.sources(catalog), tmp_path / "project"
    )

    assert set(layers) == set(models.VECTOR_LAYERS) | {"landcover"}
    counts = {name: layers[name].feature_count for name in models.VECTOR_LAYERS}
    assert counts == {
        "vegetation": 3,
        "hydrology": 2,
        "roads": 2,
        "railways": 1,
        "buildings": 1,
        "parcels": 1,
    }
    assert layers["vegetation"].regions == ["77", "91"]
    assert layers["railways"].regions == ["91"]
    assert layers["parcels"].regions == ["77"]
    assert layers["landcover"].regions == ["77", "91"]
    # The shared parcel archive is read once.
    parcels = [p for p in source_datasets.extracted if "PARCELLES" in p]
    assert len(parcels) == 1

    for layer in layers.values():
        assert layer.extent == aoi.bounds
        layering.validate_layer(layer, aoi)

    vegetation = geopandas.read_file(layers["vegetation"].path, layer="vegetation")
    assert sorted(vegetation["ID"]) == ["V1", "V2", "V3"]
    assert set(vegetation[layering.REGION_COLUMN]) == {"77", "91"}

    roads = geopandas.read_file(layers["roads"].path, layer="roads")
    # Named ways are merged into the road sections.
    assert sorted(roads["ID"]) == ["N1", "R1"]

    with rasterio.open(layers["landcover"].path) as src:
        classes = src.read(1)
    assert classes.shape == (aoi.height_px, aoi.width_px)
    codes = rasterize.LANDCOVER_CLASSES
    # Row 700 is y = 6867995, inside both stands.
    assert classes[700, 250] == codes["deciduous"]
    assert classes[700, 650] == codes["coniferous"]
    # Lake at x 651000-652000, y 6872000-6873000.
    assert classes[250, 150] == codes["water"]
    # Shared NC stand at y 6861000-6862000.
    assert classes[1350, 500] == codes["undefined_vegetation"]
    # Parcel at the south-west corner.
    assert classes[1450, 50] == codes["agriculture"]
    assert classes[0, 999] == codes["other"]
    assert np.isin(classes, list(codes.values())).all()


def test_build_layers_requires_every_kind(
    tmp_path: pathlib.Path,
    settings: config.Settings,
    aoi: models.AreaOfInterest,
    catalog: regions.RegionCatalog,
    source_datasets: SourceDatasets,
) -> None:
    sources = source_datasets.sources(catalog)
    del sources[models.DatasetKind.PARCELS]
    with pytest.raises(errors.LayeringError, match="parcels"):
        layering.LayeringEngine(settings).build_layers(aoi, sources, tmp_path)


def test_build_layers_fails_when_cached_data_is_gone(
    tmp_path: pathlib.Path,
    settings: config.Settings,
    aoi: models.AreaOfInterest,
    catalog: regions.RegionCatalog,
    source_datasets: SourceDatasets,
) -> None:
    entry = source_datasets.entries[("91", models.DatasetKind.TOPOGRAPHY)]
    shutil.rmtree(entry.path)

    with pytest.raises(errors.LayeringError) as excinfo:
        layering.LayeringEngine(settings).build_layers(
            aoi, source_datasets.sources(catalog), tmp_path / "project"
        )
    assert excinfo.value.layer == "hydrology"
    assert excinfo.value.region == "91"
    assert not (tmp_path / "project" / "layers" / "landcover.tif").exists()


def test_build_layers_fails_when_dataset_lacks_layer_sources(
    tmp_path: pathlib.Path,
    settings: config.Settings,
    aoi: models.AreaOfInterest,
    catalog: regions.RegionCatalog,
    source_datasets: SourceDatasets,
) -> None:
    entry = source_datasets.entries[("77", models.DatasetKind.TOPOGRAPHY)]
    (pathlib.Path(entry.path) / "1_DONNEES" / "BATIMENT.shp").unlink()

    with pytest.raises(errors.LayeringError, match="BATIMENT") as excinfo:
        layering.LayeringEngine(settings).build_layers(
            aoi, source_datasets.sources(catalog), tmp_path / "project"
        )
    assert excinfo.value.layer == "buildings"
    assert excinfo.value.region == "77"


def test_cancelled_engine_stops_between_sources(
    tmp_path: pathlib.Path,
    settings: config.Settings,
    aoi: models.AreaOfInterest,
    catalog: regions.RegionCatalog,
    source_datasets: SourceDatasets,
) -> None:
    cancelled = threading.Event()
    engine = layering.LayeringEngine(settings, cancelled=cancelled)

    def extract_then_cancel(*args: object) -> geopandas.GeoDataFrame:
        frame = source_datasets.extract(*args)  # type: ignore[arg-type]
        cancelled.set()
        return frame

    engine.extract_source = extract_then_cancel  # type: ignore[method-assign]

    with pytest.raises(layering.LayeringCancelled):
        engine.build_layers(aoi, source_datasets.sources(catalog), tmp_path / "project")
    assert len(source_datasets.extracted) == 1
    assert not (tmp_path / "project" / "layers" / "vegetation.gpkg").exists()


def test_validate_layer_extent_mismatch(aoi: models.AreaOfInterest) -> None:
    layer = models.Layer(
        name="roads",
        kind="vector",
        path="/nonexistent.gpkg",
        extent=(0.0, 0.0, 5000.0, 5000.0),
    )
    with pytest.raises(errors.LayeringError, match="roads"):
        layering.validate_layer(layer, aoi)


def test_validate_layer_feature_outside(
    tmp_path: pathlib.Path,
    aoi: models.AreaOfInterest,
) -> None:
    path = tmp_path / "roads.gpkg"
    _frame(
        [
            {"region": "91", "geometry": line([(650000, 6867500), (680000, 6867500)])},
        ]
    ).to_file(path, layer="roads", driver="GPKG")
    layer = models.Layer(name="roads", kind="vector", path=str(path), extent=aoi.bounds)

    with pytest.raises(errors.LayeringError) as excinfo:
        layering.validate_layer(layer, aoi)
    assert excinfo.value.details["region"] == "91"


def test_validate_raster_resolution(
    tmp_path: pathlib.Path,
    settings: config.Settings,
    aoi: models.AreaOfInterest,
) -> None:
    path = tmp_path / "landcover.tif"
    rasterize.write_landcover(
        path, np.zeros((aoi.height_px, aoi.width_px), dtype=np.uint8), aoi
    )
    layer = models.Layer(
        name="landcover",
        kind="raster",
        path=str(path),
        extent=aoi.bounds,
        resolution=models.RESOLUTION,
    )
    layering.validate_layer(layer, aoi)
    with pytest.raises(errors.LayeringError, match="resolution"):
        layering.validate_layer(dataclasses.replace(layer, resolution=20.0), aoi)


def test_validate_layers_reports_missing(aoi: models.AreaOfInterest) -> None:
    with pytest.raises(errors.LayeringError, match="orthophoto"):
        layering.validate_layers({}, aoi)
