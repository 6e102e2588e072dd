"""Clipping and layering engine.

Builds the fixed set of thematic layers of a project from the cached
source datasets of every region under its area of interest:

1. Each source shapefile is converted with ``ogr2ogr`` to a GeoPackage in
   EPSG:2154, keeping only features whose envelope meets the area.
2. Features are clipped exactly to the area rectangle. Only the part
   with the source geometry's dimension is kept (a polygon cut along the
   edge never turns into a stray line) and coordinates are snapped to a
   millimetre grid, so clipped vertices fall exactly on the rectangle.
3. The regions' features are merged; copies of the same feature coming
   from two departmental datasets are dropped using a key made of the
   snapped geometry and its identifying attributes.
4. The land-cover raster is classified on the 10 m grid from the
   vegetation, hydrology and parcel polygons.

validate_layers() enforces the layer contract: every extent equals the
area, rasters are on the 10 m grid, vector features stay inside the area.
A violation raises LayeringError naming the layer (and region when known).
So does a cache entry whose data is gone or that holds none of a layer's
source shapefiles. Individual sources such as ZONE_D_ESTRAN or VOIE_NOMMEE
may be absent.

The engine runs on a worker thread that cannot be interrupted; it checks
its cancellation event between source files and layers and stops with
LayeringCancelled once the event is set.

Example:
    Build layers for a project on a worker thread:
        >>> engine = LayeringEngine(settings)
        >>> layers = engine.build_layers(aoi, sources, workdir)
        >>> sorted(layers)
        ['buildings', 'hydrology', 'landcover', 'parcels', ...]
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import pathlib
import threading
import uuid
from typing import TYPE_CHECKING

import geopandas
import numpy as np
import pandas
import rio_tiler.io as rio_tiler_io
import shapely
import shapely.geometry

from terrapack.core import errors
from terrapack.db import models
from terrapack.services import archives, rasterize
from terrapack.utils import gdal_helpers

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from shapely.geometry.base import BaseGeometry

    from terrapack.core import config
    from terrapack.core import progress as core_progress

    Sources = Mapping[
        models.DatasetKind, Sequence[tuple[models.Region, models.CacheEntry]]
    ]

logger = logging.getLogger(__name__)

CLIP_GRID = 0.001
EXTENT_TOLERANCE = 1e-6
SOURCE_COLUMN = "source"
REGION_COLUMN = "region"


@dataclasses.dataclass(frozen=True)
class VectorLayerSpec:
    """How one vector layer is assembled from the IGN source layers.

    Attributes:
        name: Layer name.
        kind: Dataset kind holding the sources.
        sources: Shapefile base names read from each archive.
        category_field: Attribute holding the feature category.
        keep_fields: Further attributes copied verbatim when present.
    """

    name: str
    kind: models.DatasetKind
    sources: tuple[str, ...]
    category_field: str
    keep_fields: tuple[str, ...] = ()

    @property
    def columns(self) -> list[str]:
        return [self.category_field, *self.keep_fields]


VECTOR_LAYER_SPECS: tuple[VectorLayerSpec, ...] = (
    VectorLayerSpec(
        "vegetation",
        models.DatasetKind.VEGETATION,
        ("FORMATION_VEGETALE",),
        "ESSENCE",
        ("ID", "TFV", "CODE_TFV"),
    ),
    VectorLayerSpec(
        "hydrology",
        models.DatasetKind.TOPOGRAPHY,
        (
            "COURS_D_EAU",
            "PLAN_D_EAU",
            "SURFACE_HYDROGRAPHIQUE",
            "RESERVOIR",
            "ZONE_D_ESTRAN",
        ),
        "NATURE",
        ("ID",),
    ),
    VectorLayerSpec(
        "roads",
        models.DatasetKind.TOPOGRAPHY,
        ("TRONCON_DE_ROUTE", "VOIE_NOMMEE"),
        "NATURE",
        ("ID", "IMPORTANCE", "LARGEUR"),
    ),
    VectorLayerSpec(
        "railways",
        models.DatasetKind.TOPOGRAPHY,
        ("TRONCON_DE_VOIE_FERREE",),
        "NATURE",
        ("ID",),
    ),
    VectorLayerSpec(
        "buildings",
        models.DatasetKind.TOPOGRAPHY,
        (
            "BATIMENT",
            "CONSTRUCTION_SURFACIQUE",
            "EQUIPEMENT_DE_TRANSPORT",
            "AERODROME",
            "TERRAIN_DE_SPORT",
        ),
        "NATURE",
        ("ID", "HAUTEUR"),
    ),
    VectorLayerSpec(
        "parcels",
        models.DatasetKind.PARCELS,
        ("PARCELLES_GRAPHIQUES",),
        "CODE_GROUP",
        ("ID_PARCEL", "CODE_CULTU"),
    ),
)

REQUIRED_KINDS = frozenset(spec.kind for spec in VECTOR_LAYER_SPECS)


def empty_frame(columns: Sequence[str]) -> geopandas.GeoDataFrame:
    """Return an empty frame with the layer's columns in EPSG:2154."""
    data = {name: pandas.Series([], dtype=object) for name in columns}
    return geopandas.GeoDataFrame(
        data, geometry=geopandas.GeoSeries([], crs=models.CRS), crs=models.CRS
    )


def _keep_dimension(geom: BaseGeometry, dimension: int) -> BaseGeometry | None:
    """Return the parts of a geometry having the given dimension, as Multi*."""
    if geom is None or geom.is_empty:
        return None
    parts = [
        part
        for part in shapely.get_parts(geom)
        if not part.is_empty and shapely.get_dimensions(part) == dimension
    ]
    flattened = []
    for part in parts:
        flattened.extend(shapely.get_parts(part))
    if not flattened:
        return None
    if dimension == 2:
        return shapely.geometry.MultiPolygon(flattened)
    if dimension == 1:
        return shapely.geometry.MultiLineString(flattened)
    return shapely.geometry.MultiPoint(flattened)


def clip_to_aoi(
    frame: geopandas.GeoDataFrame,
    aoi: models.AreaOfInterest,
) -> geopandas.GeoDataFrame:
    """Clip features exactly to the area rectangle.

    Features outside the area are dropped; features crossing its edge are
    cut. Attributes are kept verbatim. Each result keeps the dimension of
    its source geometry and is promoted to its Multi* type.

    Args:
        frame: Features in EPSG:2154.
        aoi: Area of interest.

    Returns:
        New frame holding only geometries inside the rectangle.
    """
    if frame.empty:
        return frame.copy()
    rectangle = aoi.to_polygon()
    frame = frame[frame.geometry.notna() & ~frame.geometry.is_empty]
    frame = frame[frame.geometry.intersects(rectangle)]
    if frame.empty:
        return frame.copy()

    originals = np.asarray(frame.geometry.values, dtype=object)
    dimensions = shapely.get_dimensions(originals)
    clipped = shapely.intersection(shapely.make_valid(originals), rectangle)
    geoms = []
    for geom, dim in zip(clipped, dimensions, strict=True):
        part = _keep_dimension(geom, int(dim))
        if part is not None:
            part = _keep_dimension(
                shapely.set_precision(part, CLIP_GRID), int(dim)
            )
        geoms.append(part)
    result = frame.copy()
    result[frame.geometry.name] = geopandas.GeoSeries(
        geoms, index=frame.index, crs=models.CRS
    )
    return result[result.geometry.notna()]


def feature_key(
    geom: BaseGeometry,
    values: Sequence[object],
    precision: float,
) -> str:
    """Stable key identifying the same feature across source datasets.

    Args:
        geom: Feature geometry.
        values: Attribute values that identify the feature.
        precision: Grid size the geometry is snapped to before hashing.

    Returns:
        Hex digest of the normalized geometry and the attribute values.
    """
    digest = hashlib.sha1(usedforsecurity=False)
    snapped = shapely.normalize(shapely.set_precision(geom, precision))
    digest.update(shapely.to_wkb(snapped, hex=False))
    for value in values:
        digest.update(b"\x1f")
        if value is not None and not (isinstance(value, float) and np.isnan(value)):
            digest.update(str(value).encode("utf-8"))
    return digest.hexdigest()


def merge_frames(
    frames: Sequence[geopandas.GeoDataFrame],
    key_fields: Sequence[str],
    precision: float,
) -> geopandas.GeoDataFrame:
    """Concatenate frames, dropping features seen in an earlier frame.

    Args:
        frames: Clipped frames, in region order.
        key_fields: Attributes included in the deduplication key when a
            frame has them.
        precision: Geometry snapping grid of the key.

    Returns:
        Merged frame; the first occurrence of each feature wins.
    """
    frames = [f for f in frames if not f.empty]
    if not frames:
        return empty_frame(list(key_fields))
    merged = pandas.concat(frames, ignore_index=True)
    merged = geopandas.GeoDataFrame(merged, geometry="geometry", crs=models.CRS)
    fields = [name for name in key_fields if name in merged.columns]
    keys = [
        feature_key(geom, values, precision)
        for geom, values in zip(
            merged.geometry,
            merged[fields].itertuples(index=False, name=None),
            strict=True,
        )
    ]
    duplicated = pandas.Series(keys, index=merged.index).duplicated()
    if duplicated.any():
        logger.debug("Dropped %d duplicate features", int(duplicated.sum()))
    return merged[~duplicated.to_numpy()].reset_index(drop=True)


class LayeringCancelled(Exception):
    """The build owning a layering run was cancelled."""


class LayeringEngine:
    """Turns cached source datasets into a project's layers.

    Args:
        settings: Settings (GDAL location, layering policy).
        reporter: Optional progress sink.
        cancelled: Event set by the owner to stop the run early.
    """

    def __init__(
        self,
        settings: config.Settings,
        reporter: core_progress.ProgressReporter | None = None,
        cancelled: threading.Event | None = None,
    ) -> None:
        self.settings = settings
        self.reporter = reporter
        self.cancelled = cancelled or threading.Event()

    def _check_cancelled(self) -> None:
        if self.cancelled.is_set():
            raise LayeringCancelled("layering cancelled")

    def _emit(self, label: str, done: int, total: int) -> None:
        if self.reporter is not None:
            self.reporter.emit(
                "layering",
                label,
                "done" if done == total else "running",
                done=done,
                total=total,
            )

    def extract_source(
        self,
        shapefile: pathlib.Path,
        layer_name: str,
        aoi: models.AreaOfInterest,
        workdir: pathlib.Path,
    ) -> geopandas.GeoDataFrame:
        """Convert one shapefile to EPSG:2154 and read the features near the area.

        Args:
            shapefile: Source shapefile.
            layer_name: Name given to the converted layer.
            aoi: Area of interest used as spatial filter.
            workdir: Directory receiving the converted GeoPackage.

        Returns:
            Features whose envelope meets the area.

        Raises:
            CommandError: if ogr2ogr fails.
        """
        output = workdir / f"{layer_name}_{uuid.uuid4().hex[:12]}.gpkg"
        xmin, ymin, xmax, ymax = aoi.bounds
        gdal_helpers.run_command(
            [
                "ogr2ogr",
                "-f",
                "GPKG",
                "-t_srs",
                models.CRS,
                "-spat",
                str(xmin),
                str(ymin),
                str(xmax),
                str(ymax),
                "-spat_srs",
                models.CRS,
                "-nlt",
                "PROMOTE_TO_MULTI",
                "-dim",
                "XY",
                "-nln",
                layer_name,
                "--config",
                "OGR_GEOMETRY_ACCEPT_UNCLOSED_RING",
                "NO",
                "--config",
                "OGR_GEOMETRY_CORRECT_UNCLOSED_RINGS",
                "YES",
                output,
                shapefile,
            ],
            bin_dir=self.settings.gdal_bin_dir,
        )
        return geopandas.read_file(output, layer=layer_name)

    def collect_vector_layer(
        self,
        spec: VectorLayerSpec,
        aoi: models.AreaOfInterest,
        sources: Sources,
        workdir: pathlib.Path,
    ) -> tuple[geopandas.GeoDataFrame, list[str]]:
        """Gather, clip and merge one vector layer over every region.

        Returns:
            The merged frame and the codes of contributing regions.

        Raises:
            LayeringError: if an entry's data directory is gone or holds
                none of the layer's source shapefiles.
            LayeringCancelled: if the cancellation event is set.
        """
        columns = [*spec.columns, SOURCE_COLUMN, REGION_COLUMN]
        frames = []
        contributors: list[str] = []
        seen_entries: set[str] = set()
        for region, entry in sources.get(spec.kind, ()):
            if entry.path in seen_entries:
                continue
            seen_entries.add(entry.path)
            root = pathlib.Path(entry.path)
            dataset = f"{entry.kind.value}/{entry.region_code}"
            if not root.is_dir():
                raise errors.LayeringError(
                    spec.name,
                    f"source data {dataset} is no longer cached",
                    region=region.code,
                )
            found = 0
            for source_layer in spec.sources:
                shapefiles = archives.find_files(root, source_layer)
                if not shapefiles:
                    logger.debug("No %s shapefile in %s", source_layer, dataset)
                    continue
                found += 1
                for shapefile in shapefiles:
                    self._check_cancelled()
                    frame = self.extract_source(
                        shapefile, source_layer, aoi, workdir
                    )
                    if frame.crs is None:
                        frame = frame.set_crs(models.CRS)
                    frame = clip_to_aoi(frame.to_crs(models.CRS), aoi)
                    if frame.empty:
                        continue
                    for name in spec.columns:
                        if name not in frame.columns:
                            frame[name] = None
                    frame[SOURCE_COLUMN] = source_layer
                    frame[REGION_COLUMN] = region.code
                    frames.append(frame[[*columns, "geometry"]])
                    if region.code not in contributors:
                        contributors.append(region.code)
            if not found:
                raise errors.LayeringError(
                    spec.name,
                    f"{dataset} holds none of {', '.join(spec.sources)}",
                    region=region.code,
                )

        key_fields = [spec.category_field, *self.settings.dedup_fields]
        merged = merge_frames(frames, key_fields, self.settings.dedup_precision)
        for name in columns:
            if name not in merged.columns:
                merged[name] = None
        return merged[[*columns, "geometry"]], contributors

    def write_vector_layer(
        self,
        spec: VectorLayerSpec,
        frame: geopandas.GeoDataFrame,
        aoi: models.AreaOfInterest,
        path: pathlib.Path,
        regions: list[str],
    ) -> models.Layer:
        """Persist one vector layer as a GeoPackage and describe it."""
        if path.exists():
            path.unlink()
        frame.to_file(path, layer=spec.name, driver="GPKG")
        return models.Layer(
            name=spec.name,
            kind="vector",
            path=str(path),
            extent=aoi.bounds,
            feature_count=len(frame),
            category_field=spec.category_field,
            regions=regions,
        )

    def build_layers(
        self,
        aoi: models.AreaOfInterest,
        sources: Sources,
        workdir: pathlib.Path,
    ) -> dict[str, models.Layer]:
        """Build every vector layer and the land-cover raster.

        Blocking; meant to run on the CPU pool.

        Args:
            aoi: Area of interest.
            sources: Cache entries per dataset kind, with their region, in
                region order. Every kind used by a layer must be present.
            workdir: Project directory receiving ``layers/``.

        Returns:
            Layers by name (the orthophoto excepted).

        Raises:
            LayeringError: if a required dataset kind has no source, a
                source dataset lacks the layer's shapefiles or a layer
                breaks the extent contract.
            LayeringCancelled: if the cancellation event is set.
        """
        for kind in REQUIRED_KINDS:
            if not sources.get(kind):
                raise errors.LayeringError(
                    kind.value, "no source dataset available"
                )

        layers_dir = workdir / "layers"
        scratch = workdir / "scratch"
        layers_dir.mkdir(parents=True, exist_ok=True)
        scratch.mkdir(parents=True, exist_ok=True)

        total = len(VECTOR_LAYER_SPECS) + 1
        frames: dict[str, geopandas.GeoDataFrame] = {}
        layers: dict[str, models.Layer] = {}
        for done, spec in enumerate(VECTOR_LAYER_SPECS):
            self._check_cancelled()
            self._emit(spec.name, done, total)
            frame, regions = self.collect_vector_layer(spec, aoi, sources, scratch)
            frames[spec.name] = frame
            layers[spec.name] = self.write_vector_layer(
                spec, frame, aoi, layers_dir / f"{spec.name}.gpkg", regions
            )
            logger.info("Layer %s: %d features", spec.name, len(frame))

        self._check_cancelled()
        self._emit("landcover", total - 1, total)
        landcover =rasterize.rasterize_landcover(
            aoi,
            rasterize.shapes_by_class(frames),
            self.settings.category_priority,
            self.settings.raster_supersample,
        )
        landcover_path = layers_dir / "landcover.tif"
        rasterize.write_landcover(landcover_path, landcover, aoi)
        contributors: list[str] = []
        for name in ("vegetation", "hydrology", "parcels"):
            for code in layers[name].regions:
                if code not in contributors:
                    contributors.append(code)
        layers["landcover"] = models.Layer(
            name="landcover",
            kind="raster",
            path=str(landcover_path),
            extent=aoi.bounds,
            resolution=models.RESOLUTION,
            regions=contributors,
        )
        self._emit("landcover", total, total)
        return layers


def raster_footprint(path: pathlib.Path) -> tuple[models.BBox, float, float]:
    """Read a raster's bounds and pixel size through rio-tiler.

    Returns:
        (bounds, x resolution, y resolution) in the raster's CRS.
    """
    with rio_tiler_io.Reader(input=str(path)) as src:
        bounds = tuple(float(v) for v in src.bounds)
        transform = src.transform
    return bounds, abs(transform.a), abs(transform.e)  # type: ignore[return-value]


def _same_bounds(a: Sequence[float], b: Sequence[float]) -> bool:
    return all(abs(x - y) <= EXTENT_TOLERANCE for x, y in zip(a, b, strict=True))


def validate_layer(layer: models.Layer, aoi: models.AreaOfInterest) -> None:
    """Check one layer against the project's extent and resolution.

    Raises:
        LayeringError: naming the layer, and the region of the offending
            feature for vector layers.
    """
    if not _same_bounds(layer.extent, aoi.bounds):
        raise errors.LayeringError(
            layer.name, f"extent {layer.extent} differs from {aoi.bounds}"
        )
    path = pathlib.Path(layer.path)
    if layer.kind == "raster":
        if layer.resolution != models.RESOLUTION:
            raise errors.LayeringError(
                layer.name, f"resolution {layer.resolution} is not 10 m"
            )
        bounds, xres, yres = raster_footprint(path)
        if not _same_bounds(bounds, aoi.bounds):
            raise errors.LayeringError(
                layer.name, f"raster covers {bounds}, expected {aoi.bounds}"
            )
        if not (
            abs(xres - models.RESOLUTION) <= EXTENT_TOLERANCE
            and abs(yres - models.RESOLUTION) <= EXTENT_TOLERANCE
        ):
            raise errors.LayeringError(
                layer.name, f"raster pixel size is {xres}x{yres} m"
            )
        return

    frame = geopandas.read_file(path, layer=layer.name)
    if frame.empty:
        return
    allowed = aoi.to_polygon().buffer(EXTENT_TOLERANCE, join_style="mitre")
    outside = ~frame.geometry.within(allowed)
    if outside.any():
        offending = frame[outside.to_numpy()].iloc[0]
        region = offending.get(REGION_COLUMN)
        raise errors.LayeringError(
            layer.name,
            f"{int(outside.sum())} features extend beyond the area",
            region=str(region) if region is not None else None,
        )


def validate_layers(
    layers: Mapping[str, models.Layer],
    aoi: models.AreaOfInterest,
) -> None:
    """Check that a layer set is complete and consistent.

    Raises:
        LayeringError: if a required layer is missing or inconsistent.
    """
    missing = sorted(models.REQUIRED_LAYERS - set(layers))
    if missing:
        raise errors.LayeringError(", ".join(missing), "layer is missing")
    for name in sorted(layers):
        validate_layer(layers[name], aoi)
