"""Land-cover classification and vegetation rendering on the 10 m grid.

Two rasters are derived from the clipped vector layers:

``landcover``
    A single-band class raster. Every 10 m pixel takes the class covering
    the largest share of its footprint, measured on a supersampled grid
    (``raster_supersample`` sub-pixels per side). Ties go to the class
    ranked first in ``category_priority``. Area covered by no polygon
    counts as ``other``.

vegetation rendering
    The RGBA image handed to the simulator: the land-cover palette with
    roads, railways and buildings burned in black. Lines are burned with
    all-touched semantics so that no road is broken between pixels.

Example:
    Classify an area and render it:
        >>> classes = rasterize_landcover(aoi, shapes_by_class(frames), order)
        >>> rgba = render_vegetation(classes, aoi, burn_frames)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
import rasterio
import rasterio.features
import shapely
import shapely.geometry
from rasterio import transform as rio_transform

from terrapack.db import models

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable, Mapping, Sequence

    import geopandas
    from shapely.geometry.base import BaseGeometry

logger = logging.getLogger(__name__)

LANDCOVER_CLASSES: dict[str, int] = {
    "other": 0,
    "water": 1,
    "deciduous": 2,
    "coniferous": 3,
    "undefined_vegetation": 4,
    "agriculture": 5,
}

DECIDUOUS_ESSENCES = frozenset(
    {
        "Feuillus",
        "Châtaignier",
        "Chênes sempervirents",
        "Chênes décidus",
        "Hêtre",
    }
)
UNDEFINED_ESSENCES = frozenset({"NC", "NR"})

# Colours expected by the simulator; non-fuel surfaces are black.
PALETTE: dict[str, tuple[int, int, int]] = {
    "other": (0, 0, 0),
    "water": (0, 0, 0),
    "deciduous": (80, 200, 120),
    "coniferous": (50, 200, 80),
    "undefined_vegetation": (25, 50, 60),
    "agriculture": (25, 50, 60),
}
BURN_COLOUR = (0, 0, 0)

# Output rows rasterized at once; bounds the supersampled buffers.
_BAND_ROWS = 500


def vegetation_class(essence: object) -> str:
    """Map a BD Foret ``ESSENCE`` value to a land-cover class."""
    if essence is None or (isinstance(essence, float) and np.isnan(essence)):
        return "undefined_vegetation"
    value = str(essence).strip()
    if value in DECIDUOUS_ESSENCES:
        return "deciduous"
    if value in UNDEFINED_ESSENCES:
        return "undefined_vegetation"
    return "coniferous"


def _polygons(geoms: Iterable[BaseGeometry]) -> list[BaseGeometry]:
    return [
        g
        for g in geoms
        if g is not None and not g.is_empty and shapely.get_dimensions(g) == 2
    ]


def shapes_by_class(
    layers: Mapping[str, geopandas.GeoDataFrame],
) -> dict[str, list[BaseGeometry]]:
    """Group the polygons of the thematic layers by land-cover class.

    Args:
        layers: Clipped vector layers by name; uses "vegetation"
            (``ESSENCE``), "hydrology" and "parcels".

    Returns:
        Polygons for each class except "other".
    """
    grouped: dict[str, list[BaseGeometry]] = {
        name: [] for name in LANDCOVER_CLASSES if name != "other"
    }
    vegetation = layers.get("vegetation")
    if vegetation is not None and len(vegetation):
        essences = (
            vegetation["ESSENCE"]
            if "ESSENCE" in vegetation.columns
            else [None] * len(vegetation)
        )
        for geom, essence in zip(vegetation.geometry, essences, strict=True):
            grouped[vegetation_class(essence)].extend(_polygons([geom]))
    hydrology = layers.get("hydrology")
    if hydrology is not None:
        grouped["water"].extend(_polygons(hydrology.geometry))
    parcels = layers.get("parcels")
    if parcels is not None:
        grouped["agriculture"].extend(_polygons(parcels.geometry))
    return grouped


def rasterize_landcover(
    aoi: models.AreaOfInterest,
    shapes: Mapping[str, Sequence[BaseGeometry]],
    priority: Sequence[str],
    supersample: int = 4,
) -> np.ndarray:
    """Classify every 10 m pixel of an area by majority area.

    Args:
        aoi: Area of interest defining the grid.
        shapes: Polygons per land-cover class ("other" is implicit).
        priority: Every class, strongest first; breaks equal coverage.
        supersample: Sub-pixels per pixel side used to measure coverage.

    Returns:
        ``uint8`` array of shape (height_px, width_px) holding
        LANDCOVER_CLASSES codes.

    Raises:
        ValueError: if priority does not rank every class exactly once.
    """
    if sorted(priority) != sorted(LANDCOVER_CLASSES):
        raise ValueError("priority must rank every land-cover class once")

    height, width = aoi.height_px, aoi.width_px
    step = models.RESOLUTION / supersample
    ranked = list(priority)
    codes = np.array([LANDCOVER_CLASSES[name] for name in ranked], np.uint8)
    other = ranked.index("other")
    result = np.zeros((height, width), dtype=np.uint8)

    for row0 in range(0, height, _BAND_ROWS):
        rows = min(_BAND_ROWS, height - row0)
        top = aoi.ymax - row0 * models.RESOLUTION
        band = shapely.geometry.box(
            aoi.xmin, top - rows * models.RESOLUTION, aoi.xmax, top
        )
        fine_shape = (rows * supersample, width * supersample)
        fine_transform = rio_transform.from_origin(aoi.xmin, top, step, step)

        counts = np.zeros((len(ranked), rows, width), dtype=np.uint32)
        covered = np.zeros(fine_shape, dtype=bool)
        for index, name in enumerate(ranked):
            if name == "other":
                continue
            geoms = [g for g in shapes.get(name, ()) if g.intersects(band)]
            if not geoms:
                continue
            fine = rasterio.features.rasterize(
                ((g, 1) for g in geoms),
                out_shape=fine_shape,
                transform=fine_transform,
                fill=0,
                dtype="uint8",
            ).astype(bool)
            covered |= fine
            counts[index] = _block_sum(fine, supersample)
        counts[other] = _block_sum(~covered, supersample)

        # argmax keeps the first maximum, i.e. the higher-priority class.
        result[row0 : row0 + rows] = codes[counts.argmax(axis=0)]

    return result


def _block_sum(mask: np.ndarray, factor: int) -> np.ndarray:
    rows, cols = mask.shape[0] // factor, mask.shape[1] // factor
    return (
        mask.reshape(rows, factor, cols, factor).sum(axis=(1, 3), dtype=np.uint32)
    )


def render_vegetation(
    landcover: np.ndarray,
    aoi: models.AreaOfInterest,
    burn_polygons: Iterable[BaseGeometry] = (),
    burn_lines: Iterable[BaseGeometry] = (),
) -> np.ndarray:
    """Render the simulator's vegetation image.

    Args:
        landcover: Class raster from rasterize_landcover().
        aoi: Area of interest of the raster.
        burn_polygons: Building footprints burned in black.
        burn_lines: Roads and railways burned in black (all touched).

    Returns:
        ``uint8`` array of shape (4, height_px, width_px), RGBA.
    """
    lut = np.zeros((256, 3), dtype=np.uint8)
    for name, code in LANDCOVER_CLASSES.items():
        lut[code] = PALETTE[name]
    rgb = lut[landcover].transpose(2, 0, 1).copy()

    shape = landcover.shape
    polygons = [g for g in burn_polygons if g is not None and not g.is_empty]
    lines = [g for g in burn_lines if g is not None and not g.is_empty]
    burn = np.zeros(shape, dtype=bool)
    if polygons:
        burn |= rasterio.features.rasterize(
            ((g, 1) for g in polygons),
            out_shape=shape,
            transform=aoi.transform,
            fill=0,
            dtype="uint8",
        ).astype(bool)
    if lines:
        burn |= rasterio.features.rasterize(
            ((g, 1) for g in lines),
            out_shape=shape,
            transform=aoi.transform,
            fill=0,
            all_touched=True,
            dtype="uint8",
        ).astype(bool)
    rgb[:, burn] = np.array(BURN_COLOUR, dtype=np.uint8)[:, None]

    alpha = np.full((1, *shape), 255, dtype=np.uint8)
    return np.concatenate([rgb, alpha])


def write_landcover(
    path: pathlib.Path,
    landcover: np.ndarray,
    aoi: models.AreaOfInterest,
) -> None:
    """Write the class raster as a single-band GeoTIFF with a colour map."""
    profile = {
        "driver": "GTiff",
        "height": aoi.height_px,
        "width": aoi.width_px,
        "count": 1,
        "dtype": "uint8",
        "crs": models.CRS,
        "transform": aoi.transform,
        "compress": "deflate",
        "tiled": True,
        "blockxsize": 256,
        "blockysize": 256,
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(landcover, 1)
        dst.write_colormap(
            1,
            {
                code: (*PALETTE[name], 255)
                for name, code in LANDCOVER_CLASSES.items()
            },
        )
        dst.update_tags(
            1, **{f"class_{code}": name for name, code in LANDCOVER_CLASSES.items()}
        )


def write_rgba(
    path: pathlib.Path,
    image: np.ndarray,
    aoi: models.AreaOfInterest,
) -> None:
    """Write an RGBA rendering as a 4-band GeoTIFF on the project grid."""
    profile = {
        "driver": "GTiff",
        "height": aoi.height_px,
        "width": aoi.width_px,
        "count": 4,
        "dtype": "uint8",
        "crs": models.CRS,
        "transform": aoi.transform,
        "compress": "deflate",
        "photometric": "RGB",
        "alpha": "YES",
        "tiled": True,
        "blockxsize": 256,
        "blockysize": 256,
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(image)
