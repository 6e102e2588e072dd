"""Region resolution: which departments an area of interest touches.

The reference catalog is a GeoJSON FeatureCollection of French departments
whose geometries are stored in Lambert-93 (EPSG:2154), the same system as
every area of interest, so no reprojection happens here. Each feature
carries a ``code`` and a ``nom`` property.

Resolution is a pure function of the area of interest and the catalog:
regions are returned in catalog order, so acquisition order is the same on
every run.

Example:
    Resolve the departments under an area of interest:
        >>> catalog = RegionCatalog.load(pathlib.Path("regions.geojson"))
        >>> aoi = models.AreaOfInterest(650000, 6860000, 660000, 6875000)
        >>> [r.code for r in resolve_regions(aoi, catalog)]
        ['75', '92']
"""

from __future__ import annotations

import functools
import json
import logging
import pathlib
from typing import TYPE_CHECKING, Any

import shapely.geometry
from shapely import validation

from terrapack.core import errors
from terrapack.db import models

if TYPE_CHECKING:
    from collections.abc import Iterator

    from terrapack.core import config

logger = logging.getLogger(__name__)

# Agricultural parcels (RPG) are published per former region. Departments
# are listed without leading zeros.
PARCEL_REGIONS: dict[str, tuple[str, ...]] = {
    "84": ("1", "3", "7", "15", "26", "38", "42", "43", "63", "69", "73", "74"),
    "27": ("21", "25", "39", "58", "70", "71", "89", "90"),
    "53": ("22", "29", "35", "56"),
    "24": ("18", "28", "36", "37", "41", "45"),
    "94": ("2A", "2B"),
    "44": ("8", "10", "51", "52", "54", "55", "57", "67", "68", "88"),
    "32": ("2", "59", "60", "62", "80"),
    "11": ("75", "77", "78", "91", "92", "93", "94", "95"),
    "28": ("14", "27", "50", "61", "76"),
    "75": (
        "16", "17", "19", "23", "24", "33", "40", "47", "64", "79", "86", "87",
    ),
    "76": (
        "9", "11", "12", "30", "31", "32", "34", "46", "48", "65", "66", "81",
        "82",
    ),
    "52": ("44", "49", "53", "72", "85"),
    "93": ("4", "5", "6", "13", "83", "84"),
    "01": ("971",),
    "02": ("972",),
    "03": ("973",),
    "04": ("974",),
    "06": ("976",),
}

_DEPARTMENT_TO_PARCEL_REGION = {
    department: region
    for region, departments in PARCEL_REGIONS.items()
    for department in departments
}


def parcel_region_code(department_code: str) -> str | None:
    """Return the RPG region code publishing a department's parcels.

    Args:
        department_code: Department code, with or without leading zero.

    Returns:
        Region code ("11", "84", ...) or None for unknown departments.
    """
    return _DEPARTMENT_TO_PARCEL_REGION.get(department_code.lstrip("0"))


class RegionCatalog:
    """Ordered, read-only collection of reference regions."""

    def __init__(self, regions: list[models.Region]) -> None:
        self._regions = list(regions)
        self._by_code = {region.code: region for region in self._regions}

    def __iter__(self) -> Iterator[models.Region]:
        return iter(self._regions)

    def __len__(self) -> int:
        return len(self._regions)

    def get(self, code: str) -> models.Region | None:
        return self._by_code.get(code)

    @classmethod
    def from_geojson(cls, data: dict[str, Any]) -> RegionCatalog:
        """Build a catalog from a decoded GeoJSON FeatureCollection.

        Features without a ``code`` property or a geometry are skipped;
        ``nom`` defaults to the code. Invalid geometries are repaired.

        Raises:
            ValueError: if the document is not a FeatureCollection.
        """
        if data.get("type") != "FeatureCollection":
            raise ValueError("Region catalog is not a GeoJSON FeatureCollection")

        regions = []
        for feature in data.get("features") or []:
            properties = feature.get("properties") or {}
            code = properties.get("code")
            geometry = feature.get("geometry")
            if not code or not geometry:
                continue
            try:
                shape = shapely.geometry.shape(geometry)
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("Skipping region %s: %s", code, exc)
                continue
            if not shape.is_valid:
                shape = validation.make_valid(shape)
            code = str(code)
            regions.append(
                models.Region(
                    code=code,
                    name=str(properties.get("nom") or code),
                    geometry=shape,
                    parcel_code=parcel_region_code(code),
                )
            )
        return cls(regions)

    @classmethod
    def load(cls, path: pathlib.Path) -> RegionCatalog:
        """Read a catalog from a GeoJSON file.

        Raises:
            FileNotFoundError: if the file does not exist.
        """
        with path.open(encoding="utf-8") as fh:
            catalog = cls.from_geojson(json.load(fh))
        logger.info("Loaded %d regions from %s", len(catalog), path)
        return catalog

    def neighbors(self, code: str) -> list[models.Region]:
        """Return the regions sharing a boundary with a region.

        Args:
            code: Code of the region.

        Returns:
            Touching or intersecting regions, in catalog order.

        Raises:
            KeyError: if the code is not in the catalog.
        """
        region = self._by_code[code]
        return [
            other
            for other in self._regions
            if other.code != code and other.geometry.intersects(region.geometry)
        ]


def resolve_regions(
    aoi: models.AreaOfInterest,
    catalog: RegionCatalog,
) -> list[models.Region]:
    """Return the regions intersecting an area of interest.

    Args:
        aoi: Area of interest in EPSG:2154.
        catalog: Reference catalog, geometries in EPSG:2154.

    Returns:
        Non-empty list of regions in catalog order.

    Raises:
        CoverageError: if no region intersects the area.
    """
    rectangle = aoi.to_polygon()
    regions = [r for r in catalog if r.geometry.intersects(rectangle)]
    if not regions:
        raise errors.CoverageError(
            "Area of interest is outside the supported territory",
            bounds=aoi.bounds,
        )
    return regions


@functools.lru_cache(maxsize=4)
def _load_catalog(path: str) -> RegionCatalog:
    return RegionCatalog.load(pathlib.Path(path))


def get_catalog(settings: config.Settings) -> RegionCatalog:
    """Return the process-wide catalog configured by ``regions_path``."""
    return _load_catalog(str(settings.regions_path.resolve()))
