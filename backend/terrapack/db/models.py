"""Data models of the acquisition, layering and export pipeline.

This module defines the core data structures shared by every stage:
the area of interest and its tile grid, reference regions, dataset kinds
and cache entries, thematic layers, projects and export bundles. All
coordinates are Lambert-93 (EPSG:2154) metres; every raster is aligned on
a 10 m grid whose origin is the north-west corner of the area of interest.

Example:
    Describe a 10 km x 15 km area and its tile grid:
        >>> from terrapack.db.models import AreaOfInterest
        >>> aoi = AreaOfInterest(650000, 6860000, 660000, 6875000)
        >>> aoi.width_px, aoi.height_px
        (1000, 1500)
        >>> aoi.grid_shape
        (3, 2)
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import uuid
from typing import TYPE_CHECKING, Any, Literal

import shapely.geometry
from rasterio import transform as rio_transform

from terrapack.core import errors

if TYPE_CHECKING:
    import affine
    from shapely.geometry.base import BaseGeometry

CRS = "EPSG:2154"
RESOLUTION = 10.0
TILE_SIZE = 500

BBox = tuple[float, float, float, float]
LayerType = Literal["vector", "raster"]
ProjectStatus = Literal["building", "ready"]
TileKind = Literal["ortho", "vegetation"]

TILE_KINDS: tuple[TileKind, ...] = ("ortho", "vegetation")

VECTOR_LAYERS = (
    "vegetation",
    "hydrology",
    "roads",
    "railways",
    "buildings",
    "parcels",
)
RASTER_LAYERS = ("landcover", "orthophoto")
REQUIRED_LAYERS = frozenset(VECTOR_LAYERS + RASTER_LAYERS)


@dataclasses.dataclass(frozen=True)
class AreaOfInterest:
    """Rectangle in EPSG:2154 covered by a project.

    Width and height, in 10 m pixels, must be positive multiples of the
    500 px tile size and every corner must fall on the 10 m grid, so that
    the area splits into whole tiles without padding.

    Attributes:
        xmin: West edge in metres.
        ymin: South edge in metres.
        xmax: East edge in metres.
        ymax: North edge in metres.

    Raises:
        AreaOfInterestError: if the rectangle is empty, off-grid or not a
            whole number of tiles.
    """

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    def __post_init__(self) -> None:
        for name in ("xmin", "ymin", "xmax", "ymax"):
            value = float(getattr(self, name))
            if value % RESOLUTION:
                raise errors.AreaOfInterestError(
                    f"{name}={value} is not on the {RESOLUTION:g} m grid",
                    bounds=self.bounds,
                )
            object.__setattr__(self, name, value)
        width = (self.xmax - self.xmin) / RESOLUTION
        height = (self.ymax - self.ymin) / RESOLUTION
        if width <= 0 or height <= 0:
            raise errors.AreaOfInterestError(
                "Area of interest must have a positive width and height",
                bounds=self.bounds,
            )
        if width % TILE_SIZE or height % TILE_SIZE:
            raise errors.AreaOfInterestError(
                f"Area of interest is {width:g}x{height:g} px; both sides "
                f"must be multiples of {TILE_SIZE} px",
                bounds=self.bounds,
            )

    @classmethod
    def from_bounds(cls, bounds: BBox | list[float]) -> AreaOfInterest:
        xmin, ymin, xmax, ymax = bounds
        return cls(xmin, ymin, xmax, ymax)

    @property
    def bounds(self) -> BBox:
        return (self.xmin, self.ymin, self.xmax, self.ymax)

    @property
    def width_px(self) -> int:
        return round((self.xmax - self.xmin) / RESOLUTION)

    @property
    def height_px(self) -> int:
        return round((self.ymax - self.ymin) / RESOLUTION)

    @property
    def grid_shape(self) -> tuple[int, int]:
        """Return the tile grid as (rows, cols)."""
        return (self.height_px // TILE_SIZE, self.width_px // TILE_SIZE)

    @property
    def transform(self) -> affine.Affine:
        """Return the north-up affine transform of the 10 m grid."""
        return rio_transform.from_origin(
            self.xmin, self.ymax, RESOLUTION, RESOLUTION
        )

    def to_polygon(self) -> BaseGeometry:
        return shapely.geometry.box(*self.bounds)

    def tiles(self, kind: TileKind) -> list[Tile]:
        """List the tiles of one rendering in row-major order from the NW.

        Args:
            kind: Rendering the tiles belong to.

        Returns:
            Tiles ordered row by row, north to south, west to east.
        """
        rows, cols = self.grid_shape
        size = TILE_SIZE * RESOLUTION
        return [
            Tile(
                kind=kind,
                row=row,
                col=col,
                bounds=(
                    self.xmin + col * size,
                    self.ymax - (row + 1) * size,
                    self.xmin + (col + 1) * size,
                    self.ymax - row * size,
                ),
            )
            for row in range(rows)
            for col in range(cols)
        ]


@dataclasses.dataclass(frozen=True)
class Tile:
    """One 500x500 px cell of the export grid.

    Attributes:
        kind: Rendering ("ortho" or "vegetation").
        row: Row offset, 0 being the northernmost row.
        col: Column offset, 0 being the westernmost column.
        bounds: Cell rectangle in EPSG:2154.
    """

    kind: TileKind
    row: int
    col: int
    bounds: BBox

    @property
    def archive_name(self) -> str:
        return f"tiles/{self.kind}/{self.row:03d}_{self.col:03d}.jpg"


@dataclasses.dataclass(frozen=True)
class Region:
    """Administrative department used to partition the source datasets.

    Attributes:
        code: Department code ("75", "2A", "971", ...).
        name: Department name.
        geometry: Boundary in EPSG:2154.
        parcel_code: Code of the region publishing the RPG archive that
            covers this department.
    """

    code: str
    name: str
    geometry: BaseGeometry = dataclasses.field(repr=False, compare=False)
    parcel_code: str | None = None


class DatasetKind(str, enum.Enum):
    """Families of source survey data fetched per region."""

    TOPOGRAPHY = "topography"
    VEGETATION = "vegetation"
    PARCELS = "parcels"

    def source_code(self, region: Region) -> str:
        """Return the code partitioning this kind's remote archives.

        Topography and vegetation are published per department; agricultural
        parcels per (former) region, so several departments share one
        archive.
        """
        if self is DatasetKind.PARCELS:
            return region.parcel_code or region.code
        return region.code

    @property
    def label(self) -> str:
        return self.value


@dataclasses.dataclass
class CacheEntry:
    """A verified, extracted source archive stored in the dataset cache.

    Attributes:
        region_code: Source code the archive is published under.
        kind: Dataset kind.
        path: Directory holding the extracted archive contents.
        archive_sha256: SHA-256 of the downloaded archive.
        content_fingerprint: Digest of the extracted tree (relative paths
            and sizes); the entry is valid while the tree still matches.
        source_url: Remote location the archive came from.
        verified_at: Last time the fingerprint was checked.
    """

    region_code: str
    kind: DatasetKind
    path: str
    archive_sha256: str
    content_fingerprint: str
    source_url: str
    verified_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.UTC)
    )

    @property
    def key(self) -> tuple[str, DatasetKind]:
        return (self.region_code, self.kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "region_code": self.region_code,
            "kind": self.kind.value,
            "path": self.path,
            "archive_sha256": self.archive_sha256,
            "content_fingerprint": self.content_fingerprint,
            "source_url": self.source_url,
            "verified_at": self.verified_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            region_code=str(data["region_code"]),
            kind=DatasetKind(data["kind"]),
            path=str(data["path"]),
            archive_sha256=str(data["archive_sha256"]),
            content_fingerprint=str(data["content_fingerprint"]),
            source_url=str(data["source_url"]),
            verified_at=datetime.datetime.fromisoformat(data["verified_at"]),
        )


@dataclasses.dataclass
class Layer:
    """A thematic dataset clipped to one project's area of interest.

    Attributes:
        name: Layer name ("vegetation", "roads", "landcover", ...).
        kind: "vector" or "raster".
        path: File holding the layer (GeoPackage or GeoTIFF).
        extent: Layer extent, always equal to the project's AOI bounds.
        resolution: Ground resolution of raster layers, None for vectors.
        feature_count: Number of features of vector layers.
        category_field: Attribute carrying the feature category.
        regions: Codes of the regions whose data contributed.
        crs: Coordinate reference system.
    """

    name: str
    kind: LayerType
    path: str
    extent: BBox
    resolution: float | None = None
    feature_count: int | None = None
    category_field: str | None = None
    regions: list[str] = dataclasses.field(default_factory=list)
    crs: str = CRS

    def to_dict(self) -> dict[str, Any]:
        result = dataclasses.asdict(self)
        result["extent"] = list(self.extent)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Layer:
        values = dict(data)
        values["extent"] = tuple(float(v) for v in values["extent"])
        values["regions"] = list(values.get("regions") or [])
        return cls(**values)


@dataclasses.dataclass
class Project:
    """The unit of work: an area of interest and its layers.

    A project is "building" until every required layer is present and
    consistent, then "ready". After that only an export may update it,
    recording the bundle path and time.

    Attributes:
        id: Unique identifier (UUID string).
        name: User-facing project name.
        aoi: Area of interest.
        created_at: Creation time.
        regions: Codes of the intersecting regions, in catalog order.
        layers: Layers by name.
        status: "building" or "ready".
        missing: "region/kind" keys whose acquisition failed.
        export_path: Path of the last export bundle.
        exported_at: Time of the last export.
    """

    name: str
    aoi: AreaOfInterest
    id: str = dataclasses.field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.UTC)
    )
    regions: list[str] = dataclasses.field(default_factory=list)
    layers: dict[str, Layer] = dataclasses.field(default_factory=dict)
    status: ProjectStatus = "building"
    missing: list[str] = dataclasses.field(default_factory=list)
    export_path: str | None = None
    exported_at: datetime.datetime | None = None

    @property
    def is_ready(self) -> bool:
        return self.status == "ready"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "aoi": list(self.aoi.bounds),
            "created_at": self.created_at.isoformat(),
            "regions": list(self.regions),
            "layers": {k: v.to_dict() for k, v in self.layers.items()},
            "status": self.status,
            "missing": list(self.missing),
            "export_path": self.export_path,
            "exported_at": (
                self.exported_at.isoformat() if self.exported_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Project:
        exported_at = data.get("exported_at")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            aoi=AreaOfInterest.from_bounds(data["aoi"]),
            created_at=datetime.datetime.fromisoformat(data["created_at"]),
            regions=list(data.get("regions") or []),
            layers={
                name: Layer.from_dict(layer)
                for name, layer in (data.get("layers") or {}).items()
            },
            status=data.get("status", "building"),
            missing=list(data.get("missing") or []),
            export_path=data.get("export_path"),
            exported_at=(
                datetime.datetime.fromisoformat(exported_at)
                if exported_at
                else None
            ),
        )


@dataclasses.dataclass(frozen=True)
class ExportBundle:
    """Result of one export.

    Attributes:
        path: Final archive path.
        project_id: Exported project.
        tile_count: Tiles written, both renderings included.
        created_at: Time the archive was placed.
    """

    path: str
    project_id: str
    tile_count: int
    created_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.UTC)
    )
