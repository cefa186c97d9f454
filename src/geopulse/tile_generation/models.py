"""
Data Model

Value types passed between the mapper, estimator, fetcher, packagers and the
orchestrator. All of them are plain dataclasses; the geometry types are
frozen because a selection is immutable once handed to a generation run.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from ..errors import GenerationError, InputValidationError, PartialFetchFailure


class ExportFormat(str, Enum):
    """Container formats a tile set can be packaged into."""

    TILES_ZIP = "tiles-zip"
    MBTILES = "mbtiles"
    GPKG = "gpkg"
    GEOTIFF = "geotiff"

    @classmethod
    def parse(cls, value: Any) -> "ExportFormat":
        """Parse a format identifier, accepting ``tiles`` as an alias for ``tiles-zip``."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized == "tiles":
            return cls.TILES_ZIP
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(f.value for f in cls)
            raise InputValidationError(f"Unsupported export format {value!r} (expected one of: {valid})")

    @property
    def extension(self) -> str:
        return _FORMAT_EXTENSIONS[self]

    @property
    def media_type(self) -> str:
        return _FORMAT_MEDIA_TYPES[self]

    @property
    def display_name(self) -> str:
        return _FORMAT_DISPLAY_NAMES[self]


_FORMAT_EXTENSIONS = {
    ExportFormat.TILES_ZIP: "zip",
    ExportFormat.MBTILES: "mbtiles",
    ExportFormat.GPKG: "gpkg",
    ExportFormat.GEOTIFF: "tif",
}

_FORMAT_MEDIA_TYPES = {
    ExportFormat.TILES_ZIP: "application/zip",
    ExportFormat.MBTILES: "application/x-sqlite3",
    ExportFormat.GPKG: "application/geopackage+sqlite3",
    ExportFormat.GEOTIFF: "image/tiff",
}

_FORMAT_DISPLAY_NAMES = {
    ExportFormat.TILES_ZIP: "Tiles ZIP",
    ExportFormat.MBTILES: "MBTiles",
    ExportFormat.GPKG: "GeoPackage",
    ExportFormat.GEOTIFF: "GeoTIFF",
}


@dataclass(frozen=True)
class BoundingBox:
    """Rectangular selection defined by its south-west and north-east corners, in degrees."""

    south_west_lat: float
    south_west_lng: float
    north_east_lat: float
    north_east_lng: float

    def __post_init__(self):
        for name in ("south_west_lat", "south_west_lng", "north_east_lat", "north_east_lng"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InputValidationError(f"Bounding box {name} must be a number, got {value!r}")
            if not math.isfinite(value):
                raise InputValidationError(f"Bounding box {name} must be finite, got {value!r}")

        if not (-90.0 <= self.south_west_lat <= 90.0 and -90.0 <= self.north_east_lat <= 90.0):
            raise InputValidationError("Bounding box latitudes must be between -90 and 90")
        if not (-180.0 <= self.south_west_lng <= 180.0 and -180.0 <= self.north_east_lng <= 180.0):
            raise InputValidationError("Bounding box longitudes must be between -180 and 180")
        if self.south_west_lat > self.north_east_lat:
            raise InputValidationError("Bounding box south-west latitude must not exceed north-east latitude")
        if self.south_west_lng > self.north_east_lng:
            raise InputValidationError(
                "Bounding box south-west longitude must not exceed north-east longitude; "
                "selections crossing the antimeridian are not supported, split them at 180"
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BoundingBox":
        """
        Build a bounding box from a mapping.

        Accepts the snake_case field names, ``south/west/north/east`` keys, or
        the ``_southWest``/``_northEast`` shape produced by map widgets.
        """
        if data is None:
            raise InputValidationError("Bounding box is required")
        try:
            if "_southWest" in data:
                sw, ne = data["_southWest"], data["_northEast"]
                return cls(sw["lat"], sw["lng"], ne["lat"], ne["lng"])
            if "south" in data:
                return cls(data["south"], data["west"], data["north"], data["east"])
            return cls(
                data["south_west_lat"],
                data["south_west_lng"],
                data["north_east_lat"],
                data["north_east_lng"],
            )
        except (KeyError, TypeError) as e:
            raise InputValidationError(f"Malformed bounding box: {e}")

    @property
    def min_lon(self) -> float:
        return self.south_west_lng

    @property
    def min_lat(self) -> float:
        return self.south_west_lat

    @property
    def max_lon(self) -> float:
        return self.north_east_lng

    @property
    def max_lat(self) -> float:
        return self.north_east_lat

    def as_bounds(self) -> Tuple[float, float, float, float]:
        """Return ``(min_lon, min_lat, max_lon, max_lat)``."""
        return (self.min_lon, self.min_lat, self.max_lon, self.max_lat)

    def center(self) -> Tuple[float, float]:
        """Return ``(lon, lat)`` of the box centre."""
        return ((self.min_lon + self.max_lon) / 2, (self.min_lat + self.max_lat) / 2)

    def to_dict(self) -> Dict[str, float]:
        return {
            "south": self.south_west_lat,
            "west": self.south_west_lng,
            "north": self.north_east_lat,
            "east": self.north_east_lng,
        }


@dataclass(frozen=True)
class ZoomRange:
    """Inclusive range of zoom levels."""

    min: int
    max: int

    def levels(self) -> range:
        return range(self.min, self.max + 1)

    def __contains__(self, zoom: int) -> bool:
        return self.min <= zoom <= self.max

    def __str__(self) -> str:
        return f"{self.min}-{self.max}"


@dataclass(frozen=True, order=True)
class TileKey:
    """Slippy-map tile address in XYZ order (row 0 is the northernmost row)."""

    zoom: int
    x: int
    y: int

    def __post_init__(self):
        if self.zoom < 0:
            raise ValueError(f"Zoom must be non-negative, got {self.zoom}")
        n = 1 << self.zoom
        if not (0 <= self.x < n and 0 <= self.y < n):
            raise ValueError(f"Tile {self.zoom}/{self.x}/{self.y} is outside the {n}x{n} grid")

    def tms_row(self) -> int:
        """Row index in TMS order, where row 0 is the southernmost row."""
        return xyz_to_tms_row(self.zoom, self.y)

    @property
    def path(self) -> str:
        return f"{self.zoom}/{self.x}/{self.y}"


def xyz_to_tms_row(zoom: int, y: int) -> int:
    """Flip an XYZ row into TMS order. The flip is its own inverse."""
    return (1 << zoom) - 1 - y


@dataclass(frozen=True)
class Tile:
    """Raw image bytes fetched for one tile key."""

    key: TileKey
    data: bytes

    @property
    def zoom(self) -> int:
        return self.key.zoom

    @property
    def x(self) -> int:
        return self.key.x

    @property
    def y(self) -> int:
        return self.key.y


@dataclass(frozen=True)
class TileRange:
    """Inclusive rectangle of tile indices at one zoom level."""

    min_x: int
    max_x: int
    min_y: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    @property
    def count(self) -> int:
        return self.width * self.height

    def iter_keys(self, zoom: int) -> Iterator[TileKey]:
        """Yield keys column by column: x outer, y inner."""
        for x in range(self.min_x, self.max_x + 1):
            for y in range(self.min_y, self.max_y + 1):
                yield TileKey(zoom, x, y)


@dataclass(frozen=True)
class ZoomCount:
    zoom: int
    count: int


@dataclass
class GenerationEstimate:
    """Predicted size of a generation run. Recomputed whenever inputs change."""

    total_tiles: int
    per_zoom_breakdown: List[ZoomCount]
    estimated_size_mb: float
    estimated_time_seconds: int
    requires_confirmation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tiles": self.total_tiles,
            "per_zoom_breakdown": [
                {"zoom": item.zoom, "count": item.count} for item in self.per_zoom_breakdown
            ],
            "estimated_size_mb": self.estimated_size_mb,
            "estimated_time_seconds": self.estimated_time_seconds,
            "requires_confirmation": self.requires_confirmation,
        }


@dataclass
class ExportArtifact:
    """Terminal output of a successful run. Ownership passes to the caller."""

    format: ExportFormat
    blob: bytes
    filename: str
    size_mb: float
    tile_count: int
    discarded_tiles: int = 0

    @property
    def media_type(self) -> str:
        return self.format.media_type

    @property
    def extension(self) -> str:
        return self.format.extension


@dataclass
class GenerationRequest:
    """Everything the caller supplies for one generation run."""

    user_id: str
    bbox: Optional[BoundingBox]
    zoom_min: int
    zoom_max: int
    tile_source: str
    export_format: Any = ExportFormat.MBTILES


@dataclass(frozen=True)
class GenerationProgress:
    """Progress snapshot reported after every attempted tile."""

    attempted: int
    total: int
    succeeded: int
    failed: int
    zoom: Optional[int] = None
    stage: str = "fetching"

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 1.0
        return min(1.0, self.attempted / self.total)


class GenerationState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    ESTIMATING = "estimating"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    QUOTA_CHECK = "quota_check"
    FETCHING = "fetching"
    PACKAGING = "packaging"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class GenerationResult:
    """Outcome of one run: exactly one artifact when completed, an error when failed."""

    state: GenerationState
    artifact: Optional[ExportArtifact] = None
    error: Optional[GenerationError] = None
    estimate: Optional[GenerationEstimate] = None
    refunded: int = 0
    log_error: Optional[Exception] = None
    succeeded_tiles: int = 0
    failed_tiles: int = 0
    fetch_failures: List[PartialFetchFailure] = field(default_factory=list)
    history: List[GenerationState] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.state is GenerationState.COMPLETED

    @property
    def status(self) -> str:
        if self.success:
            return "completed"
        return self.error.status if self.error is not None else "failed"

    @property
    def message(self) -> str:
        if self.error is not None:
            return self.error.message
        if self.artifact is not None:
            return (
                f"Complete! File: {self.artifact.filename}, "
                f"Format: {self.artifact.format.display_name}, "
                f"Size: {self.artifact.size_mb:.2f} MB, "
                f"Tiles: {self.artifact.tile_count:,}"
            )
        return self.state.value
