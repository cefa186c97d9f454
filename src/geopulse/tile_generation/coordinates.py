"""
Tile Coordinate Mapper

Web Mercator slippy-map arithmetic: geographic coordinates to tile indices,
tile indices back to the coordinates of their corners, and the tile
rectangle covering a bounding box at a given zoom level.
"""

import math
from typing import Tuple

from .models import BoundingBox, TileRange

# Half the circumference of the Web Mercator world square, in metres.
WEB_MERCATOR_EXTENT = 20037508.342789244

# Ground size of one pixel of a 256px tile at zoom 0, in metres.
WEB_MERCATOR_SCALE_Z0 = 156543.03392804097

TILE_SIZE = 256

# Latitude where the Web Mercator square ends.
MAX_MERCATOR_LATITUDE = 85.0511287798066


def deg_to_tile(lat_deg: float, lon_deg: float, zoom: int) -> Tuple[int, int]:
    """
    Convert latitude/longitude to XYZ tile indices.

    Results are not clamped: latitudes beyond roughly +-85.0511 and a
    longitude of exactly 180 fall outside ``[0, 2**zoom)``. NaN or infinite
    input is undefined behaviour.

    Args:
        lat_deg: Latitude in degrees
        lon_deg: Longitude in degrees
        zoom: Zoom level

    Returns:
        Tuple of (x, y) tile indices
    """
    n = 2.0 ** zoom
    x = math.floor((lon_deg + 180.0) / 360.0 * n)
    lat_rad = math.radians(lat_deg)
    y = math.floor((1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n)
    return (x, y)


def tile_to_deg(x: int, y: int, zoom: int) -> Tuple[float, float]:
    """Return ``(lat, lon)`` of the north-west corner of tile ``(x, y)``."""
    n = 2.0 ** zoom
    lon_deg = x / n * 360.0 - 180.0
    lat_rad = math.atan(math.sinh(math.pi * (1 - 2 * y / n)))
    return (math.degrees(lat_rad), lon_deg)


def tile_bounds(x: int, y: int, zoom: int) -> Tuple[float, float, float, float]:
    """Return ``(min_lon, min_lat, max_lon, max_lat)`` covered by one tile."""
    north, west = tile_to_deg(x, y, zoom)
    south, east = tile_to_deg(x + 1, y + 1, zoom)
    return (west, south, east, north)


def _clamp(value: int, upper: int) -> int:
    return max(0, min(value, upper))


def tile_range_for_bounds(bbox: BoundingBox, zoom: int) -> TileRange:
    """
    Compute the inclusive tile rectangle covering a bounding box.

    Tile rows grow southward, so the north-east corner gives ``min_y`` and
    the south-west corner gives ``max_y``. Indices are clamped to the grid so
    selections touching the poles or the antimeridian stay addressable.
    """
    upper = (1 << zoom) - 1
    min_x, max_y = deg_to_tile(bbox.south_west_lat, bbox.south_west_lng, zoom)
    max_x, min_y = deg_to_tile(bbox.north_east_lat, bbox.north_east_lng, zoom)
    return TileRange(
        min_x=_clamp(min_x, upper),
        max_x=_clamp(max_x, upper),
        min_y=_clamp(min_y, upper),
        max_y=_clamp(max_y, upper),
    )


def ground_resolution(zoom: int) -> float:
    """Metres per pixel at the equator for a 256px tile at ``zoom``."""
    return WEB_MERCATOR_SCALE_Z0 / (2 ** zoom)


def matrix_pixel_size(zoom: int) -> float:
    """Pixel size of one tile matrix level, as stored in GeoPackage tile matrices."""
    return (WEB_MERCATOR_EXTENT * 2) / (TILE_SIZE * (2 ** zoom))
