"""
GeoPulse tile-set generation engine.

Turns a map selection into an offline raster tile set packaged as a tile
ZIP, MBTiles, GeoPackage or GeoTIFF.
"""

__version__ = "1.0.0"

from .errors import GenerationError, GeoPulseError
from .tile_generation import (
    BoundingBox,
    ExportFormat,
    GenerationRequest,
    GenerationResult,
    TileFetcher,
    TileSetGenerator,
)
from .utils.config import Config

__all__ = [
    "__version__",
    "BoundingBox",
    "Config",
    "ExportFormat",
    "GenerationError",
    "GenerationRequest",
    "GenerationResult",
    "GeoPulseError",
    "TileFetcher",
    "TileSetGenerator",
]
