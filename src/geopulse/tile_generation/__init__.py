"""
Tile Generation

Coordinate mapping, estimation, paced tile fetching and the generation
orchestrator that ties them to the export packagers.
"""

from .models import (
    BoundingBox,
    ExportArtifact,
    ExportFormat,
    GenerationEstimate,
    GenerationProgress,
    GenerationRequest,
    GenerationResult,
    GenerationState,
    Tile,
    TileKey,
    TileRange,
    ZoomCount,
    ZoomRange,
    xyz_to_tms_row,
)
from .coordinates import deg_to_tile, tile_bounds, tile_range_for_bounds, tile_to_deg
from .estimator import estimate, requires_confirmation
from .pacing import PacingGate
from .sources import TILE_SOURCES, TileSource, get_source, list_sources
from .fetcher import FetchOutcome, TileFetcher
from .orchestrator import TileSetGenerator

__all__ = [
    "BoundingBox",
    "ExportArtifact",
    "ExportFormat",
    "GenerationEstimate",
    "GenerationProgress",
    "GenerationRequest",
    "GenerationResult",
    "GenerationState",
    "Tile",
    "TileKey",
    "TileRange",
    "ZoomCount",
    "ZoomRange",
    "xyz_to_tms_row",
    "deg_to_tile",
    "tile_bounds",
    "tile_range_for_bounds",
    "tile_to_deg",
    "estimate",
    "requires_confirmation",
    "PacingGate",
    "TILE_SOURCES",
    "TileSource",
    "get_source",
    "list_sources",
    "FetchOutcome",
    "TileFetcher",
    "TileSetGenerator",
]
