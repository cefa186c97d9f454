"""
Estimate Calculator

Predicts tile count, artifact size and duration for a selection. The size and
time figures are fixed per-tile heuristics, not measured throughput.
"""

from .coordinates import tile_range_for_bounds
from .models import BoundingBox, GenerationEstimate, ZoomCount

# ~50 KB per tile
ESTIMATED_TILE_SIZE_MB = 0.05

# ~100 ms per tile, pacing included
ESTIMATED_SECONDS_PER_TILE = 0.1

# Runs above this many tiles need explicit user confirmation.
CONFIRMATION_THRESHOLD = 5000


def estimate(
    bbox: BoundingBox,
    zoom_min: int,
    zoom_max: int,
    confirmation_threshold: int = CONFIRMATION_THRESHOLD
) -> GenerationEstimate:
    """
    Estimate a generation run.

    Args:
        bbox: Selected area
        zoom_min: First zoom level, inclusive
        zoom_max: Last zoom level, inclusive
        confirmation_threshold: Tile count above which confirmation is required

    Returns:
        GenerationEstimate with a per-zoom breakdown
    """
    total = 0
    breakdown = []

    for zoom in range(zoom_min, zoom_max + 1):
        tiles_this_zoom = tile_range_for_bounds(bbox, zoom).count
        total += tiles_this_zoom
        breakdown.append(ZoomCount(zoom=zoom, count=tiles_this_zoom))

    return GenerationEstimate(
        total_tiles=total,
        per_zoom_breakdown=breakdown,
        estimated_size_mb=total * ESTIMATED_TILE_SIZE_MB,
        estimated_time_seconds=round(total * ESTIMATED_SECONDS_PER_TILE),
        requires_confirmation=total > confirmation_threshold,
    )


def requires_confirmation(
    generation_estimate: GenerationEstimate,
    threshold: int = CONFIRMATION_THRESHOLD
) -> bool:
    """True when the caller must confirm before the run may proceed."""
    return generation_estimate.total_tiles > threshold
