"""
Unit Tests for the Estimate Calculator
"""

import unittest

from geopulse.tile_generation.coordinates import deg_to_tile
from geopulse.tile_generation.estimator import (
    CONFIRMATION_THRESHOLD,
    ESTIMATED_SECONDS_PER_TILE,
    ESTIMATED_TILE_SIZE_MB,
    estimate,
    requires_confirmation,
)
from geopulse.tile_generation.models import BoundingBox


def _span_product(bbox, zoom):
    min_x, max_y = deg_to_tile(bbox.south_west_lat, bbox.south_west_lng, zoom)
    max_x, min_y = deg_to_tile(bbox.north_east_lat, bbox.north_east_lng, zoom)
    return (max_x - min_x + 1) * (max_y - min_y + 1)


class TestEstimator(unittest.TestCase):
    """Test suite for generation estimates."""

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.delhi = BoundingBox(28.60, 77.20, 28.62, 77.22)

    def test_single_zoom_matches_mapper(self):
        """Tile count at one zoom is the product of the tile spans."""
        result = estimate(self.delhi, 12, 12)
        self.assertEqual(result.total_tiles, _span_product(self.delhi, 12))
        self.assertEqual(len(result.per_zoom_breakdown), 1)
        self.assertEqual(result.per_zoom_breakdown[0].zoom, 12)

    def test_breakdown_sums_to_total(self):
        result = estimate(self.delhi, 1, 16)
        self.assertEqual(sum(z.count for z in result.per_zoom_breakdown), result.total_tiles)
        self.assertEqual([z.zoom for z in result.per_zoom_breakdown], list(range(1, 17)))

    def test_monotonic_in_zoom_max(self):
        """Raising the maximum zoom never lowers the tile count."""
        previous = 0
        for zoom_max in range(1, 19):
            total = estimate(self.delhi, 1, zoom_max).total_tiles
            self.assertGreaterEqual(total, previous)
            previous = total

    def test_size_and_time_heuristics(self):
        result = estimate(self.delhi, 10, 14)
        self.assertAlmostEqual(result.estimated_size_mb, result.total_tiles * ESTIMATED_TILE_SIZE_MB)
        self.assertEqual(result.estimated_time_seconds, round(result.total_tiles * ESTIMATED_SECONDS_PER_TILE))

    def test_small_request_needs_no_confirmation(self):
        result = estimate(self.delhi, 12, 12)
        self.assertFalse(result.requires_confirmation)
        self.assertFalse(requires_confirmation(result))

    def test_large_request_needs_confirmation(self):
        bbox = BoundingBox(-60.0, -170.0, 70.0, 170.0)
        result = estimate(bbox, 1, 8)
        self.assertGreater(result.total_tiles, CONFIRMATION_THRESHOLD)
        self.assertTrue(result.requires_confirmation)

    def test_threshold_is_exclusive(self):
        """Exactly the threshold does not need confirmation."""
        result = estimate(self.delhi, 12, 12, confirmation_threshold=0)
        self.assertTrue(result.requires_confirmation)
        total = result.total_tiles
        self.assertFalse(estimate(self.delhi, 12, 12, confirmation_threshold=total).requires_confirmation)

    def test_to_dict(self):
        data = estimate(self.delhi, 12, 13).to_dict()
        self.assertEqual(set(data), {
            "total_tiles", "per_zoom_breakdown", "estimated_size_mb",
            "estimated_time_seconds", "requires_confirmation",
        })
