"""
GeoTIFF Packager

Merges the tiles of a single zoom level into one RGB raster and writes it as
a georeferenced GeoTIFF. The merge zoom is the minimum zoom of the run;
tiles of any other zoom are left out and reported as discarded.

The raster is georeferenced in Web Mercator: the origin is the north-west
corner of the top-left tile and each pixel covers
``156543.03392804097 / 2**zoom`` metres. The geographic origin and the WGS 84
citation are stored as dataset tags.
"""

import io
from typing import Sequence

import numpy as np
import rasterio
from PIL import Image
from rasterio.crs import CRS
from rasterio.io import MemoryFile
from rasterio.transform import from_origin

from ..errors import PackagingError
from ..tile_generation.coordinates import (
    TILE_SIZE,
    WEB_MERCATOR_EXTENT,
    ground_resolution,
    tile_range_for_bounds,
    tile_to_deg,
)
from ..tile_generation.models import ExportFormat, Tile
from .base import Packager, PackParams, PackResult, iter_unique_tiles, register_packager


@register_packager
class GeoTiffPackager(Packager):
    """Single merged raster for the minimum zoom level."""

    format = ExportFormat.GEOTIFF

    def _pack(self, tiles: Sequence[Tile], params: PackParams) -> PackResult:
        zoom = params.zoom_range.min
        grid = tile_range_for_bounds(params.bbox, zoom)
        canvas = Image.new("RGB", (grid.width * TILE_SIZE, grid.height * TILE_SIZE))

        merged = 0
        discarded = 0
        for tile in iter_unique_tiles(tiles):
            if tile.zoom != zoom:
                discarded += 1
                continue
            if not (grid.min_x <= tile.x <= grid.max_x and grid.min_y <= tile.y <= grid.max_y):
                discarded += 1
                continue

            image = self._decode(tile)
            canvas.paste(image, ((tile.x - grid.min_x) * TILE_SIZE, (tile.y - grid.min_y) * TILE_SIZE))
            merged += 1

        if merged == 0:
            raise PackagingError(f"No tiles at merge zoom {zoom} to build a GeoTIFF from")

        if discarded:
            self.logger.warning(
                "Tiles outside the merge zoom were not included",
                merge_zoom=zoom,
                discarded_tiles=discarded
            )

        blob = self._write_geotiff(np.asarray(canvas), zoom, grid.min_x, grid.min_y, params)
        return PackResult(blob=blob, tile_count=merged, discarded_tiles=discarded)

    def _decode(self, tile: Tile) -> Image.Image:
        """Decode tile bytes to a 256x256 RGB image, dropping any alpha channel."""
        try:
            with Image.open(io.BytesIO(tile.data)) as image:
                image.load()
                rgb = image.convert("RGB")
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise PackagingError(f"Could not decode tile {tile.key.path}: {e}") from e

        if rgb.size != (TILE_SIZE, TILE_SIZE):
            rgb = rgb.resize((TILE_SIZE, TILE_SIZE))
        return rgb

    def _write_geotiff(
        self,
        pixels: np.ndarray,
        zoom: int,
        min_x: int,
        min_y: int,
        params: PackParams
    ) -> bytes:
        height, width, bands = pixels.shape
        pixel_size = ground_resolution(zoom)
        origin_x = -WEB_MERCATOR_EXTENT + min_x * TILE_SIZE * pixel_size
        origin_y = WEB_MERCATOR_EXTENT - min_y * TILE_SIZE * pixel_size
        origin_lat, origin_lon = tile_to_deg(min_x, min_y, zoom)

        with MemoryFile() as memfile:
            with memfile.open(
                driver="GTiff",
                height=height,
                width=width,
                count=bands,
                dtype=rasterio.uint8,
                crs=CRS.from_epsg(3857),
                transform=from_origin(origin_x, origin_y, pixel_size, pixel_size),
                photometric="RGB",
                compress="deflate",
            ) as dst:
                dst.write(pixels.transpose(2, 0, 1))
                dst.update_tags(
                    GEOG_CITATION="WGS 84",
                    ORIGIN_LON=repr(origin_lon),
                    ORIGIN_LAT=repr(origin_lat),
                    PIXEL_SIZE_METERS=repr(pixel_size),
                    ZOOM_LEVEL=str(zoom),
                    TILE_SOURCE=params.source.identifier,
                )
            return memfile.read()
