"""
Tile-ZIP Packager

Writes tiles into a ZIP archive laid out as ``tiles/{z}/{x}/{y}.png`` with a
``manifest.json`` describing the set and a ``README.txt`` for humans.
"""

import io
import json
import zipfile
from typing import Any, Dict, Sequence

from ..tile_generation.models import ExportFormat, Tile
from .base import Packager, PackParams, PackResult, iter_unique_tiles, register_packager

TILE_PATH_PATTERN = "tiles/{z}/{x}/{y}.png"

README_TEMPLATE = """GeoPulse Map Tiles
==================

This ZIP contains {total_tiles} map tiles in standard slippy map format.

Folder Structure:
tiles/
├── {{zoom}}/
│   ├── {{x}}/
│   │   └── {{y}}.png

How to use:
1. Extract this ZIP file
2. Use the tiles/ folder with any mapping software
3. Point your map application to the tiles/ directory
4. The tiles follow the standard Z/X/Y.png naming convention

Tile Information:
- Source: {source}
- Zoom levels: {zoom_min} to {zoom_max}
- Total tiles: {total_tiles}
- Generated: {generated}

Compatible with:
- QGIS (add as XYZ Tiles)
- OpenLayers
- Leaflet
- MapProxy
- TileServer GL
- Most GIS applications

For questions or support, refer to the manifest.json file for detailed metadata.
"""


@register_packager
class TilesZipPackager(Packager):
    """Raw slippy-map tiles in a ZIP archive."""

    format = ExportFormat.TILES_ZIP

    def _pack(self, tiles: Sequence[Tile], params: PackParams) -> PackResult:
        buffer = io.BytesIO()
        written = 0

        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for tile in iter_unique_tiles(tiles):
                archive.writestr(TILE_PATH_PATTERN.format(z=tile.zoom, x=tile.x, y=tile.y), tile.data)
                written += 1

            archive.writestr("manifest.json", json.dumps(self.build_manifest(written, params), indent=2))
            archive.writestr("README.txt", self.build_readme(written, params))

        return PackResult(blob=buffer.getvalue(), tile_count=written)

    def build_manifest(self, total_tiles: int, params: PackParams) -> Dict[str, Any]:
        return {
            "type": "GeoPulse Map Tiles",
            "version": "1.0",
            "created": params.created_at.isoformat(),
            "total_tiles": total_tiles,
            "structure": TILE_PATH_PATTERN,
            "bounds": params.bbox.to_dict(),
            "zoom_range": str(params.zoom_range),
            "tile_source": params.source.identifier,
            "usage": "Extract and use the tiles/ folder with any mapping software that supports slippy map tiles",
        }

    def build_readme(self, total_tiles: int, params: PackParams) -> str:
        return README_TEMPLATE.format(
            total_tiles=total_tiles,
            source=params.source.identifier,
            zoom_min=params.zoom_range.min,
            zoom_max=params.zoom_range.max,
            generated=params.created_at.strftime("%Y-%m-%d %H:%M:%S %Z").strip(),
        )
