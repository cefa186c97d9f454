"""
MBTiles Packager

Raster MBTiles 1.x: a SQLite file with ``metadata`` and ``tiles`` tables.
MBTiles stores rows bottom-up (TMS), so every XYZ row is flipped on insert.
"""

import sqlite3

from ..tile_generation.models import ExportFormat
from .base import PackParams, SQLitePackager, register_packager


@register_packager
class MBTilesPackager(SQLitePackager):
    """Tiles in an MBTiles database."""

    format = ExportFormat.MBTILES
    tiles_table = "tiles"

    def _create_schema(self, conn: sqlite3.Connection, params: PackParams) -> None:
        conn.executescript("""
            CREATE TABLE metadata (name TEXT, value TEXT);
            CREATE TABLE tiles (zoom_level INTEGER, tile_column INTEGER, tile_row INTEGER, tile_data BLOB);
            CREATE UNIQUE INDEX tile_index ON tiles (zoom_level, tile_column, tile_row);
        """)

    def _write_metadata(self, conn: sqlite3.Connection, params: PackParams) -> None:
        conn.executemany(
            "INSERT INTO metadata (name, value) VALUES (?, ?)",
            self.metadata_rows(params)
        )

    def metadata_rows(self, params: PackParams):
        """Name/value pairs written to the ``metadata`` table."""
        bbox = params.bbox
        center_lon, center_lat = bbox.center()
        source_name = params.source.name
        return [
            ("name", "GeoPulse Generated Tiles"),
            ("type", "baselayer"),
            ("version", "1.0"),
            ("description", f"Processed tiles from {source_name}"),
            ("format", "png"),
            ("bounds", f"{bbox.min_lon},{bbox.min_lat},{bbox.max_lon},{bbox.max_lat}"),
            ("minzoom", str(params.zoom_range.min)),
            ("maxzoom", str(params.zoom_range.max)),
            ("center", f"{center_lon},{center_lat},{params.zoom_range.min}"),
            ("attribution", f"{params.source.attribution} | Processed by GeoPulse"),
        ]
