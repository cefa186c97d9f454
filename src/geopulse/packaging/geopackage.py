"""
GeoPackage Packager

Builds a raster-tiles GeoPackage: the required ``gpkg_spatial_ref_sys``,
``gpkg_contents``, ``gpkg_tile_matrix_set`` and ``gpkg_tile_matrix`` tables
plus one tile pyramid user table, ``geopulse_tiles``, in Web Mercator.

Tile rows use the same TMS numbering as the MBTiles export so both SQLite
formats share row semantics; pass ``tms_rows=False`` for the GeoPackage
native top-left numbering.
"""

import sqlite3
from typing import List, Tuple

from pyproj import CRS, Transformer
from pyproj.enums import WktVersion

from ..tile_generation.coordinates import (
    MAX_MERCATOR_LATITUDE,
    TILE_SIZE,
    WEB_MERCATOR_EXTENT,
    matrix_pixel_size,
)
from ..tile_generation.models import ExportFormat, Tile
from .base import PackParams, SQLitePackager, register_packager

# "GPKG" as a big-endian 32-bit integer
GPKG_APPLICATION_ID = 0x47504B47

# GeoPackage 1.2.0
GPKG_USER_VERSION = 10200

WGS84_SRS_ID = 4326
WEB_MERCATOR_SRS_ID = 3857

TILES_TABLE = "geopulse_tiles"


def _wkt(epsg: int) -> str:
    return CRS.from_epsg(epsg).to_wkt(WktVersion.WKT1_GDAL)


@register_packager
class GeoPackagePackager(SQLitePackager):
    """Tiles in an OGC GeoPackage tile pyramid."""

    format = ExportFormat.GPKG
    tiles_table = TILES_TABLE

    def __init__(self, tms_rows: bool = True):
        super().__init__()
        self.tms_rows = tms_rows
        self._to_mercator = Transformer.from_crs(WGS84_SRS_ID, WEB_MERCATOR_SRS_ID, always_xy=True)

    def _tile_row(self, tile: Tile) -> int:
        if self.tms_rows:
            return tile.key.tms_row()
        return tile.y

    def _create_schema(self, conn: sqlite3.Connection, params: PackParams) -> None:
        conn.execute(f"PRAGMA application_id = {GPKG_APPLICATION_ID}")
        conn.execute(f"PRAGMA user_version = {GPKG_USER_VERSION}")
        conn.executescript(f"""
            CREATE TABLE gpkg_spatial_ref_sys (
                srs_name TEXT NOT NULL,
                srs_id INTEGER NOT NULL PRIMARY KEY,
                organization TEXT NOT NULL,
                organization_coordsys_id INTEGER NOT NULL,
                definition TEXT NOT NULL,
                description TEXT
            );

            CREATE TABLE gpkg_contents (
                table_name TEXT NOT NULL PRIMARY KEY,
                data_type TEXT NOT NULL,
                identifier TEXT UNIQUE,
                description TEXT DEFAULT '',
                last_change DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now')),
                min_x DOUBLE,
                min_y DOUBLE,
                max_x DOUBLE,
                max_y DOUBLE,
                srs_id INTEGER,
                CONSTRAINT fk_gc_r_srs_id FOREIGN KEY (srs_id) REFERENCES gpkg_spatial_ref_sys(srs_id)
            );

            CREATE TABLE gpkg_tile_matrix_set (
                table_name TEXT NOT NULL PRIMARY KEY,
                srs_id INTEGER NOT NULL,
                min_x DOUBLE NOT NULL,
                min_y DOUBLE NOT NULL,
                max_x DOUBLE NOT NULL,
                max_y DOUBLE NOT NULL,
                CONSTRAINT fk_gtms_table_name FOREIGN KEY (table_name) REFERENCES gpkg_contents(table_name),
                CONSTRAINT fk_gtms_srs FOREIGN KEY (srs_id) REFERENCES gpkg_spatial_ref_sys(srs_id)
            );

            CREATE TABLE gpkg_tile_matrix (
                table_name TEXT NOT NULL,
                zoom_level INTEGER NOT NULL,
                matrix_width INTEGER NOT NULL,
                matrix_height INTEGER NOT NULL,
                tile_width INTEGER NOT NULL,
                tile_height INTEGER NOT NULL,
                pixel_x_size DOUBLE NOT NULL,
                pixel_y_size DOUBLE NOT NULL,
                CONSTRAINT pk_ttm PRIMARY KEY (table_name, zoom_level),
                CONSTRAINT fk_tmm_table_name FOREIGN KEY (table_name) REFERENCES gpkg_contents(table_name)
            );

            CREATE TABLE {TILES_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                zoom_level INTEGER NOT NULL,
                tile_column INTEGER NOT NULL,
                tile_row INTEGER NOT NULL,
                tile_data BLOB NOT NULL,
                UNIQUE (zoom_level, tile_column, tile_row)
            );
        """)

    def spatial_ref_rows(self) -> List[Tuple]:
        return [
            ("Undefined cartesian SRS", -1, "NONE", -1, "undefined", "undefined cartesian coordinate reference system"),
            ("Undefined geographic SRS", 0, "NONE", 0, "undefined", "undefined geographic coordinate reference system"),
            ("WGS 84 geodetic", WGS84_SRS_ID, "EPSG", WGS84_SRS_ID, _wkt(WGS84_SRS_ID),
             "longitude/latitude coordinates in decimal degrees on the WGS 84 spheroid"),
            ("WGS 84 / Pseudo-Mercator", WEB_MERCATOR_SRS_ID, "EPSG", WEB_MERCATOR_SRS_ID, _wkt(WEB_MERCATOR_SRS_ID),
             "Web Mercator"),
        ]

    def tile_matrix_rows(self, params: PackParams) -> List[Tuple]:
        rows = []
        for zoom in params.zoom_range.levels():
            matrix_size = 2 ** zoom
            pixel_size = matrix_pixel_size(zoom)
            rows.append((TILES_TABLE, zoom, matrix_size, matrix_size, TILE_SIZE, TILE_SIZE, pixel_size, pixel_size))
        return rows

    def contents_bounds(self, params: PackParams) -> Tuple[float, float, float, float]:
        """Selection bounds projected to Web Mercator, matching the contents ``srs_id``."""
        bbox = params.bbox
        min_lat = max(bbox.min_lat, -MAX_MERCATOR_LATITUDE)
        max_lat = min(bbox.max_lat, MAX_MERCATOR_LATITUDE)
        min_x, min_y = self._to_mercator.transform(bbox.min_lon, min_lat)
        max_x, max_y = self._to_mercator.transform(bbox.max_lon, max_lat)
        return (min_x, min_y, max_x, max_y)

    def _write_metadata(self, conn: sqlite3.Connection, params: PackParams) -> None:
        conn.executemany(
            "INSERT INTO gpkg_spatial_ref_sys "
            "(srs_name, srs_id, organization, organization_coordsys_id, definition, description) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            self.spatial_ref_rows()
        )

        min_x, min_y, max_x, max_y = self.contents_bounds(params)
        conn.execute(
            "INSERT INTO gpkg_contents "
            "(table_name, data_type, identifier, description, last_change, min_x, min_y, max_x, max_y, srs_id) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                TILES_TABLE, "tiles", "GeoPulse raster",
                f"Tiles generated by GeoPulse from {params.source.name}",
                params.created_at.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
                min_x, min_y, max_x, max_y, WEB_MERCATOR_SRS_ID,
            )
        )

        conn.execute(
            "INSERT INTO gpkg_tile_matrix_set (table_name, srs_id, min_x, min_y, max_x, max_y) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (TILES_TABLE, WEB_MERCATOR_SRS_ID,
             -WEB_MERCATOR_EXTENT, -WEB_MERCATOR_EXTENT, WEB_MERCATOR_EXTENT, WEB_MERCATOR_EXTENT)
        )

        conn.executemany(
            "INSERT INTO gpkg_tile_matrix "
            "(table_name, zoom_level, matrix_width, matrix_height, tile_width, tile_height, pixel_x_size, pixel_y_size) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            self.tile_matrix_rows(params)
        )
