"""
Export Packagers

One packager per container format, all behind the ``Packager`` interface:
tile ZIP, MBTiles, GeoPackage and merged GeoTIFF.
"""

from .base import (
    Packager,
    PackParams,
    PackResult,
    SQLitePackager,
    get_packager,
    iter_unique_tiles,
    register_packager,
    registered_formats,
)
from .tiles_zip import TilesZipPackager
from .mbtiles import MBTilesPackager
from .geopackage import GeoPackagePackager
from .geotiff import GeoTiffPackager

__all__ = [
    "Packager",
    "PackParams",
    "PackResult",
    "SQLitePackager",
    "get_packager",
    "iter_unique_tiles",
    "register_packager",
    "registered_formats",
    "TilesZipPackager",
    "MBTilesPackager",
    "GeoPackagePackager",
    "GeoTiffPackager",
]
