"""
Base Packager

Common interface for the export packagers. A packager takes the tiles fetched
by a run plus the run parameters and returns one binary blob. Shared here:
the empty-input guard, duplicate-key filtering, error wrapping and logging.
"""

import os
import sqlite3
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Sequence, Type

import structlog

from ..errors import PackagingError
from ..tile_generation.models import BoundingBox, ExportFormat, Tile, ZoomRange
from ..tile_generation.sources import TileSource


@dataclass
class PackParams:
    """Run parameters every packager may need."""
    bbox: BoundingBox
    zoom_range: ZoomRange
    source: TileSource
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PackResult:
    blob: bytes
    tile_count: int
    discarded_tiles: int = 0


def iter_unique_tiles(tiles: Iterable[Tile]) -> Iterator[Tile]:
    """Yield tiles in order, skipping any key already seen. The first tile wins."""
    seen = set()
    for tile in tiles:
        if tile.key in seen:
            continue
        seen.add(tile.key)
        yield tile


class Packager(ABC):
    """Abstract base class for all export packagers."""

    format: ExportFormat

    def __init__(self):
        self.logger = structlog.get_logger(
            component="Packager",
            packager=self.__class__.__name__,
            export_format=self.format.value
        )

    def pack(self, tiles: Sequence[Tile], params: PackParams) -> PackResult:
        """
        Package tiles into this packager's container format.

        Args:
            tiles: Fetched tiles, in fetch order
            params: Bounding box, zoom range, source and creation time

        Returns:
            PackResult with the blob and the number of tiles included

        Raises:
            PackagingError: If there is nothing to package or encoding fails
        """
        if not tiles:
            raise PackagingError(f"No tiles to package as {self.format.display_name}")

        start_time = time.time()
        self.logger.info("Packaging tiles", tiles=len(tiles), zoom_range=str(params.zoom_range))

        try:
            result = self._pack(tiles, params)
        except PackagingError:
            raise
        except Exception as e:
            self.logger.error("Packaging failed", error=str(e))
            raise PackagingError(f"{self.format.display_name} packaging failed: {e}") from e

        self.logger.info(
            "Packaging completed",
            tile_count=result.tile_count,
            discarded_tiles=result.discarded_tiles,
            size_bytes=len(result.blob),
            processing_time=time.time() - start_time
        )
        return result

    @abstractmethod
    def _pack(self, tiles: Sequence[Tile], params: PackParams) -> PackResult:
        """Format-specific encoding."""


class SQLitePackager(Packager):
    """
    Packager whose container is a single SQLite database file.

    Subclasses create their schema and rows on an open connection; this
    class owns the temporary file and returns its bytes.
    """

    tiles_table = "tiles"

    def _pack(self, tiles: Sequence[Tile], params: PackParams) -> PackResult:
        with tempfile.TemporaryDirectory(prefix="geopulse_") as temp_dir:
            db_path = os.path.join(temp_dir, f"export.{self.format.extension}")
            conn = sqlite3.connect(db_path)
            try:
                self._create_schema(conn, params)
                self._write_metadata(conn, params)
                inserted = self._insert_tiles(conn, tiles)
                conn.commit()
            finally:
                conn.close()

            with open(db_path, "rb") as f:
                blob = f.read()

        return PackResult(blob=blob, tile_count=inserted)

    @abstractmethod
    def _create_schema(self, conn: sqlite3.Connection, params: PackParams) -> None:
        """Create tables and indexes."""

    @abstractmethod
    def _write_metadata(self, conn: sqlite3.Connection, params: PackParams) -> None:
        """Insert format metadata rows."""

    def _insert_tiles(self, conn: sqlite3.Connection, tiles: Iterable[Tile]) -> int:
        """
        Insert tiles with TMS row numbering.

        Duplicate (zoom, column, row) keys are ignored so the unique index
        stays intact; the first tile for a key wins.
        """
        cursor = conn.cursor()
        inserted = 0
        for tile in tiles:
            cursor.execute(
                f"INSERT OR IGNORE INTO {self.tiles_table} "
                "(zoom_level, tile_column, tile_row, tile_data) VALUES (?, ?, ?, ?)",
                (tile.zoom, tile.x, self._tile_row(tile), sqlite3.Binary(tile.data))
            )
            inserted += cursor.rowcount
        return inserted

    def _tile_row(self, tile: Tile) -> int:
        return tile.key.tms_row()


_REGISTRY: Dict[ExportFormat, Type[Packager]] = {}


def register_packager(cls: Type[Packager]) -> Type[Packager]:
    """Class decorator adding a packager to the format registry."""
    _REGISTRY[cls.format] = cls
    return cls


def get_packager(export_format) -> Packager:
    """Instantiate the packager registered for ``export_format``."""
    export_format = ExportFormat.parse(export_format)
    try:
        return _REGISTRY[export_format]()
    except KeyError:
        raise PackagingError(f"No packager registered for {export_format.value}")


def registered_formats() -> List[ExportFormat]:
    return list(_REGISTRY)
