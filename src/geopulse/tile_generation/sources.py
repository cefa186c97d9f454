"""
Tile Source Registry

Static table of the raster tile services a tile set can be generated from.
The set is fixed at build time.
"""

from dataclasses import dataclass
from typing import Dict, List

from ..errors import InputValidationError


@dataclass(frozen=True)
class TileSource:
    """A raster tile service and its zoom ceilings."""
    identifier: str
    name: str
    url_template: str
    attribution: str
    max_zoom: int
    max_native_zoom: int

    def tile_url(self, z: int, x: int, y: int) -> str:
        return self.url_template.format(z=z, x=x, y=y)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.identifier,
            "name": self.name,
            "attribution": self.attribution,
            "max_zoom": self.max_zoom,
            "max_native_zoom": self.max_native_zoom,
        }


_ARCGIS = "https://server.arcgisonline.com/ArcGIS/rest/services"

TILE_SOURCES: Dict[str, TileSource] = {
    source.identifier: source
    for source in [
        TileSource(
            identifier="osm",
            name="OpenStreetMap",
            url_template="https://tile.openstreetmap.org/{z}/{x}/{y}.png",
            attribution="© OpenStreetMap contributors",
            max_zoom=22,
            max_native_zoom=19,
        ),
        TileSource(
            identifier="satellite",
            name="ArcGIS World Imagery",
            url_template="https://services.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}",
            attribution="Tiles © Esri — Source: Esri, Maxar, Earthstar Geographics",
            max_zoom=24,
            max_native_zoom=22,
        ),
        TileSource(
            identifier="topographic",
            name="ArcGIS Topographic",
            url_template=_ARCGIS + "/World_Topo_Map/MapServer/tile/{z}/{y}/{x}",
            attribution="Tiles © Esri — DeLorme, NAVTEQ",
            max_zoom=22,
            max_native_zoom=20,
        ),
        TileSource(
            identifier="hiking",
            name="ArcGIS Physical",
            url_template=_ARCGIS + "/World_Physical_Map/MapServer/tile/{z}/{y}/{x}",
            attribution="Tiles © Esri — US National Park Service",
            max_zoom=22,
            max_native_zoom=17,
        ),
        TileSource(
            identifier="terrain",
            name="ArcGIS Terrain Base",
            url_template=_ARCGIS + "/World_Terrain_Base/MapServer/tile/{z}/{y}/{x}",
            attribution="Tiles © Esri — USGS, Esri, TANA, DeLorme, NPS",
            max_zoom=22,
            max_native_zoom=18,
        ),
        TileSource(
            identifier="cycling",
            name="ArcGIS Street Map",
            url_template=_ARCGIS + "/World_Street_Map/MapServer/tile/{z}/{y}/{x}",
            attribution="Tiles © Esri — DeLorme, NAVTEQ, USGS",
            max_zoom=22,
            max_native_zoom=20,
        ),
        TileSource(
            identifier="trekking",
            name="ArcGIS National Geographic",
            url_template=_ARCGIS + "/NatGeo_World_Map/MapServer/tile/{z}/{y}/{x}",
            attribution="Tiles © Esri — National Geographic, DeLorme, NAVTEQ",
            max_zoom=24,
            max_native_zoom=22,
        ),
        TileSource(
            identifier="outdoor",
            name="ArcGIS Outdoor",
            url_template=_ARCGIS + "/World_Topo_Map/MapServer/tile/{z}/{y}/{x}",
            attribution="Tiles © Esri — DeLorme, NAVTEQ",
            max_zoom=22,
            max_native_zoom=20,
        ),
    ]
}


def get_source(identifier: str) -> TileSource:
    """Look up a tile source, raising ``InputValidationError`` for unknown ids."""
    try:
        return TILE_SOURCES[identifier]
    except (KeyError, TypeError):
        valid = ", ".join(sorted(TILE_SOURCES))
        raise InputValidationError(f"Unknown tile source {identifier!r} (expected one of: {valid})")


def list_sources() -> List[TileSource]:
    return list(TILE_SOURCES.values())
