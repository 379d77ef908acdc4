"""XYZ tile addressing in the spherical-Mercator (EPSG:3857) scheme.

Converts a z/x/y tile address into its geographic bounding box and back.
Longitude spans [-180, 180) linearly across ``2**zoom`` columns; latitude
follows the inverse Gudermannian, so tiles shrink in latitude away from the
equator. The arithmetic is delegated to ``mercantile``; this module adds
the validation that turns out-of-range addresses into client errors.

Example:
    >>> from cadastre_tiles.services import tile_addressing
    >>> bbox = tile_addressing.tile_to_bbox(0, 0, 0)
    >>> bbox.min_lon, bbox.max_lon
    (-180.0, 180.0)
"""

from __future__ import annotations

import dataclasses
from typing import NamedTuple

import mercantile

from cadastre_tiles.core import errors

# Zoom ceiling when no configured maximum is passed in.
MAX_ZOOM = 24

# Latitude of the top edge of tile 0/0/0.
MAX_LATITUDE = 85.0511287798066
MAX_LONGITUDE = 180.0


@dataclasses.dataclass(frozen=True)
class TileCoordinate:
    """A validated tile address."""

    zoom: int
    x: int
    y: int

    @classmethod
    def validated(
        cls, zoom: int, x: int, y: int, max_zoom: int = MAX_ZOOM
    ) -> TileCoordinate:
        """Build a coordinate, rejecting addresses outside the pyramid.

        Raises:
            InvalidTileAddress: If zoom is negative or above ``max_zoom``,
                or x/y fall outside ``[0, 2**zoom)``.
        """
        if zoom < 0 or zoom > max_zoom:
            raise errors.InvalidTileAddress(
                f"zoom={zoom} out of range [0, {max_zoom}]"
            )
        size = 1 << zoom
        if not 0 <= x < size:
            raise errors.InvalidTileAddress(
                f"x={x} out of range [0, {size}) for zoom {zoom}"
            )
        if not 0 <= y < size:
            raise errors.InvalidTileAddress(
                f"y={y} out of range [0, {size}) for zoom {zoom}"
            )
        return cls(zoom, x, y)


class BoundingBox(NamedTuple):
    """Geographic bounding box in degrees."""

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    @property
    def width(self) -> float:
        return self.max_lon - self.min_lon

    @property
    def height(self) -> float:
        return self.max_lat - self.min_lat

    def buffered(self, fraction: float) -> BoundingBox:
        """Grow the box on every side by ``fraction`` of its size.

        The result stays inside the Web-Mercator world: longitude is clamped
        to +-180 and latitude to +-:data:`MAX_LATITUDE`.
        """
        dx = self.width * fraction
        dy = self.height * fraction
        return BoundingBox(
            max(self.min_lon - dx, -MAX_LONGITUDE),
            max(self.min_lat - dy, -MAX_LATITUDE),
            min(self.max_lon + dx, MAX_LONGITUDE),
            min(self.max_lat + dy, MAX_LATITUDE),
        )


def tile_to_bbox(
    zoom: int, x: int, y: int, max_zoom: int = MAX_ZOOM
) -> BoundingBox:
    """Return the geographic bounds of tile z/x/y.

    Raises:
        InvalidTileAddress: If the address is outside the tile pyramid.
    """
    coord = TileCoordinate.validated(zoom, x, y, max_zoom)
    bounds = mercantile.bounds(coord.x, coord.y, coord.zoom)
    return BoundingBox(bounds.west, bounds.south, bounds.east, bounds.north)


def bbox_to_tile(bbox: BoundingBox, zoom: int) -> TileCoordinate:
    """Return the tile at ``zoom`` containing the centre of ``bbox``.

    The inverse of :func:`tile_to_bbox` for boxes produced by it.
    """
    lon = (bbox.min_lon + bbox.max_lon) / 2.0
    lat = (bbox.min_lat + bbox.max_lat) / 2.0
    tile = mercantile.tile(lon, lat, zoom)
    return TileCoordinate(tile.z, tile.x, tile.y)
