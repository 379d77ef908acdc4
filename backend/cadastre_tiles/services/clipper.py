"""Reproject and clip feature geometry into tile-local integer space.

Geometry arrives in EPSG:4326. It is projected to Web Mercator, mapped
linearly onto the tile grid ``[0, extent] x [0, extent]`` with Y pointing
down, optionally simplified, clipped to the tile plus a buffer, snapped to
integers and cleaned of degenerate rings.

Ring orientation follows the MVT 2.x convention: exterior rings have a
positive shoelace area in tile coordinates (clockwise on screen), interior
rings a negative one. The encoder regroups rings into polygons by that
sign, so each exterior is followed by its own holes.

Example:
    >>> from shapely.geometry import box
    >>> from cadastre_tiles.services import clipper, tile_addressing
    >>> bbox = tile_addressing.tile_to_bbox(14, 13322, 8539)
    >>> parcel = box(112.725, -7.615, 112.726, -7.614)
    >>> clipped = clipper.clip(parcel, bbox)
    >>> clipped.geom_type
    'polygon'
"""

from __future__ import annotations

import dataclasses
import functools
import logging
import math
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Literal

import numpy as np
import pyproj
import shapely
from shapely.errors import GEOSException
from shapely.geometry import (
    GeometryCollection,
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Point,
    Polygon,
)

from cadastre_tiles.core import errors

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

    from cadastre_tiles.services.tile_addressing import BoundingBox

logger = logging.getLogger(__name__)

DEFAULT_EXTENT = 4096
DEFAULT_BUFFER = 64

# Degrees per doubling below the full-detail zoom.
_BASE_TOLERANCE_DEGREES = 0.00001
_METRES_PER_DEGREE = 111_320
_EARTH_CIRCUMFERENCE = 2 * math.pi * 6_378_137

GeomType = Literal["point", "linestring", "polygon"]
Ring = tuple[tuple[int, int], ...]


@dataclasses.dataclass(frozen=True)
class ClippedGeometry:
    """Tile-local geometry ready for encoding.

    For polygons ``rings`` holds each exterior ring followed by its holes;
    for lines one ring per part; for points one single-vertex ring per
    point.
    """

    geom_type: GeomType | None
    rings: tuple[Ring, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.rings


EMPTY = ClippedGeometry(None)


@functools.lru_cache(maxsize=1)
def _to_mercator() -> pyproj.Transformer:
    return pyproj.Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)


def _tile_projection(
    bbox: BoundingBox, extent: int
) -> Callable[[np.ndarray], np.ndarray]:
    """Return a vectorised lon/lat -> tile-local transform for ``bbox``."""
    transformer = _to_mercator()
    minx, miny = transformer.transform(bbox.min_lon, bbox.min_lat)
    maxx, maxy = transformer.transform(bbox.max_lon, bbox.max_lat)
    scale_x = extent / (maxx - minx)
    scale_y = extent / (maxy - miny)

    def project(coords: np.ndarray) -> np.ndarray:
        mx, my = transformer.transform(coords[:, 0], coords[:, 1])
        return np.column_stack(
            (
                (np.asarray(mx) - minx) * scale_x,
                (maxy - np.asarray(my)) * scale_y,
            )
        )

    return project


def simplify_tolerance_degrees(zoom: int, full_detail_zoom: int = 18) -> float:
    """Simplification tolerance in degrees for ``zoom``.

    Zero from ``full_detail_zoom`` on; below it the tolerance doubles with
    every zoom level out.
    """
    if zoom >= full_detail_zoom:
        return 0.0
    return 2 ** (full_detail_zoom - zoom) * _BASE_TOLERANCE_DEGREES


def simplify_tolerance(
    zoom: int, extent: int = DEFAULT_EXTENT, full_detail_zoom: int = 18
) -> float:
    """:func:`simplify_tolerance_degrees` converted to tile units."""
    metres = simplify_tolerance_degrees(zoom, full_detail_zoom) * _METRES_PER_DEGREE
    tile_metres = _EARTH_CIRCUMFERENCE / (1 << zoom)
    return metres / tile_metres * extent


def _repaired(geometry: BaseGeometry) -> BaseGeometry:
    if geometry.is_valid:
        return geometry
    try:
        repaired = shapely.make_valid(geometry)
    except GEOSException as exc:
        raise errors.MalformedGeometry(
            f"Invalid {geometry.geom_type} could not be repaired: {exc}"
        ) from exc
    if repaired.is_empty:
        raise errors.MalformedGeometry(
            f"Invalid {geometry.geom_type} is empty after repair"
        )
    return repaired


def _explode(
    geometry: BaseGeometry,
) -> tuple[list[Polygon], list[LineString], list[Point]]:
    polygons: list[Polygon] = []
    lines: list[LineString] = []
    points: list[Point] = []
    stack = [geometry]
    while stack:
        geom = stack.pop(0)
        if geom.is_empty:
            continue
        if isinstance(geom, Polygon):
            polygons.append(geom)
        elif isinstance(geom, LineString):
            lines.append(geom)
        elif isinstance(geom, Point):
            points.append(geom)
        elif isinstance(
            geom, MultiPolygon | MultiLineString | MultiPoint | GeometryCollection
        ):
            stack[0:0] = list(geom.geoms)
    return polygons, lines, points


def _snap(coords: Iterable[tuple[float, ...]]) -> list[tuple[int, int]]:
    """Round to the integer grid and drop consecutive duplicates."""
    snapped: list[tuple[int, int]] = []
    for x, y in np.rint(np.asarray(list(coords), dtype=float)[:, :2]).tolist():
        point = (int(x), int(y))
        if not snapped or snapped[-1] != point:
            snapped.append(point)
    return snapped


def signed_area(ring: Ring) -> int:
    """Twice the shoelace area of a ring; positive means MVT exterior."""
    total = 0
    for i, (x1, y1) in enumerate(ring):
        x2, y2 = ring[(i + 1) % len(ring)]
        total += x1 * y2 - x2 * y1
    return total


def _ring(coords: Iterable[tuple[float, ...]], exterior: bool) -> Ring | None:
    points = _snap(coords)
    if len(points) > 1 and points[0] == points[-1]:
        points.pop()
    if len(set(points)) < 3:
        return None
    ring = tuple(points)
    area = signed_area(ring)
    if area == 0:
        return None
    if (area > 0) != exterior:
        ring = ring[::-1]
    return ring


def _polygon_rings(polygons: list[Polygon]) -> tuple[Ring, ...]:
    rings: list[Ring] = []
    for polygon in polygons:
        exterior = _ring(polygon.exterior.coords, exterior=True)
        if exterior is None:
            continue
        rings.append(exterior)
        for interior in polygon.interiors:
            hole = _ring(interior.coords, exterior=False)
            if hole is not None:
                rings.append(hole)
    return tuple(rings)


def _line_rings(lines: list[LineString]) -> tuple[Ring, ...]:
    rings = []
    for line in lines:
        points = _snap(line.coords)
        if len(points) >= 2:
            rings.append(tuple(points))
    return tuple(rings)


def _point_rings(points: list[Point], low: int, high: int) -> tuple[Ring, ...]:
    rings = []
    for point in points:
        x, y = _snap(point.coords)[0]
        if low <= x <= high and low <= y <= high:
            rings.append(((x, y),))
    return tuple(rings)


def clip(
    geometry: BaseGeometry | None,
    bbox: BoundingBox,
    extent: int = DEFAULT_EXTENT,
    buffer: int = DEFAULT_BUFFER,
    *,
    simplify: float = 0.0,
) -> ClippedGeometry:
    """Transform ``geometry`` into the tile grid of ``bbox`` and clip it.

    Args:
        geometry: Geometry in EPSG:4326; None or empty yields ``EMPTY``.
        bbox: Geographic bounds of the tile.
        extent: Size of the tile-local grid.
        buffer: Clip margin around the tile, in tile units.
        simplify: Topology-preserving simplification tolerance in tile
            units; 0 disables simplification.

    Returns:
        The clipped geometry; ``EMPTY`` when nothing of it remains.

    Raises:
        MalformedGeometry: If the geometry is invalid beyond repair or
            GEOS fails while transforming or clipping it.
    """
    if geometry is None or geometry.is_empty:
        return EMPTY

    geometry = _repaired(geometry)
    low, high = -buffer, extent + buffer
    try:
        local = shapely.transform(geometry, _tile_projection(bbox, extent))
        if simplify > 0:
            local = local.simplify(simplify, preserve_topology=True)
        minx, miny, maxx, maxy = local.bounds
        outside = minx < low or miny < low or maxx > high or maxy > high
        if outside and local.geom_type not in ("Point", "MultiPoint"):
            local = shapely.clip_by_rect(local, low, low, high, high)
    except (GEOSException, ValueError) as exc:
        raise errors.MalformedGeometry(
            f"Cannot clip {geometry.geom_type}: {exc}"
        ) from exc

    polygons, lines, points = _explode(local)
    if polygons:
        rings = _polygon_rings(polygons)
        return ClippedGeometry("polygon", rings) if rings else EMPTY
    if lines:
        rings = _line_rings(lines)
        return ClippedGeometry("linestring", rings) if rings else EMPTY
    if points:
        rings = _point_rings(points, low, high)
        return ClippedGeometry("point", rings) if rings else EMPTY
    logger.debug("Geometry %s left nothing after clipping", geometry.geom_type)
    return EMPTY
