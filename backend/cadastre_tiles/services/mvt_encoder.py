"""Mapbox Vector Tile encoding of clipped tile-local geometry.

Builds the layer dictionaries ``mapbox_vector_tile.encode`` expects from
:class:`~cadastre_tiles.services.clipper.ClippedGeometry` rings and feature
attributes. Geometry is already in tile coordinates with Y pointing down,
so the encoder is told not to quantize or flip it.

Output is deterministic: layers and features are written in the order
given and attributes are handed over in sorted key order, so the layer's
key/value tables are filled the same way for identical input.

Example:
    >>> from cadastre_tiles.services import clipper, mvt_encoder
    >>> square = clipper.ClippedGeometry(
    ...     "polygon", (((10, 10), (20, 10), (20, 20), (10, 20)),)
    ... )
    >>> data = mvt_encoder.encode(
    ...     [mvt_encoder.EncodableFeature(square, {"view_nop": "0001"}, id=7)],
    ...     "nops",
    ... )
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, NamedTuple

import mapbox_vector_tile
from shapely.geometry import (
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Point,
    Polygon,
)

from cadastre_tiles.core import errors
from cadastre_tiles.services import clipper

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

    from cadastre_tiles.db.models import Scalar

DEFAULT_EXTENT = 4096

_UINT64_MAX = (1 << 64) - 1
_INT64_MIN = -(1 << 63)


class EncodableFeature(NamedTuple):
    """A clipped geometry with the attributes to tag it with."""

    geometry: clipper.ClippedGeometry
    attributes: Mapping[str, Scalar | None]
    id: int | None = None


class LayerContent(NamedTuple):
    """Features of one MVT layer."""

    name: str
    features: Sequence[EncodableFeature]
    extent: int = DEFAULT_EXTENT


def _polygons(rings: Sequence[clipper.Ring]) -> BaseGeometry:
    """Group rings into polygons: a positive ring opens one, negatives are holes."""
    groups: list[tuple[clipper.Ring, list[clipper.Ring]]] = []
    for ring in rings:
        if clipper.signed_area(ring) > 0 or not groups:
            groups.append((ring, []))
        else:
            groups[-1][1].append(ring)
    polygons = [Polygon(shell, holes) for shell, holes in groups]
    return polygons[0] if len(polygons) == 1 else MultiPolygon(polygons)


def to_shape(geometry: clipper.ClippedGeometry) -> BaseGeometry:
    """Return the shapely geometry of tile-local ``geometry``.

    Raises:
        EncodingFailure: If the geometry type has no MVT counterpart.
    """
    rings = geometry.rings
    if geometry.geom_type == "polygon":
        return _polygons(rings)
    if geometry.geom_type == "linestring":
        if len(rings) == 1:
            return LineString(rings[0])
        return MultiLineString(list(rings))
    if geometry.geom_type == "point":
        if len(rings) == 1:
            return Point(rings[0][0])
        return MultiPoint([ring[0] for ring in rings])
    raise errors.EncodingFailure(f"Unknown geometry type {geometry.geom_type!r}")


def _check_value(name: str, value: Scalar) -> None:
    if isinstance(value, (bool, float, str)):
        return
    if isinstance(value, int):
        if value < _INT64_MIN:
            raise errors.EncodingFailure(f"{name}: integer {value} below int64 range")
        if value > _UINT64_MAX:
            raise errors.EncodingFailure(f"{name}: integer {value} above uint64 range")
        return
    raise errors.EncodingFailure(
        f"{name}: unsupported attribute value of type {type(value).__name__}"
    )


def properties(attributes: Mapping[str, Scalar | None]) -> dict[str, Scalar]:
    """Attributes in sorted key order with ``None`` values dropped.

    Raises:
        EncodingFailure: If a value cannot be written as an MVT value.
    """
    result: dict[str, Scalar] = {}
    for name in sorted(attributes):
        value = attributes[name]
        if value is None:
            continue
        _check_value(name, value)
        result[name] = value
    return result


def _feature_dict(feature: EncodableFeature) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "geometry": to_shape(feature.geometry),
        "properties": properties(feature.attributes),
    }
    if feature.id is not None:
        if feature.id < 0:
            raise errors.EncodingFailure(f"Feature id {feature.id} is negative")
        entry["id"] = feature.id
    return entry


def _layer_dict(layer: LayerContent) -> dict[str, Any]:
    return {
        "name": layer.name,
        "features": [
            _feature_dict(feature)
            for feature in layer.features
            if not feature.geometry.is_empty
        ],
        "extent": layer.extent,
    }


def encode_tile(layers: Sequence[LayerContent]) -> bytes:
    """Serialise several layers into one tile.

    All layers must share one extent; the first layer's extent is used.

    Raises:
        EncodingFailure: If a feature cannot be represented in the MVT
            schema or the encoder rejects it.
    """
    extent = layers[0].extent if layers else DEFAULT_EXTENT
    if any(layer.extent != extent for layer in layers):
        raise errors.EncodingFailure("All layers of a tile must share one extent")
    payload = [_layer_dict(layer) for layer in layers]
    try:
        return mapbox_vector_tile.encode(
            payload,
            default_options={
                "quantize_bounds": None,
                "y_coord_down": True,
                "extents": extent,
            },
        )
    except (ValueError, TypeError) as exc:
        raise errors.EncodingFailure(f"Cannot encode tile: {exc}") from exc


def encode(
    features: Sequence[EncodableFeature],
    layer_name: str,
    extent: int = DEFAULT_EXTENT,
) -> bytes:
    """Serialise ``features`` as a single-layer tile.

    An empty ``features`` sequence still yields a valid tile holding one
    empty layer.

    Raises:
        EncodingFailure: If an attribute value, feature id or geometry type
            cannot be represented in the MVT schema.
    """
    return encode_tile([LayerContent(layer_name, features, extent)])
