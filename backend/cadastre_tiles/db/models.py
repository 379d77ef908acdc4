"""Data models for cadastral layers, features and labels.

This module defines the core data structures used throughout the
application. ``LayerSpec`` describes how a feature class is stored (table,
code column, extra attribute columns) and the ``LAYERS`` registry lists the
classes the service exposes: parcels (``nops``), blocks (``bloks``),
buildings (``bangunans``) and kecamatan boundaries (``kecamatans``).
``Feature`` is a row read from the spatial store, ``CentroidRow`` a raw label
row, and ``LabelPoint``/``Tile`` are the values returned to callers.

All geometries handled here are in EPSG:4326 (longitude/latitude degrees).

Example:
    Look up a layer and build a feature for it:
        >>> from shapely.geometry import box
        >>> from cadastre_tiles.db.models import Feature, get_layer
        >>> nops = get_layer("nops")
        >>> feature = Feature(
        ...     id=1,
        ...     code="357502000100100010",
        ...     geometry=box(112.62, -7.65, 112.621, -7.649),
        ...     attributes={"d_luas": "120"},
        ... )
"""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, NamedTuple

from cadastre_tiles.core import errors

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

Scalar = str | int | float | bool

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


@dataclasses.dataclass(frozen=True)
class LayerSpec:
    """Storage description of one feature class.

    Table and column names are interpolated into SQL, so they are checked
    against a strict identifier pattern when the layer is created; request
    input never reaches them.

    Attributes:
        name: Layer name used in URLs and as the MVT layer name.
        table: PostGIS table holding the features.
        code_column: Column with the fixed-width cadastral code.
        attribute_columns: Extra columns copied into feature attributes.
        view_key: Attribute/JSON key carrying the short display code.
    """

    name: str
    table: str
    code_column: str
    attribute_columns: tuple[str, ...] = ()
    view_key: str = "view_nop"

    def __post_init__(self) -> None:
        for identifier in (
            self.table,
            self.code_column,
            self.view_key,
            *self.attribute_columns,
        ):
            if not _IDENTIFIER.match(identifier):
                raise ValueError(f"Invalid SQL identifier: {identifier!r}")


LAYERS: dict[str, LayerSpec] = {
    layer.name: layer
    for layer in (
        LayerSpec(
            name="nops",
            table="nops",
            code_column="d_nop",
            attribute_columns=("d_luas",),
            view_key="view_nop",
        ),
        LayerSpec(
            name="bloks",
            table="bloks",
            code_column="d_blok",
            view_key="view_blok",
        ),
        LayerSpec(
            name="bangunans",
            table="bangunans",
            code_column="d_nop",
            view_key="view_nop",
        ),
        LayerSpec(
            name="kecamatans",
            table="kecamatans",
            code_column="d_kd_kec",
            attribute_columns=("d_nm_kec",),
            view_key="view_kec",
        ),
    )
}


def get_layer(name: str) -> LayerSpec:
    """Return the registered layer called ``name``.

    Raises:
        UnknownLayer: If no such layer is registered.
    """
    try:
        return LAYERS[name]
    except KeyError:
        known = ", ".join(sorted(LAYERS))
        raise errors.UnknownLayer(
            f"Unknown layer {name!r}; expected one of: {known}"
        ) from None


@dataclasses.dataclass(frozen=True)
class Feature:
    """A stored feature as read from the spatial store.

    Attributes:
        id: Integer primary key.
        code: Full cadastral code (the layer's code column).
        geometry: Polygon/multipolygon in EPSG:4326, or None.
        attributes: Extra scalar attributes from the layer's columns.
    """

    id: int
    code: str
    geometry: BaseGeometry | None
    attributes: Mapping[str, Scalar | None] = dataclasses.field(
        default_factory=dict
    )


class CentroidRow(NamedTuple):
    """Per-feature centroid as returned by the store, in degrees."""

    id: int
    code: str
    lng: float
    lat: float


@dataclasses.dataclass(frozen=True)
class LabelPoint:
    """Label placement for one feature.

    Attributes:
        feature_id: Id of the labelled feature.
        display_code: Short code shown on the map (e.g. "0001").
        lat: Centroid latitude in degrees.
        lng: Centroid longitude in degrees.
    """

    feature_id: int
    display_code: str
    lat: float
    lng: float


@dataclasses.dataclass(frozen=True)
class Tile:
    """An encoded tile ready to be returned to the client."""

    zoom: int
    x: int
    y: int
    payload: bytes
    content_type: str
    cache_control: str
