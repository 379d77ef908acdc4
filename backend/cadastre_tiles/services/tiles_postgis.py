"""PostGIS SQL builders for the spatial query gateway.

This module generates the SQL the gateway runs against PostGIS: a
bounding-box intersection query returning feature geometry as WKB, and a
centroid query for label placement. Both push every filter (tile envelope
and district prefix) down to the database so that a tile never reads more
than the rows it intersects.

Table and column names are taken from a registered ``LayerSpec``, whose
identifiers are validated at construction; request values are always bound
as named psycopg2 parameters (``%(name)s``).

Example:
    Generate the feature query for the parcel layer:
        >>> from cadastre_tiles.db import models
        >>> from cadastre_tiles.services.tiles_postgis import build_features_sql

        >>> sql = build_features_sql(models.get_layer("nops"), with_district=True)
        >>> cursor.execute(sql, {
        ...     "min_lon": 112.71, "min_lat": -7.62,
        ...     "max_lon": 112.74, "max_lat": -7.60,
        ...     "srid": 4326, "district": "3575020001%", "limit": None,
        ... })

    The generated SQL:
     - Builds the tile envelope in EPSG:4326 and transforms it to the
       store SRID so the spatial index on ``geom`` can be used
     - Filters on ``ST_Intersects`` and, optionally, a ``LIKE`` prefix on
       the cadastral code column
     - Returns geometry as WKB in EPSG:4326, ordered by id
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cadastre_tiles.db import models


def _select_columns(layer: models.LayerSpec) -> str:
    columns = [
        "t.id AS id",
        f"t.{layer.code_column} AS code",
        *(f"t.{column} AS {column}" for column in layer.attribute_columns),
    ]
    return ",\n       ".join(columns)


def build_features_sql(layer: models.LayerSpec, with_district: bool) -> str:
    """Return the bbox intersection query for ``layer``.

    Parameters: ``min_lon``, ``min_lat``, ``max_lon``, ``max_lat``,
    ``srid`` (store SRID), ``limit`` (None for no limit) and, when
    ``with_district`` is set, ``district`` (a ``LIKE`` pattern).

    Args:
        layer: Registered LayerSpec (identifiers already validated).
        with_district: Whether to add the cadastral prefix predicate.

    Returns:
        SQL query string ready for execution with named parameters.
    """
    district_filter = (
        f"\n  AND t.{layer.code_column} LIKE %(district)s" if with_district else ""
    )
    return f"""
WITH bounds AS (
  SELECT ST_Transform(
    ST_MakeEnvelope(%(min_lon)s, %(min_lat)s, %(max_lon)s, %(max_lat)s, 4326),
    %(srid)s
  ) AS geom
)
SELECT {_select_columns(layer)},
       ST_AsBinary(ST_Transform(t.geom, 4326)) AS wkb
FROM {layer.table} t, bounds
WHERE t.geom IS NOT NULL
  AND NOT ST_IsEmpty(t.geom)
  AND ST_Intersects(t.geom, bounds.geom){district_filter}
ORDER BY t.id
LIMIT %(limit)s
""".strip()


def build_centroids_sql(layer: models.LayerSpec) -> str:
    """Return the label centroid query for ``layer``.

    Centroids are computed on the geometry transformed to EPSG:4326 and
    returned as ``centroid_lng``/``centroid_lat``. Parameter: ``district``
    (a ``LIKE`` pattern).
    """
    return f"""
SELECT t.id AS id,
       t.{layer.code_column} AS code,
       ST_X(c.geom) AS centroid_lng,
       ST_Y(c.geom) AS centroid_lat
FROM {layer.table} t
CROSS JOIN LATERAL (
  SELECT ST_Centroid(ST_Transform(t.geom, 4326)) AS geom
) c
WHERE t.geom IS NOT NULL
  AND NOT ST_IsEmpty(t.geom)
  AND t.{layer.code_column} LIKE %(district)s
ORDER BY t.id
""".strip()


def like_prefix(prefix: str) -> str:
    """Return a ``LIKE`` pattern matching codes that start with ``prefix``.

    Callers pass digit-only prefixes; ``%`` and ``_`` are escaped anyway.
    """
    escaped = (
        prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )
    return f"{escaped}%"
