"""Tile rendering pipeline: fetch, clip and encode the features of a tile.

The pipeline is split at the only blocking step. :func:`fetch_tile_features`
runs the spatial query; :func:`build_mvt_tile` and
:func:`build_geojson_tile` are pure CPU work over the fetched features and
process them sequentially. A feature whose geometry cannot be clipped is
skipped with a warning so that one bad parcel never blanks a whole tile.

Example:
    Render a parcel tile from the in-memory gateway:
        >>> from cadastre_tiles.core import config
        >>> from cadastre_tiles.db import database, models
        >>> from cadastre_tiles.services import tile_addressing, tiles

        >>> settings = config.get_settings()
        >>> gateway = database.InMemoryFeatureGateway()
        >>> coord = tile_addressing.TileCoordinate.validated(14, 13322, 8539)
        >>> layer = models.get_layer("nops")
        >>> features = tiles.fetch_tile_features(
        ...     gateway, layer, coord, "3575020001", settings
        ... )
        >>> tile = tiles.build_mvt_tile(features, layer, coord, settings)
        >>> tile.content_type
        'application/vnd.mapbox-vector-tile'
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from shapely.geometry import mapping

from cadastre_tiles.core import cadastral, errors
from cadastre_tiles.db import models as db_models
from cadastre_tiles.services import clipper, mvt_encoder, tile_addressing

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cadastre_tiles.core import config
    from cadastre_tiles.db import database

logger = logging.getLogger(__name__)

MVT_CONTENT_TYPE = "application/vnd.mapbox-vector-tile"


def cache_control(max_age: int) -> str:
    return f"public, max-age={max_age}"


def feature_attributes(
    layer: db_models.LayerSpec, feature: db_models.Feature
) -> dict[str, db_models.Scalar | None]:
    """Attributes written for a feature: code, extra columns and view code."""
    attributes: dict[str, db_models.Scalar | None] = {
        layer.code_column: feature.code,
        **feature.attributes,
    }
    try:
        attributes[layer.view_key] = cadastral.CadastralCode.parse(
            feature.code
        ).view_code
    except cadastral.InvalidCadastralCode as exc:
        logger.warning("No view code for %s id=%s: %s", layer.name, feature.id, exc)
    return attributes


def fetch_tile_features(
    gateway: database.FeatureGatewayProtocol,
    layer: db_models.LayerSpec,
    coord: tile_addressing.TileCoordinate,
    district_prefix: str | None,
    settings: config.Settings,
    *,
    buffered: bool = True,
    limit: int | None = None,
    cancellation: database.QueryCancellation | None = None,
) -> list[db_models.Feature]:
    """Query the features intersecting a tile.

    With ``buffered`` the query box is widened by the clip buffer so that
    features which only reach into the buffer are still drawn at the edge.
    """
    bbox = tile_addressing.tile_to_bbox(
        coord.zoom, coord.x, coord.y, settings.max_zoom
    )
    if buffered:
        bbox = bbox.buffered(settings.tile_buffer / settings.tile_extent)
    return gateway.query_features(
        layer, bbox, district_prefix, limit=limit, cancellation=cancellation
    )


def build_mvt_tile(
    features: Sequence[db_models.Feature],
    layer: db_models.LayerSpec,
    coord: tile_addressing.TileCoordinate,
    settings: config.Settings,
) -> db_models.Tile:
    """Clip and encode ``features`` into an MVT tile.

    Raises:
        EncodingFailure: If the tile cannot be serialised.
    """
    bbox = tile_addressing.tile_to_bbox(
        coord.zoom, coord.x, coord.y, settings.max_zoom
    )
    tolerance = clipper.simplify_tolerance(
        coord.zoom, settings.tile_extent, settings.simplify_full_detail_zoom
    )

    encodable = []
    for feature in features:
        try:
            geometry = clipper.clip(
                feature.geometry,
                bbox,
                settings.tile_extent,
                settings.tile_buffer,
                simplify=tolerance,
            )
        except errors.MalformedGeometry as exc:
            logger.warning(
                "Skipping %s id=%s in tile %s/%s/%s: %s",
                layer.name,
                feature.id,
                coord.zoom,
                coord.x,
                coord.y,
                exc,
            )
            continue
        if geometry.is_empty:
            continue
        encodable.append(
            mvt_encoder.EncodableFeature(
                geometry, feature_attributes(layer, feature), id=feature.id
            )
        )

    try:
        payload = mvt_encoder.encode(encodable, layer.name, settings.tile_extent)
    except errors.EncodingFailure:
        logger.exception(
            "Encoding %s tile %s/%s/%s failed",
            layer.name,
            coord.zoom,
            coord.x,
            coord.y,
        )
        raise

    return db_models.Tile(
        zoom=coord.zoom,
        x=coord.x,
        y=coord.y,
        payload=payload,
        content_type=MVT_CONTENT_TYPE,
        cache_control=cache_control(settings.tile_max_age),
    )


def build_geojson_tile(
    features: Sequence[db_models.Feature],
    layer: db_models.LayerSpec,
    zoom: int,
    settings: config.Settings,
) -> dict[str, Any]:
    """Return a GeoJSON FeatureCollection of simplified, unclipped features."""
    tolerance_degrees = clipper.simplify_tolerance_degrees(
        zoom, settings.simplify_full_detail_zoom
    )

    collection = []
    for feature in features:
        geometry = feature.geometry
        if geometry is None or geometry.is_empty:
            continue
        if tolerance_degrees > 0:
            geometry = geometry.simplify(tolerance_degrees, preserve_topology=True)
        collection.append(
            {
                "type": "Feature",
                "id": feature.id,
                "properties": feature_attributes(layer, feature),
                "geometry": mapping(geometry),
            }
        )
    return {"type": "FeatureCollection", "features": collection}
