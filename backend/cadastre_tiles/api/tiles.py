"""XYZ tile and label endpoints for the cadastral layers.

This module exposes the cadastral feature classes as Mapbox Vector Tiles,
as GeoJSON tiles and as per-district label points. Every endpoint is
read-only and addressed by layer name (``nops``, ``bloks``, ``bangunans``,
``kecamatans``) and an optional ``districtCode`` cadastral prefix.

Tiles use the standard XYZ scheme in EPSG:3857. The spatial query runs in
the threadpool while the request polls for a client disconnect; a client
that goes away cancels its statement on the server. Clipping and encoding
also run in the threadpool so the event loop never blocks on CPU work.

Example:
    Request a parcel tile for one desa:
        >>> response = client.get(
        ...     "/tiles/nops/mvt/14/13322/8539?districtCode=3575020001"
        ... )
        >>> response.headers["content-type"]
        'application/vnd.mapbox-vector-tile'

    Request its labels:
        >>> client.get("/tiles/nops/labels?districtCode=3575020001").json()
        {'labels': [{'id': 1, 'view_nop': '0001', ...}], 'count': 1}

    Use in MapLibre GL JS:
        >>> map.addSource('nops', {
        ...     type: 'vector',
        ...     tiles: ['http://api/tiles/nops/mvt/{z}/{x}/{y}?districtCode=3575020001']
        ... });
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

import fastapi
from fastapi import responses
from starlette import concurrency

from cadastre_tiles.core import cadastral, config
from cadastre_tiles.db import database
from cadastre_tiles.db import models as db_models
from cadastre_tiles.services import labels as label_service
from cadastre_tiles.services import tile_addressing, tiles

logger = logging.getLogger(__name__)

router = fastapi.APIRouter(prefix="/tiles", tags=["tiles"])

T = TypeVar("T")

_DEPRECATED_EXAMPLE = "/tiles/nops/mvt/14/13322/8539?districtCode=3575020001"


def _log_abandoned(task: asyncio.Future[Any]) -> None:
    """Retrieve the outcome of a query whose request went away."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info("Abandoned query ended with %s: %s", type(exc).__name__, exc)


def _get_gateway(
    request: fastapi.Request,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> database.FeatureGatewayProtocol:
    """Resolve the feature gateway dependency.

    Args:
        request: Incoming request; its app holds the connection pool.
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        FeatureGatewayProtocol implementation
            (PostgisFeatureGateway in production).
    """
    return database.get_feature_gateway(
        getattr(request.app.state, "pool", None), settings
    )


def _get_layer(layer: str) -> db_models.LayerSpec:
    return db_models.get_layer(layer)


async def _run_cancellable(
    request: fastapi.Request,
    settings: config.Settings,
    query: Callable[[database.QueryCancellation], T],
) -> T:
    """Run a blocking store query, cancelling it if the client disconnects.

    Args:
        request: Request whose connection is watched.
        settings: Provides the disconnect polling interval.
        query: Callable running the query with the given cancellation handle.

    Returns:
        Whatever ``query`` returns.

    Raises:
        StoreUnavailable: If the store fails or the query was cancelled.
    """
    cancellation = database.QueryCancellation()
    task = asyncio.ensure_future(concurrency.run_in_threadpool(query, cancellation))
    try:
        while True:
            done, _ = await asyncio.wait(
                {task}, timeout=settings.disconnect_poll_seconds
            )
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.warning(
                    "Client disconnected from %s; cancelling query",
                    request.url.path,
                )
                cancellation.cancel()
                return await task
    except asyncio.CancelledError:
        cancellation.cancel()
        task.add_done_callback(_log_abandoned)
        raise


@router.get("/{layer}/mvt/{z}/{x}/{y}")
async def mvt_tile(
    request: fastapi.Request,
    z: int,
    x: int,
    y: int,
    district_code: str | None = fastapi.Query(None, alias="districtCode"),
    layer: db_models.LayerSpec = fastapi.Depends(_get_layer),  # noqa: B008
    gateway: database.FeatureGatewayProtocol = fastapi.Depends(_get_gateway),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> responses.Response:
    """Render an XYZ tile of ``layer`` as a Mapbox Vector Tile.

    Features intersecting the tile (plus its clip buffer) are read from the
    store, filtered by ``districtCode`` when given, clipped to tile-local
    coordinates and encoded into a single MVT layer named after ``layer``.
    A tile without features is still a valid MVT with an empty layer.

    Args:
        request: Incoming request (watched for disconnects).
        z: Zoom level.
        x: Tile X coordinate.
        y: Tile Y coordinate.
        district_code: Optional cadastral prefix (``districtCode``).
        layer: LayerSpec resolved from the path.
        gateway: Feature gateway (injected via FastAPI Depends).
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        Binary MVT response with a ``Cache-Control`` header.

    Raises:
        InvalidTileAddress: If z/x/y are outside the tile pyramid (400).
        InvalidDistrictCode: If ``districtCode`` is not a digit prefix (400).
        StoreUnavailable: If the store query fails (503).
        EncodingFailure: If the tile cannot be serialised (500).
    """
    coord = tile_addressing.TileCoordinate.validated(z, x, y, settings.max_zoom)
    district = cadastral.parse_district_prefix(district_code)

    features = await _run_cancellable(
        request,
        settings,
        lambda cancellation: tiles.fetch_tile_features(
            gateway, layer, coord, district, settings, cancellation=cancellation
        ),
    )
    tile = await concurrency.run_in_threadpool(
        tiles.build_mvt_tile, features, layer, coord, settings
    )
    return responses.Response(
        content=tile.payload,
        media_type=tile.content_type,
        headers={"Cache-Control": tile.cache_control},
    )


@router.get("/{layer}/labels")
async def layer_labels(
    request: fastapi.Request,
    district_code: str | None = fastapi.Query(None, alias="districtCode"),
    layer: db_models.LayerSpec = fastapi.Depends(_get_layer),  # noqa: B008
    gateway: database.FeatureGatewayProtocol = fastapi.Depends(_get_gateway),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> responses.JSONResponse:
    """Return label points for every feature of a district.

    Each label carries the feature id, its short display code under the
    layer's view key (``view_nop`` for parcels) and the geographic centroid.
    A missing ``districtCode`` yields an empty list, not an error; one
    shorter than a full desa code is rejected.

    Example:
        >>> client.get("/tiles/nops/labels?districtCode=9999999999").json()
        {'labels': [], 'count': 0}
    """
    district = cadastral.parse_district_prefix(
        district_code, min_length=cadastral.DISTRICT_LENGTH
    )
    points = await _run_cancellable(
        request,
        settings,
        lambda cancellation: label_service.extract_labels(
            gateway, layer, district, cancellation=cancellation
        ),
    )
    body = [
        {
            "id": point.feature_id,
            layer.view_key: point.display_code,
            "centroid_lat": point.lat,
            "centroid_lng": point.lng,
        }
        for point in points
    ]
    return responses.JSONResponse(
        {"labels": body, "count": len(body)},
        headers={"Cache-Control": tiles.cache_control(settings.label_max_age)},
    )


@router.get("/{layer}/geojson/{z}/{x}/{y}")
async def geojson_tile(
    request: fastapi.Request,
    z: int,
    x: int,
    y: int,
    district_code: str | None = fastapi.Query(None, alias="districtCode"),
    layer: db_models.LayerSpec = fastapi.Depends(_get_layer),  # noqa: B008
    gateway: database.FeatureGatewayProtocol = fastapi.Depends(_get_gateway),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> responses.JSONResponse:
    """Return the district's features in a tile as a GeoJSON FeatureCollection.

    Geometry is simplified for the zoom level but not clipped. At most
    ``geojson_feature_limit`` features are returned, and a missing
    ``districtCode`` yields an empty collection.
    """
    coord = tile_addressing.TileCoordinate.validated(z, x, y, settings.max_zoom)
    district = cadastral.parse_district_prefix(district_code)

    collection: dict[str, Any]
    if district is None:
        collection = {"type": "FeatureCollection", "features": []}
    else:
        features = await _run_cancellable(
            request,
            settings,
            lambda cancellation: tiles.fetch_tile_features(
                gateway,
                layer,
                coord,
                district,
                settings,
                buffered=False,
                limit=settings.geojson_feature_limit,
                cancellation=cancellation,
            ),
        )
        collection = await concurrency.run_in_threadpool(
            tiles.build_geojson_tile, features, layer, coord.zoom, settings
        )
    return responses.JSONResponse(
        collection,
        headers={"Cache-Control": tiles.cache_control(settings.tile_max_age)},
    )


@router.get("/{layer}/mvt", response_model=None)
async def deprecated_mvt(
    request: fastapi.Request,
    layer: db_models.LayerSpec = fastapi.Depends(_get_layer),  # noqa: B008
    z: int | None = None,
    x: int | None = None,
    y: int | None = None,
    district_code: str | None = fastapi.Query(None, alias="districtCode"),
    desa_kode: str | None = fastapi.Query(None, alias="desaKode"),
) -> responses.Response:
    """Query-string form of the tile endpoint, kept for old clients.

    Redirects to the path form when ``z``, ``x`` and ``y`` are all given
    (``desaKode`` is accepted in place of ``districtCode``); otherwise
    answers 404 with an example of the path form.
    """
    if z is None or x is None or y is None:
        return responses.JSONResponse(
            status_code=404,
            content={
                "error": "Deprecated",
                "message": "Use the path form /tiles/{layer}/mvt/{z}/{x}/{y}",
                "example": _DEPRECATED_EXAMPLE,
            },
        )

    url = request.url_for("mvt_tile", layer=layer.name, z=z, x=x, y=y)
    district = district_code or desa_kode
    if district:
        url = url.include_query_params(districtCode=district)
    return responses.RedirectResponse(str(url), status_code=307)
