"""Spatial query gateway over the cadastral feature store."""

from __future__ import annotations

import contextlib
import datetime
import decimal
import logging
import threading
from typing import TYPE_CHECKING, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras
import psycopg2.pool
import shapely.wkb
from shapely.errors import GEOSException
from shapely.geometry import box

from cadastre_tiles.core import errors
from cadastre_tiles.db import models as db_models
from cadastre_tiles.services import tiles_postgis

if TYPE_CHECKING:
    from collections.abc import Iterator

    from shapely.geometry.base import BaseGeometry

    from cadastre_tiles.core import config
    from cadastre_tiles.services.tile_addressing import BoundingBox

logger = logging.getLogger(__name__)


class QueryCancellation:
    """Handle that lets another thread abort a running query.

    The gateway binds the borrowed connection while a statement runs;
    :meth:`cancel` asks the server to abort it. Cancelling before the
    connection is bound aborts the query as soon as it starts.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connection: psycopg2.extensions.connection | None = None
        self.cancelled = False

    def bind(self, connection: psycopg2.extensions.connection) -> None:
        with self._lock:
            self._connection = connection
            if self.cancelled:
                self._send_cancel(connection)

    def unbind(self) -> None:
        with self._lock:
            self._connection = None

    def cancel(self) -> None:
        with self._lock:
            self.cancelled = True
            if self._connection is not None:
                self._send_cancel(self._connection)

    @staticmethod
    def _send_cancel(connection: psycopg2.extensions.connection) -> None:
        try:
            connection.cancel()
        except psycopg2.Error as exc:
            logger.warning("Could not cancel running query: %s", exc)


class FeatureGatewayProtocol(Protocol):
    """Protocol interface for reading features from the spatial store.

    Implementations return an empty list when nothing matches and raise
    ``StoreUnavailable`` when the store cannot be queried.
    """

    def query_features(
        self,
        layer: db_models.LayerSpec,
        bbox: BoundingBox,
        district_prefix: str | None = None,
        *,
        limit: int | None = None,
        cancellation: QueryCancellation | None = None,
    ) -> list[db_models.Feature]: ...

    def query_centroids(
        self,
        layer: db_models.LayerSpec,
        district_prefix: str,
        *,
        cancellation: QueryCancellation | None = None,
    ) -> list[db_models.CentroidRow]: ...


class InMemoryFeatureGateway(FeatureGatewayProtocol):
    """Simple in-memory store for tests and local development.

    Stores features per layer in a dictionary keyed by id. Data is lost when
    the process exits.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory gateway."""
        self._store: dict[str, dict[int, db_models.Feature]] = {}

    def add(
        self, layer_name: str, feature: db_models.Feature
    ) -> db_models.Feature:
        """Add or replace a feature of ``layer_name``.

        Args:
            layer_name: Name of the layer the feature belongs to.
            feature: Feature to store.

        Returns:
            The stored feature.
        """
        self._store.setdefault(layer_name, {})[feature.id] = feature
        return feature

    def _candidates(
        self, layer: db_models.LayerSpec, district_prefix: str | None
    ) -> list[db_models.Feature]:
        features = sorted(
            self._store.get(layer.name, {}).values(), key=lambda f: f.id
        )
        return [
            feature
            for feature in features
            if feature.geometry is not None
            and not feature.geometry.is_empty
            and (district_prefix is None or feature.code.startswith(district_prefix))
        ]

    def query_features(
        self,
        layer: db_models.LayerSpec,
        bbox: BoundingBox,
        district_prefix: str | None = None,
        *,
        limit: int | None = None,
        cancellation: QueryCancellation | None = None,
    ) -> list[db_models.Feature]:
        envelope = box(*bbox)
        matches = [
            feature
            for feature in self._candidates(layer, district_prefix)
            if feature.geometry is not None and feature.geometry.intersects(envelope)
        ]
        return matches if limit is None else matches[:limit]

    def query_centroids(
        self,
        layer: db_models.LayerSpec,
        district_prefix: str,
        *,
        cancellation: QueryCancellation | None = None,
    ) -> list[db_models.CentroidRow]:
        rows = []
        for feature in self._candidates(layer, district_prefix):
            centroid = cast("BaseGeometry", feature.geometry).centroid
            rows.append(
                db_models.CentroidRow(feature.id, feature.code, centroid.x, centroid.y)
            )
        return rows


def _scalar(value: object) -> db_models.Scalar | None:
    """Coerce a database value into an MVT-encodable scalar."""
    if value is None or isinstance(value, str | bool | int | float):
        return value  # type: ignore[return-value]
    if isinstance(value, decimal.Decimal):
        return float(value)
    if isinstance(value, datetime.date | datetime.datetime):
        return value.isoformat()
    return str(value)


class PostgisFeatureGateway(FeatureGatewayProtocol):
    """PostgreSQL/PostGIS-backed gateway.

    Borrows connections from a pool owned by the application lifespan. Each
    query runs in its own read-only transaction with a server-side
    statement timeout and is rolled back before the connection goes back
    to the pool.
    """

    def __init__(
        self,
        pool: psycopg2.pool.AbstractConnectionPool,
        settings: config.Settings,
    ) -> None:
        """Initialize the gateway with a connection pool.

        Args:
            pool: Connection pool created by :func:`create_pool`.
            settings: Application settings (store SRID, statement timeout).
        """
        self.pool = pool
        self.settings = settings

    @contextlib.contextmanager
    def _cursor(
        self, cancellation: QueryCancellation | None
    ) -> Iterator[psycopg2.extras.RealDictCursor]:
        """Borrow a connection and yield a dict cursor on it."""
        connection = self.pool.getconn()
        broken = False
        if cancellation is not None:
            cancellation.bind(connection)
        try:
            with connection.cursor(
                cursor_factory=psycopg2.extras.RealDictCursor
            ) as cursor:
                cursor.execute(
                    "SET LOCAL statement_timeout = %s",
                    (self.settings.statement_timeout_ms,),
                )
                yield cursor
        finally:
            if cancellation is not None:
                cancellation.unbind()
            try:
                connection.rollback()
            except psycopg2.Error as exc:
                logger.warning("Discarding broken connection: %s", exc)
                broken = True
            self.pool.putconn(connection, close=broken)

    def query_features(
        self,
        layer: db_models.LayerSpec,
        bbox: BoundingBox,
        district_prefix: str | None = None,
        *,
        limit: int | None = None,
        cancellation: QueryCancellation | None = None,
    ) -> list[db_models.Feature]:
        sql = tiles_postgis.build_features_sql(
            layer, with_district=district_prefix is not None
        )
        params: dict[str, object] = {
            "min_lon": bbox.min_lon,
            "min_lat": bbox.min_lat,
            "max_lon": bbox.max_lon,
            "max_lat": bbox.max_lat,
            "srid": self.settings.store_srid,
            "limit": limit,
        }
        if district_prefix is not None:
            params["district"] = tiles_postgis.like_prefix(district_prefix)

        try:
            with self._cursor(cancellation) as cursor:
                cursor.execute(sql, params)
                rows = cursor.fetchall()
        except psycopg2.Error as exc:
            logger.error(
                "Feature query failed for layer=%s bbox=%s district=%s: %s",
                layer.name,
                tuple(bbox),
                district_prefix,
                exc,
            )
            raise errors.StoreUnavailable(
                f"Spatial store query for layer {layer.name!r} failed"
            ) from exc

        return [self._from_row(row, layer) for row in rows]

    def query_centroids(
        self,
        layer: db_models.LayerSpec,
        district_prefix: str,
        *,
        cancellation: QueryCancellation | None = None,
    ) -> list[db_models.CentroidRow]:
        sql = tiles_postgis.build_centroids_sql(layer)
        params = {"district": tiles_postgis.like_prefix(district_prefix)}
        try:
            with self._cursor(cancellation) as cursor:
                cursor.execute(sql, params)
                rows = cursor.fetchall()
        except psycopg2.Error as exc:
            logger.error(
                "Centroid query failed for layer=%s district=%s: %s",
                layer.name,
                district_prefix,
                exc,
            )
            raise errors.StoreUnavailable(
                f"Spatial store query for layer {layer.name!r} failed"
            ) from exc

        return [
            db_models.CentroidRow(
                id=int(row["id"]),
                code=str(row["code"]),
                lng=float(row["centroid_lng"]),
                lat=float(row["centroid_lat"]),
            )
            for row in rows
            if row["centroid_lng"] is not None and row["centroid_lat"] is not None
        ]

    @staticmethod
    def _from_row(
        row: dict[str, object], layer: db_models.LayerSpec
    ) -> db_models.Feature:
        """Convert a feature query row to a Feature.

        Args:
            row: Dictionary from the feature query.
            layer: Layer the row was read from.

        Returns:
            Feature whose geometry is None when the WKB cannot be read.
        """
        wkb = row.get("wkb")
        geometry = None
        if wkb is not None:
            try:
                geometry = shapely.wkb.loads(bytes(wkb))  # type: ignore[arg-type]
            except GEOSException as exc:
                logger.warning(
                    "Unreadable geometry for %s id=%s: %s",
                    layer.name,
                    row.get("id"),
                    exc,
                )

        return db_models.Feature(
            id=int(row["id"]),  # type: ignore[call-overload]
            code=str(row["code"]),
            geometry=geometry,
            attributes={
                column: _scalar(row.get(column))
                for column in layer.attribute_columns
            },
        )


def create_pool(
    settings: config.Settings,
) -> psycopg2.pool.ThreadedConnectionPool:
    """Create the thread-safe connection pool shared by all requests.

    Args:
        settings: Application settings containing the database URL and
            pool bounds.

    Returns:
        A ThreadedConnectionPool; the caller owns it and must close it.
    """
    return psycopg2.pool.ThreadedConnectionPool(
        settings.pool_min_size,
        settings.pool_max_size,
        settings.database_url,
    )


def get_feature_gateway(
    pool: psycopg2.pool.AbstractConnectionPool | None,
    settings: config.Settings,
) -> FeatureGatewayProtocol:
    """Factory function to create the feature gateway.

    Args:
        pool: The application's connection pool, or None if it was never
            opened.
        settings: Application settings.

    Returns:
        PostgisFeatureGateway instance for production use.

    Raises:
        StoreUnavailable: If no connection pool is available.
    """
    if pool is None:
        raise errors.StoreUnavailable("Spatial store connection pool is not open")
    return PostgisFeatureGateway(pool, settings)
