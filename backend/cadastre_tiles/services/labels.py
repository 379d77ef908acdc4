"""Label points (centroid + short code) for the features of a district."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cadastre_tiles.core import cadastral
from cadastre_tiles.db import models as db_models

if TYPE_CHECKING:
    from cadastre_tiles.db import database

logger = logging.getLogger(__name__)


def extract_labels(
    gateway: database.FeatureGatewayProtocol,
    layer: db_models.LayerSpec,
    district_code: str | None,
    *,
    cancellation: database.QueryCancellation | None = None,
) -> list[db_models.LabelPoint]:
    """Return one label point per feature whose code starts with the district.

    Centroids are geographic (EPSG:4326) and independent of any tile. A
    missing district yields an empty list without touching the store;
    features whose code cannot be parsed are skipped with a warning.

    Args:
        gateway: Spatial store to read centroids from.
        layer: Layer to label.
        district_code: Normalised district prefix, or None.
        cancellation: Optional handle to abort the store query.

    Returns:
        Label points ordered by feature id.
    """
    if not district_code:
        return []

    labels = []
    rows = gateway.query_centroids(layer, district_code, cancellation=cancellation)
    for row in rows:
        try:
            code = cadastral.CadastralCode.parse(row.code)
        except cadastral.InvalidCadastralCode as exc:
            logger.warning("Skipping label for %s id=%s: %s", layer.name, row.id, exc)
            continue
        labels.append(
            db_models.LabelPoint(
                feature_id=row.id,
                display_code=code.view_code,
                lat=row.lat,
                lng=row.lng,
            )
        )
    return labels
