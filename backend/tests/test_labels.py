"""Tests for district label extraction.

See Also:
    - backend/cadastre_tiles/services/labels.py for implementation.
"""

from __future__ import annotations

import logging
from typing import Any

import pytest
from shapely.geometry import box

from cadastre_tiles.db import database
from cadastre_tiles.db import models as db_models
from cadastre_tiles.services import labels

NOPS = db_models.get_layer("nops")
PARCEL = box(112.725, -7.615, 112.726, -7.614)


def _gateway() -> database.InMemoryFeatureGateway:
    gateway = database.InMemoryFeatureGateway()
    gateway.add(
        "nops",
        db_models.Feature(1, "357502000100100010", PARCEL),
    )
    gateway.add(
        "nops",
        db_models.Feature(2, "357502000100100020", box(112.80, -7.70, 112.81, -7.69)),
    )
    gateway.add("nops", db_models.Feature(3, "357502000100100030", None))
    gateway.add(
        "nops",
        db_models.Feature(4, "357502000200100010", PARCEL),
    )
    return gateway


def test_extract_labels() -> None:
    """Test one label per district feature with its sequence and centroid."""
    points = labels.extract_labels(_gateway(), NOPS, "3575020001")
    assert [point.feature_id for point in points] == [1, 2]
    first = points[0]
    assert first.display_code == "0001"
    assert first.lng == pytest.approx(112.7255)
    assert first.lat == pytest.approx(-7.6145)
    assert points[1].display_code == "0002"


def test_extract_labels_unknown_district() -> None:
    """Test that a district with no features yields no labels."""
    assert labels.extract_labels(_gateway(), NOPS, "9999999999") == []


@pytest.mark.parametrize("district", [None, ""])
def test_extract_labels_without_district(district: str | None) -> None:
    """Test that a missing district never queries the store."""

    class ExplodingGateway(database.InMemoryFeatureGateway):
        def query_centroids(self, *args: Any, **kwargs: Any) -> Any:
            raise AssertionError("store must not be queried")

    assert labels.extract_labels(ExplodingGateway(), NOPS, district) == []


def test_extract_labels_skips_bad_codes(caplog: pytest.LogCaptureFixture) -> None:
    """Test that rows with an unparsable code are skipped with a warning."""
    gateway = _gateway()
    gateway.add(
        "nops",
        db_models.Feature(5, "35750200010010005", PARCEL),
    )
    with caplog.at_level(logging.WARNING, logger="cadastre_tiles.services.labels"):
        points = labels.extract_labels(gateway, NOPS, "3575020001")
    assert [point.feature_id for point in points] == [1, 2]
    assert "id=5" in caplog.text


def test_extract_labels_passes_cancellation() -> None:
    """Test that the cancellation handle reaches the gateway."""
    seen: list[Any] = []

    class RecordingGateway(database.InMemoryFeatureGateway):
        def query_centroids(
            self, layer: Any, district_prefix: str, *, cancellation: Any = None
        ) -> list[db_models.CentroidRow]:
            seen.append(cancellation)
            return []

    cancellation = database.QueryCancellation()
    labels.extract_labels(
        RecordingGateway(), NOPS, "3575020001", cancellation=cancellation
    )
    assert seen == [cancellation]
