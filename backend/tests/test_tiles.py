"""Unit tests for the tile rendering pipeline.

This module includes tests for:
    - Feature attributes written to tiles (code, extra columns, view code),
    - Buffered tile queries through the gateway,
    - MVT tile building, including skipped malformed features and the
      empty-tile case,
    - GeoJSON tile building with zoom-dependent simplification.

See Also:
    - backend/cadastre_tiles/services/tiles.py for implementation.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import mapbox_vector_tile
import pytest
from shapely.geometry import box

from cadastre_tiles.core import config, errors
from cadastre_tiles.db import database
from cadastre_tiles.db import models as db_models
from cadastre_tiles.services import clipper, tile_addressing, tiles

if TYPE_CHECKING:
    from shapely.geometry.base import BaseGeometry

NOPS = db_models.get_layer("nops")
COORD = tile_addressing.TileCoordinate(14, 13322, 8539)
PARCEL = box(112.725, -7.615, 112.726, -7.614)


def _feature(
    feature_id: int, code: str, geometry: BaseGeometry | None
) -> db_models.Feature:
    return db_models.Feature(feature_id, code, geometry, {"d_luas": 120})


def test_feature_attributes() -> None:
    """Test that the code, extra columns and view code are written."""
    attributes = tiles.feature_attributes(
        NOPS, _feature(1, "357502000100100010", PARCEL)
    )
    assert attributes == {
        "d_nop": "357502000100100010",
        "d_luas": 120,
        "view_nop": "0001",
    }


def test_feature_attributes_bad_code(caplog: pytest.LogCaptureFixture) -> None:
    """Test that an unparsable code drops only the view code."""
    with caplog.at_level(logging.WARNING, logger="cadastre_tiles.services.tiles"):
        attributes = tiles.feature_attributes(NOPS, _feature(1, "12345", PARCEL))
    assert "view_nop" not in attributes
    assert attributes["d_nop"] == "12345"
    assert "No view code" in caplog.text


def test_fetch_tile_features_buffers_bbox() -> None:
    """Test that the query box is widened by the clip buffer."""
    seen: dict[str, Any] = {}

    class RecordingGateway(database.InMemoryFeatureGateway):
        def query_features(
            self, layer: Any, bbox: Any, *args: Any, **kwargs: Any
        ) -> Any:
            seen["bbox"] = bbox
            seen.update(kwargs)
            return []

    settings = config.Settings()
    tile_bbox = tile_addressing.tile_to_bbox(14, 13322, 8539)
    tiles.fetch_tile_features(RecordingGateway(), NOPS, COORD, "3575020001", settings)
    assert seen["bbox"].min_lon < tile_bbox.min_lon
    assert seen["bbox"].max_lat > tile_bbox.max_lat
    assert seen["limit"] is None

    tiles.fetch_tile_features(
        RecordingGateway(), NOPS, COORD, None, settings, buffered=False, limit=5
    )
    assert seen["bbox"] == tile_bbox
    assert seen["limit"] == 5


def test_build_mvt_tile() -> None:
    """Test encoding one parcel into a cacheable MVT tile."""
    settings = config.Settings()
    tile = tiles.build_mvt_tile(
        [_feature(1, "357502000100100010", PARCEL)], NOPS, COORD, settings
    )
    assert tile.content_type == "application/vnd.mapbox-vector-tile"
    assert tile.cache_control == "public, max-age=900"
    decoded = mapbox_vector_tile.decode(
        tile.payload, default_options={"y_coord_down": True}
    )
    (feature,) = decoded["nops"]["features"]
    assert feature["properties"]["view_nop"] == "0001"


def test_build_mvt_tile_empty() -> None:
    """Test that no features still produce a valid empty tile."""
    tile = tiles.build_mvt_tile([], NOPS, COORD, config.Settings())
    decoded = mapbox_vector_tile.decode(tile.payload)
    assert decoded["nops"]["features"] == []


def test_build_mvt_tile_skips_malformed(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    """Test that a feature failing to clip is skipped with a warning."""
    real_clip = clipper.clip

    def flaky_clip(geometry: Any, *args: Any, **kwargs: Any) -> clipper.ClippedGeometry:
        if geometry is PARCEL:
            raise errors.MalformedGeometry("boom")
        return real_clip(geometry, *args, **kwargs)

    monkeypatch.setattr(clipper, "clip", flaky_clip)
    other = box(112.730, -7.610, 112.731, -7.609)
    with caplog.at_level(logging.WARNING, logger="cadastre_tiles.services.tiles"):
        tile = tiles.build_mvt_tile(
            [
                _feature(1, "357502000100100010", PARCEL),
                _feature(2, "357502000100100020", other),
            ],
            NOPS,
            COORD,
            config.Settings(),
        )
    decoded = mapbox_vector_tile.decode(tile.payload)
    assert [feature["id"] for feature in decoded["nops"]["features"]] == [2]
    assert "id=1" in caplog.text


def test_build_mvt_tile_encoding_failure(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    """Test that encoder defects are logged and re-raised."""

    def broken_encode(*args: Any, **kwargs: Any) -> bytes:
        raise errors.EncodingFailure("bad value")

    monkeypatch.setattr(tiles.mvt_encoder, "encode", broken_encode)
    with (
        caplog.at_level(logging.ERROR, logger="cadastre_tiles.services.tiles"),
        pytest.raises(errors.EncodingFailure),
    ):
        tiles.build_mvt_tile([], NOPS, COORD, config.Settings())
    assert "14/13322/8539" in caplog.text


def test_build_geojson_tile() -> None:
    """Test the GeoJSON FeatureCollection for a parcel."""
    collection = tiles.build_geojson_tile(
        [
            _feature(1, "357502000100100010", PARCEL),
            _feature(2, "357502000100100020", None),
        ],
        NOPS,
        19,
        config.Settings(),
    )
    assert collection["type"] == "FeatureCollection"
    (feature,) = collection["features"]
    assert feature["id"] == 1
    assert feature["properties"]["view_nop"] == "0001"
    assert feature["geometry"]["type"] == "Polygon"
    assert len(feature["geometry"]["coordinates"][0]) == 5


def test_build_geojson_tile_simplifies_at_low_zoom() -> None:
    """Test that vertices closer than the tolerance are removed."""
    jagged = box(112.725, -7.615, 112.735, -7.605).union(
        box(112.7299, -7.605, 112.73, -7.60499)
    )
    settings = config.Settings()
    detailed = tiles.build_geojson_tile(
        [_feature(1, "357502000100100010", jagged)], NOPS, 18, settings
    )
    simplified = tiles.build_geojson_tile(
        [_feature(1, "357502000100100010", jagged)], NOPS, 10, settings
    )
    assert len(simplified["features"][0]["geometry"]["coordinates"][0]) < len(
        detailed["features"][0]["geometry"]["coordinates"][0]
    )
