"""Tests for the layer registry, data models and error taxonomy.

See Also:
    - backend/cadastre_tiles/db/models.py for the data models,
    - backend/cadastre_tiles/core/errors.py for the error taxonomy.
"""

from __future__ import annotations

import pytest

from cadastre_tiles.core import errors
from cadastre_tiles.db import models as db_models


def test_parcel_layer_registered() -> None:
    """Test the storage description of the parcel layer."""
    layer = db_models.get_layer("nops")
    assert layer.table == "nops"
    assert layer.code_column == "d_nop"
    assert layer.attribute_columns == ("d_luas",)
    assert layer.view_key == "view_nop"


def test_all_layers_registered() -> None:
    """Test that every cadastral feature class is exposed."""
    assert set(db_models.LAYERS) == {"nops", "bloks", "bangunans", "kecamatans"}


def test_unknown_layer() -> None:
    """Test that an unregistered layer raises UnknownLayer."""
    with pytest.raises(errors.UnknownLayer, match="rivers"):
        db_models.get_layer("rivers")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"table": "nops; DROP TABLE nops"},
        {"code_column": "D_NOP"},
        {"attribute_columns": ("d_luas", "1bad")},
    ],
)
def test_layer_spec_rejects_bad_identifiers(kwargs: dict[str, object]) -> None:
    """Test that LayerSpec refuses names unsafe to interpolate into SQL."""
    fields: dict[str, object] = {
        "name": "demo",
        "table": "demo",
        "code_column": "code",
    }
    fields.update(kwargs)
    with pytest.raises(ValueError, match="Invalid SQL identifier"):
        db_models.LayerSpec(**fields)  # type: ignore[arg-type]


def test_feature_default_attributes() -> None:
    """Test that Feature attributes default to an empty mapping."""
    feature = db_models.Feature(id=1, code="3575020001", geometry=None)
    assert feature.attributes == {}


@pytest.mark.parametrize(
    ("exc", "status"),
    [
        (errors.InvalidTileAddress("x"), 400),
        (errors.InvalidDistrictCode("x"), 400),
        (errors.UnknownLayer("x"), 404),
        (errors.StoreUnavailable("x"), 503),
        (errors.EncodingFailure("x"), 500),
    ],
)
def test_error_status_codes(exc: errors.TileServiceError, status: int) -> None:
    """Test the HTTP status each error maps to."""
    assert exc.status_code == status


def test_error_body() -> None:
    """Test that errors serialise to the {error, message} body."""
    exc = errors.InvalidTileAddress("x=16384 out of range")
    assert exc.to_dict() == {
        "error": "InvalidTileAddress",
        "message": "x=16384 out of range",
    }
    assert isinstance(exc, ValueError)
