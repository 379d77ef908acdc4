"""Tests for application configuration and settings.

This module contains unit tests for the Settings Pydantic model and
application configuration logic in cadastre_tiles.core.config. It ensures
that default values, environment overrides, field bounds and get_settings
caching work as expected.
"""

from __future__ import annotations

import pydantic
import pytest

from cadastre_tiles.core import config


def test_settings_defaults() -> None:
    """Test that Settings has expected default values."""
    settings = config.Settings()
    assert settings.database_url.startswith("postgresql://")
    assert settings.allow_origins == ["*"]
    assert settings.tile_extent == 4096
    assert settings.tile_buffer == 64
    assert settings.tile_max_age == 900
    assert settings.label_max_age == 3600
    assert settings.geojson_feature_limit == 500


def test_labels_cached_longer_than_tiles() -> None:
    """Test that the default label lifetime exceeds the tile lifetime."""
    settings = config.Settings()
    assert settings.label_max_age > settings.tile_max_age


def test_settings_environment_override(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that environment variables override defaults."""
    monkeypatch.setenv("TILE_MAX_AGE", "600")
    monkeypatch.setenv("STATEMENT_TIMEOUT_MS", "2500")
    settings = config.Settings()
    assert settings.tile_max_age == 600
    assert settings.statement_timeout_ms == 2500


def test_settings_rejects_out_of_range_zoom() -> None:
    """Test that max_zoom above 30 fails validation."""
    with pytest.raises(pydantic.ValidationError):
        config.Settings(max_zoom=31)


def test_settings_rejects_zero_extent() -> None:
    """Test that a zero tile extent fails validation."""
    with pytest.raises(pydantic.ValidationError):
        config.Settings(tile_extent=0)


def test_get_settings_cached() -> None:
    """Test that get_settings returns the same cached instance."""
    assert config.get_settings() is config.get_settings()
