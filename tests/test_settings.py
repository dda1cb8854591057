"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from app.config import DEFAULT_FEATURED_ANIME_IDS, Settings


def test_featured_ids_parsed_from_comma_string() -> None:
    """Featured ids should accept the comma separated environment format."""

    settings = Settings(_env_file=None, FEATURED_ANIME_IDS="5114, 9253,5114")

    assert settings.featured_anime_ids == (5114, 9253)


def test_featured_ids_accepts_lists() -> None:
    settings = Settings(_env_file=None, FEATURED_ANIME_IDS=[1, "2", 3])

    assert settings.featured_anime_ids == (1, 2, 3)


def test_featured_ids_default() -> None:
    settings = Settings(_env_file=None)

    assert settings.featured_anime_ids == DEFAULT_FEATURED_ANIME_IDS


def test_featured_ids_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Tuple settings must not be JSON-decoded from the environment."""

    monkeypatch.setenv("FEATURED_ANIME_IDS", "21,20")

    settings = Settings(_env_file=None)

    assert settings.featured_anime_ids == (21, 20)


def test_featured_ids_invalid_raises() -> None:
    with pytest.raises(ValueError, match="must contain integer ids"):
        Settings(_env_file=None, FEATURED_ANIME_IDS="naruto")

    with pytest.raises(ValueError, match="must contain positive ids"):
        Settings(_env_file=None, FEATURED_ANIME_IDS="-4")


def test_refresh_interval_has_floor() -> None:
    """Refreshing more often than every five minutes is rejected."""

    with pytest.raises(ValueError):
        Settings(_env_file=None, REFRESH_INTERVAL=60)

    settings = Settings(_env_file=None, REFRESH_INTERVAL=600)
    assert settings.refresh_interval_seconds == 600


def test_cache_ttl_defaults() -> None:
    settings = Settings(_env_file=None)

    assert settings.catalog_cache_seconds == 7 * 24 * 60 * 60
    assert settings.record_cache_seconds == 24 * 60 * 60
    assert settings.anime_batch_size == 100
