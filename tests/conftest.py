"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from app.models import AnimeRecord  # noqa: E402


def make_record(
    anime_id: int,
    title: str,
    *,
    mean: float | None = None,
    genres: tuple[str, ...] = (),
    start_date: str | None = None,
    media_type: str = "tv",
    **extra: Any,
) -> AnimeRecord:
    """Build an :class:`AnimeRecord` with just the fields a test cares about."""

    return AnimeRecord(
        id=anime_id,
        title=title,
        mean=mean,
        genres=[{"id": index, "name": name} for index, name in enumerate(genres)],
        start_date=start_date,
        media_type=media_type,
        **extra,
    )


SAMPLE_RECORDS: tuple[AnimeRecord, ...] = (
    make_record(1, "Naruto", mean=8.0, genres=("Action", "Adventure"), start_date="2002-10-03"),
    make_record(
        2,
        "Naruto: Shippuuden",
        mean=8.3,
        genres=("Action", "Adventure", "Fantasy"),
        start_date="2007-02-15",
        alternative_titles={"en": "Naruto Shippuden"},
    ),
    make_record(
        3,
        "Fullmetal Alchemist: Brotherhood",
        mean=9.1,
        genres=("Action", "Adventure", "Drama", "Fantasy"),
        start_date="2009-04-05",
    ),
    make_record(
        4,
        "Shingeki no Kyojin",
        mean=8.5,
        genres=("Action", "Drama"),
        start_date="2013-04-07",
        alternative_titles={"en": "Attack on Titan"},
    ),
    make_record(5, "Hyouka", mean=8.1, genres=("Mystery", "Slice of Life"), start_date="2012-04-23"),
    make_record(6, "K-On!", mean=7.8, genres=("Comedy", "Slice of Life"), start_date="2009-04-03"),
    make_record(7, "Naruto Special", genres=("Action",), start_date="2003", media_type="special"),
    make_record(
        8,
        "Pokémon",
        mean=7.3,
        genres=("Action", "Adventure", "Comedy"),
        start_date="1997-04-01",
        alternative_titles={"ja": "ポケットモンスター"},
    ),
    make_record(9, "Clannad", mean=8.0, genres=("Drama", "Romance"), start_date="2007-10-04"),
)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def record_factory() -> Callable[..., AnimeRecord]:
    return make_record


@pytest.fixture
def sample_records() -> list[AnimeRecord]:
    return list(SAMPLE_RECORDS)
