"""Immutable catalog snapshots and the index builder that produces them."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Iterable, Mapping

from ..models import AnimeRecord
from ..seasons import Season
from ..utils import ngrams, normalize_title, tokenize

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CatalogSnapshot:
    """A point-in-time bundle of records plus every derived index.

    Snapshots are never mutated after :func:`build_snapshot` returns them.
    Each id referenced by an index is guaranteed to exist in ``records``.
    """

    version: int
    built_at: datetime
    records: Mapping[int, AnimeRecord]
    by_rating: tuple[int, ...]
    by_newest: tuple[int, ...]
    token_index: Mapping[str, frozenset[int]]
    genre_index: Mapping[str, tuple[int, ...]]
    season_index: Mapping[tuple[int, Season], tuple[int, ...]]
    year_index: Mapping[int, tuple[int, ...]]
    title_lookup: Mapping[str, int]
    special_ids: frozenset[int]
    newest_rank: Mapping[int, int] = field(repr=False)
    sorted_tokens: tuple[str, ...] = field(repr=False)
    token_grams: Mapping[str, frozenset[str]] = field(repr=False)
    fetched_at: datetime | None = None

    def __len__(self) -> int:
        return len(self.records)

    def get(self, anime_id: int) -> AnimeRecord | None:
        return self.records.get(anime_id)

    @property
    def genres(self) -> tuple[str, ...]:
        return tuple(sorted(self.genre_index, key=str.casefold))

    def ordered_records(self) -> list[AnimeRecord]:
        """Return every record in rating order."""

        return [self.records[anime_id] for anime_id in self.by_rating]


def rating_sort_key(record: AnimeRecord) -> tuple[int, float, int]:
    # Unscored records go last; within a score, lower ids first.
    if record.mean is None:
        return (1, 0.0, record.id)
    return (0, -record.mean, record.id)


def newest_sort_key(record: AnimeRecord) -> tuple[int, tuple[int, ...], int]:
    if not record.start_date:
        return (1, (), record.id)
    parts: list[int] = []
    for part in record.start_date.split("-")[:3]:
        try:
            parts.append(-int(part))
        except ValueError:
            break
    if not parts:
        return (1, (), record.id)
    # Year-only dates sort after fully specified dates of the same year.
    while len(parts) < 3:
        parts.append(1)
    return (0, tuple(parts), record.id)


def build_snapshot(
    records: Iterable[AnimeRecord],
    *,
    version: int,
    fetched_at: datetime | None = None,
) -> CatalogSnapshot:
    """Build every lookup structure for ``records`` in a single pass.

    The output is deterministic for a given input: when an id appears more
    than once the last occurrence wins, and all orderings break ties on the
    ascending id.
    """

    by_id: dict[int, AnimeRecord] = {}
    for record in records:
        by_id[record.id] = record

    by_rating = tuple(
        record.id for record in sorted(by_id.values(), key=rating_sort_key)
    )
    by_newest = tuple(
        record.id for record in sorted(by_id.values(), key=newest_sort_key)
    )

    tokens: dict[str, set[int]] = defaultdict(set)
    genres: dict[str, list[int]] = defaultdict(list)
    seasons: dict[tuple[int, Season], list[int]] = defaultdict(list)
    years: dict[int, list[int]] = defaultdict(list)
    title_lookup: dict[str, int] = {}
    special_ids: set[int] = set()

    # Walking in rating order keeps every facet list rating-sorted for free.
    for anime_id in by_rating:
        record = by_id[anime_id]
        for title in record.titles:
            for token in tokenize(title):
                tokens[token].add(anime_id)
            normalized = normalize_title(title)
            if normalized:
                title_lookup.setdefault(normalized, anime_id)
        for genre in dict.fromkeys(record.genre_names):
            genres[genre].append(anime_id)
        season = record.season
        if season is not None:
            seasons[(season.year, season.season)].append(anime_id)
        year = record.year
        if year is not None:
            years[year].append(anime_id)
        if record.is_special:
            special_ids.add(anime_id)

    sorted_tokens = tuple(sorted(tokens))
    grams: dict[str, set[str]] = defaultdict(set)
    for token in sorted_tokens:
        for gram in ngrams(token):
            grams[gram].add(token)

    snapshot = CatalogSnapshot(
        version=version,
        built_at=datetime.utcnow(),
        records=MappingProxyType(by_id),
        by_rating=by_rating,
        by_newest=by_newest,
        token_index=MappingProxyType(
            {token: frozenset(ids) for token, ids in tokens.items()}
        ),
        genre_index=MappingProxyType({name: tuple(ids) for name, ids in genres.items()}),
        season_index=MappingProxyType({key: tuple(ids) for key, ids in seasons.items()}),
        year_index=MappingProxyType({key: tuple(ids) for key, ids in years.items()}),
        title_lookup=MappingProxyType(title_lookup),
        special_ids=frozenset(special_ids),
        newest_rank=MappingProxyType({anime_id: pos for pos, anime_id in enumerate(by_newest)}),
        sorted_tokens=sorted_tokens,
        token_grams=MappingProxyType(
            {gram: frozenset(members) for gram, members in grams.items()}
        ),
        fetched_at=fetched_at,
    )
    logger.debug(
        "Built catalog snapshot v%s with %s records and %s tokens",
        version,
        len(by_id),
        len(snapshot.token_index),
    )
    return snapshot
