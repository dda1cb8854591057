"""Read-side queries answered from a single catalog snapshot."""

from __future__ import annotations

import heapq
import logging
from bisect import bisect_left
from collections import Counter
from difflib import SequenceMatcher
from typing import Any, Iterable, Sequence

from ..config import Settings
from ..models import AnimeRecord, BrowsePage, BrowseQuery
from ..seasons import Season
from ..utils import NGRAM_SIZE, ngrams, normalize_title, tokenize
from .catalog_store import CatalogStore
from .snapshot import CatalogSnapshot

logger = logging.getLogger(__name__)

PREFIX_MATCH_SCORE = 0.9
SUBSTRING_MATCH_SCORE = 0.8
MAX_SCORED_CANDIDATES = 500


def title_similarity(query: str, title: str) -> float:
    """Score how well a normalised query matches a normalised title (0..1)."""

    if not query or not title:
        return 0.0
    if query == title:
        return 1.0
    ratio = SequenceMatcher(None, query, title).ratio()
    if title.startswith(query):
        return max(ratio, PREFIX_MATCH_SCORE)
    if query in title:
        return max(ratio, SUBSTRING_MATCH_SCORE)
    return ratio


def best_title_score(query: str, record: AnimeRecord) -> float:
    return max(
        (title_similarity(query, normalize_title(title)) for title in record.titles),
        default=0.0,
    )


def _rank_key(score: float, record: AnimeRecord) -> tuple[float, float, int]:
    return (-score, -(record.mean if record.mean is not None else -1.0), record.id)


def _matching_tokens(snapshot: CatalogSnapshot, token: str) -> Sequence[str]:
    """Index tokens containing ``token`` (by prefix when shorter than a trigram)."""

    if len(token) < NGRAM_SIZE:
        ordered = snapshot.sorted_tokens
        start = bisect_left(ordered, token)
        end = bisect_left(ordered, token + "\U0010ffff", start)
        return ordered[start:end]
    pools = [snapshot.token_grams.get(gram, frozenset()) for gram in ngrams(token)]
    smallest = min(pools, key=len)
    return [index_token for index_token in smallest if token in index_token]


def _token_candidates(snapshot: CatalogSnapshot, tokens: Sequence[str]) -> set[int]:
    """Intersect, across query tokens, the ids whose title tokens contain them."""

    candidates: set[int] | None = None
    for token in dict.fromkeys(tokens):
        matches: set[int] = set()
        for index_token in _matching_tokens(snapshot, token):
            matches.update(snapshot.token_index[index_token])
        candidates = matches if candidates is None else candidates & matches
        if not candidates:
            return set()
    return candidates or set()


def _shortlist(
    snapshot: CatalogSnapshot,
    normalized: str,
    tokens: Sequence[str],
    candidates: set[int],
    size: int,
) -> list[int]:
    """Cap the ids handed to the similarity scorer.

    An exact title match goes first, then records holding a query token as a
    whole word, then the rest. Each group keeps rating order.
    """

    if len(candidates) <= size:
        return list(candidates)
    exact = snapshot.title_lookup.get(normalized)
    whole_word: set[int] = set()
    for token in tokens:
        whole_word.update(snapshot.token_index.get(token, ()))

    ordered: list[int] = [exact] if exact in candidates else []
    rest: list[int] = []
    for anime_id in snapshot.by_rating:
        if anime_id == exact or anime_id not in candidates:
            continue
        (ordered if anime_id in whole_word else rest).append(anime_id)
        if len(ordered) >= size:
            break
    return (ordered + rest)[:size]


def _fuzzy_candidates(
    snapshot: CatalogSnapshot,
    tokens: Sequence[str],
    allowed: set[int] | None,
    size: int,
) -> list[int]:
    """Ids whose title tokens share the most n-grams with the query."""

    shared: Counter[int] = Counter()
    for token in dict.fromkeys(tokens):
        for gram in ngrams(token):
            for index_token in snapshot.token_grams.get(gram, ()):
                shared.update(snapshot.token_index[index_token])
    ranked = heapq.nsmallest(
        size,
        (
            (count, anime_id)
            for anime_id, count in shared.items()
            if allowed is None or anime_id in allowed
        ),
        key=lambda pair: (-pair[0], pair[1]),
    )
    return [anime_id for _, anime_id in ranked]


def _fuzzy_scan(
    snapshot: CatalogSnapshot, query: str, threshold: float, anime_ids: Iterable[int]
) -> list[tuple[float, AnimeRecord]]:
    scored: list[tuple[float, AnimeRecord]] = []
    for anime_id in anime_ids:
        record = snapshot.records[anime_id]
        best = 0.0
        for title in record.titles:
            normalized = normalize_title(title)
            matcher = SequenceMatcher(None, query, normalized)
            if matcher.quick_ratio() < threshold:
                continue
            best = max(best, matcher.ratio())
        if best >= threshold:
            scored.append((best, record))
    return scored


def _resolve_genres(
    snapshot: CatalogSnapshot, genres: Iterable[str]
) -> list[tuple[int, ...]] | None:
    """Map requested genre names onto index lists; ``None`` if one is unknown."""

    lookup = {name.casefold(): name for name in snapshot.genre_index}
    resolved: list[tuple[int, ...]] = []
    for genre in genres:
        canonical = lookup.get(genre.strip().casefold())
        if canonical is None:
            return None
        resolved.append(snapshot.genre_index[canonical])
    return resolved


def filter_ids(
    snapshot: CatalogSnapshot,
    *,
    sort: str = "rating",
    genres: Iterable[str] = (),
    season: Season | None = None,
    year: int | None = None,
    hide_specials: bool = False,
) -> list[int]:
    """Return the ordered ids matching every facet filter."""

    facets = _resolve_genres(snapshot, genres)
    if facets is None:
        return []
    if season is not None and year is not None:
        facets.append(snapshot.season_index.get((year, season), ()))
    elif year is not None:
        facets.append(snapshot.year_index.get(year, ()))

    if not facets:
        ordered: Iterable[int] = snapshot.by_newest if sort == "newest" else snapshot.by_rating
        if not hide_specials:
            return list(ordered)
        return [anime_id for anime_id in ordered if anime_id not in snapshot.special_ids]

    # Facet lists are rating ordered; walk the smallest one.
    facets.sort(key=len)
    base, others = facets[0], [frozenset(ids) for ids in facets[1:]]
    matched = [
        anime_id
        for anime_id in base
        if all(anime_id in ids for ids in others)
        and not (hide_specials and anime_id in snapshot.special_ids)
    ]
    if sort == "newest":
        matched.sort(key=snapshot.newest_rank.__getitem__)
    return matched


def browse_snapshot(snapshot: CatalogSnapshot | None, query: BrowseQuery) -> BrowsePage:
    if snapshot is None:
        return BrowsePage(items=[], total=0, offset=query.offset, limit=query.limit)
    ids = filter_ids(
        snapshot,
        sort=query.sort,
        genres=query.genres,
        season=query.season,
        year=query.year,
        hide_specials=query.hide_specials,
    )
    window = ids[query.offset : query.offset + query.limit]
    return BrowsePage(
        items=[snapshot.records[anime_id] for anime_id in window],
        total=len(ids),
        offset=query.offset,
        limit=query.limit,
    )


def search_snapshot(
    snapshot: CatalogSnapshot | None,
    query: str,
    *,
    limit: int = 20,
    hide_specials: bool = False,
    genres: Iterable[str] = (),
    threshold: float = 0.6,
) -> list[AnimeRecord]:
    """Free-text title search.

    The token index narrows the candidate set; at most
    ``MAX_SCORED_CANDIDATES`` of them are then ranked by title similarity.
    Queries matching no index token fall back to a fuzzy scan of the titles
    sharing the most n-grams with the query, so small typos still resolve.
    """

    if snapshot is None or limit <= 0:
        return []
    normalized = normalize_title(query or "")
    tokens = tokenize(normalized)
    if not tokens:
        return []

    allowed: set[int] | None = None
    genre_list = list(genres)
    if genre_list or hide_specials:
        allowed = set(filter_ids(snapshot, genres=genre_list, hide_specials=hide_specials))
        if not allowed:
            return []

    candidates = _token_candidates(snapshot, tokens)
    if allowed is not None:
        candidates &= allowed

    size = max(limit, MAX_SCORED_CANDIDATES)
    if candidates:
        scored = [
            (best_title_score(normalized, snapshot.records[anime_id]), snapshot.records[anime_id])
            for anime_id in _shortlist(snapshot, normalized, tokens, candidates, size)
        ]
    else:
        logger.debug("No token matches for %r; scanning similar titles", normalized)
        scored = _fuzzy_scan(
            snapshot,
            normalized,
            threshold,
            _fuzzy_candidates(snapshot, tokens, allowed, size),
        )

    scored.sort(key=lambda pair: _rank_key(*pair))
    return [record for _, record in scored[:limit]]


def find_by_title_snapshot(
    snapshot: CatalogSnapshot | None, title: str, *, threshold: float = 0.6
) -> AnimeRecord | None:
    """Resolve a free-form title to one record (exact match first)."""

    if snapshot is None:
        return None
    normalized = normalize_title(title or "")
    if not normalized:
        return None
    anime_id = snapshot.title_lookup.get(normalized)
    if anime_id is not None:
        return snapshot.records[anime_id]
    matches = search_snapshot(snapshot, title, limit=1, threshold=threshold)
    if not matches:
        return None
    best = matches[0]
    if best_title_score(normalized, best) < threshold:
        return None
    return best


class QueryEngine:
    """Serves catalog reads against whatever snapshot is live right now."""

    def __init__(self, settings: Settings, store: CatalogStore):
        self._settings = settings
        self._store = store

    @property
    def store(self) -> CatalogStore:
        return self._store

    def search(
        self,
        query: str,
        limit: int = 20,
        *,
        hide_specials: bool = False,
        genres: Iterable[str] = (),
    ) -> list[AnimeRecord]:
        return search_snapshot(
            self._store.snapshot,
            query,
            limit=limit,
            hide_specials=hide_specials,
            genres=genres,
            threshold=self._settings.search_threshold,
        )

    def browse(self, query: BrowseQuery) -> BrowsePage:
        return browse_snapshot(self._store.snapshot, query)

    def seasonal(
        self,
        year: int,
        season: Season,
        *,
        limit: int = 24,
        offset: int = 0,
        genres: Iterable[str] = (),
    ) -> BrowsePage:
        query = BrowseQuery(
            year=year, season=season, limit=limit, offset=offset, genres=tuple(genres)
        )
        return self.browse(query)

    def genres(self) -> list[str]:
        snapshot = self._store.snapshot
        if snapshot is None:
            return []
        return list(snapshot.genres)

    def find_by_title(self, title: str) -> AnimeRecord | None:
        return find_by_title_snapshot(
            self._store.snapshot, title, threshold=self._settings.search_threshold
        )

    def home(self, popular_limit: int = 20) -> dict[str, Any]:
        """Featured titles plus the top rated titles not already featured."""

        snapshot = self._store.snapshot
        if snapshot is None:
            return {"featured": [], "popular": []}
        featured_ids = self._settings.featured_anime_ids
        featured = [
            snapshot.records[anime_id]
            for anime_id in featured_ids
            if anime_id in snapshot.records
        ]
        excluded = set(featured_ids)
        popular: list[AnimeRecord] = []
        for anime_id in snapshot.by_rating:
            if len(popular) >= popular_limit:
                break
            record = snapshot.records[anime_id]
            if record.mean is None or anime_id in excluded:
                continue
            popular.append(record)
        return {
            "featured": [record.to_payload() for record in featured],
            "popular": [record.to_payload() for record in popular],
        }
