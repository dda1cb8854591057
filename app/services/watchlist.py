"""Per-user watch lists hydrated from the catalog."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import WatchedAnime
from ..models import WATCH_STATUSES, AnimeRecord, WatchEntryUpdate, WatchListQuery
from ..utils import normalize_title
from .catalog_store import CatalogStore
from .snapshot import newest_sort_key, rating_sort_key

logger = logging.getLogger(__name__)


def _matches_query(record: AnimeRecord | None, needle: str) -> bool:
    if record is None:
        return False
    return any(needle in normalize_title(title) for title in record.titles)


def _has_genres(record: AnimeRecord | None, wanted: set[str]) -> bool:
    if record is None:
        return False
    names = {name.casefold() for name in record.genre_names}
    return wanted <= names


class WatchListService:
    """Reads and writes the ``watched_anime`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: CatalogStore,
    ):
        self._session_factory = session_factory
        self._store = store

    async def list_entries(self, user_id: str, query: WatchListQuery) -> dict[str, Any]:
        """Return one page of the user's list plus per-status counts.

        ``availableGenres`` covers every genre present after the status
        filter, so a client can offer only genre filters that match.
        """

        async with self._session_factory() as session:
            result = await session.execute(
                select(WatchedAnime).where(WatchedAnime.user_id == user_id)
            )
            entries = list(result.scalars().all())

        counts = {status: 0 for status in WATCH_STATUSES}
        for entry in entries:
            counts[entry.status] = counts.get(entry.status, 0) + 1
        counts["all"] = len(entries)

        if query.status != "all":
            entries = [entry for entry in entries if entry.status == query.status]

        records = await self._store.get_many(entry.anime_id for entry in entries)
        rows = [(entry, records.get(entry.anime_id)) for entry in entries]

        available = sorted(
            {
                name
                for _, record in rows
                if record is not None
                for name in record.genre_names
            },
            key=str.casefold,
        )

        if query.genres:
            wanted = {genre.casefold() for genre in query.genres}
            rows = [row for row in rows if _has_genres(row[1], wanted)]
        needle = normalize_title(query.q or "")
        if needle:
            rows = [row for row in rows if _matches_query(row[1], needle)]

        rows = self._sorted(rows, query.sort)
        total = len(rows)
        start = (query.page - 1) * query.limit
        window = rows[start : start + query.limit]

        return {
            "items": [
                {
                    **entry.to_payload(),
                    "anime": record.to_payload() if record is not None else None,
                }
                for entry, record in window
            ],
            "total": total,
            "page": query.page,
            "limit": query.limit,
            "totalPages": (total + query.limit - 1) // query.limit,
            "counts": counts,
            "availableGenres": available,
        }

    async def upsert(
        self, user_id: str, anime_id: int, update: WatchEntryUpdate
    ) -> dict[str, Any] | None:
        """Add or update an entry. Returns ``None`` for an unknown anime id."""

        record = await self._store.get(anime_id)
        if record is None:
            return None

        async with self._session_factory() as session:
            result = await session.execute(
                select(WatchedAnime).where(
                    WatchedAnime.user_id == user_id,
                    WatchedAnime.anime_id == anime_id,
                )
            )
            entry = result.scalar_one_or_none()
            if entry is None:
                entry = WatchedAnime(user_id=user_id, anime_id=anime_id)
                session.add(entry)
                logger.info("Adding anime %s to watch list of %s", anime_id, user_id)
            entry.status = update.status
            entry.rating = update.rating
            entry.episodes_watched = update.episodes_watched
            entry.notes = update.notes
            await session.commit()
            await session.refresh(entry)

        return {**entry.to_payload(), "anime": record.to_payload()}

    async def remove(self, user_id: str, anime_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(WatchedAnime).where(
                    WatchedAnime.user_id == user_id,
                    WatchedAnime.anime_id == anime_id,
                )
            )
            await session.commit()
        return bool(result.rowcount)

    @staticmethod
    def _sorted(
        rows: list[tuple[WatchedAnime, AnimeRecord | None]], sort: str
    ) -> list[tuple[WatchedAnime, AnimeRecord | None]]:
        if sort == "name":
            return sorted(
                rows,
                key=lambda row: (
                    (row[1].title if row[1] else "").casefold(),
                    row[0].anime_id,
                ),
            )
        if sort == "rating":
            return sorted(
                rows,
                key=lambda row: rating_sort_key(row[1]) if row[1] else (2, 0.0, row[0].anime_id),
            )
        if sort == "newest":
            return sorted(
                rows,
                key=lambda row: newest_sort_key(row[1]) if row[1] else (2, (), row[0].anime_id),
            )
        if sort == "rating_personal":
            return sorted(
                rows,
                key=lambda row: (
                    row[0].rating is None,
                    -(row[0].rating or 0),
                    row[0].anime_id,
                ),
            )
        # Most recently added first.
        return sorted(
            rows,
            key=lambda row: (-row[0].date_added.timestamp(), row[0].anime_id),
        )
