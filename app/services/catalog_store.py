"""Cache-aside storage of the live catalog snapshot."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from ..config import Settings
from ..errors import UpstreamUnavailable
from ..models import AnimeRecord
from .anime_dataset import AnimeDatasetClient
from .cache import CatalogCache
from .snapshot import CatalogSnapshot, build_snapshot

logger = logging.getLogger(__name__)


def _fetched_later(candidate: datetime | None, live: datetime | None) -> bool:
    if live is None:
        return True
    if candidate is None:
        return False
    return candidate > live


class RefreshState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    BUILDING = "building"
    PUBLISHING = "publishing"


@dataclass
class CatalogStatus:
    """Runtime information about the published catalog."""

    state: RefreshState
    version: int | None
    record_count: int
    fetched_at: datetime | None
    built_at: datetime | None
    last_error: str | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "version": self.version,
            "count": self.record_count,
            "lastFetchTime": self.fetched_at.isoformat() if self.fetched_at else None,
            "builtAt": self.built_at.isoformat() if self.built_at else None,
            "lastError": self.last_error,
            "ready": self.version is not None,
        }


class CatalogStore:
    """Owns the current :class:`CatalogSnapshot` and its cache-aside tiers.

    Readers take ``store.snapshot`` once per operation. Refreshes build a new
    snapshot off to the side and publish it with a single reference
    assignment, so a reader never sees two generations at once.
    """

    def __init__(
        self,
        settings: Settings,
        upstream: AnimeDatasetClient,
        cache: CatalogCache,
    ):
        self._settings = settings
        self._upstream = upstream
        self._cache = cache
        self._snapshot: CatalogSnapshot | None = None
        self._version = 0
        self._state = RefreshState.IDLE
        self._last_error: str | None = None
        self._refresh_lock = asyncio.Lock()
        self._refresh_job: asyncio.Task[CatalogSnapshot | None] | None = None
        self.instance_id = uuid.uuid4().hex

    @property
    def snapshot(self) -> CatalogSnapshot | None:
        return self._snapshot

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_lock.locked()

    def status(self) -> CatalogStatus:
        snapshot = self._snapshot
        return CatalogStatus(
            state=self._state,
            version=snapshot.version if snapshot else None,
            record_count=len(snapshot) if snapshot else 0,
            fetched_at=snapshot.fetched_at if snapshot else None,
            built_at=snapshot.built_at if snapshot else None,
            last_error=self._last_error,
        )

    async def load(self) -> CatalogSnapshot | None:
        """Restore the catalog from Redis, falling back to a full refresh."""

        snapshot = await self.reload_from_cache()
        if snapshot is not None:
            return snapshot
        return await self.refresh()

    async def reload_from_cache(self) -> CatalogSnapshot | None:
        """Rebuild the local snapshot from the cached record list.

        Runs under the refresh lock so it never interleaves with
        :meth:`refresh`. A cached list fetched no later than the live
        snapshot is ignored.
        """

        async with self._refresh_lock:
            cached = await self._cache.load_catalog()
            if cached is None:
                return None
            records, fetched_at = cached
            if not records:
                return None
            current = self._snapshot
            if current is not None and not _fetched_later(fetched_at, current.fetched_at):
                logger.info(
                    "Cached catalog is not newer than snapshot v%s; keeping it",
                    current.version,
                )
                return None

            self._state = RefreshState.BUILDING
            try:
                snapshot = await asyncio.to_thread(
                    build_snapshot,
                    records,
                    version=self._next_version(),
                    fetched_at=fetched_at,
                )
            finally:
                self._state = RefreshState.IDLE
            self._snapshot = snapshot
            logger.info(
                "Loaded catalog snapshot v%s with %s records from cache",
                snapshot.version,
                len(snapshot),
            )
            return snapshot

    async def refresh(self) -> CatalogSnapshot | None:
        """Rebuild the snapshot from upstream and publish it.

        Returns ``None`` if the upstream fetch failed; the previous snapshot
        stays live in that case.
        """

        async with self._refresh_lock:
            try:
                self._state = RefreshState.FETCHING
                try:
                    records = await self._upstream.fetch_catalog()
                except UpstreamUnavailable as exc:
                    self._last_error = str(exc)
                    if self._snapshot is None:
                        logger.error("Initial catalog fetch failed, serving empty results: %s", exc)
                    else:
                        logger.warning(
                            "Catalog refresh failed, keeping snapshot v%s: %s",
                            self._snapshot.version,
                            exc,
                        )
                    return None

                self._state = RefreshState.BUILDING
                fetched_at = datetime.utcnow()
                snapshot = await asyncio.to_thread(
                    build_snapshot,
                    records,
                    version=self._next_version(),
                    fetched_at=fetched_at,
                )

                self._state = RefreshState.PUBLISHING
                await self._publish(snapshot)
                self._last_error = None
                return snapshot
            finally:
                self._state = RefreshState.IDLE

    def invalidate(self) -> asyncio.Task[CatalogSnapshot | None]:
        """Schedule a background refresh, reusing one that is already running."""

        existing = self._refresh_job
        if existing is not None and not existing.done():
            return existing

        async def _runner() -> CatalogSnapshot | None:
            try:
                return await self.refresh()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Background catalog refresh failed: %s", exc)
                return None

        self._refresh_job = asyncio.create_task(_runner())
        return self._refresh_job

    async def purge_cache(self) -> int:
        deleted = await self._cache.purge_records()
        logger.info("Purged %s cached anime records", deleted)
        return deleted

    async def get(
        self, anime_id: int, *, include_details: bool = False
    ) -> AnimeRecord | None:
        """Look up one record: snapshot, then Redis, then upstream."""

        snapshot = self._snapshot
        record = snapshot.get(anime_id) if snapshot is not None else None
        if record is None:
            record = await self._cache.get_record(anime_id)
        if record is None:
            record = await self._fetch_and_fill(anime_id)
            return record
        if include_details and not record.synopsis:
            record = await self._with_details(record)
        return record

    async def get_many(self, anime_ids: Iterable[int]) -> dict[int, AnimeRecord]:
        """Resolve many ids; ids that cannot be found are omitted."""

        requested = list(dict.fromkeys(anime_ids))
        snapshot = self._snapshot
        found: dict[int, AnimeRecord] = {}
        missing: list[int] = []
        for anime_id in requested:
            record = snapshot.get(anime_id) if snapshot is not None else None
            if record is None:
                missing.append(anime_id)
            else:
                found[anime_id] = record

        if missing:
            cached = await self._cache.get_records(missing)
            found.update(cached)
            missing = [anime_id for anime_id in missing if anime_id not in cached]

        if missing:
            fetched = await asyncio.gather(
                *(self._fetch_upstream(anime_id) for anime_id in missing)
            )
            backfill = [record for record in fetched if record is not None]
            for record in backfill:
                found[record.id] = record
            if backfill:
                await self._cache.set_records(backfill)

        return {anime_id: found[anime_id] for anime_id in requested if anime_id in found}

    async def _publish(self, snapshot: CatalogSnapshot) -> None:
        self._snapshot = snapshot
        logger.info(
            "Published catalog snapshot v%s with %s records", snapshot.version, len(snapshot)
        )
        fetched_at = snapshot.fetched_at or snapshot.built_at
        stored = await self._cache.store_catalog(snapshot.ordered_records(), fetched_at)
        if stored:
            await self._cache.publish_refresh(
                {
                    "instance": self.instance_id,
                    "version": snapshot.version,
                    "count": len(snapshot),
                    "fetchedAt": fetched_at.isoformat(),
                }
            )

    async def _fetch_upstream(self, anime_id: int) -> AnimeRecord | None:
        try:
            return await self._upstream.fetch_anime(anime_id)
        except UpstreamUnavailable as exc:
            logger.warning("Upstream lookup for anime %s failed: %s", anime_id, exc)
            return None

    async def _fetch_and_fill(self, anime_id: int) -> AnimeRecord | None:
        logger.info("Anime %s not in catalog, fetching from upstream", anime_id)
        record = await self._fetch_upstream(anime_id)
        if record is not None:
            await self._cache.set_records([record])
        return record

    async def _with_details(self, record: AnimeRecord) -> AnimeRecord:
        detailed = await self._cache.get_record(record.id)
        if detailed is None or not detailed.synopsis:
            detailed = await self._fetch_upstream(record.id)
            if detailed is None or not detailed.synopsis:
                return record
        enriched = record.model_copy(update=self._detail_fields(record, detailed))
        await self._cache.set_records([enriched])
        return enriched

    @staticmethod
    def _detail_fields(record: AnimeRecord, detailed: AnimeRecord) -> dict[str, Any]:
        update: dict[str, Any] = {"synopsis": detailed.synopsis}
        if not record.source and detailed.source:
            update["source"] = detailed.source
        return update

    def _next_version(self) -> int:
        self._version += 1
        return self._version
