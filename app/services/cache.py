"""Redis caching layer for catalog records."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Iterable

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..errors import CacheUnavailable
from ..models import AnimeRecord

logger = logging.getLogger(__name__)

CACHE_ERRORS = (RedisError, OSError)


class CacheKeys:
    """Key patterns shared by every process using the catalog cache."""

    ANIME_LIST = "anime:list"
    LAST_FETCH_TIME = "anime:lastFetchTime"
    REFRESH_CHANNEL = "anime:refresh"
    ANIME_PATTERN = "anime:id:*"

    @staticmethod
    def anime_by_id(anime_id: int) -> str:
        return f"anime:id:{anime_id}"


class CatalogCache:
    """Async Redis cache for the catalog.

    Connection and protocol failures are logged and reported to callers as
    cache misses; the only method that raises is :meth:`ping`.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        catalog_ttl: int,
        record_ttl: int,
    ):
        self._redis = client
        self._catalog_ttl = catalog_ttl
        self._record_ttl = record_ttl

    @property
    def client(self) -> redis.Redis:
        return self._redis

    async def close(self) -> None:
        await self._redis.aclose()

    async def ping(self) -> None:
        try:
            await self._redis.ping()
        except CACHE_ERRORS as exc:
            raise CacheUnavailable(f"Redis ping failed: {exc}") from exc

    async def get_record(self, anime_id: int) -> AnimeRecord | None:
        try:
            raw = await self._redis.get(CacheKeys.anime_by_id(anime_id))
        except CACHE_ERRORS as exc:
            logger.warning("Cache get error for anime %s: %s", anime_id, exc)
            return None
        return self._decode_record(raw, anime_id)

    async def get_records(self, anime_ids: Iterable[int]) -> dict[int, AnimeRecord]:
        """Read many records with a single ``MGET``."""

        ids = list(dict.fromkeys(anime_ids))
        if not ids:
            return {}
        try:
            values = await self._redis.mget([CacheKeys.anime_by_id(anime_id) for anime_id in ids])
        except CACHE_ERRORS as exc:
            logger.warning("Cache mget error for %s anime ids: %s", len(ids), exc)
            return {}
        found: dict[int, AnimeRecord] = {}
        for anime_id, raw in zip(ids, values):
            record = self._decode_record(raw, anime_id)
            if record is not None:
                found[anime_id] = record
        return found

    async def set_records(self, records: Iterable[AnimeRecord]) -> bool:
        items = list(records)
        if not items:
            return True
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                for record in items:
                    pipe.setex(
                        CacheKeys.anime_by_id(record.id),
                        self._record_ttl,
                        record.model_dump_json(exclude_none=True),
                    )
                await pipe.execute()
            return True
        except CACHE_ERRORS as exc:
            logger.warning("Cache set error for %s anime records: %s", len(items), exc)
            return False

    async def store_catalog(
        self, records: Iterable[AnimeRecord], fetched_at: datetime
    ) -> bool:
        """Persist the full record list, per-id entries and the fetch time."""

        items = list(records)
        payload = json.dumps([record.to_payload() for record in items])
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.setex(CacheKeys.ANIME_LIST, self._catalog_ttl, payload)
                pipe.setex(
                    CacheKeys.LAST_FETCH_TIME, self._catalog_ttl, fetched_at.isoformat()
                )
                for record in items:
                    pipe.setex(
                        CacheKeys.anime_by_id(record.id),
                        self._record_ttl,
                        record.model_dump_json(exclude_none=True),
                    )
                await pipe.execute()
            return True
        except CACHE_ERRORS as exc:
            logger.warning("Cache store error for catalog of %s records: %s", len(items), exc)
            return False

    async def load_catalog(self) -> tuple[list[AnimeRecord], datetime | None] | None:
        """Return the cached record list and its fetch time, if present."""

        try:
            raw_list, raw_time = await self._redis.mget(
                [CacheKeys.ANIME_LIST, CacheKeys.LAST_FETCH_TIME]
            )
        except CACHE_ERRORS as exc:
            logger.warning("Cache load error for catalog: %s", exc)
            return None
        if not raw_list:
            return None
        try:
            entries = json.loads(raw_list)
        except json.JSONDecodeError:
            logger.warning("Cached catalog list is not valid JSON; ignoring it")
            return None
        if not isinstance(entries, list):
            return None

        records: list[AnimeRecord] = []
        for entry in entries:
            try:
                records.append(AnimeRecord.model_validate(entry))
            except ValidationError as exc:
                logger.debug("Skipping invalid cached catalog entry: %s", exc)
        fetched_at: datetime | None = None
        if raw_time:
            try:
                fetched_at = datetime.fromisoformat(raw_time)
            except ValueError:
                fetched_at = None
        return records, fetched_at

    async def purge_records(self) -> int:
        """Delete every per-id record key. Returns the number removed."""

        deleted = 0
        try:
            batch: list[str] = []
            async for key in self._redis.scan_iter(match=CacheKeys.ANIME_PATTERN, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._redis.delete(*batch)
        except CACHE_ERRORS as exc:
            logger.warning("Cache purge error for %s: %s", CacheKeys.ANIME_PATTERN, exc)
        return deleted

    async def publish_refresh(self, message: dict[str, Any]) -> bool:
        try:
            await self._redis.publish(CacheKeys.REFRESH_CHANNEL, json.dumps(message))
            return True
        except CACHE_ERRORS as exc:
            logger.warning("Cache publish error on %s: %s", CacheKeys.REFRESH_CHANNEL, exc)
            return False

    async def refresh_messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield refresh announcements published by any process.

        Raises :class:`CacheUnavailable` when the subscription drops.
        """

        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(CacheKeys.REFRESH_CHANNEL)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message.get("data") or "{}")
                except (TypeError, json.JSONDecodeError):
                    continue
                if isinstance(payload, dict):
                    yield payload
        except CACHE_ERRORS as exc:
            raise CacheUnavailable(f"Refresh subscription failed: {exc}") from exc
        finally:
            try:
                await pubsub.aclose()
            except CACHE_ERRORS:
                logger.debug("Ignoring error while closing refresh subscription")

    @staticmethod
    def _decode_record(raw: Any, anime_id: int) -> AnimeRecord | None:
        if not raw:
            return None
        try:
            return AnimeRecord.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Cached record for anime %s is invalid: %s", anime_id, exc)
            return None
