"""Redis cache wrapper tests backed by fakeredis."""

from __future__ import annotations

import json
from datetime import datetime

import pytest
from fakeredis import FakeAsyncRedis, FakeServer
from redis.exceptions import ConnectionError as RedisConnectionError

from app.errors import CacheUnavailable
from app.services.cache import CacheKeys, CatalogCache


def build_cache() -> tuple[CatalogCache, FakeAsyncRedis]:
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    return CatalogCache(client, catalog_ttl=3_600, record_ttl=600), client


class BrokenRedis:
    """Raises on every command like an unreachable server would."""

    def __getattr__(self, name: str):
        async def _fail(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        return _fail


@pytest.mark.anyio("asyncio")
async def test_records_round_trip_with_ttl(sample_records) -> None:
    cache, client = build_cache()

    assert await cache.set_records(sample_records[:2]) is True

    record = await cache.get_record(1)
    assert record == sample_records[0]
    ttl = await client.ttl(CacheKeys.anime_by_id(1))
    assert 0 < ttl <= 600
    assert await cache.get_record(404) is None


@pytest.mark.anyio("asyncio")
async def test_get_records_uses_single_batch_and_omits_missing(sample_records) -> None:
    cache, client = build_cache()
    await cache.set_records([sample_records[0], sample_records[2]])
    await client.set(CacheKeys.anime_by_id(2), "{not json")

    found = await cache.get_records([1, 2, 3, 99])

    assert sorted(found) == [1, 3]
    assert found[3].title == "Fullmetal Alchemist: Brotherhood"


@pytest.mark.anyio("asyncio")
async def test_store_and_load_catalog(sample_records) -> None:
    cache, client = build_cache()
    fetched_at = datetime(2024, 5, 1, 12, 30)

    assert await cache.store_catalog(sample_records, fetched_at) is True

    loaded = await cache.load_catalog()
    assert loaded is not None
    records, loaded_at = loaded
    assert [record.id for record in records] == [record.id for record in sample_records]
    assert loaded_at == fetched_at
    assert await client.exists(CacheKeys.anime_by_id(9)) == 1
    assert 0 < await client.ttl(CacheKeys.ANIME_LIST) <= 3_600


@pytest.mark.anyio("asyncio")
async def test_load_catalog_ignores_garbage() -> None:
    cache, client = build_cache()
    assert await cache.load_catalog() is None

    await client.set(CacheKeys.ANIME_LIST, "definitely not json")
    assert await cache.load_catalog() is None

    await client.set(CacheKeys.ANIME_LIST, json.dumps([{"id": 1, "title": "Naruto"}, {"bad": True}]))
    records, fetched_at = await cache.load_catalog()
    assert [record.id for record in records] == [1]
    assert fetched_at is None


@pytest.mark.anyio("asyncio")
async def test_purge_records_only_touches_record_keys(sample_records) -> None:
    cache, client = build_cache()
    await cache.store_catalog(sample_records, datetime(2024, 1, 1))

    deleted = await cache.purge_records()

    assert deleted == len(sample_records)
    assert await client.exists(CacheKeys.ANIME_LIST) == 1
    assert await cache.get_record(1) is None


@pytest.mark.anyio("asyncio")
async def test_failures_degrade_to_misses(sample_records) -> None:
    cache = CatalogCache(BrokenRedis(), catalog_ttl=60, record_ttl=60)  # type: ignore[arg-type]

    assert await cache.get_record(1) is None
    assert await cache.get_records([1, 2]) == {}
    assert await cache.load_catalog() is None
    assert await cache.publish_refresh({"version": 1}) is False
    with pytest.raises(CacheUnavailable):
        await cache.ping()


@pytest.mark.anyio("asyncio")
async def test_publish_reaches_subscribers() -> None:
    cache, client = build_cache()
    pubsub = client.pubsub(ignore_subscribe_messages=True)
    await pubsub.subscribe(CacheKeys.REFRESH_CHANNEL)

    assert await cache.publish_refresh({"instance": "abc", "version": 3}) is True

    message = None
    for _ in range(10):
        message = await pubsub.get_message(timeout=0.1)
        if message is not None:
            break
    await pubsub.aclose()

    assert message is not None
    assert json.loads(message["data"]) == {"instance": "abc", "version": 3}
