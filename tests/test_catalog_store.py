"""Catalog store behaviour: lookups, refreshes and failure handling."""

from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime, timedelta

import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from app.config import Settings
from app.errors import UpstreamUnavailable
from app.models import AnimeRecord
from app.services.cache import CacheKeys, CatalogCache
from app.services.catalog_store import CatalogStore, RefreshState
from app.services.snapshot import build_snapshot


class FakeUpstream:
    """In-memory stand-in for the dataset client."""

    def __init__(self, records: list[AnimeRecord], details: dict[int, AnimeRecord] | None = None):
        self.records = list(records)
        self.details = dict(details or {})
        self.fail_catalog = False
        self.catalog_calls = 0
        self.anime_calls: list[int] = []
        self.gate: asyncio.Event | None = None

    async def fetch_catalog(self) -> list[AnimeRecord]:
        self.catalog_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_catalog:
            raise UpstreamUnavailable("Dataset request failed with HTTP 503")
        return list(self.records)

    async def fetch_anime(self, anime_id: int) -> AnimeRecord | None:
        self.anime_calls.append(anime_id)
        return self.details.get(anime_id)


def build_store(records, details=None) -> tuple[CatalogStore, FakeUpstream, CatalogCache]:
    upstream = FakeUpstream(records, details)
    cache = CatalogCache(
        FakeAsyncRedis(server=FakeServer(), decode_responses=True),
        catalog_ttl=3_600,
        record_ttl=600,
    )
    store = CatalogStore(Settings(_env_file=None), upstream, cache)  # type: ignore[arg-type]
    return store, upstream, cache


@pytest.mark.anyio("asyncio")
async def test_get_prefers_snapshot_then_returns_none(sample_records) -> None:
    store, upstream, _ = build_store(sample_records)
    await store.refresh()

    record = await store.get(3)

    assert record is store.snapshot.get(3)
    assert await store.get(999) is None
    assert upstream.anime_calls == [999]


@pytest.mark.anyio("asyncio")
async def test_get_falls_back_to_cache_then_upstream(sample_records, record_factory) -> None:
    extra = record_factory(500, "Mushishi", mean=8.7)
    store, upstream, cache = build_store(sample_records, details={500: extra})
    await cache.set_records([record_factory(400, "Cached Only")])

    assert (await store.get(400)).title == "Cached Only"
    assert upstream.anime_calls == []

    fetched = await store.get(500)
    assert fetched == extra
    # Back-filled, so a second lookup is served from the cache.
    assert await cache.get_record(500) == extra
    await store.get(500)
    assert upstream.anime_calls == [500]


@pytest.mark.anyio("asyncio")
async def test_get_with_details_returns_enriched_copy(sample_records, record_factory) -> None:
    detailed = record_factory(5, "Hyouka", synopsis="Oreki Houtarou...", source="light_novel")
    store, _, _ = build_store(sample_records, details={5: detailed})
    await store.refresh()

    enriched = await store.get(5, include_details=True)

    assert enriched.synopsis == "Oreki Houtarou..."
    assert enriched.source == "light_novel"
    assert enriched.mean == 8.1
    assert store.snapshot.get(5).synopsis is None


@pytest.mark.anyio("asyncio")
async def test_get_many_omits_missing_and_keeps_order(sample_records, record_factory) -> None:
    store, upstream, cache = build_store(sample_records[:3], details={77: record_factory(77, "Upstream")})
    await store.refresh()
    await cache.set_records([record_factory(60, "Cached")])

    found = await store.get_many([3, 404, 60, 1, 77, 3])

    assert list(found) == [3, 60, 1, 77]
    assert sorted(upstream.anime_calls) == [77, 404]
    assert await cache.get_record(77) is not None


@pytest.mark.anyio("asyncio")
async def test_refresh_publishes_snapshot_and_announces(sample_records) -> None:
    store, _, cache = build_store(sample_records)
    pubsub = cache.client.pubsub(ignore_subscribe_messages=True)
    await pubsub.subscribe(CacheKeys.REFRESH_CHANNEL)

    snapshot = await store.refresh()

    assert snapshot is store.snapshot
    assert snapshot.version == 1
    assert store.state is RefreshState.IDLE
    status = store.status().to_payload()
    assert status["count"] == len(sample_records)
    assert status["ready"] is True
    assert status["lastError"] is None

    message = None
    for _ in range(10):
        message = await pubsub.get_message(timeout=0.1)
        if message is not None:
            break
    await pubsub.aclose()
    assert message is not None
    payload = json.loads(message["data"])
    assert payload["instance"] == store.instance_id
    assert payload["version"] == 1


@pytest.mark.anyio("asyncio")
async def test_refresh_twice_yields_identical_ordering(sample_records) -> None:
    store, _, _ = build_store(sample_records)

    first = await store.refresh()
    second = await store.refresh()

    assert second.version == first.version + 1
    assert dict(first.records) == dict(second.records)
    assert first.by_rating == second.by_rating
    assert first.by_newest == second.by_newest
    assert dict(first.token_index) == dict(second.token_index)


@pytest.mark.anyio("asyncio")
async def test_failed_refresh_keeps_previous_snapshot(sample_records) -> None:
    store, upstream, _ = build_store(sample_records)
    previous = await store.refresh()
    upstream.fail_catalog = True

    assert await store.refresh() is None

    assert store.snapshot is previous
    assert store.state is RefreshState.IDLE
    assert "503" in store.status().last_error


@pytest.mark.anyio("asyncio")
async def test_failed_initial_refresh_serves_nothing(sample_records) -> None:
    store, upstream, _ = build_store(sample_records)
    upstream.fail_catalog = True

    assert await store.load() is None
    assert store.snapshot is None
    assert store.status().to_payload()["ready"] is False


@pytest.mark.anyio("asyncio")
async def test_load_prefers_cached_catalog(sample_records) -> None:
    store, upstream, cache = build_store(sample_records)
    await cache.store_catalog(sample_records[:4], datetime(2024, 3, 1))

    snapshot = await store.load()

    assert upstream.catalog_calls == 0
    assert len(snapshot) == 4
    assert snapshot.fetched_at == datetime(2024, 3, 1)


@pytest.mark.anyio("asyncio")
async def test_concurrent_refreshes_never_overlap(sample_records) -> None:
    store, upstream, _ = build_store(sample_records)
    upstream.gate = asyncio.Event()

    first = asyncio.create_task(store.refresh())
    second = asyncio.create_task(store.refresh())
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert store.is_refreshing
    assert store.state is RefreshState.FETCHING
    assert upstream.catalog_calls == 1

    upstream.gate.set()
    results = await asyncio.gather(first, second)

    assert [snapshot.version for snapshot in results] == [1, 2]
    assert store.snapshot is results[1]


@pytest.mark.anyio("asyncio")
async def test_invalidate_deduplicates_background_refresh(sample_records) -> None:
    store, upstream, _ = build_store(sample_records)
    upstream.gate = asyncio.Event()

    task = store.invalidate()
    assert store.invalidate() is task

    upstream.gate.set()
    snapshot = await task

    assert snapshot is store.snapshot
    assert upstream.catalog_calls == 1


@pytest.mark.anyio("asyncio")
async def test_purge_cache_drops_record_keys(sample_records) -> None:
    store, _, cache = build_store(sample_records)
    await store.refresh()

    assert await store.purge_cache() == len(sample_records)
    assert await cache.get_record(1) is None
    # The live snapshot still answers.
    assert (await store.get(1)).title == "Naruto"


class GatedCache(CatalogCache):
    """Holds ``load_catalog`` open until the test releases it."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def load_catalog(self):
        self.entered.set()
        await self.gate.wait()
        return await super().load_catalog()


@pytest.mark.anyio("asyncio")
async def test_reload_never_rolls_back_a_newer_refresh(sample_records, record_factory) -> None:
    upstream = FakeUpstream(sample_records)
    cache = GatedCache(
        FakeAsyncRedis(server=FakeServer(), decode_responses=True),
        catalog_ttl=3_600,
        record_ttl=600,
    )
    store = CatalogStore(Settings(_env_file=None), upstream, cache)  # type: ignore[arg-type]
    await cache.store_catalog([record_factory(900, "Old Title")], datetime(2020, 1, 1))

    reload = asyncio.create_task(store.reload_from_cache())
    await cache.entered.wait()
    refresh = asyncio.create_task(store.refresh())
    await asyncio.sleep(0)
    # The refresh waits for the reload to finish.
    assert upstream.catalog_calls == 0

    cache.gate.set()
    reloaded = await reload
    refreshed = await refresh

    assert reloaded.get(900) is not None
    assert store.snapshot is refreshed
    assert refreshed.version > reloaded.version
    assert store.snapshot.get(900) is None

    # A late announcement re-reading what this refresh stored changes nothing.
    assert await store.reload_from_cache() is None
    # Nor does an older list written by a slower process.
    await cache.store_catalog([record_factory(901, "Stale")], datetime(2020, 6, 1))
    assert await store.reload_from_cache() is None
    assert store.snapshot is refreshed


@pytest.mark.anyio("asyncio")
async def test_reload_accepts_a_newer_cached_catalog(sample_records) -> None:
    store, _, cache = build_store(sample_records)
    previous = await store.refresh()
    later = previous.fetched_at + timedelta(minutes=5)
    await cache.store_catalog(sample_records[:2], later)

    snapshot = await store.reload_from_cache()

    assert snapshot is store.snapshot
    assert len(snapshot) == 2
    assert snapshot.fetched_at == later
    assert snapshot.version == previous.version + 1


@pytest.mark.anyio("asyncio")
async def test_snapshot_builds_run_off_the_event_loop(sample_records, monkeypatch) -> None:
    threads: list[int] = []

    def recording_build(*args, **kwargs):
        threads.append(threading.get_ident())
        return build_snapshot(*args, **kwargs)

    monkeypatch.setattr("app.services.catalog_store.build_snapshot", recording_build)
    store, _, cache = build_store(sample_records)

    await store.refresh()
    await cache.store_catalog(sample_records[:3], store.snapshot.fetched_at + timedelta(hours=1))
    await store.reload_from_cache()

    assert len(threads) == 2
    assert threading.get_ident() not in threads
    assert len(store.snapshot) == 3


@pytest.mark.anyio("asyncio")
async def test_cache_outage_falls_back_to_upstream(sample_records, record_factory) -> None:
    server = FakeServer()
    server.connected = False
    details = {500: record_factory(500, "Mushishi"), 501: record_factory(501, "Kaiba")}
    upstream = FakeUpstream(sample_records, details)
    cache = CatalogCache(
        FakeAsyncRedis(server=server, decode_responses=True),
        catalog_ttl=3_600,
        record_ttl=600,
    )
    store = CatalogStore(Settings(_env_file=None), upstream, cache)  # type: ignore[arg-type]

    assert (await store.get(500)).title == "Mushishi"
    found = await store.get_many([501, 404, 500])

    assert list(found) == [501, 500]
    assert sorted(upstream.anime_calls) == [404, 500, 500, 501]

    # Refreshes still publish locally while Redis is down.
    snapshot = await store.refresh()
    assert snapshot is store.snapshot
    assert (await store.get(3)).id == 3
    assert await store.reload_from_cache() is None
