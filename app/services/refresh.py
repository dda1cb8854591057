"""Background tasks keeping the catalog snapshot current."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from ..errors import CacheUnavailable
from .cache import CatalogCache
from .catalog_store import CatalogStore

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Runs the periodic rebuild and follows refreshes made by other processes."""

    def __init__(
        self,
        store: CatalogStore,
        cache: CatalogCache,
        *,
        interval_seconds: float,
        resubscribe_delay: float = 5.0,
    ):
        self._store = store
        self._cache = cache
        self._interval = interval_seconds
        self._resubscribe_delay = resubscribe_delay
        self._refresh_task: asyncio.Task[None] | None = None
        self._listener_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def start(self) -> None:
        """Load the initial snapshot and launch the background loops."""

        await self._store.load()
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())
        if self._listener_task is None:
            self._listener_task = asyncio.create_task(self._listen_loop())
        logger.info(
            "Catalog refresh scheduled every %s seconds", int(self._interval)
        )

    async def stop(self) -> None:
        """Stop the background loops."""

        for task in (self._refresh_task, self._listener_task):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._refresh_task = None
        self._listener_task = None

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._store.refresh()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled catalog refresh failed: %s", exc)

    async def _listen_loop(self) -> None:
        while True:
            try:
                async for message in self._cache.refresh_messages():
                    await self.handle_refresh_message(message)
            except CacheUnavailable as exc:
                logger.warning(
                    "Refresh subscription lost (%s); retrying in %.0fs",
                    exc,
                    self._resubscribe_delay,
                )
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Refresh listener failed: %s", exc)
            await asyncio.sleep(self._resubscribe_delay)

    async def handle_refresh_message(self, message: dict[str, object]) -> bool:
        """Reload from Redis when another process published a snapshot."""

        if message.get("instance") == self._store.instance_id:
            return False
        if self._store.is_refreshing:
            return False
        logger.info(
            "Catalog refresh announced by %s (v%s); reloading from cache",
            message.get("instance"),
            message.get("version"),
        )
        snapshot = await self._store.reload_from_cache()
        return snapshot is not None
