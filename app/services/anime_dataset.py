"""Client for the upstream anime dataset (bulk CSV plus per-title JSON)."""

from __future__ import annotations

import asyncio
import csv
import io
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import UpstreamUnavailable
from ..models import AnimeRecord

logger = logging.getLogger(__name__)


class AnimeDatasetClient:
    """Thin wrapper around the upstream dataset HTTP endpoints."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client
        self._max_retries = settings.upstream_retry_limit

    @property
    def dataset_url(self) -> str:
        return str(self._settings.anime_dataset_url)

    def record_url(self, anime_id: int) -> str:
        base = str(self._settings.anime_cdn_url).rstrip("/")
        return f"{base}/anime/{anime_id}.json"

    async def fetch_catalog(self) -> list[AnimeRecord]:
        """Download and parse the full catalog.

        Raises :class:`UpstreamUnavailable` when the dataset cannot be
        retrieved or does not contain a single usable row.
        """

        response = await self._get(self.dataset_url, description="catalog dataset")
        if response.status_code >= 400:
            raise UpstreamUnavailable(
                f"Dataset request failed with HTTP {response.status_code}"
            )
        records = await asyncio.to_thread(self.parse_catalog, response.text)
        if not records:
            raise UpstreamUnavailable("Dataset did not contain any anime records")
        logger.info("Fetched %s anime records from upstream", len(records))
        return records

    async def fetch_anime(self, anime_id: int) -> AnimeRecord | None:
        """Fetch a single detailed record, returning ``None`` when unknown."""

        response = await self._get(
            self.record_url(anime_id), description=f"anime {anime_id}"
        )
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise UpstreamUnavailable(
                f"Anime {anime_id} request failed with HTTP {response.status_code}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(f"Anime {anime_id} returned non-JSON content") from exc
        if not isinstance(payload, dict):
            logger.warning("Unexpected payload structure for anime %s", anime_id)
            return None
        return self._record_from_payload(payload, anime_id)

    @staticmethod
    def parse_catalog(content: str) -> list[AnimeRecord]:
        """Parse the dataset CSV, skipping rows without a numeric id."""

        reader = csv.DictReader(io.StringIO(content))
        records: list[AnimeRecord] = []
        skipped = 0
        for row in reader:
            try:
                record = AnimeRecord.from_csv_row(row)
            except ValidationError as exc:
                logger.debug("Skipping invalid dataset row %s: %s", row.get("id"), exc)
                record = None
            if record is None:
                skipped += 1
                continue
            records.append(record)
        if skipped:
            logger.info("Skipped %s dataset rows without a usable id", skipped)
        return records

    @staticmethod
    def _record_from_payload(
        payload: dict[str, Any], anime_id: int
    ) -> AnimeRecord | None:
        data = {**payload}
        data.setdefault("id", anime_id)
        if not data.get("title"):
            alt = data.get("alternative_titles") or {}
            data["title"] = (alt.get("en") if isinstance(alt, dict) else None) or "Unknown"
        try:
            return AnimeRecord.model_validate(data)
        except ValidationError as exc:
            logger.warning("Upstream record for anime %s is invalid: %s", anime_id, exc)
            return None

    async def _get(self, url: str, *, description: str) -> httpx.Response:
        # Retry on transient errors (timeouts, 5xx)
        attempt = 0
        while True:
            try:
                response = await self._client.get(url)
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Transient error fetching %s (%s). Retrying in %.1fs",
                        description,
                        exc.__class__.__name__,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise UpstreamUnavailable(
                    f"Unable to fetch {description}: {exc.__class__.__name__}"
                ) from exc

            if 500 <= response.status_code < 600:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Upstream %s while fetching %s. Retrying in %.1fs",
                        response.status_code,
                        description,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                logger.warning(
                    "Failed to fetch %s after %s attempts: HTTP %s",
                    description,
                    attempt,
                    response.status_code,
                )
            return response
