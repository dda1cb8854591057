"""Entry point for the FastAPI-powered anime catalog service."""

from __future__ import annotations
import json
import re
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
import redis.asyncio as redis
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .database import Database
from .errors import MalformedQuery
from .models import (
    BrowseQuery,
    SearchQuery,
    SeasonalQuery,
    WatchEntryUpdate,
    WatchListQuery,
)
from .seasons import SeasonYear, current_season
from .services.anime_dataset import AnimeDatasetClient
from .services.cache import CatalogCache
from .services.catalog_store import CatalogStore
from .services.query import QueryEngine
from .services.refresh import RefreshScheduler
from .services.watchlist import WatchListService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ANIME_ID_RE = re.compile(r"\+?[0-9]+")

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    upstream_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            timeout=httpx.Timeout(settings.upstream_timeout_seconds, connect=10.0),
            follow_redirects=True,
        )
    )
    cache = CatalogCache(
        redis.from_url(settings.redis_url, decode_responses=True),
        catalog_ttl=settings.catalog_cache_seconds,
        record_ttl=settings.record_cache_seconds,
    )
    database = Database(settings.database_url)
    await database.create_all()

    store = CatalogStore(settings, AnimeDatasetClient(settings, upstream_client), cache)
    scheduler = RefreshScheduler(
        store, cache, interval_seconds=settings.refresh_interval_seconds
    )

    fastapi_app.state.database = database
    fastapi_app.state.catalog_store = store
    fastapi_app.state.query_engine = QueryEngine(settings, store)
    fastapi_app.state.watchlist_service = WatchListService(
        database.session_factory, store
    )
    fastapi_app.state.refresh_scheduler = scheduler
    await scheduler.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await scheduler.stop()
        await cache.close()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Anime catalog search, browse and watch list API",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_catalog_store(app: FastAPI) -> CatalogStore:
    store = getattr(app.state, "catalog_store", None)
    if store is None:
        raise RuntimeError("Catalog store not initialised")
    return store


def get_query_engine(app: FastAPI) -> QueryEngine:
    engine = getattr(app.state, "query_engine", None)
    if engine is None:
        raise RuntimeError("Query engine not initialised")
    return engine


def get_watchlist_service(app: FastAPI) -> WatchListService:
    service = getattr(app.state, "watchlist_service", None)
    if service is None:
        raise RuntimeError("Watch list service not initialised")
    return service


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _validation_message(errors: list[dict[str, Any]]) -> str:
    parts: list[str] = []
    for error in errors:
        location = ".".join(
            str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"}
        )
        message = str(error.get("msg", "invalid value"))
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"


def register_error_handlers(fastapi_app: FastAPI) -> None:
    """Render every error as ``{"error": message}``."""

    @fastapi_app.exception_handler(StarletteHTTPException)
    async def http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error_response(exc.status_code, str(exc.detail))

    @fastapi_app.exception_handler(RequestValidationError)
    async def request_validation_error(
        _: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _error_response(400, _validation_message(list(exc.errors())))

    @fastapi_app.exception_handler(MalformedQuery)
    async def malformed_query(_: Request, exc: MalformedQuery) -> JSONResponse:
        return _error_response(400, str(exc))

    @fastapi_app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error serving %s: %s", request.url.path, exc)
        return _error_response(500, "Internal server error")


def _parse_anime_id(raw: str) -> int:
    """Accept decimal ids with an optional sign and leading zeros."""

    text = raw.strip()
    if not ANIME_ID_RE.fullmatch(text) or int(text) <= 0:
        raise HTTPException(status_code=400, detail="Invalid anime id")
    return int(text)


def _coerce_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"1", "true", "yes", "on"}
    if isinstance(value, (int, float)):
        return bool(value)
    return False


def register_routes(fastapi_app: FastAPI) -> None:
    register_error_handlers(fastapi_app)

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/anime")
    async def anime_index(request: Request) -> JSONResponse:
        engine = get_query_engine(fastapi_app)
        params = dict(request.query_params)

        if "q" in params:
            query = SearchQuery.from_query(params)
            results = engine.search(
                query.q,
                query.limit,
                hide_specials=query.hide_specials,
                genres=query.genres,
            )
            return JSONResponse([record.to_payload() for record in results])

        if _coerce_bool(params.get("home")):
            return JSONResponse(engine.home())

        params.pop("home", None)
        page = engine.browse(BrowseQuery.from_query(params))
        return JSONResponse(page.to_payload())

    @fastapi_app.get("/api/anime/seasonal")
    async def anime_seasonal(request: Request) -> JSONResponse:
        engine = get_query_engine(fastapi_app)
        params = dict(request.query_params)
        if "year" not in params and "season" not in params:
            current = current_season()
            params.update(season=current.season, year=str(current.year))
        query = SeasonalQuery.from_query(params)
        page = engine.seasonal(
            query.year,
            query.season,
            limit=query.limit,
            offset=query.offset,
            genres=query.genres,
        )
        selected = SeasonYear(query.season, query.year)
        body = page.to_payload()
        body.update(
            season=selected.to_payload(),
            previous=selected.previous().to_payload(),
            next=selected.next().to_payload(),
        )
        return JSONResponse(body)

    @fastapi_app.get("/api/anime/lookup")
    async def anime_lookup(title: str = "") -> JSONResponse:
        if not title.strip():
            raise HTTPException(status_code=400, detail="title is required")
        record = get_query_engine(fastapi_app).find_by_title(title)
        if record is None:
            raise HTTPException(status_code=404, detail="Anime not found")
        return JSONResponse(record.to_payload())

    @fastapi_app.post("/api/anime/batch")
    async def anime_batch(request: Request) -> JSONResponse:
        store = get_catalog_store(fastapi_app)
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            payload = None
        ids = payload.get("ids") if isinstance(payload, dict) else None
        if not isinstance(ids, list):
            raise HTTPException(status_code=400, detail="ids must be a list")

        anime_ids: list[int] = []
        for value in ids[: settings.anime_batch_size]:
            anime_id = value if isinstance(value, int) and not isinstance(value, bool) else None
            if anime_id is None:
                raise HTTPException(status_code=400, detail="ids must contain integers")
            anime_ids.append(anime_id)

        found = await store.get_many(anime_ids)
        return JSONResponse([record.to_payload() for record in found.values()])

    @fastapi_app.get("/api/anime/{anime_id}")
    async def anime_detail(anime_id: str) -> JSONResponse:
        store = get_catalog_store(fastapi_app)
        record = await store.get(_parse_anime_id(anime_id), include_details=True)
        if record is None:
            raise HTTPException(status_code=404, detail="Anime not found")
        return JSONResponse(record.to_payload())

    @fastapi_app.get("/api/genres")
    async def genre_list() -> dict[str, list[str]]:
        return {"genres": get_query_engine(fastapi_app).genres()}

    @fastapi_app.get("/api/catalog/status")
    async def catalog_status() -> JSONResponse:
        store = get_catalog_store(fastapi_app)
        return JSONResponse(store.status().to_payload())

    @fastapi_app.post("/api/catalog/refresh")
    async def catalog_refresh(request: Request) -> JSONResponse:
        store = get_catalog_store(fastapi_app)
        params = request.query_params
        purged = None
        if _coerce_bool(params.get("purge")):
            purged = await store.purge_cache()
        if _coerce_bool(params.get("wait")):
            snapshot = await store.refresh()
            if snapshot is None:
                status = store.status()
                raise HTTPException(
                    status_code=500,
                    detail=status.last_error or "Catalog refresh failed",
                )
            refreshed = True
        else:
            store.invalidate()
            refreshed = False
        body = {"scheduled": not refreshed, "refreshed": refreshed, **store.status().to_payload()}
        if purged is not None:
            body["purged"] = purged
        return JSONResponse(body, status_code=200 if refreshed else 202)

    @fastapi_app.get("/api/users/{user_id}/watchlist")
    async def watchlist(user_id: str, request: Request) -> JSONResponse:
        service = get_watchlist_service(fastapi_app)
        query = WatchListQuery.from_query(request.query_params)
        return JSONResponse(await service.list_entries(user_id, query))

    @fastapi_app.put("/api/users/{user_id}/watchlist/{anime_id}")
    async def watchlist_upsert(user_id: str, anime_id: str, request: Request) -> JSONResponse:
        service = get_watchlist_service(fastapi_app)
        parsed_id = _parse_anime_id(anime_id)
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")
        try:
            update = WatchEntryUpdate.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=400, detail=_validation_message(exc.errors())
            ) from exc

        entry = await service.upsert(user_id, parsed_id, update)
        if entry is None:
            raise HTTPException(status_code=404, detail="Anime not found")
        return JSONResponse(entry)

    @fastapi_app.delete("/api/users/{user_id}/watchlist/{anime_id}")
    async def watchlist_remove(user_id: str, anime_id: str) -> JSONResponse:
        service = get_watchlist_service(fastapi_app)
        removed = await service.remove(user_id, _parse_anime_id(anime_id))
        if not removed:
            raise HTTPException(status_code=404, detail="Watch list entry not found")
        return JSONResponse({"removed": True})


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
