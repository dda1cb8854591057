"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_FEATURED_ANIME_IDS: tuple[int, ...] = (8425, 41457, 4789, 27775, 22297, 1195, 355)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="AnimeShelf", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./animeshelf.db", alias="DATABASE_URL"
    )

    anime_dataset_url: HttpUrl = Field(
        default=(
            "https://raw.githubusercontent.com/meesvandongen/anime-dataset/"
            "refs/heads/main/data/anime-standalone.csv"
        ),
        alias="ANIME_DATASET_URL",
    )
    anime_cdn_url: HttpUrl = Field(
        default="https://raw.githubusercontent.com/meesvandongen/anime-dataset/main/data",
        alias="ANIME_CDN_URL",
    )

    refresh_interval_seconds: int = Field(
        default=86_400, alias="REFRESH_INTERVAL", ge=300
    )
    catalog_cache_seconds: int = Field(
        default=60 * 60 * 24 * 7, alias="CATALOG_CACHE_TTL", ge=60
    )
    record_cache_seconds: int = Field(
        default=60 * 60 * 24, alias="RECORD_CACHE_TTL", ge=60
    )

    upstream_timeout_seconds: float = Field(
        default=30.0, alias="UPSTREAM_TIMEOUT", gt=0, le=300
    )
    upstream_retry_limit: int = Field(
        default=2, alias="UPSTREAM_RETRIES", ge=0, le=10
    )

    anime_batch_size: int = Field(default=100, alias="ANIME_BATCH_SIZE", ge=1, le=1_000)
    featured_anime_ids: Annotated[tuple[int, ...], NoDecode] = Field(
        default=DEFAULT_FEATURED_ANIME_IDS, alias="FEATURED_ANIME_IDS"
    )
    search_threshold: float = Field(default=0.6, alias="SEARCH_THRESHOLD", ge=0, le=1)

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("featured_anime_ids", mode="before")
    @classmethod
    def _parse_featured_ids(cls, value: object) -> tuple[int, ...]:
        """Normalise featured anime ids from environment values."""

        if value is None:
            return DEFAULT_FEATURED_ANIME_IDS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise ValueError("FEATURED_ANIME_IDS must be a string or iterable of ids")

        cleaned: list[int] = []
        for entry in raw_values:
            if not entry:
                continue
            try:
                anime_id = int(entry)
            except ValueError as exc:
                raise ValueError("FEATURED_ANIME_IDS must contain integer ids") from exc
            if anime_id <= 0:
                raise ValueError("FEATURED_ANIME_IDS must contain positive ids")
            if anime_id not in cleaned:
                cleaned.append(anime_id)
        return tuple(cleaned)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
