"""Pydantic models describing anime records and query payloads."""

from __future__ import annotations

from typing import Any, Literal, Mapping, Sequence

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import MalformedQuery
from .seasons import MIN_YEAR, Season, SeasonYear, max_year, parse_start_date
from .utils import coerce_float, coerce_int, split_csv_param

BrowseSort = Literal["rating", "newest"]
WatchStatus = Literal["watching", "completed", "plan_to_watch", "on_hold", "dropped"]
WatchListSort = Literal["added", "name", "rating", "rating_personal", "newest"]

WATCH_STATUSES: tuple[str, ...] = (
    "watching",
    "completed",
    "plan_to_watch",
    "on_hold",
    "dropped",
)


class NamedEntity(BaseModel):
    """Genre or studio reference attached to an anime."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str


class Picture(BaseModel):
    model_config = ConfigDict(frozen=True)

    medium: str | None = None
    large: str | None = None


class AlternativeTitles(BaseModel):
    model_config = ConfigDict(frozen=True)

    synonyms: tuple[str, ...] = ()
    en: str | None = None
    ja: str | None = None


class AnimeRecord(BaseModel):
    """A single anime entry as published in a catalog snapshot."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    title: str
    alternative_titles: AlternativeTitles | None = None
    main_picture: Picture | None = None
    start_date: str | None = None
    end_date: str | None = None
    synopsis: str | None = None
    mean: float | None = None
    rank: int | None = None
    popularity: int | None = None
    num_scoring_users: int | None = None
    num_episodes: int | None = None
    status: str | None = None
    media_type: str | None = None
    rating: str | None = None
    source: str | None = None
    genres: tuple[NamedEntity, ...] = ()
    studios: tuple[NamedEntity, ...] = ()

    @classmethod
    def from_csv_row(cls, row: Mapping[str, str | None]) -> "AnimeRecord | None":
        """Build a record from one row of the upstream dataset CSV."""

        anime_id = coerce_int(row.get("id"))
        if anime_id is None:
            return None

        def _text(key: str) -> str | None:
            value = row.get(key)
            if value is None:
                return None
            value = value.strip()
            return value or None

        title = _text("title") or _text("titleEn") or "Unknown"
        image = _text("image")
        return cls(
            id=anime_id,
            title=title,
            alternative_titles=AlternativeTitles(en=_text("titleEn"), ja=_text("titleJa")),
            main_picture=Picture(medium=image, large=image) if image else None,
            mean=coerce_float(_text("mean")),
            rank=coerce_int(_text("rank")),
            popularity=coerce_int(_text("num_list_users")),
            num_scoring_users=coerce_int(_text("num_scoring_users")),
            num_episodes=coerce_int(_text("num_episodes")),
            start_date=_text("start_date"),
            end_date=_text("end_date"),
            media_type=_text("media_type"),
            status=_text("status"),
            rating=_text("rating"),
            genres=_split_entities(_text("genres")),
            studios=_split_entities(_text("studios")),
        )

    @property
    def genre_names(self) -> tuple[str, ...]:
        return tuple(genre.name for genre in self.genres)

    @property
    def titles(self) -> tuple[str, ...]:
        """Every distinct title variant, primary title first."""

        candidates: list[str] = [self.title]
        alt = self.alternative_titles
        if alt is not None:
            candidates.extend(value for value in (alt.en, alt.ja) if value)
            candidates.extend(alt.synonyms)
        seen: list[str] = []
        for candidate in candidates:
            if candidate and candidate not in seen:
                seen.append(candidate)
        return tuple(seen)

    @property
    def season(self) -> SeasonYear | None:
        return parse_start_date(self.start_date)

    @property
    def year(self) -> int | None:
        if not self.start_date or len(self.start_date) < 4:
            return None
        return coerce_int(self.start_date[:4])

    @property
    def is_special(self) -> bool:
        return (self.media_type or "").lower() == "special"

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def _split_entities(value: str | None) -> tuple[NamedEntity, ...]:
    if not value:
        return ()
    names = [name.strip() for name in value.split("|")]
    return tuple(
        NamedEntity(id=index, name=name) for index, name in enumerate(names) if name
    )


def _malformed_query(exc: ValidationError) -> MalformedQuery:
    parts: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "__root__")
        message = str(error.get("msg", "invalid value"))
        parts.append(f"{location}: {message}" if location else message)
    return MalformedQuery("; ".join(parts) or "Invalid query parameters")


class _QueryModel(BaseModel):
    """Shared parsing for models built from request query strings."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @classmethod
    def from_query(cls, params: Mapping[str, Any]):
        # Blank query-string values fall back to the field defaults.
        payload = {
            key: value
            for key, value in params.items()
            if not (isinstance(value, str) and not value.strip())
        }
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise _malformed_query(exc) from exc


def _split_genres(value: object) -> tuple[str, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        raw_values = split_csv_param(value)
    elif isinstance(value, Sequence):
        raw_values = [str(part).strip() for part in value]
    else:
        raise ValueError("genres must be a comma separated string or a list")
    cleaned: list[str] = []
    for entry in raw_values:
        if entry and entry not in cleaned:
            cleaned.append(entry)
    return tuple(cleaned)


class BrowseQuery(_QueryModel):
    """Validated browse parameters: sort, facets and paging."""

    sort: BrowseSort = "rating"
    genres: tuple[str, ...] = ()
    season: Season | None = None
    year: int | None = None
    hide_specials: bool = Field(
        default=False,
        validation_alias=AliasChoices("hideSpecials", "hide_specials"),
    )
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    @field_validator("genres", mode="before")
    @classmethod
    def _parse_genres(cls, value: object) -> object:
        return _split_genres(value)

    @field_validator("sort", "season", mode="before")
    @classmethod
    def _normalise_choice(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("year")
    @classmethod
    def _check_year(cls, value: int | None) -> int | None:
        if value is None:
            return None
        if not MIN_YEAR <= value <= max_year():
            raise ValueError(f"year must be between {MIN_YEAR} and {max_year()}")
        return value

    @model_validator(mode="after")
    def _season_requires_year(self) -> "BrowseQuery":
        if self.season is not None and self.year is None:
            raise ValueError("season filter requires a year")
        return self


class SeasonalQuery(BrowseQuery):
    """Browse parameters for a single broadcast season."""

    season: Season
    year: int
    limit: int = Field(default=24, ge=1, le=100)


class SearchQuery(_QueryModel):
    q: str = ""
    limit: int = Field(default=20, ge=1, le=100)
    genres: tuple[str, ...] = ()
    hide_specials: bool = Field(
        default=False,
        validation_alias=AliasChoices("hideSpecials", "hide_specials"),
    )

    @field_validator("genres", mode="before")
    @classmethod
    def _parse_genres(cls, value: object) -> object:
        return _split_genres(value)


class BrowsePage(BaseModel):
    """One page of an ordered, filtered catalog view."""

    items: list[AnimeRecord] = Field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total

    def to_payload(self) -> dict[str, Any]:
        return {
            "items": [item.to_payload() for item in self.items],
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
            "hasMore": self.has_more,
        }


class WatchListQuery(_QueryModel):
    q: str | None = None
    sort: WatchListSort = "added"
    status: WatchStatus | Literal["all"] = "all"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=24, ge=1, le=100)
    genres: tuple[str, ...] = ()

    @field_validator("genres", mode="before")
    @classmethod
    def _parse_genres(cls, value: object) -> object:
        return _split_genres(value)

    @field_validator("q", "sort", "status", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class WatchEntryUpdate(BaseModel):
    """Body accepted when adding or updating a watch list entry."""

    model_config = ConfigDict(populate_by_name=True)

    status: WatchStatus
    rating: int | None = Field(default=None, ge=0, le=10)
    episodes_watched: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("episodesWatched", "episodes_watched"),
    )
    notes: str | None = Field(default=None, max_length=2_000)
