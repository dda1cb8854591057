"""Helpers for mapping air dates onto broadcast seasons."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Literal

Season = Literal["winter", "spring", "summer", "fall"]

SEASON_ORDER: tuple[Season, ...] = ("winter", "spring", "summer", "fall")
SEASON_LABELS: dict[Season, str] = {
    "winter": "Winter",
    "spring": "Spring",
    "summer": "Summer",
    "fall": "Autumn",
}
MIN_YEAR = 1970


@dataclass(frozen=True, slots=True)
class SeasonYear:
    season: Season
    year: int

    @property
    def label(self) -> str:
        return f"{SEASON_LABELS[self.season]} {self.year}"

    def previous(self) -> "SeasonYear":
        index = SEASON_ORDER.index(self.season)
        if index == 0:
            return SeasonYear(SEASON_ORDER[-1], self.year - 1)
        return SeasonYear(SEASON_ORDER[index - 1], self.year)

    def next(self) -> "SeasonYear":
        index = SEASON_ORDER.index(self.season)
        if index == len(SEASON_ORDER) - 1:
            return SeasonYear(SEASON_ORDER[0], self.year + 1)
        return SeasonYear(SEASON_ORDER[index + 1], self.year)

    def to_payload(self) -> dict[str, object]:
        return {"season": self.season, "year": self.year, "label": self.label}


def season_from_month(month: int) -> Season:
    if month <= 3:
        return "winter"
    if month <= 6:
        return "spring"
    if month <= 9:
        return "summer"
    return "fall"


def current_season(today: date | None = None) -> SeasonYear:
    today = today or date.today()
    return SeasonYear(season_from_month(today.month), today.year)


def parse_start_date(start_date: str | None) -> SeasonYear | None:
    """Return the season a show premiered in from a ``YYYY-MM[-DD]`` string."""

    if not start_date:
        return None
    parts = start_date.split("-")
    if len(parts) < 2:
        return None
    try:
        year = int(parts[0])
        month = int(parts[1])
    except ValueError:
        return None
    if not 1 <= month <= 12:
        return None
    return SeasonYear(season_from_month(month), year)


def max_year(today: date | None = None) -> int:
    """Latest year accepted by season filters (next year's announcements)."""

    today = today or date.today()
    return today.year + 1
