"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class WatchedAnime(Base):
    """One anime on a user's watch list.

    Only the anime id is stored; titles, pictures and scores are hydrated from
    the catalog when the list is read.
    """

    __tablename__ = "watched_anime"
    __table_args__ = (
        UniqueConstraint("user_id", "anime_id", name="uq_watched_user_anime"),
        Index("ix_watched_user_status", "user_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    anime_id: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16))
    episodes_watched: Mapped[int] = mapped_column(Integer, default=0)
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    date_added: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    date_updated: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def to_payload(self) -> dict[str, object]:
        return {
            "animeId": self.anime_id,
            "status": self.status,
            "episodesWatched": self.episodes_watched,
            "rating": self.rating,
            "notes": self.notes,
            "dateAdded": self.date_added.isoformat() if self.date_added else None,
            "dateUpdated": self.date_updated.isoformat() if self.date_updated else None,
        }
