from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

TV = "tv"
MOVIE = "movie"
BOOK = "book"
MANGA = "manga"
MEDIA_TYPES = (TV, MOVIE, BOOK, MANGA)

PLAN_TO_WATCH = "plan_to_watch"
WATCHING = "watching"
ON_HOLD = "on_hold"
COMPLETED = "completed"
DROPPED = "dropped"
STATUSES = (PLAN_TO_WATCH, WATCHING, ON_HOLD, COMPLETED, DROPPED)

# Catalog episode id used when the real id is unknown (bulk marks, imports).
PLACEHOLDER_EPISODE_ID = -1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WatchedEpisode:
    season_number: int
    episode_number: int
    watched_at: datetime
    episode_id: int | str = PLACEHOLDER_EPISODE_ID

    @property
    def key(self) -> tuple[int, int]:
        return (self.season_number, self.episode_number)

    @property
    def is_special(self) -> bool:
        return self.season_number == 0


@dataclass(frozen=True)
class TrackedEntity:
    catalog_id: int | str
    media_type: str
    title: str
    status: str = PLAN_TO_WATCH
    poster_path: str | None = None
    added_at: datetime = field(default_factory=utcnow)
    is_favorite: bool = False
    watched_episodes: tuple[WatchedEpisode, ...] = ()
    watched_at: datetime | None = None
    progress: int = 0
    total: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return entity_key(self.catalog_id, self.media_type)

    def watched_keys(self) -> set[tuple[int, int]]:
        return {episode.key for episode in self.watched_episodes}

    def regular_episodes(self) -> list[WatchedEpisode]:
        return [episode for episode in self.watched_episodes if not episode.is_special]


def entity_key(catalog_id: int | str, media_type: str) -> tuple[str, str]:
    # Catalog ids arrive as ints from TMDB and as strings from the API path.
    return (str(catalog_id), media_type)


def parse_catalog_id(value: str) -> int | str:
    value = value.strip()
    if value.lstrip("-").isdigit():
        return int(value)
    return value


def ensure_aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
