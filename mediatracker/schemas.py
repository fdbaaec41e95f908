from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from mediatracker.entities import PLACEHOLDER_EPISODE_ID, TrackedEntity, WatchedEpisode, ensure_aware

MediaType = Literal["tv", "movie", "book", "manga"]
TrackingStatus = Literal["plan_to_watch", "watching", "on_hold", "completed", "dropped"]


# --- Foreign watch-history export -------------------------------------------


def parse_foreign_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _lenient_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _lenient_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _lenient_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _imdb_id(value: Any) -> str | None:
    text = _lenient_text(value)
    if text in ("", "-1", "0"):
        return None
    return text


def _positive_id(value: Any) -> int | None:
    number = _lenient_int(value)
    if number is None or number <= 0:
        return None
    return number


def _mapping_or_empty(value: Any) -> Any:
    return value if isinstance(value, dict) else {}


def _dicts_only(value: Any) -> list:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


LenientDatetime = Annotated[Optional[datetime], BeforeValidator(parse_foreign_datetime)]
LenientInt = Annotated[Optional[int], BeforeValidator(_lenient_int)]
LenientBool = Annotated[bool, BeforeValidator(_lenient_bool)]
LenientText = Annotated[str, BeforeValidator(_lenient_text)]


class ForeignIds(BaseModel):
    model_config = ConfigDict(extra="ignore")

    imdb: Annotated[Optional[str], BeforeValidator(_imdb_id)] = None
    tvdb: Annotated[Optional[int], BeforeValidator(_positive_id)] = None


IdsField = Annotated[ForeignIds, BeforeValidator(_mapping_or_empty)]


class ForeignEpisode(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    ids: IdsField = Field(default_factory=ForeignIds, alias="id")
    number: LenientInt = None
    special: LenientBool = False
    is_watched: LenientBool = False
    watched_at: LenientDatetime = None


class ForeignSeason(BaseModel):
    model_config = ConfigDict(extra="ignore")

    number: LenientInt = None
    episodes: Annotated[List[ForeignEpisode], BeforeValidator(_dicts_only)] = []


class _ForeignRecordBase(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    uuid: Annotated[Optional[str], BeforeValidator(lambda v: None if v is None else str(v))] = None
    ids: IdsField = Field(default_factory=ForeignIds, alias="id")
    title: LenientText = ""
    created_at: LenientDatetime = None
    status: Annotated[Optional[str], BeforeValidator(lambda v: v if isinstance(v, str) else None)] = None


class ForeignMovieRecord(_ForeignRecordBase):
    kind: Literal["movie"] = "movie"
    is_watched: LenientBool = False
    watched_at: LenientDatetime = None


class ForeignShowRecord(_ForeignRecordBase):
    kind: Literal["show"] = "show"
    seasons: Annotated[List[ForeignSeason], BeforeValidator(_dicts_only)] = []


ForeignRecord = Annotated[Union[ForeignMovieRecord, ForeignShowRecord], Field(discriminator="kind")]


# --- HTTP -------------------------------------------------------------------


class WatchedEpisodeSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    season_number: int
    episode_number: int
    watched_at: datetime
    episode_id: Union[int, str] = PLACEHOLDER_EPISODE_ID


class TrackedEntitySchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    catalog_id: Union[int, str]
    media_type: MediaType
    title: str
    status: TrackingStatus = "plan_to_watch"
    poster_path: Optional[str] = None
    added_at: datetime
    is_favorite: bool = False
    watched_episodes: List[WatchedEpisodeSchema] = []
    watched_at: Optional[datetime] = None
    progress: int = 0
    total: int = 0

    def to_entity(self) -> TrackedEntity:
        return TrackedEntity(
            catalog_id=self.catalog_id,
            media_type=self.media_type,
            title=self.title,
            status=self.status,
            poster_path=self.poster_path,
            added_at=ensure_aware(self.added_at),
            is_favorite=self.is_favorite,
            watched_episodes=tuple(
                WatchedEpisode(
                    season_number=e.season_number,
                    episode_number=e.episode_number,
                    watched_at=ensure_aware(e.watched_at),
                    episode_id=e.episode_id,
                )
                for e in self.watched_episodes
            ),
            watched_at=ensure_aware(self.watched_at),
            progress=self.progress,
            total=self.total,
        )


class TrackedEntityCreate(BaseModel):
    catalog_id: Union[int, str]
    media_type: MediaType
    title: str
    poster_path: Optional[str] = None
    status: TrackingStatus = "plan_to_watch"
    is_favorite: bool = False
    total: int = 0


class TrackedEntityUpdate(BaseModel):
    status: Optional[TrackingStatus] = None
    is_favorite: Optional[bool] = None


class EpisodeMark(BaseModel):
    season_number: int
    episode_number: int
    episode_id: Union[int, str] = PLACEHOLDER_EPISODE_ID


class ReadingProgressUpdate(BaseModel):
    progress: int
    total: Optional[int] = None


class EpisodeNumber(BaseModel):
    season_number: int
    episode_number: int


class ProgressResponse(BaseModel):
    caught_up: bool
    next_episode: Optional[EpisodeNumber] = None
    total_aired: int
    remaining: int
    display_watched_count: int
    season_progress: Dict[int, int] = {}


class CatalogMatchSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    catalog_id: Union[int, str]
    media_type: str
    title: str = ""
    poster_path: Optional[str] = None
    first_date: Optional[str] = None


class PendingImportResponse(BaseModel):
    index: int
    original_title: str
    kind: str
    match: CatalogMatchSchema


class ImportResponse(BaseModel):
    batch_id: Optional[str] = None
    shows: int
    movies: int
    failed: List[str]
    pending: List[PendingImportResponse]


class ConfirmImportRequest(BaseModel):
    selected: List[int] = []


class ImportCountsResponse(BaseModel):
    shows: int
    movies: int


class ScanResponse(BaseModel):
    promoted: int


class BackupStats(BaseModel):
    total_shows: int = 0
    total_movies: int = 0
    total_books: int = 0
    total_manga: int = 0
    total_watched_episodes: int = 0


class BackupPayload(BaseModel):
    app: str
    version: str
    exported_at: datetime
    stats: BackupStats = Field(default_factory=BackupStats)
    items: List[TrackedEntitySchema]
