"""Reconcile a foreign watch-history export against the catalog.

Records resolved through an external id are imported directly. Records that
only match through a title search are parked as pending items until a person
confirms them, and records with no candidate at all are reported as failed.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import time
from typing import Any, Callable, Iterable, Sequence

from pydantic import TypeAdapter, ValidationError

from mediatracker.catalog import CatalogAuthError, CatalogError, CatalogMatch, MetadataProvider
from mediatracker.config import IMPORT_THROTTLE_EVERY, IMPORT_THROTTLE_SECONDS
from mediatracker.entities import (
    COMPLETED,
    MOVIE,
    PLACEHOLDER_EPISODE_ID,
    PLAN_TO_WATCH,
    TV,
    TrackedEntity,
    WatchedEpisode,
    entity_key,
    utcnow,
)
from mediatracker.schemas import ForeignMovieRecord, ForeignRecord, ForeignShowRecord
from mediatracker.status import map_foreign_status

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]
WriteCallback = Callable[[list[TrackedEntity]], None]

RECORD_ADAPTER = TypeAdapter(ForeignRecord)
UNTITLED = "<untitled>"


class ImportFormatError(ValueError):
    pass


@dataclass(frozen=True)
class PendingImportItem:
    record: ForeignMovieRecord | ForeignShowRecord
    match: CatalogMatch


@dataclass
class ReconciliationResult:
    shows: int = 0
    movies: int = 0
    failed: list[str] = field(default_factory=list)
    pending: list[PendingImportItem] = field(default_factory=list)
    imported_at: datetime | None = None


@dataclass
class ImportCounts:
    shows: int = 0
    movies: int = 0


def detect_record_kind(first: Any) -> str:
    if isinstance(first, dict) and "seasons" in first:
        return "show"
    return "movie"


def expected_media_type(record: ForeignMovieRecord | ForeignShowRecord) -> str:
    return TV if record.kind == "show" else MOVIE


def parse_records(payload: Any) -> list[ForeignMovieRecord | ForeignShowRecord | str]:
    """Parse a raw export into typed records.

    The record kind is decided once from the first entry. Entries that cannot
    be parsed are returned as their title so the caller can report them.
    """
    if not isinstance(payload, list):
        raise ImportFormatError("import payload must be a JSON array of records")
    if not payload:
        return []
    kind = detect_record_kind(payload[0])
    records = []
    for raw in payload:
        if not isinstance(raw, dict):
            logger.info("Skipping non-object import entry: %r", raw)
            records.append(UNTITLED)
            continue
        try:
            records.append(RECORD_ADAPTER.validate_python({**raw, "kind": kind}))
        except ValidationError as exc:
            title = str(raw.get("title") or UNTITLED)
            logger.info("Skipping malformed import record %s: %s", title, exc.error_count())
            records.append(title)
    return records


def _safe_lookup(lookup: Callable[[], Any], default: Any, title: str) -> Any:
    try:
        return lookup()
    except CatalogAuthError:
        raise
    except CatalogError as exc:
        logger.info("Catalog lookup for %s failed: %s", title, exc)
        return default


def resolve_exact(
    record: ForeignMovieRecord | ForeignShowRecord, provider: MetadataProvider
) -> CatalogMatch | None:
    media_type = expected_media_type(record)
    candidates = []
    if record.ids.imdb:
        candidates.append((record.ids.imdb, "imdb"))
    if record.ids.tvdb:
        candidates.append((record.ids.tvdb, "tvdb"))
    for external_id, source in candidates:
        match = _safe_lookup(
            lambda: provider.find_by_external_id(external_id, source), None, record.title
        )
        if match is not None and match.media_type == media_type:
            return match
    return None


def resolve_by_title(
    record: ForeignMovieRecord | ForeignShowRecord, provider: MetadataProvider
) -> CatalogMatch | None:
    if not record.title:
        return None
    media_type = expected_media_type(record)
    results = _safe_lookup(lambda: provider.search_by_title(record.title), [], record.title)
    for match in results:
        if match.media_type == media_type:
            return match
    return None


def build_watched_episodes(record: ForeignShowRecord, imported_at: datetime) -> tuple[WatchedEpisode, ...]:
    episodes = {}
    for season in record.seasons:
        if season.number is None:
            continue
        for episode in season.episodes:
            # Specials are never imported, even when marked watched.
            if not episode.is_watched or episode.special or episode.number is None:
                continue
            key = (season.number, episode.number)
            if key in episodes:
                continue
            episodes[key] = WatchedEpisode(
                season_number=season.number,
                episode_number=episode.number,
                watched_at=episode.watched_at or imported_at,
                episode_id=episode.ids.tvdb or PLACEHOLDER_EPISODE_ID,
            )
    return tuple(episodes.values())


def build_entity(
    record: ForeignMovieRecord | ForeignShowRecord, match: CatalogMatch, imported_at: datetime
) -> TrackedEntity:
    title = record.title or match.title
    added_at = record.created_at or imported_at
    if isinstance(record, ForeignShowRecord):
        return TrackedEntity(
            catalog_id=match.catalog_id,
            media_type=TV,
            title=title,
            poster_path=match.poster_path,
            added_at=added_at,
            status=map_foreign_status(record.status),
            watched_episodes=build_watched_episodes(record, imported_at),
        )
    watched_at = (record.watched_at or imported_at) if record.is_watched else None
    return TrackedEntity(
        catalog_id=match.catalog_id,
        media_type=MOVIE,
        title=title,
        poster_path=match.poster_path,
        added_at=added_at,
        status=COMPLETED if record.is_watched else PLAN_TO_WATCH,
        watched_at=watched_at,
    )


def _count(entities: Iterable[TrackedEntity]) -> tuple[int, int]:
    shows = movies = 0
    for entity in entities:
        if entity.media_type == TV:
            shows += 1
        elif entity.media_type == MOVIE:
            movies += 1
    return shows, movies


def reconcile_import(
    payload: Any,
    provider: MetadataProvider,
    tracked: Sequence[TrackedEntity],
    write: WriteCallback | None = None,
    on_progress: ProgressCallback | None = None,
    imported_at: datetime | None = None,
    throttle_every: int = IMPORT_THROTTLE_EVERY,
    throttle_seconds: float = IMPORT_THROTTLE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconciliationResult:
    records = parse_records(payload)
    imported_at = imported_at or utcnow()
    result = ReconciliationResult(imported_at=imported_at)
    known = {entity.key for entity in tracked}
    staged: list[TrackedEntity] = []
    total = len(records)

    for index, record in enumerate(records, start=1):
        if isinstance(record, str):
            result.failed.append(record)
            if on_progress:
                on_progress(index, total, record)
            continue

        match = resolve_exact(record, provider)
        if match is not None:
            key = entity_key(match.catalog_id, match.media_type)
            if key in known:
                logger.debug("Skipping %s, already tracked as %s", record.title, key)
            else:
                known.add(key)
                staged.append(build_entity(record, match, imported_at))
        else:
            candidate = resolve_by_title(record, provider)
            if candidate is None:
                logger.info("No catalog match for %s", record.title or UNTITLED)
                result.failed.append(record.title or UNTITLED)
            elif entity_key(candidate.catalog_id, candidate.media_type) in known:
                logger.debug("Skipping %s, title match is already tracked", record.title)
            else:
                logger.info("Deferring %s to review, matched by title to %s", record.title, candidate.title)
                result.pending.append(PendingImportItem(record=record, match=candidate))

        if on_progress:
            on_progress(index, total, record.title)
        if throttle_every > 0 and index % throttle_every == 0 and index < total:
            logger.debug("Pausing %.2fs after %s records", throttle_seconds, index)
            sleep(throttle_seconds)

    result.shows, result.movies = _count(staged)
    if staged and write is not None:
        write(staged)
    logger.info(
        "Import finished: %s shows, %s movies, %s pending, %s failed",
        result.shows,
        result.movies,
        len(result.pending),
        len(result.failed),
    )
    return result


def process_pending_imports(
    selected: Iterable[PendingImportItem],
    tracked: Sequence[TrackedEntity],
    write: WriteCallback | None = None,
    imported_at: datetime | None = None,
) -> ImportCounts:
    imported_at = imported_at or utcnow()
    known = {entity.key for entity in tracked}
    staged = []
    for item in selected:
        key = entity_key(item.match.catalog_id, item.match.media_type)
        if key in known:
            continue
        known.add(key)
        staged.append(build_entity(item.record, item.match, imported_at))
    shows, movies = _count(staged)
    if staged and write is not None:
        write(staged)
    logger.info("Confirmed pending imports: %s shows, %s movies", shows, movies)
    return ImportCounts(shows=shows, movies=movies)
