from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
import logging
from typing import Iterable, Mapping

from mediatracker.catalog import ShowStructure
from mediatracker.entities import (
    BOOK,
    COMPLETED,
    DROPPED,
    MANGA,
    MOVIE,
    PLACEHOLDER_EPISODE_ID,
    PLAN_TO_WATCH,
    STATUSES,
    TV,
    WATCHING,
    TrackedEntity,
    WatchedEpisode,
    utcnow,
)
from mediatracker.progress import compute_caught_up

logger = logging.getLogger(__name__)

# Checked in order; the first vocabulary with a substring hit wins.
FOREIGN_STATUS_VOCABULARY = (
    (("up_to_date", "continuing", "watching"), WATCHING),
    (("watch_later", "plan"), PLAN_TO_WATCH),
    (("dropped", "stopped"), DROPPED),
    (("finished", "dead", "ended", "archived"), COMPLETED),
)

REACTIVATED_BY_WATCHING = {PLAN_TO_WATCH, DROPPED}


def map_foreign_status(value: str | None) -> str:
    if not value:
        return PLAN_TO_WATCH
    lowered = value.strip().lower()
    for words, status in FOREIGN_STATUS_VOCABULARY:
        if any(word in lowered for word in words):
            return status
    return PLAN_TO_WATCH


def validate_status(status: str) -> str:
    if status not in STATUSES:
        raise ValueError(f"unknown tracking status: {status!r}")
    return status


def _require(entity: TrackedEntity, *media_types: str) -> None:
    if entity.media_type not in media_types:
        raise ValueError(f"{entity.media_type} entries do not support this action")


def set_status(entity: TrackedEntity, status: str) -> TrackedEntity:
    return replace(entity, status=validate_status(status))


def set_favorite(entity: TrackedEntity, is_favorite: bool) -> TrackedEntity:
    return replace(entity, is_favorite=is_favorite)


def toggle_favorite(entity: TrackedEntity) -> TrackedEntity:
    return replace(entity, is_favorite=not entity.is_favorite)


def _after_watch(status: str) -> str:
    return WATCHING if status in REACTIVATED_BY_WATCHING else status


def _after_unwatch(status: str, ledger: tuple[WatchedEpisode, ...]) -> str:
    if not ledger:
        return PLAN_TO_WATCH
    if status == COMPLETED:
        return WATCHING
    return status


def mark_episodes_watched(entity: TrackedEntity, episodes: Iterable[WatchedEpisode]) -> TrackedEntity:
    _require(entity, TV)
    seen = entity.watched_keys()
    added = []
    for episode in episodes:
        if episode.key in seen:
            continue
        seen.add(episode.key)
        added.append(episode)
    if not added:
        return entity
    return replace(
        entity,
        watched_episodes=entity.watched_episodes + tuple(added),
        status=_after_watch(entity.status),
    )


def mark_episode_watched(
    entity: TrackedEntity,
    season_number: int,
    episode_number: int,
    episode_id: int | str = PLACEHOLDER_EPISODE_ID,
    watched_at: datetime | None = None,
) -> TrackedEntity:
    episode = WatchedEpisode(
        season_number=season_number,
        episode_number=episode_number,
        watched_at=watched_at or utcnow(),
        episode_id=episode_id,
    )
    return mark_episodes_watched(entity, [episode])


def mark_episode_unwatched(entity: TrackedEntity, season_number: int, episode_number: int) -> TrackedEntity:
    _require(entity, TV)
    ledger = tuple(e for e in entity.watched_episodes if e.key != (season_number, episode_number))
    if len(ledger) == len(entity.watched_episodes):
        return entity
    return replace(entity, watched_episodes=ledger, status=_after_unwatch(entity.status, ledger))


def mark_season_unwatched(entity: TrackedEntity, season_number: int) -> TrackedEntity:
    _require(entity, TV)
    ledger = tuple(e for e in entity.watched_episodes if e.season_number != season_number)
    if len(ledger) == len(entity.watched_episodes):
        return entity
    return replace(entity, watched_episodes=ledger, status=_after_unwatch(entity.status, ledger))


def seasons_to_mark(structure: ShowStructure) -> list[tuple[int, int]]:
    last = structure.last_aired
    if last is not None and last.season > 0:
        marks = []
        for season in structure.regular_seasons():
            if season.number < last.season:
                marks.append((season.number, season.episode_count))
            elif season.number == last.season:
                marks.append((season.number, last.episode))
        return marks
    if structure.has_ended:
        return [(season.number, season.episode_count) for season in structure.regular_seasons()]
    return []


def mark_show_watched(
    entity: TrackedEntity, structure: ShowStructure, watched_at: datetime | None = None
) -> TrackedEntity:
    _require(entity, TV)
    marks = seasons_to_mark(structure)
    if not marks:
        return entity
    stamp = watched_at or utcnow()
    episodes = [
        WatchedEpisode(season_number=season, episode_number=number, watched_at=stamp)
        for season, count in marks
        for number in range(1, count + 1)
    ]
    marked = mark_episodes_watched(entity, episodes)
    return replace(marked, status=COMPLETED)


def mark_movie_watched(entity: TrackedEntity, watched_at: datetime | None = None) -> TrackedEntity:
    _require(entity, MOVIE)
    return replace(entity, watched_at=watched_at or utcnow(), status=COMPLETED)


def mark_movie_unwatched(entity: TrackedEntity) -> TrackedEntity:
    _require(entity, MOVIE)
    return replace(entity, watched_at=None, status=PLAN_TO_WATCH)


def update_reading_progress(entity: TrackedEntity, progress: int, total: int | None = None) -> TrackedEntity:
    _require(entity, BOOK, MANGA)
    total = entity.total if total is None else max(0, total)
    progress = max(0, progress)
    if total > 0:
        progress = min(progress, total)
    status = entity.status
    if progress > 0:
        status = _after_watch(status)
    return replace(entity, progress=progress, total=total, status=status)


def collect_reopened(
    entities: Iterable[TrackedEntity],
    structures: Mapping[str, ShowStructure],
    today: date | None = None,
) -> dict[tuple[str, str], str]:
    today = today or date.today()
    updates = {}
    for entity in entities:
        if entity.media_type != TV or entity.status != COMPLETED:
            continue
        structure = structures.get(str(entity.catalog_id))
        # Evaluate as if not completed so a newly aired episode shows up.
        if not compute_caught_up(replace(entity, status=WATCHING), structure, today):
            updates[entity.key] = WATCHING
    return updates


def apply_status_updates(
    entities: Iterable[TrackedEntity], updates: Mapping[tuple[str, str], str]
) -> list[TrackedEntity]:
    for status in updates.values():
        validate_status(status)
    result = []
    for entity in entities:
        status = updates.get(entity.key)
        if status is not None and status != entity.status:
            logger.debug("Status of %s %s: %s -> %s", entity.media_type, entity.catalog_id, entity.status, status)
            entity = replace(entity, status=status)
        result.append(entity)
    return result
