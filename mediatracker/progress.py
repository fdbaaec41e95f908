"""Progress figures derived from a show's watch ledger and its catalog structure.

Every function here is pure: no I/O, no store access, and the only clock read
is ``today`` when the caller does not pass one.
"""
from __future__ import annotations

from datetime import date

from mediatracker.catalog import EpisodeRef, ShowStructure
from mediatracker.entities import COMPLETED, TrackedEntity


def _today(today: date | None) -> date:
    return today if today is not None else date.today()


def _has_aired(episode: EpisodeRef | None, today: date) -> bool:
    return episode is not None and episode.air_date is not None and episode.air_date <= today


def _has_structure(structure: ShowStructure | None) -> bool:
    return structure is not None and bool(structure.seasons)


def compute_caught_up(
    entity: TrackedEntity, structure: ShowStructure | None, today: date | None = None
) -> bool:
    if entity.status == COMPLETED:
        return True
    # Missing catalog data never turns a show into "in progress".
    if not _has_structure(structure):
        return True
    today = _today(today)
    watched = entity.watched_keys()
    next_up = structure.next_to_air
    if _has_aired(next_up, today) and (next_up.season, next_up.episode) not in watched:
        return False
    last = structure.last_aired
    if last is None:
        return True
    return (last.season, last.episode) in watched


def compute_next_episode(
    entity: TrackedEntity, structure: ShowStructure | None, today: date | None = None
) -> tuple[int, int] | None:
    if not _has_structure(structure):
        return None
    today = _today(today)
    watched = entity.watched_keys()
    watched_specials = any(episode.is_special for episode in entity.watched_episodes)
    for season in sorted(structure.seasons, key=lambda s: s.number):
        if season.number < 0 or (season.number == 0 and not watched_specials):
            continue
        for number in range(1, season.episode_count + 1):
            if (season.number, number) not in watched:
                return (season.number, number)
    next_up = structure.next_to_air
    if _has_aired(next_up, today) and (next_up.season, next_up.episode) not in watched:
        return (next_up.season, next_up.episode)
    return None


def compute_total_aired(structure: ShowStructure | None, today: date | None = None) -> int:
    if not _has_structure(structure):
        return 0
    today = _today(today)
    regular = structure.regular_seasons()
    last = structure.last_aired
    total = 0
    if last is not None and last.season > 0:
        for season in regular:
            if season.number < last.season:
                total += season.episode_count
        current = structure.season(last.season)
        if current is not None:
            total += min(current.episode_count, last.episode)
        else:
            total += last.episode
    elif structure.has_ended:
        total = sum(season.episode_count for season in regular)
    next_up = structure.next_to_air
    # Catalog caches may lag one episode behind the air schedule.
    if _has_aired(next_up, today) and next_up.season > 0:
        total += 1
    return total


def compute_remaining(
    entity: TrackedEntity, structure: ShowStructure | None, today: date | None = None
) -> int:
    today = _today(today)
    remaining = max(0, compute_total_aired(structure, today) - len(entity.regular_episodes()))
    if remaining == 0 and compute_next_episode(entity, structure, today) is not None:
        return 1
    return remaining


def compute_display_watched_count(entity: TrackedEntity, structure: ShowStructure | None) -> int:
    ledger = entity.watched_episodes
    if not ledger:
        return 0
    if not _has_structure(structure):
        return len(ledger)
    latest = max(ledger, key=lambda e: (e.watched_at, e.season_number, e.episode_number))
    current_season = latest.season_number
    if current_season <= 1:
        return len(ledger)
    previous = sum(
        season.episode_count for season in structure.regular_seasons() if season.number < current_season
    )
    highest = max(e.episode_number for e in ledger if e.season_number == current_season)
    return previous + highest


def compute_season_progress(entity: TrackedEntity, season_number: int, episode_count: int) -> int:
    if episode_count <= 0:
        return 0
    watched = sum(1 for e in entity.watched_episodes if e.season_number == season_number)
    return round(watched / episode_count * 100)
