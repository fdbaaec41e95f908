from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from mediatracker.entities import (
    TrackedEntity,
    WatchedEpisode,
    ensure_aware,
    entity_key,
    parse_catalog_id,
    utcnow,
)
from mediatracker.models import TrackedItem, WatchedEpisodeRow

logger = logging.getLogger(__name__)


class DuplicateEntityError(ValueError):
    pass


def row_to_entity(row: TrackedItem) -> TrackedEntity:
    episodes = tuple(
        WatchedEpisode(
            season_number=episode.season_number,
            episode_number=episode.episode_number,
            watched_at=ensure_aware(episode.watched_at),
            episode_id=parse_catalog_id(episode.episode_id) if episode.episode_id else -1,
        )
        for episode in sorted(row.episodes, key=lambda e: (e.season_number, e.episode_number))
    )
    return TrackedEntity(
        catalog_id=parse_catalog_id(row.catalog_id),
        media_type=row.media_type,
        title=row.title,
        status=row.status,
        poster_path=row.poster_path,
        added_at=ensure_aware(row.added_at) or utcnow(),
        is_favorite=bool(row.is_favorite),
        watched_episodes=episodes,
        watched_at=ensure_aware(row.watched_at),
        progress=row.progress or 0,
        total=row.total or 0,
    )


def fill_row(row: TrackedItem, entity: TrackedEntity) -> None:
    row.title = entity.title
    row.status = entity.status
    row.poster_path = entity.poster_path
    row.added_at = entity.added_at
    row.is_favorite = entity.is_favorite
    row.watched_at = entity.watched_at
    row.progress = entity.progress
    row.total = entity.total

    wanted = {episode.key: episode for episode in entity.watched_episodes}
    for existing in list(row.episodes):
        key = (existing.season_number, existing.episode_number)
        if key not in wanted:
            row.episodes.remove(existing)
            continue
        episode = wanted.pop(key)
        existing.watched_at = episode.watched_at
        existing.episode_id = str(episode.episode_id)
    for episode in wanted.values():
        row.episodes.append(
            WatchedEpisodeRow(
                season_number=episode.season_number,
                episode_number=episode.episode_number,
                episode_id=str(episode.episode_id),
                watched_at=episode.watched_at,
            )
        )


class LibraryStore:
    """Tracked-entity collection persisted through SQLAlchemy.

    Rows are keyed by ``(catalog_id, media_type)``. Batch writes run inside
    one transaction so readers never observe a half-applied batch. Imports
    use ``add_missing`` and scans use ``update_statuses``, both of which only
    touch the keys they carry. ``replace_all`` drops every row absent from
    the collection and is reserved for restoring a backup in replace mode.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _rows(self, db) -> list[TrackedItem]:
        return (
            db.execute(
                select(TrackedItem)
                .options(selectinload(TrackedItem.episodes))
                .order_by(TrackedItem.id)
            )
            .scalars()
            .all()
        )

    def snapshot(self) -> list[TrackedEntity]:
        db = self.session_factory()
        try:
            return [row_to_entity(row) for row in self._rows(db)]
        finally:
            db.close()

    def get(self, catalog_id, media_type: str) -> TrackedEntity | None:
        key = entity_key(catalog_id, media_type)
        for entity in self.snapshot():
            if entity.key == key:
                return entity
        return None

    def add(self, entity: TrackedEntity) -> TrackedEntity:
        db = self.session_factory()
        try:
            existing = (
                db.execute(
                    select(TrackedItem)
                    .where(
                        TrackedItem.catalog_id == str(entity.catalog_id),
                        TrackedItem.media_type == entity.media_type,
                    )
                    .limit(1)
                )
                .scalars()
                .first()
            )
            if existing:
                raise DuplicateEntityError(f"{entity.media_type} {entity.catalog_id} is already tracked")
            row = TrackedItem(catalog_id=str(entity.catalog_id), media_type=entity.media_type)
            fill_row(row, entity)
            db.add(row)
            db.commit()
            return entity
        finally:
            db.close()

    def save(self, entity: TrackedEntity) -> None:
        self.upsert([entity])

    def upsert(self, entities: Iterable[TrackedEntity]) -> tuple[int, int]:
        created = 0
        updated = 0
        db = self.session_factory()
        try:
            rows = {(row.catalog_id, row.media_type): row for row in self._rows(db)}
            for entity in entities:
                row = rows.get(entity.key)
                if row is None:
                    row = TrackedItem(catalog_id=str(entity.catalog_id), media_type=entity.media_type)
                    db.add(row)
                    rows[entity.key] = row
                    created += 1
                else:
                    updated += 1
                fill_row(row, entity)
            db.commit()
        finally:
            db.close()
        return created, updated

    def add_missing(self, entities: Iterable[TrackedEntity]) -> int:
        """Insert entries whose key is not tracked yet and leave the rest alone."""
        added = 0
        db = self.session_factory()
        try:
            rows = {(row.catalog_id, row.media_type): row for row in self._rows(db)}
            for entity in entities:
                if entity.key in rows:
                    logger.debug("Not adding %s %s, already tracked", entity.media_type, entity.catalog_id)
                    continue
                row = TrackedItem(catalog_id=str(entity.catalog_id), media_type=entity.media_type)
                fill_row(row, entity)
                db.add(row)
                rows[entity.key] = row
                added += 1
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return added

    def update_statuses(self, entities: Iterable[TrackedEntity]) -> int:
        """Write only the status of entries that are still tracked."""
        updated = 0
        db = self.session_factory()
        try:
            rows = {(row.catalog_id, row.media_type): row for row in self._rows(db)}
            for entity in entities:
                row = rows.get(entity.key)
                if row is None:
                    logger.debug("Skipping status for %s %s, no longer tracked", entity.media_type, entity.catalog_id)
                    continue
                row.status = entity.status
                updated += 1
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return updated

    def replace_all(self, entities: Iterable[TrackedEntity]) -> None:
        entities = list(entities)
        wanted = {entity.key for entity in entities}
        if len(wanted) != len(entities):
            raise DuplicateEntityError("collection contains the same catalog entry twice")
        db = self.session_factory()
        try:
            rows = {(row.catalog_id, row.media_type): row for row in self._rows(db)}
            for key, row in rows.items():
                if key not in wanted:
                    db.delete(row)
            for entity in entities:
                row = rows.get(entity.key)
                if row is None:
                    row = TrackedItem(catalog_id=str(entity.catalog_id), media_type=entity.media_type)
                    db.add(row)
                fill_row(row, entity)
            db.commit()
            logger.debug("Library replaced with %s entries", len(entities))
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def remove(self, catalog_id, media_type: str) -> bool:
        db = self.session_factory()
        try:
            row = (
                db.execute(
                    select(TrackedItem)
                    .where(
                        TrackedItem.catalog_id == str(catalog_id),
                        TrackedItem.media_type == media_type,
                    )
                    .limit(1)
                )
                .scalars()
                .first()
            )
            if not row:
                return False
            db.delete(row)
            db.commit()
            return True
        finally:
            db.close()
