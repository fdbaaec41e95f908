from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from mediatracker.entities import BOOK, MANGA, MOVIE, TV, TrackedEntity, utcnow
from mediatracker.schemas import BackupPayload, BackupStats, TrackedEntitySchema

APP_NAME = "MediaTracker"
VERSION = "1.0"
RESTORE_MODES = ("merge", "replace")

logger = logging.getLogger(__name__)


class BackupFormatError(ValueError):
    pass


def backup_stats(entities: Iterable[TrackedEntity]) -> BackupStats:
    stats = BackupStats()
    for entity in entities:
        if entity.media_type == TV:
            stats.total_shows += 1
            stats.total_watched_episodes += len(entity.watched_episodes)
        elif entity.media_type == MOVIE:
            stats.total_movies += 1
        elif entity.media_type == BOOK:
            stats.total_books += 1
        elif entity.media_type == MANGA:
            stats.total_manga += 1
    return stats


def build_backup(entities: Sequence[TrackedEntity], exported_at: datetime | None = None) -> dict:
    payload = BackupPayload(
        app=APP_NAME,
        version=VERSION,
        exported_at=exported_at or utcnow(),
        stats=backup_stats(entities),
        items=[TrackedEntitySchema.model_validate(entity) for entity in entities],
    )
    return payload.model_dump(mode="json")


def parse_backup(payload: Any) -> list[TrackedEntity]:
    if not isinstance(payload, dict):
        raise BackupFormatError("backup must be a JSON object")
    if payload.get("app") != APP_NAME:
        raise BackupFormatError(f"not a {APP_NAME} backup")
    if not isinstance(payload.get("items"), list):
        raise BackupFormatError("backup has no items")
    try:
        parsed = BackupPayload.model_validate(payload)
    except ValidationError as exc:
        raise BackupFormatError(f"invalid backup: {exc.error_count()} errors") from exc
    return [item.to_entity() for item in parsed.items]


def restore_backup(
    existing: Sequence[TrackedEntity], payload: Any, mode: str = "merge"
) -> list[TrackedEntity]:
    if mode not in RESTORE_MODES:
        raise BackupFormatError(f"unknown restore mode: {mode!r}")
    restored = parse_backup(payload)

    known = set() if mode == "replace" else {entity.key for entity in existing}
    result = [] if mode == "replace" else list(existing)
    added = 0
    for entity in restored:
        if entity.key in known:
            continue
        known.add(entity.key)
        result.append(entity)
        added += 1
    logger.info("Backup restored (%s): %s items added, %s total", mode, added, len(result))
    return result
