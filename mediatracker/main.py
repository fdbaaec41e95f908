from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime
import logging
import threading
from typing import Any, List
import uuid

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from mediatracker.backup import BackupFormatError, build_backup, restore_backup
from mediatracker.catalog import (
    CachedCatalog,
    CatalogAuthError,
    CatalogError,
    MetadataProvider,
    TMDBClient,
)
from mediatracker.catchup import run_scan_once, scan_for_completed, scan_for_reopened
from mediatracker.config import (
    CATCHUP_CONCURRENCY,
    CATCHUP_INTERVAL_HOURS,
    LOG_LEVEL,
    PENDING_IMPORT_BATCHES,
)
from mediatracker.db import SessionLocal, engine
from mediatracker.entities import MEDIA_TYPES, MOVIE, TV, TrackedEntity, entity_key, utcnow
from mediatracker.importer import (
    ImportFormatError,
    PendingImportItem,
    process_pending_imports,
    reconcile_import,
)
from mediatracker.models import Base
from mediatracker.progress import (
    compute_caught_up,
    compute_display_watched_count,
    compute_next_episode,
    compute_remaining,
    compute_season_progress,
    compute_total_aired,
)
from mediatracker.schemas import (
    CatalogMatchSchema,
    ConfirmImportRequest,
    EpisodeMark,
    EpisodeNumber,
    ImportCountsResponse,
    ImportResponse,
    PendingImportResponse,
    ProgressResponse,
    ReadingProgressUpdate,
    ScanResponse,
    TrackedEntityCreate,
    TrackedEntitySchema,
    TrackedEntityUpdate,
)
from mediatracker.status import (
    mark_episode_unwatched,
    mark_episode_watched,
    mark_movie_unwatched,
    mark_movie_watched,
    mark_season_unwatched,
    mark_show_watched,
    set_favorite,
    set_status,
    update_reading_progress,
)
from mediatracker.store import DuplicateEntityError, LibraryStore

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()

# Ambiguous import matches waiting for review, keyed by batch id, oldest first.
pending_batches: "OrderedDict[str, tuple[datetime, list[PendingImportItem]]]" = OrderedDict()
pending_lock = threading.Lock()


def get_store() -> LibraryStore:
    return LibraryStore(SessionLocal)


def get_catalog() -> MetadataProvider:
    return CachedCatalog(TMDBClient(), SessionLocal)


def run_scheduled_scan() -> None:
    try:
        promoted = run_scan_once(CATCHUP_CONCURRENCY)
        logger.info("Scheduled catch-up scan promoted %s shows", promoted)
    except CatalogAuthError as exc:
        logger.error("Scheduled catch-up scan aborted: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
    Base.metadata.create_all(bind=engine)
    if CATCHUP_INTERVAL_HOURS > 0:
        scheduler.add_job(
            run_scheduled_scan,
            "interval",
            hours=CATCHUP_INTERVAL_HOURS,
            id="catchup_scan",
            replace_existing=True,
        )
        scheduler.start()
    yield
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(lifespan=lifespan)


@app.exception_handler(ImportFormatError)
@app.exception_handler(BackupFormatError)
async def invalid_format_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(CatalogError)
async def catalog_error_handler(request: Request, exc: CatalogError):
    return JSONResponse(status_code=502, content={"detail": f"Catalog unavailable: {exc}"})


def require_entity(store: LibraryStore, media_type: str, catalog_id: str) -> TrackedEntity:
    if media_type not in MEDIA_TYPES:
        raise HTTPException(status_code=404, detail="Unknown media type")
    entity = store.get(catalog_id, media_type)
    if entity is None:
        raise HTTPException(status_code=404, detail="Entry not found")
    return entity


def remember_pending(imported_at: datetime, items: list[PendingImportItem]) -> str:
    batch_id = uuid.uuid4().hex
    with pending_lock:
        pending_batches[batch_id] = (imported_at, items)
        while len(pending_batches) > max(1, PENDING_IMPORT_BATCHES):
            expired, _ = pending_batches.popitem(last=False)
            logger.info("Dropping unconfirmed import batch %s", expired)
    return batch_id


def apply_action(action, *args):
    try:
        return action(*args)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/library", response_model=List[TrackedEntitySchema])
def list_library(store: LibraryStore = Depends(get_store)):
    return store.snapshot()


@app.post("/api/library", response_model=TrackedEntitySchema, status_code=201)
def create_library_entry(payload: TrackedEntityCreate, store: LibraryStore = Depends(get_store)):
    entity = TrackedEntity(**payload.model_dump())
    try:
        return store.add(entity)
    except DuplicateEntityError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.patch("/api/library/{media_type}/{catalog_id}", response_model=TrackedEntitySchema)
def update_library_entry(
    media_type: str,
    catalog_id: str,
    payload: TrackedEntityUpdate,
    store: LibraryStore = Depends(get_store),
):
    entity = require_entity(store, media_type, catalog_id)
    update_data = payload.model_dump(exclude_unset=True)
    if update_data.get("status") is not None:
        entity = apply_action(set_status, entity, update_data["status"])
    if update_data.get("is_favorite") is not None:
        entity = set_favorite(entity, update_data["is_favorite"])
    store.save(entity)
    return entity


@app.delete("/api/library/{media_type}/{catalog_id}")
def delete_library_entry(media_type: str, catalog_id: str, store: LibraryStore = Depends(get_store)):
    if not store.remove(catalog_id, media_type):
        raise HTTPException(status_code=404, detail="Entry not found")
    return {"deleted": list(entity_key(catalog_id, media_type))}


@app.post("/api/library/tv/{catalog_id}/episodes", response_model=TrackedEntitySchema)
def mark_episodes(
    catalog_id: str, payload: List[EpisodeMark], store: LibraryStore = Depends(get_store)
):
    entity = require_entity(store, TV, catalog_id)
    for mark in payload:
        entity = mark_episode_watched(entity, mark.season_number, mark.episode_number, mark.episode_id)
    store.save(entity)
    return entity


@app.delete(
    "/api/library/tv/{catalog_id}/episodes/{season_number}/{episode_number}",
    response_model=TrackedEntitySchema,
)
def unmark_episode(
    catalog_id: str, season_number: int, episode_number: int, store: LibraryStore = Depends(get_store)
):
    entity = require_entity(store, TV, catalog_id)
    entity = mark_episode_unwatched(entity, season_number, episode_number)
    store.save(entity)
    return entity


@app.delete("/api/library/tv/{catalog_id}/seasons/{season_number}", response_model=TrackedEntitySchema)
def unmark_season(catalog_id: str, season_number: int, store: LibraryStore = Depends(get_store)):
    entity = require_entity(store, TV, catalog_id)
    entity = mark_season_unwatched(entity, season_number)
    store.save(entity)
    return entity


@app.post("/api/library/tv/{catalog_id}/watched", response_model=TrackedEntitySchema)
def mark_show(
    catalog_id: str,
    store: LibraryStore = Depends(get_store),
    catalog: MetadataProvider = Depends(get_catalog),
):
    entity = require_entity(store, TV, catalog_id)
    structure = catalog.get_show_structure(entity.catalog_id)
    if structure is None:
        raise HTTPException(status_code=404, detail="Show structure not found")
    entity = mark_show_watched(entity, structure)
    store.save(entity)
    return entity


@app.post("/api/library/movie/{catalog_id}/watched", response_model=TrackedEntitySchema)
def mark_movie(catalog_id: str, store: LibraryStore = Depends(get_store)):
    entity = mark_movie_watched(require_entity(store, MOVIE, catalog_id))
    store.save(entity)
    return entity


@app.delete("/api/library/movie/{catalog_id}/watched", response_model=TrackedEntitySchema)
def unmark_movie(catalog_id: str, store: LibraryStore = Depends(get_store)):
    entity = mark_movie_unwatched(require_entity(store, MOVIE, catalog_id))
    store.save(entity)
    return entity


@app.put("/api/library/{media_type}/{catalog_id}/progress", response_model=TrackedEntitySchema)
def update_progress(
    media_type: str,
    catalog_id: str,
    payload: ReadingProgressUpdate,
    store: LibraryStore = Depends(get_store),
):
    entity = require_entity(store, media_type, catalog_id)
    entity = apply_action(update_reading_progress, entity, payload.progress, payload.total)
    store.save(entity)
    return entity


@app.get("/api/library/tv/{catalog_id}/progress", response_model=ProgressResponse)
def show_progress(
    catalog_id: str,
    store: LibraryStore = Depends(get_store),
    catalog: MetadataProvider = Depends(get_catalog),
):
    entity = require_entity(store, TV, catalog_id)
    try:
        structure = catalog.get_show_structure(entity.catalog_id)
    except CatalogError as exc:
        logger.warning("Show structure for %s unavailable, reporting ledger only: %s", entity.title, exc)
        structure = None
    next_episode = compute_next_episode(entity, structure)
    return ProgressResponse(
        caught_up=compute_caught_up(entity, structure),
        next_episode=(
            EpisodeNumber(season_number=next_episode[0], episode_number=next_episode[1])
            if next_episode
            else None
        ),
        total_aired=compute_total_aired(structure),
        remaining=compute_remaining(entity, structure),
        display_watched_count=compute_display_watched_count(entity, structure),
        season_progress={
            season.number: compute_season_progress(entity, season.number, season.episode_count)
            for season in (structure.regular_seasons() if structure else [])
        },
    )


@app.post("/api/import", response_model=ImportResponse)
def import_history(
    payload: Any = Body(...),
    store: LibraryStore = Depends(get_store),
    catalog: MetadataProvider = Depends(get_catalog),
):
    result = reconcile_import(
        payload, catalog, store.snapshot(), write=store.add_missing, imported_at=utcnow()
    )
    batch_id = None
    if result.pending:
        batch_id = remember_pending(result.imported_at, list(result.pending))
    return ImportResponse(
        batch_id=batch_id,
        shows=result.shows,
        movies=result.movies,
        failed=result.failed,
        pending=[
            PendingImportResponse(
                index=index,
                original_title=item.record.title,
                kind=item.record.kind,
                match=CatalogMatchSchema.model_validate(item.match),
            )
            for index, item in enumerate(result.pending)
        ],
    )


@app.post("/api/import/{batch_id}/confirm", response_model=ImportCountsResponse)
def confirm_import(
    batch_id: str, payload: ConfirmImportRequest, store: LibraryStore = Depends(get_store)
):
    with pending_lock:
        batch = pending_batches.pop(batch_id, None)
    if batch is None:
        raise HTTPException(status_code=404, detail="Import batch not found")
    imported_at, items = batch
    selected = [items[index] for index in sorted(set(payload.selected)) if 0 <= index < len(items)]
    counts = process_pending_imports(
        selected, store.snapshot(), write=store.add_missing, imported_at=imported_at
    )
    return ImportCountsResponse(shows=counts.shows, movies=counts.movies)


@app.post("/api/scan/catch-up", response_model=ScanResponse)
def catch_up_scan(
    store: LibraryStore = Depends(get_store),
    catalog: MetadataProvider = Depends(get_catalog),
):
    promoted = scan_for_completed(store.snapshot(), catalog, write=store.update_statuses)
    return ScanResponse(promoted=promoted)


@app.post("/api/scan/reopen", response_model=ScanResponse)
def reopen_scan(
    store: LibraryStore = Depends(get_store),
    catalog: MetadataProvider = Depends(get_catalog),
):
    reopened = scan_for_reopened(store.snapshot(), catalog, write=store.update_statuses)
    return ScanResponse(promoted=reopened)


@app.get("/api/backup")
def export_backup(store: LibraryStore = Depends(get_store)):
    return build_backup(store.snapshot())


@app.post("/api/backup")
def import_backup(
    mode: str = "merge", payload: Any = Body(...), store: LibraryStore = Depends(get_store)
):
    entities = restore_backup(store.snapshot(), payload, mode)
    if mode == "replace":
        store.replace_all(entities)
    else:
        store.add_missing(entities)
    return {"mode": mode, "items": len(entities)}
