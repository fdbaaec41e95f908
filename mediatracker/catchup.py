import argparse
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
import logging
import time
from typing import Callable, Sequence

from mediatracker.catalog import (
    CachedCatalog,
    CatalogAuthError,
    MetadataProvider,
    ShowStructure,
    TMDBClient,
)
from mediatracker.config import CATCHUP_CONCURRENCY, CATCHUP_INTERVAL_HOURS, LOG_LEVEL
from mediatracker.db import SessionLocal, engine
from mediatracker.entities import COMPLETED, DROPPED, TV, TrackedEntity
from mediatracker.models import Base
from mediatracker.progress import compute_total_aired
from mediatracker.status import apply_status_updates, collect_reopened
from mediatracker.store import LibraryStore

logger = logging.getLogger(__name__)

SKIPPED = object()


def scan_candidates(entities: Sequence[TrackedEntity]) -> list[TrackedEntity]:
    return [
        entity
        for entity in entities
        if entity.media_type == TV
        and entity.status not in (COMPLETED, DROPPED)
        and entity.watched_episodes
    ]


def should_promote(entity: TrackedEntity, structure: ShowStructure | None, today: date) -> bool:
    watched = len(entity.regular_episodes())
    total_aired = compute_total_aired(structure, today)
    return watched > 0 and total_aired > 0 and watched >= total_aired


def _fetch_structures(
    candidates: Sequence[TrackedEntity],
    provider: MetadataProvider,
    concurrency: int,
    on_progress: Callable[[int, int, str], None] | None,
    should_stop: Callable[[], bool] | None,
) -> tuple[dict[tuple[str, str], ShowStructure | None], int]:
    def lookup(entity: TrackedEntity):
        if should_stop is not None and should_stop():
            return SKIPPED
        return provider.get_show_structure(entity.catalog_id)

    structures = {}
    failures = 0
    auth_failures = 0
    total = len(candidates)
    done = 0
    with ThreadPoolExecutor(max_workers=max(1, concurrency)) as executor:
        futures = {executor.submit(lookup, entity): entity for entity in candidates}
        for future in as_completed(futures):
            entity = futures[future]
            done += 1
            try:
                structure = future.result()
            except CatalogAuthError as exc:
                auth_failures += 1
                logger.warning("Catalog lookup for %s rejected: %s", entity.title, exc)
                structure = SKIPPED
            except Exception as exc:  # noqa: BLE001
                failures += 1
                logger.warning("Catalog lookup for %s failed, skipping: %s", entity.title, exc)
                structure = SKIPPED
            if structure is not SKIPPED:
                structures[entity.key] = structure
            if on_progress:
                on_progress(done, total, entity.title)

    if auth_failures and not structures:
        raise CatalogAuthError(f"catalog unavailable for all {auth_failures} lookups")
    return structures, failures + auth_failures


def scan_for_completed(
    entities: Sequence[TrackedEntity],
    provider: MetadataProvider,
    write: Callable[[list[TrackedEntity]], None] | None = None,
    concurrency: int = CATCHUP_CONCURRENCY,
    on_progress: Callable[[int, int, str], None] | None = None,
    should_stop: Callable[[], bool] | None = None,
    today: date | None = None,
) -> int:
    today = today or date.today()
    candidates = scan_candidates(entities)
    if not candidates:
        logger.info("Catch-up scan: no in-progress shows to verify")
        return 0

    structures, failed = _fetch_structures(candidates, provider, concurrency, on_progress, should_stop)
    promotions = {}
    for entity in candidates:
        if entity.key in structures and should_promote(entity, structures[entity.key], today):
            promotions[entity.key] = COMPLETED

    if promotions and write is not None:
        write([e for e in apply_status_updates(candidates, promotions) if e.key in promotions])
    logger.info(
        "Catch-up scan done. Checked %s of %s shows, promoted %s, %s failed.",
        len(structures),
        len(candidates),
        len(promotions),
        failed,
    )
    return len(promotions)


def scan_for_reopened(
    entities: Sequence[TrackedEntity],
    provider: MetadataProvider,
    write: Callable[[list[TrackedEntity]], None] | None = None,
    concurrency: int = CATCHUP_CONCURRENCY,
    today: date | None = None,
) -> int:
    candidates = [e for e in entities if e.media_type == TV and e.status == COMPLETED]
    if not candidates:
        return 0
    structures, failed = _fetch_structures(candidates, provider, concurrency, None, None)
    by_catalog_id = {
        str(key[0]): structure for key, structure in structures.items() if structure is not None
    }
    fetched = [entity for entity in candidates if entity.key in structures]
    updates = collect_reopened(fetched, by_catalog_id, today)
    if updates and write is not None:
        write([e for e in apply_status_updates(fetched, updates) if e.key in updates])
    logger.info("Reopen scan done. Reopened %s of %s completed shows, %s failed.", len(updates), len(candidates), failed)
    return len(updates)


def run_scan_once(concurrency: int = CATCHUP_CONCURRENCY) -> int:
    Base.metadata.create_all(bind=engine)
    store = LibraryStore(SessionLocal)
    catalog = CachedCatalog(TMDBClient(), SessionLocal)
    scan_for_reopened(store.snapshot(), catalog, write=store.update_statuses, concurrency=concurrency)
    return scan_for_completed(
        store.snapshot(), catalog, write=store.update_statuses, concurrency=concurrency
    )


def main() -> None:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
    parser = argparse.ArgumentParser(
        description="Promote in-progress shows whose aired episodes are all watched."
    )
    parser.add_argument("--once", action="store_true", help="Run a single scan and exit.")
    parser.add_argument(
        "--interval-hours",
        type=float,
        default=CATCHUP_INTERVAL_HOURS,
        help="Repeat the scan every N hours when not running --once.",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=CATCHUP_CONCURRENCY,
        help="Maximum catalog lookups in flight.",
    )
    args = parser.parse_args()

    if args.once:
        promoted = run_scan_once(args.concurrency)
        print(f"Catch-up scan completed. Promoted {promoted} shows.")
        return

    interval_seconds = max(args.interval_hours, 0.25) * 3600
    while True:
        promoted = run_scan_once(args.concurrency)
        print(f"Catch-up scan completed. Promoted {promoted} shows.")
        time.sleep(interval_seconds)


if __name__ == "__main__":
    main()
