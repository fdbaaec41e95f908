from datetime import date, datetime, timezone
import threading

import pytest
from sqlalchemy.orm import sessionmaker

from mediatracker.catalog import CatalogError, CatalogMatch, EpisodeRef, SeasonInfo, ShowStructure
from mediatracker.db import build_engine
from mediatracker.entities import TV, TrackedEntity, WatchedEpisode
from mediatracker.models import Base
from mediatracker.store import LibraryStore

TODAY = date(2024, 6, 1)
WATCHED_AT = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)


def episodes(season, numbers, watched_at=WATCHED_AT):
    return tuple(WatchedEpisode(season, number, watched_at) for number in numbers)


def make_show(catalog_id=1, watched=(), status="watching", title=None):
    return TrackedEntity(
        catalog_id=catalog_id,
        media_type=TV,
        title=title or f"Show {catalog_id}",
        status=status,
        added_at=WATCHED_AT,
        watched_episodes=tuple(watched),
    )


def make_structure(catalog_id=1, seasons=((1, 10),), last_aired=None, next_to_air=None, status=None):
    return ShowStructure(
        catalog_id=catalog_id,
        seasons=tuple(SeasonInfo(number, count) for number, count in seasons),
        last_aired=EpisodeRef(*last_aired) if last_aired else None,
        next_to_air=EpisodeRef(*next_to_air) if next_to_air else None,
        status=status,
    )


class FakeCatalog:
    """In-memory MetadataProvider that records every call."""

    def __init__(self, external=None, titles=None, structures=None, failing=()):
        self.external = external or {}
        self.titles = titles or {}
        self.structures = structures or {}
        self.failing = set(failing)
        self.calls = []
        self.lock = threading.Lock()

    def find_by_external_id(self, external_id, source):
        with self.lock:
            self.calls.append(("find", external_id, source))
        return self.external.get((str(external_id), source))

    def search_by_title(self, text):
        with self.lock:
            self.calls.append(("search", text))
        return list(self.titles.get(text, []))

    def get_show_structure(self, catalog_id):
        with self.lock:
            self.calls.append(("structure", catalog_id))
        if str(catalog_id) in self.failing:
            raise CatalogError(f"lookup for {catalog_id} failed")
        return self.structures.get(str(catalog_id))


def tv_match(catalog_id, title=""):
    return CatalogMatch(catalog_id=catalog_id, media_type="tv", title=title)


def movie_match(catalog_id, title=""):
    return CatalogMatch(catalog_id=catalog_id, media_type="movie", title=title)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return LibraryStore(session_factory)
