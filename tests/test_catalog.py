from datetime import date, timedelta

import pytest
import requests

from conftest import FakeCatalog, make_structure

from mediatracker.catalog import (
    CachedCatalog,
    CatalogAuthError,
    CatalogError,
    TMDBClient,
    parse_show_details,
)
from mediatracker.entities import utcnow
from mediatracker.models import ShowStructureCache


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.headers = {}
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append((url, params, timeout))
        response = self.responses.get(url)
        if isinstance(response, Exception):
            raise response
        return response or FakeResponse(404)


BASE = "https://catalog.test/3"


def client(responses):
    return TMDBClient(api_key="key", base_url=BASE + "/", timeout=5, session=FakeSession(responses))


SHOW_DETAILS = {
    "id": 1399,
    "status": "Returning Series",
    "seasons": [
        {"season_number": 0, "episode_count": 2, "name": "Specials"},
        {"season_number": 1, "episode_count": 10, "name": "Season 1"},
        {"season_number": 2, "episode_count": 8, "name": "Season 2"},
    ],
    "last_episode_to_air": {"season_number": 2, "episode_number": 3, "air_date": "2024-05-20"},
    "next_episode_to_air": {"season_number": 2, "episode_number": 4, "air_date": "2024-05-27"},
}


def test_find_by_imdb_id_prefers_movies_then_tv():
    tmdb = client(
        {
            f"{BASE}/find/tt123": FakeResponse(
                payload={"movie_results": [], "tv_results": [{"id": 1399, "name": "X", "poster_path": "/x.jpg"}]}
            )
        }
    )

    match = tmdb.find_by_external_id("tt123", "imdb")

    assert (match.catalog_id, match.media_type, match.title, match.poster_path) == (1399, "tv", "X", "/x.jpg")
    url, params, timeout = tmdb.session.requests[0]
    assert params == {"external_source": "imdb_id", "api_key": "key"}
    assert timeout == 5
    assert "User-Agent" in tmdb.session.headers


def test_find_by_tvdb_episode_result_maps_to_show():
    tmdb = client({f"{BASE}/find/555": FakeResponse(payload={"tv_episode_results": [{"show_id": 42}]})})

    match = tmdb.find_by_external_id(555, "tvdb")

    assert (match.catalog_id, match.media_type) == (42, "tv")


def test_find_without_results_returns_none():
    tmdb = client({f"{BASE}/find/tt0": FakeResponse(payload={"movie_results": [], "tv_results": []})})

    assert tmdb.find_by_external_id("tt0", "imdb") is None
    with pytest.raises(ValueError):
        tmdb.find_by_external_id("tt0", "letterboxd")


def test_search_keeps_tv_and_movie_results():
    tmdb = client(
        {
            f"{BASE}/search/multi": FakeResponse(
                payload={
                    "results": [
                        {"id": 1, "media_type": "person", "name": "Someone"},
                        {"id": 2, "media_type": "tv", "name": "Show", "first_air_date": "2011-04-17"},
                        {"id": 3, "media_type": "movie", "title": "Film", "release_date": ""},
                    ]
                }
            )
        }
    )

    matches = tmdb.search_by_title("  show ")

    assert [(m.catalog_id, m.media_type, m.title, m.first_date) for m in matches] == [
        (2, "tv", "Show", "2011-04-17"),
        (3, "movie", "Film", None),
    ]
    assert tmdb.session.requests[0][1]["query"] == "show"
    assert tmdb.search_by_title("   ") == []


def test_show_structure_is_parsed():
    tmdb = client({f"{BASE}/tv/1399": FakeResponse(payload=SHOW_DETAILS)})

    structure = tmdb.get_show_structure(1399)

    assert [(s.number, s.episode_count) for s in structure.seasons] == [(0, 2), (1, 10), (2, 8)]
    assert (structure.last_aired.season, structure.last_aired.episode) == (2, 3)
    assert structure.next_to_air.air_date == date(2024, 5, 27)
    assert structure.has_ended is False
    assert parse_show_details(1, {"status": "Canceled"}).has_ended is True


@pytest.mark.parametrize("status", [401, 403])
def test_auth_failures_raise_auth_error(status):
    tmdb = client({f"{BASE}/tv/1": FakeResponse(status)})

    with pytest.raises(CatalogAuthError):
        tmdb.get_show_structure(1)


def test_transport_and_http_failures_raise_catalog_error():
    tmdb = client(
        {
            f"{BASE}/tv/1": requests.ConnectionError("down"),
            f"{BASE}/tv/2": FakeResponse(500),
            f"{BASE}/tv/3": FakeResponse(200, payload=None),
        }
    )

    for catalog_id in (1, 2, 3):
        with pytest.raises(CatalogError) as excinfo:
            tmdb.get_show_structure(catalog_id)
        assert not isinstance(excinfo.value, CatalogAuthError)


def test_cached_catalog_reuses_fresh_structures(session_factory):
    upstream = FakeCatalog(structures={"7": make_structure(7, last_aired=(1, 4))})
    catalog = CachedCatalog(upstream, session_factory, max_age_hours=12)

    first = catalog.get_show_structure(7)
    second = catalog.get_show_structure(7)

    assert first == second
    assert first.last_aired.episode == 4
    assert upstream.calls == [("structure", 7)]
    assert set(catalog.cached_structures()) == {"7"}


def test_cached_catalog_refetches_stale_structures(session_factory):
    upstream = FakeCatalog(structures={"7": make_structure(7, last_aired=(1, 4))})
    catalog = CachedCatalog(upstream, session_factory, max_age_hours=12)
    catalog.get_show_structure(7)

    db = session_factory()
    row = db.get(ShowStructureCache, "7")
    row.fetched_at = utcnow() - timedelta(hours=13)
    db.commit()
    db.close()
    upstream.structures["7"] = make_structure(7, last_aired=(1, 5))

    assert catalog.get_show_structure(7).last_aired.episode == 5
    assert len(upstream.calls) == 2
    assert catalog.get_show_structure(7, force=True).last_aired.episode == 5
    assert len(upstream.calls) == 3


def test_cached_catalog_delegates_lookups(session_factory):
    upstream = FakeCatalog(titles={"X": []})
    catalog = CachedCatalog(upstream, session_factory)

    assert catalog.search_by_title("X") == []
    assert catalog.find_by_external_id("tt1", "imdb") is None
    assert catalog.get_show_structure(99) is None
    assert [c[0] for c in upstream.calls] == ["search", "find", "structure"]
