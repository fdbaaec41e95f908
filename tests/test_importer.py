from datetime import datetime, timezone

import pytest

from conftest import FakeCatalog, make_show, movie_match, tv_match

from mediatracker.catalog import CatalogAuthError, CatalogError
from mediatracker.importer import (
    ImportFormatError,
    parse_records,
    process_pending_imports,
    reconcile_import,
)
from mediatracker.schemas import ForeignMovieRecord, ForeignShowRecord

IMPORTED_AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def show_record(title, ids=None, status="watching", seasons=None):
    record = {"title": title, "status": status, "seasons": seasons or []}
    if ids is not None:
        record["id"] = ids
    return record


def run(payload, catalog, tracked=(), **kwargs):
    writes = []
    kwargs.setdefault("throttle_every", 0)
    result = reconcile_import(
        payload, catalog, list(tracked), write=writes.append, imported_at=IMPORTED_AT, **kwargs
    )
    return result, writes


def test_non_array_payload_is_rejected():
    catalog = FakeCatalog()

    for payload in ({"title": "X"}, "shows", None):
        with pytest.raises(ImportFormatError):
            reconcile_import(payload, catalog, [])
    assert catalog.calls == []


def test_empty_payload_imports_nothing():
    result, writes = run([], FakeCatalog())

    assert (result.shows, result.movies, result.failed, result.pending) == (0, 0, [], [])
    assert writes == []


def test_exact_imdb_match_is_imported():
    catalog = FakeCatalog(external={("tt123", "imdb"): tv_match(1399, "X")})

    result, writes = run([show_record("X", {"imdb": "tt123"})], catalog)

    assert result.shows == 1
    assert result.pending == [] and result.failed == []
    assert [e.key for e in writes[0]] == [("1399", "tv")]
    assert writes[0][0].status == "watching"


def test_title_only_match_goes_to_pending():
    catalog = FakeCatalog(titles={"Y": [movie_match(5, "Y film"), tv_match(77, "Y")]})

    result, writes = run([show_record("Y")], catalog)

    assert result.shows == 0
    assert len(result.pending) == 1
    assert result.pending[0].match.catalog_id == 77
    assert result.pending[0].record.title == "Y"
    assert writes == []


def test_unmatched_record_is_failed():
    result, writes = run([show_record("Nothing")], FakeCatalog())

    assert result.failed == ["Nothing"]
    assert writes == []


def test_external_match_of_wrong_type_falls_back_to_search():
    catalog = FakeCatalog(
        external={("tt9", "imdb"): movie_match(3)},
        titles={"Z": [tv_match(44, "Z")]},
    )

    result, _ = run([show_record("Z", {"imdb": "tt9"})], catalog)

    assert result.shows == 0
    assert [p.match.catalog_id for p in result.pending] == [44]


def test_tvdb_id_used_when_imdb_missing():
    catalog = FakeCatalog(external={("81189", "tvdb"): tv_match(1396)})

    result, writes = run([show_record("Breaking", {"imdb": "-1", "tvdb": 81189})], catalog)

    assert result.shows == 1
    assert ("find", "81189", "tvdb") in [(c[0], str(c[1]), c[2]) for c in catalog.calls]
    assert not any(c[0] == "find" and c[2] == "imdb" for c in catalog.calls)
    assert writes[0][0].catalog_id == 1396


def test_duplicates_against_tracked_and_batch_are_dropped_silently():
    catalog = FakeCatalog(
        external={
            ("tt1", "imdb"): tv_match(1),
            ("tt2", "imdb"): tv_match(2),
        }
    )
    payload = [
        show_record("One", {"imdb": "tt1"}),
        show_record("Two", {"imdb": "tt2"}),
        show_record("Two again", {"imdb": "tt2"}),
    ]

    result, writes = run(payload, catalog, tracked=[make_show(1)])

    assert result.shows == 1
    assert result.failed == [] and result.pending == []
    assert [e.key for e in writes[0]] == [("2", "tv")]


def test_importing_twice_is_idempotent():
    catalog = FakeCatalog(
        external={("tt1", "imdb"): tv_match(1), ("tt8", "imdb"): movie_match(8)},
    )
    payload = [show_record("One", {"imdb": "tt1"})]
    movies = [{"title": "Eight", "id": {"imdb": "tt8"}, "is_watched": True}]

    _, first = run(payload, catalog)
    result, second = run(payload, catalog, tracked=first[0])
    assert result.shows == 0 and second == []

    _, movie_first = run(movies, catalog, tracked=first[0])
    _, movie_second = run(movies, catalog, tracked=movie_first[0])
    assert movie_second == []
    assert [e.key for e in movie_first[0]] == [("8", "movie")]


def test_watched_episodes_are_imported_without_specials():
    catalog = FakeCatalog(external={("tt1", "imdb"): tv_match(1)})
    seasons = [
        {
            "number": 1,
            "episodes": [
                {"number": 1, "is_watched": True, "watched_at": "2023-01-02T10:00:00Z", "id": {"tvdb": 555}},
                {"number": 2, "is_watched": True},
                {"number": 3, "is_watched": False},
                {"number": 4, "is_watched": True, "special": True},
                "garbage",
            ],
        },
        {"number": 0, "episodes": [{"number": 1, "is_watched": True, "special": True}]},
    ]

    _, writes = run([show_record("One", {"imdb": "tt1"}, seasons=seasons)], catalog)

    show = writes[0][0]
    by_key = {e.key: e for e in show.watched_episodes}
    assert sorted(by_key) == [(1, 1), (1, 2)]
    assert by_key[(1, 1)].watched_at == datetime(2023, 1, 2, 10, 0, tzinfo=timezone.utc)
    assert by_key[(1, 1)].episode_id == 555
    assert by_key[(1, 2)].watched_at == IMPORTED_AT
    assert by_key[(1, 2)].episode_id == -1


def test_foreign_status_is_mapped():
    catalog = FakeCatalog(
        external={("tt1", "imdb"): tv_match(1), ("tt2", "imdb"): tv_match(2)},
    )
    payload = [
        show_record("One", {"imdb": "tt1"}, status="stopped"),
        show_record("Two", {"imdb": "tt2"}, status="mystery"),
    ]

    _, writes = run(payload, catalog)

    assert [e.status for e in writes[0]] == ["dropped", "plan_to_watch"]


def test_movie_records_detected_from_first_record():
    catalog = FakeCatalog(
        external={("tt8", "imdb"): movie_match(8, "Eight"), ("tt9", "imdb"): movie_match(9)}
    )
    payload = [
        {"title": "Eight", "id": {"imdb": "tt8"}, "is_watched": True, "watched_at": "2022-05-05 18:30:00"},
        {"title": "Nine", "id": {"imdb": "tt9"}},
    ]

    result, writes = run(payload, catalog)

    assert result.movies == 2
    eight, nine = writes[0]
    assert eight.status == "completed"
    assert eight.watched_at == datetime(2022, 5, 5, 18, 30, tzinfo=timezone.utc)
    assert nine.status == "plan_to_watch"
    assert nine.watched_at is None


def test_malformed_records_do_not_stop_the_batch():
    catalog = FakeCatalog(external={("tt1", "imdb"): tv_match(1)})
    payload = [
        show_record("One", {"imdb": "tt1"}),
        42,
        {"title": "Odd", "seasons": "not a list", "id": "nope"},
    ]

    result, writes = run(payload, catalog)

    assert result.shows == 1
    assert result.failed == ["<untitled>", "Odd"]
    assert len(writes) == 1


def test_parse_records_tags_every_record_with_batch_kind():
    records = parse_records([{"title": "A", "seasons": []}, {"title": "B"}])

    assert all(isinstance(r, ForeignShowRecord) for r in records)
    movies = parse_records([{"title": "A"}, {"title": "B", "seasons": []}])
    assert all(isinstance(r, ForeignMovieRecord) for r in movies)


def test_catalog_errors_are_soft_failures():
    class FlakyCatalog(FakeCatalog):
        def find_by_external_id(self, external_id, source):
            raise CatalogError("timeout")

    catalog = FlakyCatalog(titles={"X": [tv_match(1)]})

    result, _ = run([show_record("X", {"imdb": "tt1"})], catalog)

    assert len(result.pending) == 1


def test_auth_error_aborts_before_writing():
    class LockedCatalog(FakeCatalog):
        def find_by_external_id(self, external_id, source):
            raise CatalogAuthError("401")

    writes = []
    with pytest.raises(CatalogAuthError):
        reconcile_import(
            [show_record("X", {"imdb": "tt1"})], LockedCatalog(), [], write=writes.append
        )
    assert writes == []


def test_progress_callback_and_throttle():
    catalog = FakeCatalog()
    progress = []
    sleeps = []
    payload = [show_record(f"T{i}") for i in range(7)]

    reconcile_import(
        payload,
        catalog,
        [],
        on_progress=lambda current, total, title: progress.append((current, total, title)),
        throttle_every=3,
        throttle_seconds=0.5,
        sleep=sleeps.append,
    )

    assert progress[0] == (1, 7, "T0")
    assert progress[-1] == (7, 7, "T6")
    assert sleeps == [0.5, 0.5]


def test_confirming_pending_matches_exact_import():
    exact = FakeCatalog(external={("tt1", "imdb"): tv_match(1, "X")})
    by_title = FakeCatalog(titles={"X": [tv_match(1, "X")]})
    seasons = [{"number": 1, "episodes": [{"number": 1, "is_watched": True}]}]

    _, exact_writes = run([show_record("X", {"imdb": "tt1"}, seasons=seasons)], exact)
    pending_result, _ = run([show_record("X", seasons=seasons)], by_title)

    confirmed = []
    counts = process_pending_imports(
        pending_result.pending, [], write=confirmed.append, imported_at=IMPORTED_AT
    )

    assert (counts.shows, counts.movies) == (1, 0)
    assert confirmed[0][0].key == exact_writes[0][0].key
    assert confirmed[0][0].watched_episodes == exact_writes[0][0].watched_episodes
    assert confirmed[0][0].status == exact_writes[0][0].status


def test_confirmation_dedups_against_current_state():
    by_title = FakeCatalog(titles={"X": [tv_match(1)], "Y": [tv_match(2)]})
    result, _ = run([show_record("X"), show_record("Y")], by_title)

    writes = []
    counts = process_pending_imports(result.pending, [make_show(1)], write=writes.append)

    assert counts.shows == 1
    assert [e.key for e in writes[0]] == [("2", "tv")]


def test_confirming_nothing_writes_nothing():
    writes = []

    counts = process_pending_imports([], [make_show(1)], write=writes.append)

    assert (counts.shows, counts.movies) == (0, 0)
    assert writes == []


def test_import_keeps_entries_added_while_it_runs(store):
    store.add(make_show(5, title="Tracked before import"))

    class InterleavingCatalog(FakeCatalog):
        def find_by_external_id(self, external_id, source):
            if str(external_id) == "tt1":
                store.add(make_show(99, title="Added mid-import"))
                store.add(make_show(2, title="Added by hand", status="on_hold"))
            return super().find_by_external_id(external_id, source)

    catalog = InterleavingCatalog(external={("tt1", "imdb"): tv_match(1), ("tt2", "imdb"): tv_match(2)})
    payload = [show_record("One", {"imdb": "tt1"}), show_record("Two", {"imdb": "tt2"})]

    result = reconcile_import(
        payload, catalog, store.snapshot(), write=store.add_missing, imported_at=IMPORTED_AT, throttle_every=0
    )

    assert result.shows == 2
    loaded = {e.catalog_id: e for e in store.snapshot()}
    assert sorted(loaded) == [1, 2, 5, 99]
    assert loaded[2].title == "Added by hand"
    assert loaded[2].status == "on_hold"
