from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
import json
import logging
from typing import Protocol

import requests
from sqlalchemy import select

from mediatracker.config import (
    CATALOG_CACHE_HOURS,
    CATALOG_REQUEST_TIMEOUT,
    TMDB_API_KEY,
    TMDB_BASE_URL,
)
from mediatracker.entities import MOVIE, TV, utcnow
from mediatracker.models import ShowStructureCache

USER_AGENT = "MediaTracker/1.0 (+https://example.com)"
EXTERNAL_SOURCES = {"imdb": "imdb_id", "tvdb": "tvdb_id"}
ENDED_STATUSES = {"ended", "canceled", "cancelled"}

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    pass


class CatalogAuthError(CatalogError):
    pass


@dataclass(frozen=True)
class CatalogMatch:
    catalog_id: int | str
    media_type: str
    title: str = ""
    poster_path: str | None = None
    first_date: str | None = None


@dataclass(frozen=True)
class SeasonInfo:
    number: int
    episode_count: int
    name: str = ""


@dataclass(frozen=True)
class EpisodeRef:
    season: int
    episode: int
    air_date: date | None = None


@dataclass(frozen=True)
class ShowStructure:
    catalog_id: int | str
    seasons: tuple[SeasonInfo, ...] = ()
    last_aired: EpisodeRef | None = None
    next_to_air: EpisodeRef | None = None
    status: str | None = None
    fetched_at: datetime | None = field(default=None, compare=False)

    @property
    def has_ended(self) -> bool:
        return (self.status or "").lower() in ENDED_STATUSES

    def regular_seasons(self) -> list[SeasonInfo]:
        return sorted(
            (season for season in self.seasons if season.number > 0),
            key=lambda season: season.number,
        )

    def season(self, number: int) -> SeasonInfo | None:
        for season in self.seasons:
            if season.number == number:
                return season
        return None


class MetadataProvider(Protocol):
    def find_by_external_id(self, external_id: str | int, source: str) -> CatalogMatch | None:
        ...

    def search_by_title(self, text: str) -> list[CatalogMatch]:
        ...

    def get_show_structure(self, catalog_id: int | str) -> ShowStructure | None:
        ...


def parse_air_date(value) -> date | None:
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def parse_episode_ref(payload: dict | None) -> EpisodeRef | None:
    if not isinstance(payload, dict):
        return None
    season = payload.get("season_number", payload.get("season"))
    episode = payload.get("episode_number", payload.get("episode"))
    if season is None or episode is None:
        return None
    try:
        return EpisodeRef(
            season=int(season),
            episode=int(episode),
            air_date=parse_air_date(payload.get("air_date")),
        )
    except (TypeError, ValueError):
        return None


def parse_show_details(catalog_id: int | str, data: dict) -> ShowStructure:
    seasons = []
    for season in data.get("seasons") or []:
        number = season.get("season_number")
        if number is None:
            continue
        seasons.append(
            SeasonInfo(
                number=int(number),
                episode_count=int(season.get("episode_count") or 0),
                name=season.get("name") or "",
            )
        )
    return ShowStructure(
        catalog_id=catalog_id,
        seasons=tuple(seasons),
        last_aired=parse_episode_ref(data.get("last_episode_to_air")),
        next_to_air=parse_episode_ref(data.get("next_episode_to_air")),
        status=data.get("status"),
    )


def parse_search_result(result: dict) -> CatalogMatch | None:
    media_type = result.get("media_type")
    if media_type not in {TV, MOVIE} or result.get("id") is None:
        return None
    if media_type == TV:
        title = result.get("name") or result.get("original_name") or ""
        first_date = result.get("first_air_date")
    else:
        title = result.get("title") or result.get("original_title") or ""
        first_date = result.get("release_date")
    return CatalogMatch(
        catalog_id=result["id"],
        media_type=media_type,
        title=title,
        poster_path=result.get("poster_path"),
        first_date=first_date or None,
    )


def structure_to_dict(structure: ShowStructure) -> dict:
    def ref(value: EpisodeRef | None) -> dict | None:
        if value is None:
            return None
        return {
            "season": value.season,
            "episode": value.episode,
            "air_date": value.air_date.isoformat() if value.air_date else None,
        }

    return {
        "seasons": [
            {"number": s.number, "episode_count": s.episode_count, "name": s.name}
            for s in structure.seasons
        ],
        "last_aired": ref(structure.last_aired),
        "next_to_air": ref(structure.next_to_air),
        "status": structure.status,
    }


def structure_from_dict(
    catalog_id: int | str, data: dict, fetched_at: datetime | None = None
) -> ShowStructure:
    return ShowStructure(
        catalog_id=catalog_id,
        seasons=tuple(
            SeasonInfo(
                number=int(s["number"]),
                episode_count=int(s.get("episode_count") or 0),
                name=s.get("name") or "",
            )
            for s in data.get("seasons") or []
        ),
        last_aired=parse_episode_ref(data.get("last_aired")),
        next_to_air=parse_episode_ref(data.get("next_to_air")),
        status=data.get("status"),
        fetched_at=fetched_at,
    )


class TMDBClient:
    def __init__(
        self,
        api_key: str = TMDB_API_KEY,
        base_url: str = TMDB_BASE_URL,
        timeout: float = CATALOG_REQUEST_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})

    def _get(self, path: str, **params) -> dict:
        params["api_key"] = self.api_key
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Catalog request %s failed: %s", path, exc)
            raise CatalogError(f"request to {path} failed: {exc}") from exc
        if response.status_code in (401, 403):
            raise CatalogAuthError(f"catalog rejected credentials (HTTP {response.status_code})")
        try:
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Catalog request %s returned HTTP %s", path, response.status_code)
            raise CatalogError(f"request to {path} failed: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise CatalogError(f"invalid JSON from {path}") from exc

    def find_by_external_id(self, external_id: str | int, source: str) -> CatalogMatch | None:
        external_source = EXTERNAL_SOURCES.get(source)
        if external_source is None:
            raise ValueError(f"unknown external id source: {source}")
        data = self._get(f"/find/{external_id}", external_source=external_source)
        for key, media_type in (("movie_results", MOVIE), ("tv_results", TV)):
            results = data.get(key) or []
            if results:
                first = results[0]
                return CatalogMatch(
                    catalog_id=first["id"],
                    media_type=media_type,
                    title=first.get("title") or first.get("name") or "",
                    poster_path=first.get("poster_path"),
                    first_date=first.get("release_date") or first.get("first_air_date"),
                )
        episodes = data.get("tv_episode_results") or []
        if episodes and episodes[0].get("show_id") is not None:
            return CatalogMatch(catalog_id=episodes[0]["show_id"], media_type=TV)
        return None

    def search_by_title(self, text: str) -> list[CatalogMatch]:
        query = text.strip()
        if not query:
            return []
        data = self._get("/search/multi", query=query)
        matches = []
        for result in data.get("results") or []:
            match = parse_search_result(result)
            if match is not None:
                matches.append(match)
        return matches

    def get_show_structure(self, catalog_id: int | str) -> ShowStructure | None:
        data = self._get(f"/tv/{catalog_id}")
        return parse_show_details(catalog_id, data)


class CachedCatalog:
    """Read-through cache of show structures kept in the database.

    Lookups by id and title always go to the upstream provider; only season
    structures are cached, and an entry is reused while it is younger than
    ``max_age``. Each call opens its own session so the cache can be shared by
    the catch-up scanner's worker threads.
    """

    def __init__(self, upstream: MetadataProvider, session_factory, max_age_hours: float = CATALOG_CACHE_HOURS):
        self.upstream = upstream
        self.session_factory = session_factory
        self.max_age = timedelta(hours=max_age_hours)

    def find_by_external_id(self, external_id: str | int, source: str) -> CatalogMatch | None:
        return self.upstream.find_by_external_id(external_id, source)

    def search_by_title(self, text: str) -> list[CatalogMatch]:
        return self.upstream.search_by_title(text)

    def get_show_structure(self, catalog_id: int | str, force: bool = False) -> ShowStructure | None:
        now = utcnow()
        db = self.session_factory()
        try:
            row = db.get(ShowStructureCache, str(catalog_id))
            if row is not None and not force:
                fetched_at = row.fetched_at
                if fetched_at.tzinfo is None:
                    fetched_at = fetched_at.replace(tzinfo=now.tzinfo)
                if now - fetched_at < self.max_age:
                    logger.debug("Structure cache hit for show %s", catalog_id)
                    return structure_from_dict(catalog_id, json.loads(row.payload), row.fetched_at)
            logger.debug("Structure cache miss for show %s", catalog_id)
            structure = self.upstream.get_show_structure(catalog_id)
            if structure is None:
                return None
            payload = json.dumps(structure_to_dict(structure))
            if row is None:
                db.add(ShowStructureCache(catalog_id=str(catalog_id), payload=payload, fetched_at=now))
            else:
                row.payload = payload
                row.fetched_at = now
            db.commit()
            return structure_from_dict(catalog_id, json.loads(payload), now)
        finally:
            db.close()

    def cached_structures(self) -> dict[str, ShowStructure]:
        db = self.session_factory()
        try:
            rows = db.execute(select(ShowStructureCache)).scalars().all()
            return {
                row.catalog_id: structure_from_dict(row.catalog_id, json.loads(row.payload), row.fetched_at)
                for row in rows
            }
        finally:
            db.close()
