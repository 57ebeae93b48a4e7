"""
scraper.py — TMDB metadata and artwork for mirrored videos.

For tasks with ``need_scrap`` set, a video whose name was extracted
successfully gets, next to its .strm:

  movie   <base>.nfo (<movie>), <base>-poster.jpg, <base>-fanart.jpg
  tv      <base>.nfo (<episodedetails>), plus poster.jpg / fanart.jpg
          shared by the episodes of the directory

Files that already exist are never overwritten, so a remote .nfo mirrored
as a companion (or anything the media server wrote) always wins.
"""

import logging
import threading
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Container

import requests

from constants import (
    BACKDROP_SIZE,
    POSTER_SIZE,
    TMDB_API_KEY,
    TMDB_BASE,
    TMDB_IMAGE_BASE,
    TMDB_LANGUAGE,
    USER_AGENT,
)
from extraction import NameExtractionResult

log = logging.getLogger("strmsync.scraper")


class ScrapeFailure(Exception):
    """TMDB could not be reached or returned something unusable."""


# ---------------------------------------------------------------------------
# TMDB API
# ---------------------------------------------------------------------------

class TmdbClient:
    """Search, detail and image calls against the TMDB v3 API.

    Lookups are cached for the lifetime of the client so the episodes of
    one show cost a single search.
    """

    def __init__(self, api_key: str, base_url: str = TMDB_BASE,
                 image_base: str = TMDB_IMAGE_BASE, language: str = TMDB_LANGUAGE,
                 timeout: int = 10):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.image_base = image_base.rstrip("/")
        self.language = language
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers["User-Agent"] = USER_AGENT
        self._cache: dict[tuple, dict | None] = {}
        self._lock = threading.Lock()

    def _get(self, path: str, **params) -> dict:
        params = {"api_key": self.api_key, "language": self.language, **params}
        try:
            resp = self._session.get(f"{self.base_url}{path}", params=params,
                                     timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ScrapeFailure(f"TMDB {path} failed: {e}") from e
        if not isinstance(data, dict):
            raise ScrapeFailure(f"TMDB {path} returned {type(data).__name__}")
        return data

    def _cached(self, key: tuple, fetch):
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        value = fetch()
        with self._lock:
            self._cache[key] = value
        return value

    def search(self, title: str, year: str | None, media_type: str) -> dict | None:
        """Best search hit for a movie or tv title; retried without the year."""
        if media_type == "movie":
            path, name_key, year_param = "/search/movie", "title", "year"
        else:
            path, name_key, year_param = "/search/tv", "name", "first_air_date_year"

        def fetch() -> dict | None:
            results: list[dict] = []
            if year:
                results = self._get(path, query=title, **{year_param: year}).get("results") or []
            if not results:
                results = self._get(path, query=title).get("results") or []
            return _best_match(results, title, name_key)

        return self._cached(("search", media_type, title.lower(), year), fetch)

    def details(self, tmdb_id: int, media_type: str) -> dict:
        path = f"/movie/{tmdb_id}" if media_type == "movie" else f"/tv/{tmdb_id}"
        return self._cached(("details", path), lambda: self._get(path))

    def episode(self, tmdb_id: int, season: int, episode: int) -> dict | None:
        """Episode details, or None if TMDB does not know the episode."""
        path = f"/tv/{tmdb_id}/season/{season}/episode/{episode}"

        def fetch() -> dict | None:
            try:
                return self._get(path)
            except ScrapeFailure as e:
                log.debug(f"  TMDB has no S{season:02d}E{episode:02d} for {tmdb_id}: {e}")
                return None

        return self._cached(("episode", path), fetch)

    def image_url(self, image_path: str | None, size: str) -> str | None:
        if not image_path:
            return None
        return f"{self.image_base}/{size}{image_path}"

    def download(self, url: str) -> bytes:
        try:
            resp = self._session.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ScrapeFailure(f"image download failed for {url}: {e}") from e
        return resp.content


def _best_match(results: list[dict], title: str, name_key: str) -> dict | None:
    """Prefer an exact (case-insensitive) title hit, else TMDB's top result."""
    if not results:
        return None
    wanted = title.strip().lower()
    original_key = "original_title" if name_key == "title" else "original_name"
    for result in results:
        names = (result.get(name_key) or "", result.get(original_key) or "")
        if any(n.strip().lower() == wanted for n in names):
            return result
    return results[0]


# ---------------------------------------------------------------------------
# NFO documents
# ---------------------------------------------------------------------------

def _add(parent: ET.Element, tag: str, value) -> None:
    if value is None or value == "":
        return
    ET.SubElement(parent, tag).text = str(value)


def _names(items: list[dict] | None) -> list[str]:
    return [i["name"] for i in items or [] if i.get("name")]


def movie_nfo(details: dict, client: TmdbClient) -> bytes:
    root = ET.Element("movie")
    _add(root, "title", details.get("title"))
    _add(root, "originaltitle", details.get("original_title"))
    _add(root, "plot", details.get("overview"))
    _add(root, "tagline", details.get("tagline"))
    _add(root, "runtime", details.get("runtime"))
    if details.get("vote_average") is not None:
        rating = ET.SubElement(root, "rating")
        _add(rating, "value", details.get("vote_average"))
        _add(rating, "votes", details.get("vote_count"))
    release = details.get("release_date") or ""
    _add(root, "year", release[:4])
    _add(root, "releasedate", release)
    for genre in _names(details.get("genres")):
        _add(root, "genre", genre)
    for studio in _names(details.get("production_companies")):
        _add(root, "studio", studio)
    _add(root, "thumb", client.image_url(details.get("poster_path"), POSTER_SIZE))
    _add(root, "fanart", client.image_url(details.get("backdrop_path"), BACKDROP_SIZE))
    _add(root, "tmdbid", details.get("id"))
    _add(root, "imdbid", details.get("imdb_id"))
    return _render(root)


def episode_nfo(show: dict, episode: dict | None, season: int, number: int,
                client: TmdbClient) -> bytes:
    episode = episode or {}
    root = ET.Element("episodedetails")
    _add(root, "title", episode.get("name") or f"{show.get('name')} S{season:02d}E{number:02d}")
    _add(root, "showtitle", show.get("name"))
    _add(root, "season", season)
    _add(root, "episode", number)
    _add(root, "plot", episode.get("overview") or show.get("overview"))
    _add(root, "aired", episode.get("air_date"))
    _add(root, "runtime", episode.get("runtime"))
    for genre in _names(show.get("genres")):
        _add(root, "genre", genre)
    for studio in _names(show.get("networks")):
        _add(root, "studio", studio)
    _add(root, "thumb", client.image_url(episode.get("still_path"), POSTER_SIZE))
    _add(root, "tmdbid", show.get("id"))
    return _render(root)


def _render(root: ET.Element) -> bytes:
    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True) + b"\n"


# ---------------------------------------------------------------------------
# Scraper
# ---------------------------------------------------------------------------

class Scraper:
    """Writes NFO and artwork for one video.

    ``write`` is the pipeline's atomic writer, ``write(path, data) -> bool``.
    """

    def __init__(self, client: TmdbClient):
        self.client = client

    def scrape(self, extraction: NameExtractionResult, directory: Path, base: str,
               write, reserved: Container[Path] = frozenset()) -> list[Path]:
        """Write whatever is missing; ``reserved`` paths belong to other outputs.

        Returns the files written. Raises ScrapeFailure when TMDB cannot
        be reached; a title TMDB does not know is not an error.
        """
        media_type = "tv" if extraction.type == "tv" else "movie"
        hit = self.client.search(extraction.title, extraction.year, media_type)
        if hit is None:
            log.info(f"  TMDB: no match for {extraction.title!r}")
            return []
        details = self.client.details(hit["id"], media_type)

        nfo = directory / f"{base}.nfo"
        if media_type == "movie":
            poster = directory / f"{base}-poster.jpg"
            fanart = directory / f"{base}-fanart.jpg"
        else:
            poster = directory / "poster.jpg"
            fanart = directory / "fanart.jpg"

        written: list[Path] = []
        if self._wanted(nfo, reserved):
            if media_type == "movie":
                data = movie_nfo(details, self.client)
            else:
                episode = self.client.episode(hit["id"], extraction.season, extraction.episode)
                data = episode_nfo(details, episode, extraction.season,
                                   extraction.episode, self.client)
            if write(nfo, data):
                written.append(nfo)

        for path, image_path, size in (
            (poster, details.get("poster_path"), POSTER_SIZE),
            (fanart, details.get("backdrop_path"), BACKDROP_SIZE),
        ):
            url = self.client.image_url(image_path, size)
            if url and self._wanted(path, reserved):
                if write(path, self.client.download(url)):
                    written.append(path)

        if written:
            log.info(f"  TMDB: {details.get('title') or details.get('name')} "
                     f"[tmdbid={hit['id']}] → {len(written)} file(s)")
        return written

    @staticmethod
    def _wanted(path: Path, reserved) -> bool:
        return path not in reserved and not path.exists()


def build_scraper() -> Scraper | None:
    """The configured scraper, or None when TMDB_API_KEY is not set."""
    if not TMDB_API_KEY:
        return None
    return Scraper(TmdbClient(TMDB_API_KEY))
