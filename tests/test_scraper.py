import xml.etree.ElementTree as ET

import pytest
import requests

import scraper as scraper_mod
from extraction import NameExtractionResult
from pipeline import write_atomic
from scraper import ScrapeFailure, Scraper, TmdbClient, build_scraper

API = "https://tmdb.test/3"
IMG = "https://img.test/t/p"

INCEPTION = {
    "id": 27205, "title": "Inception", "original_title": "Inception",
    "overview": "A thief who steals corporate secrets.", "tagline": "Your mind is the scene of the crime.",
    "runtime": 148, "vote_average": 8.4, "vote_count": 35000, "release_date": "2010-07-15",
    "genres": [{"id": 28, "name": "Action"}, {"id": 878, "name": "Science Fiction"}],
    "production_companies": [{"name": "Legendary Pictures"}],
    "poster_path": "/inception.jpg", "backdrop_path": "/dream.jpg", "imdb_id": "tt1375666",
}

THRONES = {
    "id": 1399, "name": "Game of Thrones", "overview": "Seven noble families.",
    "genres": [{"name": "Drama"}], "networks": [{"name": "HBO"}],
    "poster_path": "/got.jpg", "backdrop_path": "/got-wide.jpg",
}


class _Response:
    def __init__(self, payload=None, status_code: int = 200, content: bytes = b""):
        self._payload = payload
        self.status_code = status_code
        self.content = content

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


def _client(monkeypatch, routes: dict, calls: list | None = None) -> TmdbClient:
    """TmdbClient whose session answers from ``routes`` (URL → response)."""
    client = TmdbClient("key", base_url=API, image_base=IMG, language="en-US")

    def fake_get(url, params=None, timeout=None):
        if calls is not None:
            calls.append((url, dict(params or {})))
        route = routes.get(url, _Response(status_code=404))
        if callable(route):
            route = route(params or {})
        if isinstance(route, Exception):
            raise route
        return route

    monkeypatch.setattr(client._session, "get", fake_get)
    return client


def _movie_routes() -> dict:
    return {
        f"{API}/search/movie": _Response({"results": [{"id": 27205, "title": "Inception"}]}),
        f"{API}/movie/27205": _Response(INCEPTION),
        f"{IMG}/w500/inception.jpg": _Response(content=b"poster-bytes"),
        f"{IMG}/w1280/dream.jpg": _Response(content=b"fanart-bytes"),
    }


def test_movie_gets_nfo_and_artwork(monkeypatch, tmp_path) -> None:
    client = _client(monkeypatch, _movie_routes())
    extraction = NameExtractionResult(True, "movie", "Inception", "2010")

    written = Scraper(client).scrape(extraction, tmp_path, "Inception (2010)", write_atomic)

    assert sorted(p.name for p in written) == [
        "Inception (2010)-fanart.jpg", "Inception (2010)-poster.jpg", "Inception (2010).nfo",
    ]
    assert (tmp_path / "Inception (2010)-poster.jpg").read_bytes() == b"poster-bytes"
    root = ET.fromstring((tmp_path / "Inception (2010).nfo").read_bytes())
    assert root.tag == "movie"
    assert root.findtext("title") == "Inception"
    assert root.findtext("year") == "2010"
    assert root.findtext("runtime") == "148"
    assert root.findtext("rating/value") == "8.4"
    assert [g.text for g in root.findall("genre")] == ["Action", "Science Fiction"]
    assert root.findtext("thumb") == f"{IMG}/w500/inception.jpg"
    assert root.findtext("tmdbid") == "27205"
    assert root.findtext("imdbid") == "tt1375666"


def test_existing_and_reserved_files_are_left_alone(monkeypatch, tmp_path) -> None:
    client = _client(monkeypatch, _movie_routes())
    mine = tmp_path / "Inception (2010).nfo"
    mine.write_bytes(b"<movie><title>Mine</title></movie>")
    reserved = {tmp_path / "Inception (2010)-poster.jpg"}

    written = Scraper(client).scrape(NameExtractionResult(True, "movie", "Inception", "2010"),
                                     tmp_path, "Inception (2010)", write_atomic, reserved=reserved)

    assert [p.name for p in written] == ["Inception (2010)-fanart.jpg"]
    assert mine.read_bytes() == b"<movie><title>Mine</title></movie>"
    assert not (tmp_path / "Inception (2010)-poster.jpg").exists()


def test_episode_nfo_and_shared_show_artwork(monkeypatch, tmp_path) -> None:
    client = _client(monkeypatch, {
        f"{API}/search/tv": _Response({"results": [{"id": 1399, "name": "Game of Thrones"}]}),
        f"{API}/tv/1399": _Response(THRONES),
        f"{API}/tv/1399/season/1/episode/2": _Response({"name": "The Kingsroad", "air_date": "2011-04-24"}),
        f"{IMG}/w500/got.jpg": _Response(content=b"show-poster"),
        f"{IMG}/w1280/got-wide.jpg": _Response(content=b"show-fanart"),
    })
    extraction = NameExtractionResult(True, "tv", "Game of Thrones", None, 1, 2)

    written = Scraper(client).scrape(extraction, tmp_path, "Game of Thrones S01E02", write_atomic)

    assert sorted(p.name for p in written) == ["Game of Thrones S01E02.nfo", "fanart.jpg", "poster.jpg"]
    root = ET.fromstring((tmp_path / "Game of Thrones S01E02.nfo").read_bytes())
    assert root.tag == "episodedetails"
    assert root.findtext("title") == "The Kingsroad"
    assert root.findtext("showtitle") == "Game of Thrones"
    assert (root.findtext("season"), root.findtext("episode")) == ("1", "2")
    assert root.findtext("studio") == "HBO"

    # the next episode of the show reuses the poster already on disk
    again = Scraper(client).scrape(NameExtractionResult(True, "tv", "Game of Thrones", None, 1, 3),
                                   tmp_path, "Game of Thrones S01E03", write_atomic)
    assert [p.name for p in again] == ["Game of Thrones S01E03.nfo"]
    third = ET.fromstring((tmp_path / "Game of Thrones S01E03.nfo").read_bytes())
    assert third.findtext("title") == "Game of Thrones S01E03"


def test_search_retries_without_year_and_prefers_exact_title(monkeypatch) -> None:
    calls = []

    def search(params):
        if "year" in params:
            return _Response({"results": []})
        return _Response({"results": [{"id": 1, "title": "Inception: The Cobol Job"},
                                      {"id": 27205, "title": "inception"}]})

    client = _client(monkeypatch, {f"{API}/search/movie": search}, calls)

    hit = client.search("Inception", "2011", "movie")
    assert hit["id"] == 27205
    assert [c[1].get("year") for c in calls] == ["2011", None]
    assert calls[0][1]["api_key"] == "key"
    assert calls[0][1]["language"] == "en-US"

    # cached per title and year
    client.search("Inception", "2011", "movie")
    assert len(calls) == 2


def test_unknown_title_writes_nothing(monkeypatch, tmp_path) -> None:
    client = _client(monkeypatch, {f"{API}/search/movie": _Response({"results": []})})
    written = Scraper(client).scrape(NameExtractionResult(True, "movie", "Nope", None),
                                     tmp_path, "Nope", write_atomic)
    assert written == []
    assert list(tmp_path.iterdir()) == []


@pytest.mark.parametrize("response", [
    requests.exceptions.ConnectionError("down"),
    _Response(status_code=401),
    _Response(status_code=200),
    _Response(["not", "an", "object"]),
])
def test_unreachable_tmdb_raises_scrape_failure(monkeypatch, tmp_path, response) -> None:
    client = _client(monkeypatch, {f"{API}/search/movie": response})
    with pytest.raises(ScrapeFailure):
        Scraper(client).scrape(NameExtractionResult(True, "movie", "Inception", None),
                               tmp_path, "Inception", write_atomic)


def test_scraper_needs_an_api_key(monkeypatch) -> None:
    monkeypatch.setattr(scraper_mod, "TMDB_API_KEY", "")
    assert build_scraper() is None
    monkeypatch.setattr(scraper_mod, "TMDB_API_KEY", "key")
    assert isinstance(build_scraper(), Scraper)
