"""
extraction.py — Filename → media metadata extraction.

Two collaborators share one JSON contract:

  LlmExtractor   OpenAI-compatible chat completion, rate limited per minute
  RuleExtractor  local parsing with guessit, no network

Both return a NameExtractionResult. Collaborator output is only ever
accepted through parse_response()/from_payload(), which understand the
current format ({title, year, season, episode}) and the legacy format
({filename}).
"""

import datetime
import json
import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import requests
from guessit import guessit

from classifier import split_ext
from constants import (
    AI_API_KEY,
    AI_BASE_URL,
    AI_MODEL,
    AI_PROMPT,
    AI_QPM_LIMIT,
    AI_TIMEOUT,
    EPISODE_MARKER,
    EXTRACTOR,
    USER_AGENT,
    VIDEO_EXTENSIONS,
    YEAR_MARKER,
)

log = logging.getLogger("strmsync.extraction")

MEDIA_TYPES = ("movie", "tv", "unknown")

REASON_MALFORMED = "extraction-malformed"
REASON_TIMEOUT = "extraction-timeout"
REASON_UNAVAILABLE = "extraction-error"
REASON_NOT_VIDEO = "非视频文件"
REASON_NO_TITLE = "缺少剧名信息"

# Failures caused by the collaborator being unreachable rather than by its answer
TRANSIENT_REASONS = frozenset({REASON_TIMEOUT, REASON_UNAVAILABLE})


class ExtractionError(Exception):
    """Extraction could not produce a result."""


class ExtractionMalformed(ExtractionError):
    """The collaborator answered, but not with a valid contract document."""


class ExtractionTimeout(ExtractionError):
    """The collaborator did not answer in time (or is temporarily unavailable)."""


@dataclass(frozen=True)
class NameExtractionResult:
    success: bool
    type: str = "unknown"
    title: str | None = None
    year: str | None = None
    season: int | None = None
    episode: int | None = None
    reason: str | None = None

    @classmethod
    def failure(cls, reason: str, media_type: str = "unknown") -> "NameExtractionResult":
        return cls(success=False, type=media_type, reason=reason)

    @property
    def is_transient(self) -> bool:
        return not self.success and self.reason in TRANSIENT_REASONS

    def to_dict(self) -> dict:
        """Render the contract document; absent fields are omitted."""
        if not self.success:
            return {"success": False, "reason": self.reason, "type": self.type}
        out: dict[str, Any] = {"success": True, "title": self.title}
        if self.year is not None:
            out["year"] = self.year
        if self.season is not None:
            out["season"] = self.season
        if self.episode is not None:
            out["episode"] = self.episode
        out["type"] = self.type
        return out


class Extractor(Protocol):
    def extract(self, filename: str, hint: str | None = None) -> NameExtractionResult: ...


# ---------------------------------------------------------------------------
# Contract parsing
# ---------------------------------------------------------------------------

def _media_type(value: Any) -> str:
    value = str(value or "").strip().lower()
    return value if value in MEDIA_TYPES else "unknown"


def _year(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text if re.fullmatch(r"\d{4}", text) else None


def _positive(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if number > 0 else None


def _from_legacy(filename: str, media_type: str) -> NameExtractionResult:
    """Decompose a legacy ``filename`` answer into title/year/season/episode."""
    stem, ext = split_ext(filename)
    if ext.lower() not in VIDEO_EXTENSIONS and ext.lower() != ".strm":
        stem = filename

    season = episode = None
    marker = EPISODE_MARKER.search(stem)
    if marker:
        season, episode = int(marker.group(1)), int(marker.group(2))
        stem = stem[:marker.start()]

    year = None
    stem = stem.strip(" ._-")
    match = YEAR_MARKER.search(stem)
    if match:
        year = match.group(1)
        stem = stem[:match.start()] + stem[match.end():]

    title = stem.strip(" ._-")
    if " " not in title:
        title = title.replace(".", " ")
    if not title:
        raise ExtractionMalformed(f"legacy filename has no title: {filename!r}")

    if media_type != "tv":
        season = episode = None
    return NameExtractionResult(True, media_type, title, year, season, episode)


def from_payload(data: dict) -> NameExtractionResult:
    """Validate a decoded contract document (current or legacy format)."""
    success = data.get("success")
    if not isinstance(success, bool):
        raise ExtractionMalformed("missing boolean 'success'")
    media_type = _media_type(data.get("type"))

    if not success:
        reason = str(data.get("reason") or "").strip() or "unspecified"
        return NameExtractionResult.failure(reason, media_type)

    title = data.get("title")
    if isinstance(title, str) and title.strip():
        tv = media_type == "tv"
        return NameExtractionResult(
            success=True,
            type=media_type,
            title=title.strip(),
            year=_year(data.get("year")),
            season=_positive(data.get("season")) if tv else None,
            episode=_positive(data.get("episode")) if tv else None,
        )

    filename = data.get("filename")
    if isinstance(filename, str) and filename.strip():
        return _from_legacy(filename.strip(), media_type)

    raise ExtractionMalformed("success without 'title' or 'filename'")


def parse_response(text: str) -> NameExtractionResult:
    """Parse a collaborator's raw answer.

    Markdown fences and stray prose around the document are tolerated by
    taking the outermost ``{...}``; anything else is malformed.
    """
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise ExtractionMalformed("no JSON object in response")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise ExtractionMalformed(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ExtractionMalformed("response is not a JSON object")
    return from_payload(data)


# ---------------------------------------------------------------------------
# LLM collaborator
# ---------------------------------------------------------------------------

DEFAULT_PROMPT = """\
You normalise film and TV filenames into structured metadata for library matching.

Input: a filename, optionally with the directory it sits in. Names may contain
release-group tags, resolutions, codecs and other noise.

Answer with exactly one JSON object and nothing else:
{
  "success": true or false,
  "title": "title without year, season or episode",
  "year": "four-digit year as a string, only if present",
  "season": season number (integer, tv only),
  "episode": episode number (integer, tv only),
  "type": "movie" | "tv" | "unknown",
  "reason": "why extraction failed (only when success is false)"
}

Use the directory name to recover a missing series title. Omit fields that do
not apply. Keep the title in its original language.

Examples:
盗梦空间.2010.1080p.BluRay.x264.mkv -> {"success":true,"title":"盗梦空间","year":"2010","type":"movie"}
Breaking Bad S05E14 Ozymandias 1080p.mkv -> {"success":true,"title":"Breaking Bad","season":5,"episode":14,"type":"tv"}
S01E05.mkv -> {"success":false,"reason":"缺少剧名信息","type":"tv"}
random_file.txt -> {"success":false,"reason":"非视频文件","type":"unknown"}
"""


class RateLimiter:
    """Sliding one-minute window shared by all threads of a process."""

    def __init__(self, per_minute: int,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.per_minute = per_minute
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        if self.per_minute <= 0:
            return
        while True:
            with self._lock:
                now = self._clock()
                while self._calls and now - self._calls[0] >= 60:
                    self._calls.popleft()
                if len(self._calls) < self.per_minute:
                    self._calls.append(now)
                    return
                wait = 60 - (now - self._calls[0])
            log.debug(f"  AI: rate limit reached, waiting {wait:.1f}s")
            self._sleep(wait)


class LlmExtractor:
    """OpenAI-compatible chat-completions client speaking the extraction contract."""

    def __init__(self, base_url: str, api_key: str, model: str = AI_MODEL,
                 timeout: int = AI_TIMEOUT, qpm_limit: int = AI_QPM_LIMIT,
                 prompt: str = ""):
        self.url = f"{base_url.rstrip('/')}/chat/completions"
        self.model = model
        self.timeout = timeout
        self.prompt = prompt or DEFAULT_PROMPT
        self.limiter = RateLimiter(qpm_limit)
        self._session = requests.Session()
        self._session.headers["Authorization"] = f"Bearer {api_key}"
        self._session.headers["User-Agent"] = USER_AGENT

    def extract(self, filename: str, hint: str | None = None) -> NameExtractionResult:
        user = f"Directory: {hint}\nFilename: {filename}" if hint else f"Filename: {filename}"
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.prompt},
                {"role": "user", "content": user},
            ],
            "max_tokens": 300,
            "temperature": 0.1,
        }

        self.limiter.acquire()
        try:
            resp = self._session.post(self.url, json=body, timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise ExtractionTimeout(f"AI request for {filename!r} failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ExtractionError(f"AI request for {filename!r} failed: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise ExtractionTimeout(f"AI service returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise ExtractionError(f"AI service returned HTTP {resp.status_code}")

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionMalformed(f"unexpected completion payload: {e}") from e
        if not isinstance(content, str):
            raise ExtractionMalformed("completion content is not text")

        result = parse_response(content)
        log.debug(f"  AI: {filename} → {result.to_dict()}")
        return result


# ---------------------------------------------------------------------------
# Rule-based collaborator
# ---------------------------------------------------------------------------

_MIN_YEAR = 1900


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _plausible_year(year: Any) -> str | None:
    year = _first(year)
    if not isinstance(year, int):
        return None
    if not (_MIN_YEAR <= year <= datetime.date.today().year + 1):
        return None
    return str(year)


class RuleExtractor:
    """guessit-backed extractor; satisfies the same contract offline."""

    def extract(self, filename: str, hint: str | None = None) -> NameExtractionResult:
        if split_ext(filename)[1].lower() not in VIDEO_EXTENSIONS:
            return NameExtractionResult.failure(REASON_NOT_VIDEO, "unknown")

        info = guessit(filename)
        media_type = "tv" if info.get("type") == "episode" else "movie"
        title = _first(info.get("title"))
        if not title and hint:
            title = _first(guessit(hint).get("title"))
        if not title:
            return NameExtractionResult.failure(REASON_NO_TITLE, media_type)

        season = episode = None
        if media_type == "tv":
            episode = _positive(_first(info.get("episode")))
            season = _positive(_first(info.get("season")))
            if season is None and episode is not None:
                season = 1

        return NameExtractionResult(
            success=True,
            type=media_type,
            title=str(title).strip(),
            year=_plausible_year(info.get("year")),
            season=season,
            episode=episode,
        )


def build_extractor() -> Extractor:
    """Construct the configured collaborator (EXTRACTOR=llm|rules)."""
    if EXTRACTOR == "llm":
        if not AI_API_KEY:
            log.warning("EXTRACTOR=llm but AI_API_KEY is not set — using rules")
            return RuleExtractor()
        return LlmExtractor(AI_BASE_URL, AI_API_KEY, prompt=AI_PROMPT)
    return RuleExtractor()
