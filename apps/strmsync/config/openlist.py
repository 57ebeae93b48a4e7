"""
openlist.py — OpenList REST client.

Provides the surface the sync pipeline needs:
  1. List one remote directory (fs/list)
  2. Walk a whole tree lazily, one directory at a time
  3. Build direct-access (/d/...) URLs for pointer files
  4. Download small companion files (subtitles, NFO)
  5. Ask OpenList to rescan a path (fs/list with refresh=true)

The client never retries. Callers wrap calls in retry.call_with_backoff.
"""

import datetime
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator
from urllib.parse import quote

import requests

from constants import OPENLIST_TIMEOUT, USER_AGENT
from tasks import OpenListConfig

log = logging.getLogger("strmsync.openlist")


class OpenListError(Exception):
    """Base class for listing failures."""


class RemoteUnavailable(OpenListError):
    """Transport error, timeout, or server-side failure."""


class RemoteNotFound(OpenListError):
    """The requested path no longer exists upstream."""


class RemoteAuthError(OpenListError):
    """The token was rejected."""


@dataclass(frozen=True)
class RemoteFile:
    """Snapshot of one remote entry.

    ``raw_url`` is only valid while the remote signature is; it is written
    into pointer files and nowhere else.
    """
    path: str
    relative_path: str
    name: str
    size: int
    is_dir: bool
    modified_at: int | None
    raw_url: str

    @property
    def parent(self) -> str:
        return self.path.rsplit("/", 1)[0] or "/"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_FRACTION = re.compile(r"\.(\d+)")


def parse_modified(value: Any) -> int | None:
    """Convert an OpenList ``modified`` value to epoch milliseconds.

    OpenList emits RFC 3339 strings, sometimes with nanosecond fractions,
    and ``0001-01-01T00:00:00Z`` when the storage has no mtime.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip().replace("Z", "+00:00")
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        dt = datetime.datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.year < 1971:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return int(dt.timestamp() * 1000)


def join_path(parent: str, name: str) -> str:
    return f"{parent.rstrip('/')}/{name}"


def relative_to(path: str, root: str) -> str:
    """Strip ``root`` from ``path``; paths outside root are returned unchanged."""
    root = root.rstrip("/")
    if root and (path == root or path.startswith(root + "/")):
        path = path[len(root):]
    return path.lstrip("/")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class OpenListClient:
    """Lightweight OpenList REST client for tree mirroring."""

    def __init__(self, base_url: str, token: str = "",
                 strm_base_url: str = "", timeout: int = OPENLIST_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.strm_base_url = strm_base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers["User-Agent"] = USER_AGENT
        if token:
            self._session.headers["Authorization"] = token

    @classmethod
    def from_config(cls, config: OpenListConfig) -> "OpenListClient":
        return cls(config.base_url, config.token, strm_base_url=config.strm_base_url)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def list_dir(self, path: str, root: str = "/") -> list[RemoteFile]:
        """List one directory. Entries keep the server's order."""
        data = self._post("/api/fs/list", {
            "path": path, "password": "", "page": 1, "per_page": 0, "refresh": False,
        })
        content = (data or {}).get("content") or []
        files: list[RemoteFile] = []
        for item in content:
            name = item.get("name", "")
            if not name:
                continue
            full = join_path(path, name)
            is_dir = bool(item.get("is_dir"))
            files.append(RemoteFile(
                path=full,
                relative_path=relative_to(full, root),
                name=name,
                size=int(item.get("size") or 0),
                is_dir=is_dir,
                modified_at=parse_modified(item.get("modified")),
                raw_url="" if is_dir else self.build_url(full, item.get("sign") or ""),
            ))
        return files

    def walk(self, root: str,
             on_error: Callable[[str, OpenListError], None] | None = None,
             list_fn: Callable[[str], list[RemoteFile]] | None = None,
             ) -> Iterator[tuple[str, list[RemoteFile]]]:
        """Yield ``(directory, entries)`` depth-first, one listing at a time.

        A failure listing ``root`` always propagates. Failures below it are
        passed to ``on_error`` and that subtree is skipped; without a
        callback they propagate too.
        """
        if list_fn is None:
            def list_fn(p: str) -> list[RemoteFile]:
                return self.list_dir(p, root=root)

        pending = [root]
        while pending:
            directory = pending.pop()
            try:
                entries = list_fn(directory)
            except OpenListError as e:
                if directory == root or on_error is None:
                    raise
                on_error(directory, e)
                continue
            yield directory, entries
            pending.extend(entry.path for entry in reversed(entries) if entry.is_dir)

    def build_url(self, path: str, sign: str = "") -> str:
        """Direct-access URL for a file: {base}/d{path}[?sign=...]."""
        url = f"{self.base_url}/d{quote(path, safe='/')}"
        if sign:
            url += ("&" if "?" in url else "?") + f"sign={sign}"
        return url

    def pointer_url(self, file: RemoteFile) -> str:
        """URL written into a pointer file, honouring ``strm_base_url``."""
        if self.strm_base_url and file.raw_url.startswith(self.base_url):
            return self.strm_base_url + file.raw_url[len(self.base_url):]
        return file.raw_url

    def fetch(self, file: RemoteFile) -> bytes:
        """Download a (small) remote file's bytes."""
        try:
            resp = self._session.get(file.raw_url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RemoteUnavailable(f"download {file.path} failed: {e}") from e
        self._check_status(resp, f"download {file.path}")
        return resp.content

    def refresh(self, path: str) -> None:
        """Ask OpenList to rescan ``path`` from its storage backend."""
        self._post("/api/fs/list", {
            "path": path, "password": "", "page": 1, "per_page": 0, "refresh": True,
        })
        log.info(f"  OpenList: refresh requested for {path}")

    def validate(self) -> dict:
        """Return the current user record; raises RemoteAuthError on a bad token."""
        return self._request("GET", "/api/me") or {}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _post(self, path: str, body: dict) -> Any:
        return self._request("POST", path, json=body)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        """Make an API request and unwrap the {code, message, data} envelope."""
        label = f"{method} {path}"
        try:
            resp = self._session.request(method, f"{self.base_url}{path}",
                                         timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise RemoteUnavailable(f"{label} failed: {e}") from e

        self._check_status(resp, label)
        try:
            body = resp.json()
        except ValueError as e:
            raise RemoteUnavailable(f"{label} returned invalid JSON") from e

        code = body.get("code")
        if code == 200:
            return body.get("data")

        message = str(body.get("message") or "")
        if code in (401, 403):
            raise RemoteAuthError(f"{label}: {message}")
        if code == 404 or "not found" in message.lower():
            raise RemoteNotFound(f"{label}: {message}")
        raise RemoteUnavailable(f"{label}: code {code}: {message}")

    @staticmethod
    def _check_status(resp: requests.Response, label: str) -> None:
        if resp.status_code in (401, 403):
            raise RemoteAuthError(f"{label}: HTTP {resp.status_code}")
        if resp.status_code == 404:
            raise RemoteNotFound(f"{label}: HTTP 404")
        if resp.status_code >= 400:
            raise RemoteUnavailable(f"{label}: HTTP {resp.status_code}")
