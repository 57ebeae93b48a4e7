from pathlib import Path

import pytest

from extraction import NameExtractionResult
from openlist import OpenListClient, RemoteFile, RemoteNotFound, join_path, relative_to
from tasks import OpenListConfig, TaskConfig

BASE_URL = "http://openlist.local"


class FakeClient(OpenListClient):
    """OpenListClient backed by an in-memory tree instead of HTTP.

    ``tree`` maps a directory path to a list of entry dicts:
    ``{"name": ..., "is_dir": bool, "modified": epoch_ms, "sign": ...}``.
    """

    def __init__(self, tree: dict[str, list[dict]], strm_base_url: str = ""):
        super().__init__(BASE_URL, "token", strm_base_url=strm_base_url)
        self.tree = tree
        self.failures: dict[str, Exception] = {}
        self.blobs: dict[str, bytes] = {}
        self.listed: list[str] = []
        self.refreshed: list[str] = []
        self.validations = 0

    def list_dir(self, path: str, root: str = "/") -> list[RemoteFile]:
        self.listed.append(path)
        if path in self.failures:
            raise self.failures[path]
        if path not in self.tree:
            raise RemoteNotFound(path)
        files = []
        for item in self.tree[path]:
            full = join_path(path, item["name"])
            is_dir = item.get("is_dir", False)
            files.append(RemoteFile(
                path=full,
                relative_path=relative_to(full, root),
                name=item["name"],
                size=item.get("size", 1),
                is_dir=is_dir,
                modified_at=item.get("modified", 1_000),
                raw_url="" if is_dir else self.build_url(full, item.get("sign", "")),
            ))
        return files

    def fetch(self, file: RemoteFile) -> bytes:
        if file.path in self.failures:
            raise self.failures[file.path]
        return self.blobs.get(file.path, f"content of {file.name}".encode("utf-8"))

    def refresh(self, path: str) -> None:
        self.refreshed.append(path)

    def validate(self) -> dict:
        self.validations += 1
        if "token" in self.failures:
            raise self.failures["token"]
        return {"username": "guest"}


class FakeStore:
    """Record store double: one OpenList source, task updates recorded."""

    def __init__(self, source: OpenListConfig | None = None):
        self.source = source or OpenListConfig(id="ol1", base_url=BASE_URL, token="token")
        self.updates: list[tuple[str, dict]] = []
        self.tasks: list[TaskConfig] = []

    def get_openlist_config(self, record_id: str) -> OpenListConfig | None:
        return self.source if self.source and record_id == self.source.id else None

    def update_task(self, record_id: str, **fields) -> dict:
        self.updates.append((record_id, fields))
        return {"id": record_id, **fields}

    def list_active_tasks(self) -> list[TaskConfig]:
        return [t for t in self.tasks if t.is_active]

    def get_task(self, task_id: str) -> TaskConfig | None:
        return next((t for t in self.tasks if t.id == task_id), None)


class ScriptedExtractor:
    """Extractor returning canned results and counting calls."""

    def __init__(self, results: dict[str, NameExtractionResult] | None = None,
                 errors: list[Exception] | None = None):
        self.results = results or {}
        self.errors = list(errors or [])
        self.calls: list[tuple[str, str | None]] = []

    def extract(self, filename: str, hint: str | None = None) -> NameExtractionResult:
        self.calls.append((filename, hint))
        if self.errors:
            raise self.errors.pop(0)
        return self.results.get(filename, NameExtractionResult.failure("no match"))


@pytest.fixture
def make_task(tmp_path: Path):
    def _make(**overrides) -> TaskConfig:
        fields = {
            "id": "t1",
            "name": "movies",
            "path": "/media",
            "strm_path": str(tmp_path / "strm"),
            "openlist_config_id": "ol1",
            "is_increment": False,
        }
        fields.update(overrides)
        return TaskConfig(**fields)
    return _make


@pytest.fixture
def fake_client():
    return FakeClient


@pytest.fixture
def fake_store():
    return FakeStore


@pytest.fixture
def scripted_extractor():
    return ScriptedExtractor


