"""
context.py — Per-file processing context and per-run statistics.

A run owns exactly one ProcessingStats; every file's ProcessingContext
points at it. Stats are shared across pipeline worker threads, so every
mutation takes the lock.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from classifier import FileType
from extraction import NameExtractionResult
from openlist import RemoteFile
from tasks import OpenListConfig, TaskConfig


class ProcessingState(Enum):
    INITIALIZED = "initialized"
    PROCESSING = "processing"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


TERMINAL_STATES = {ProcessingState.SUCCESS, ProcessingState.SKIPPED, ProcessingState.FAILED}

_ALLOWED = {
    ProcessingState.INITIALIZED: {ProcessingState.PROCESSING},
    ProcessingState.PROCESSING: TERMINAL_STATES,
}


class InvalidTransition(Exception):
    """A context was moved backwards or out of a terminal state."""


class ProcessingStats:
    """Run-wide counters, safe to update from several threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self.total_files = 0
        self.processed_files = 0
        self.skipped_files = 0
        self.failed_files = 0
        self.written_files = 0
        self.listing_errors = 0
        self.extraction_errors = 0
        self.scraped_files = 0
        self.type_counts: dict[FileType, int] = {t: 0 for t in FileType}

    def add_file(self) -> None:
        with self._lock:
            self.total_files += 1

    def add_type(self, file_type: FileType) -> None:
        with self._lock:
            self.type_counts[file_type] += 1

    def add_written(self) -> None:
        with self._lock:
            self.written_files += 1

    def add_listing_error(self) -> None:
        with self._lock:
            self.listing_errors += 1

    def add_extraction_error(self) -> None:
        """A file fell back to raw naming because extraction was unreachable."""
        with self._lock:
            self.extraction_errors += 1

    def add_scraped(self) -> None:
        with self._lock:
            self.scraped_files += 1

    def record(self, state: ProcessingState) -> None:
        """Count one file's terminal state."""
        with self._lock:
            if state is ProcessingState.SUCCESS:
                self.processed_files += 1
            elif state is ProcessingState.SKIPPED:
                self.skipped_files += 1
            elif state is ProcessingState.FAILED:
                self.failed_files += 1
            else:
                raise ValueError(f"not a terminal state: {state}")

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "total": self.total_files,
                "processed": self.processed_files,
                "skipped": self.skipped_files,
                "failed": self.failed_files,
                "written": self.written_files,
                "listing_errors": self.listing_errors,
                "extraction_errors": self.extraction_errors,
                "scraped": self.scraped_files,
                "types": {t.value: n for t, n in self.type_counts.items()},
            }

    def summary(self) -> str:
        s = self.snapshot()
        return (f"{s['total']} file(s): {s['processed']} processed, "
                f"{s['skipped']} skipped, {s['failed']} failed, {s['written']} written")


@dataclass
class ProcessingContext:
    """State carried through the pipeline stages for one remote file."""
    task: TaskConfig
    source: OpenListConfig | None
    current_file: RemoteFile
    siblings: list[RemoteFile]
    stats: ProcessingStats
    state: ProcessingState = ProcessingState.INITIALIZED

    # Filled in by the stages
    file_type: FileType | None = None
    companion_of: RemoteFile | None = None
    companion_suffix: str = ""
    extraction: NameExtractionResult | None = None
    save_directory: Path | None = None
    base_file_name: str | None = None
    output_path: Path | None = None
    reason: str = ""
    written: bool = False

    @property
    def relative_path(self) -> str:
        return self.current_file.relative_path

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: ProcessingState) -> None:
        if new_state not in _ALLOWED.get(self.state, set()):
            raise InvalidTransition(f"{self.state.name} → {new_state.name}")
        self.state = new_state
