"""
runner.py — One task run, end to end.

  1. Resolve the task's OpenList source, check its token, prepare the
     output root
  2. Stream the remote tree through the pipeline
  3. Remove stale pointer files (complete full runs only)
  4. Advance lastExecTime (not after an abort or a cancellation, nor when
     part of the tree could not be listed or named)
  5. Fire the enabled refresh notifications

A RunReport is returned for every run, including aborted ones.
"""

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from cleanup import remove_orphans
from constants import CLEANUP_ORPHANS, PIPELINE_WORKERS, RETRY_ATTEMPTS, RETRY_BACKOFF
from context import ProcessingStats
from extraction import Extractor
from naming import NameResolver
from openlist import OpenListClient, OpenListError, RemoteFile, RemoteUnavailable
from pipeline import Pipeline
from refresh import RefreshNotifier, RefreshResult
from retry import call_with_backoff
from scraper import Scraper
from tasks import OpenListConfig, TaskConfig
from tracker import IncrementalTracker, now_ms

log = logging.getLogger("strmsync.runner")

STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "completed_with_failures"
STATUS_CANCELLED = "cancelled"
STATUS_ABORTED = "aborted"


@dataclass
class RunReport:
    task_id: str
    task_name: str
    started_at: int
    finished_at: int = 0
    status: str = "running"
    stats: dict = field(default_factory=dict)
    error: str = ""
    refresh: list[RefreshResult] = field(default_factory=list)
    removed_orphans: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_PARTIAL)


class TaskRunner:
    """Runs tasks against their OpenList source.

    ``store`` provides ``get_openlist_config`` and ``update_task``
    (PocketBaseClient in production).
    """

    def __init__(self, store, extractor: Extractor | None = None,
                 notifier: RefreshNotifier | None = None,
                 scraper: Scraper | None = None,
                 client_factory: Callable[[OpenListConfig], OpenListClient] = OpenListClient.from_config,
                 workers: int = PIPELINE_WORKERS,
                 cleanup_orphans: bool = CLEANUP_ORPHANS,
                 max_retries: int = RETRY_ATTEMPTS,
                 backoff: float = RETRY_BACKOFF,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.extractor = extractor
        self.notifier = notifier or RefreshNotifier()
        self.scraper = scraper
        self.client_factory = client_factory
        self.tracker = IncrementalTracker(store)
        self.workers = workers
        self.cleanup_orphans = cleanup_orphans
        self.max_retries = max_retries
        self.backoff = backoff
        self._sleep = sleep

    def run(self, task: TaskConfig, cancel_event: threading.Event | None = None,
            is_increment: bool | None = None) -> RunReport:
        """Run ``task`` once. ``is_increment`` overrides the task's own flag."""
        report = RunReport(task.id, task.name, started_at=now_ms())
        stats = ProcessingStats()
        run_task = task if is_increment is None else dataclasses.replace(task, is_increment=is_increment)
        mode = "incremental" if run_task.is_increment else "full"
        log.info(f"Task '{task.name}': {mode} run of {task.path} → {task.strm_path}")

        source = self.store.get_openlist_config(task.openlist_config_id) \
            if task.openlist_config_id else None
        if source is None:
            return self._abort(report, stats, f"OpenList source {task.openlist_config_id!r} not found")
        if not source.is_active:
            return self._abort(report, stats, f"OpenList source {source.id} is disabled")
        if not task.strm_path:
            return self._abort(report, stats, "no output path configured")

        output_root = Path(task.strm_path)
        try:
            output_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return self._abort(report, stats, f"cannot create output directory: {e}")

        client = self.client_factory(source)
        try:
            self._retry(client.validate, f"validate {source.base_url}")
        except OpenListError as e:
            return self._abort(report, stats, f"OpenList source {source.id} unusable: {e}")

        pipeline = Pipeline(
            run_task, source,
            resolver=NameResolver(run_task, self.extractor, self.max_retries,
                                  self.backoff, self._sleep),
            pointer_url=client.pointer_url,
            fetch=lambda f: self._retry(lambda: client.fetch(f), f"fetch {f.path}"),
            stats=stats,
            scraper=self.scraper,
        )

        def list_fn(path: str) -> list[RemoteFile]:
            return self._retry(lambda: client.list_dir(path, root=task.path), f"list {path}")

        def on_error(directory: str, e: OpenListError) -> None:
            stats.add_listing_error()
            log.warning(f"  Cannot list {directory}, skipping subtree: {e}")

        try:
            completed = pipeline.run(client.walk(task.path, on_error=on_error, list_fn=list_fn),
                                     cancel_event, self.workers)
        except OpenListError as e:
            return self._abort(report, stats, f"cannot list {task.path}: {e}")

        if not completed:
            report.status = STATUS_CANCELLED
        elif stats.failed_files or stats.listing_errors or stats.extraction_errors:
            report.status = STATUS_PARTIAL
        else:
            report.status = STATUS_COMPLETED

        if completed:
            if stats.listing_errors:
                log.warning(f"  {stats.listing_errors} director(ies) could not be listed "
                            f"— lastExecTime not advanced")
            elif stats.extraction_errors:
                log.warning(f"  {stats.extraction_errors} file(s) fell back to raw names "
                            f"after extraction errors — lastExecTime not advanced")
            else:
                self.tracker.advance(task, report.started_at)

            if (self.cleanup_orphans and report.status == STATUS_COMPLETED
                    and not run_task.is_increment):
                report.removed_orphans = len(remove_orphans(output_root, pipeline.produced))

        if stats.processed_files:
            report.refresh = self.notifier.notify(task, client.refresh)

        return self._finish(report, stats)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _retry(self, fn, label: str):
        return call_with_backoff(fn, retry_on=(RemoteUnavailable,), label=label,
                                 max_retries=self.max_retries, backoff=self.backoff,
                                 sleep=self._sleep)

    def _abort(self, report: RunReport, stats: ProcessingStats, error: str) -> RunReport:
        report.status = STATUS_ABORTED
        report.error = error
        log.error(f"Task '{report.task_name}' aborted: {error}")
        return self._finish(report, stats)

    @staticmethod
    def _finish(report: RunReport, stats: ProcessingStats) -> RunReport:
        report.finished_at = now_ms()
        report.stats = stats.snapshot()
        if report.status != STATUS_ABORTED:
            elapsed = (report.finished_at - report.started_at) / 1000
            log.info(f"Task '{report.task_name}' {report.status} in {elapsed:.1f}s: "
                     f"{stats.summary()}")
        return report
