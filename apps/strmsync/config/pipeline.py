"""
pipeline.py — Per-file handler chain.

Each remote file runs through a fixed list of stages, in two halves:

  prepare:  classify → check_eligibility → resolve_name → compute_output_path
  output:   write_output → scrape_metadata → record_stat

Between the halves, the files of one directory claim their output paths in
sorted source-path order (videos before companions). When two files map to
the same output, the first claim wins and the other is skipped, so the
result never depends on which worker finishes first.

Every stage returns CONTINUE, SKIP or FAIL. SKIP and FAIL end that file's
processing and are counted; they never stop the batch. Files are fanned out
to a bounded thread pool while the listing streams in.
"""

import logging
import os
import posixpath
import tempfile
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

from classifier import COMPANION_TYPES, FileType, classify, find_video_sibling
from constants import PIPELINE_WORKERS, STRM_SUFFIX
from context import ProcessingContext, ProcessingState, ProcessingStats
from naming import NameResolver
from openlist import OpenListError, RemoteFile
from scraper import ScrapeFailure, Scraper
from tasks import OpenListConfig, TaskConfig
from tracker import IncrementalTracker

log = logging.getLogger("strmsync.pipeline")

Stage = Callable[[ProcessingContext], "StageResult"]


class StageResult(Enum):
    CONTINUE = "continue"
    SKIP = "skip"
    FAIL = "fail"


class WriteFailure(Exception):
    """An output file could not be written."""


def write_atomic(path: Path, data: bytes) -> bool:
    """Write ``data`` to ``path`` via a temp file and rename.

    Returns False without touching the disk when the file already holds
    exactly ``data``. A reader never sees a partially written file.
    """
    try:
        if path.is_file() and path.read_bytes() == data:
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.chmod(tmp, 0o644)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise WriteFailure(f"cannot write {path}: {e}") from e
    return True


class Pipeline:
    """Processes the files of one task run.

    Args:
        task:         the task being run (read-only here)
        source:       the OpenList source config, if any
        resolver:     name resolver for this run
        pointer_url:  maps a RemoteFile to the URL written into its .strm
        fetch:        downloads a companion file's bytes
        stats:        the run's shared counters
        scraper:      TMDB scraper for tasks with need_scrap, if configured
    """

    def __init__(self, task: TaskConfig, source: OpenListConfig | None,
                 resolver: NameResolver,
                 pointer_url: Callable[[RemoteFile], str],
                 fetch: Callable[[RemoteFile], bytes],
                 stats: ProcessingStats | None = None,
                 scraper: Scraper | None = None):
        self.task = task
        self.source = source
        self.output_root = Path(task.strm_path)
        self.resolver = resolver
        self.pointer_url = pointer_url
        self.fetch = fetch
        self.stats = stats if stats is not None else ProcessingStats()
        self.scraper = scraper
        # output path → source path that owns it; written by the run thread only
        self.owners: dict[Path, str] = {}
        self.prepare_stages: list[Stage] = [
            self.classify,
            self.check_eligibility,
            self.resolve_name,
            self.compute_output_path,
        ]
        self.output_stages: list[Stage] = [
            self.write_output,
            self.scrape_metadata,
            self.record_stat,
        ]

    @property
    def produced(self) -> set[Path]:
        """Output paths claimed by this run."""
        return set(self.owners)

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def prepare(self, file: RemoteFile, siblings: list[RemoteFile]) -> ProcessingContext:
        """Run the stages that decide whether and where ``file`` is written."""
        ctx = ProcessingContext(
            task=self.task, source=self.source, current_file=file,
            siblings=siblings, stats=self.stats,
        )
        self.stats.add_file()
        ctx.transition(ProcessingState.PROCESSING)
        self._run_stages(ctx, self.prepare_stages)
        return ctx

    def claim(self, contexts: list[ProcessingContext]) -> None:
        """Assign output paths for the prepared files of one directory."""
        lost: set[str] = set()
        live = [c for c in contexts if not c.is_terminal]
        live.sort(key=lambda c: (c.file_type is not FileType.VIDEO, c.current_file.path))

        for ctx in live:
            video = ctx.companion_of
            owner = self.owners.get(ctx.output_path)
            if video is not None and video.path in lost:
                ctx.reason = f"its video {video.name} lost its output name"
            elif owner is not None:
                ctx.reason = f"duplicate output {ctx.output_path.name}, kept {posixpath.basename(owner)}"
            else:
                self.owners[ctx.output_path] = ctx.current_file.path
                continue
            lost.add(ctx.current_file.path)
            self._finish(ctx, ProcessingState.SKIPPED)
            log.info(f"  – {ctx.relative_path}: {ctx.reason}")

    def finish(self, ctx: ProcessingContext) -> ProcessingContext:
        """Run the stages that write a claimed file."""
        self._run_stages(ctx, self.output_stages)
        return ctx

    def process(self, file: RemoteFile, siblings: list[RemoteFile]) -> ProcessingContext:
        """Run one file through every stage and return its final context."""
        ctx = self.prepare(file, siblings)
        self.claim([ctx])
        if not ctx.is_terminal:
            self.finish(ctx)
        return ctx

    def _run_stages(self, ctx: ProcessingContext, stages: list[Stage]) -> None:
        for stage in stages:
            try:
                result = stage(ctx)
            except (WriteFailure, OpenListError) as e:
                ctx.reason = str(e)
                result = StageResult.FAIL
            except Exception as e:
                log.error(f"  Unexpected error on {ctx.relative_path} in {stage.__name__}: {e}",
                          exc_info=True)
                ctx.reason = str(e)
                result = StageResult.FAIL

            if result is StageResult.SKIP:
                self._finish(ctx, ProcessingState.SKIPPED)
                log.debug(f"  – {ctx.relative_path}: {ctx.reason}")
                return
            if result is StageResult.FAIL:
                self._finish(ctx, ProcessingState.FAILED)
                log.warning(f"  ✗ {ctx.relative_path}: {ctx.reason}")
                return

    def run(self, listing: Iterable[tuple[str, list[RemoteFile]]],
            cancel_event: threading.Event | None = None,
            workers: int = PIPELINE_WORKERS) -> bool:
        """Process every file of a streamed listing.

        Returns False if the run was cancelled between files. Files already
        handed to a worker are allowed to finish. Listing errors propagate.
        """
        workers = max(1, workers)
        max_pending = workers * 4
        pending: set[Future] = set()
        cancelled = False

        def is_cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        def submit(pool: ThreadPoolExecutor, fn, *args) -> Future:
            nonlocal pending
            if len(pending) >= max_pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    future.result()
            future = pool.submit(fn, *args)
            pending.add(future)
            return future

        with ThreadPoolExecutor(max_workers=workers,
                                thread_name_prefix=f"pipeline-{self.task.id}") as pool:
            for _directory, entries in listing:
                prepared: list[Future] = []
                for entry in entries:
                    if entry.is_dir:
                        continue
                    if is_cancelled():
                        cancelled = True
                        break
                    prepared.append(submit(pool, self.prepare, entry, entries))

                contexts = [f.result() for f in prepared]
                self.claim(contexts)
                for ctx in contexts:
                    if not ctx.is_terminal:
                        submit(pool, self.finish, ctx)
                if cancelled:
                    break

            done, _ = wait(pending)
            for future in done:
                future.result()

        return not cancelled

    def _finish(self, ctx: ProcessingContext, state: ProcessingState) -> None:
        ctx.transition(state)
        self.stats.record(state)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def classify(self, ctx: ProcessingContext) -> StageResult:
        ctx.file_type = classify(ctx.current_file.name)
        self.stats.add_type(ctx.file_type)
        return StageResult.CONTINUE

    def check_eligibility(self, ctx: ProcessingContext) -> StageResult:
        if ctx.file_type in COMPANION_TYPES:
            match = find_video_sibling(ctx.current_file, ctx.siblings)
            if match is None:
                ctx.reason = f"{ctx.file_type.value} without a matching video"
                return StageResult.SKIP
            ctx.companion_of, ctx.companion_suffix = match
        elif ctx.file_type is not FileType.VIDEO:
            ctx.reason = f"{ctx.file_type.value} files are not mirrored"
            return StageResult.SKIP

        if IncrementalTracker.is_already_synced(self.task, ctx.current_file):
            ctx.reason = "unchanged since last run"
            return StageResult.SKIP
        return StageResult.CONTINUE

    def resolve_name(self, ctx: ProcessingContext) -> StageResult:
        target = ctx.companion_of or ctx.current_file
        hint = posixpath.basename(target.parent.rstrip("/")) or None
        base, ctx.extraction = self.resolver.resolve(target.name, hint)
        if ctx.extraction is not None and ctx.extraction.is_transient:
            self.stats.add_extraction_error()
        if base is None:
            ctx.reason = "episode without season/episode numbers"
            return StageResult.SKIP
        ctx.base_file_name = base
        return StageResult.CONTINUE

    def compute_output_path(self, ctx: ProcessingContext) -> StageResult:
        rel_dir = posixpath.dirname(ctx.relative_path)
        if ".." in rel_dir.split("/"):
            ctx.reason = f"refusing to write outside the output root: {ctx.relative_path}"
            return StageResult.FAIL
        ctx.save_directory = self.output_root / rel_dir if rel_dir else self.output_root

        if ctx.file_type is FileType.VIDEO:
            name = f"{ctx.base_file_name}{STRM_SUFFIX}"
        else:
            name = f"{ctx.base_file_name}{ctx.companion_suffix}"
        ctx.output_path = ctx.save_directory / name
        return StageResult.CONTINUE

    def write_output(self, ctx: ProcessingContext) -> StageResult:
        if ctx.file_type is FileType.VIDEO:
            data = self.pointer_url(ctx.current_file).encode("utf-8")
        else:
            data = self.fetch(ctx.current_file)

        ctx.written = write_atomic(ctx.output_path, data)
        if ctx.written:
            self.stats.add_written()
        return StageResult.CONTINUE

    def scrape_metadata(self, ctx: ProcessingContext) -> StageResult:
        if (self.scraper is None or not self.task.need_scrap
                or ctx.file_type is not FileType.VIDEO
                or ctx.extraction is None or not ctx.extraction.success):
            return StageResult.CONTINUE
        try:
            written = self.scraper.scrape(ctx.extraction, ctx.save_directory,
                                          ctx.base_file_name, write_atomic,
                                          reserved=self.owners.keys())
        except ScrapeFailure as e:
            log.warning(f"  Scraping {ctx.relative_path} failed: {e}")
            return StageResult.CONTINUE
        for _ in written:
            self.stats.add_scraped()
        return StageResult.CONTINUE

    def record_stat(self, ctx: ProcessingContext) -> StageResult:
        self._finish(ctx, ProcessingState.SUCCESS)
        if ctx.written:
            log.info(f"  ✓ {ctx.relative_path} → {ctx.output_path.relative_to(self.output_root)}")
        else:
            log.debug(f"  = {ctx.relative_path} (unchanged)")
        return StageResult.CONTINUE
