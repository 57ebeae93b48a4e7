"""
tracker.py — Incremental sync bookkeeping.

A task's ``last_exec_time`` is the start time (epoch ms) of its last
completed run. Entries modified at or before it are already mirrored.
"""

import logging
import threading
import time

from openlist import RemoteFile
from tasks import TaskConfig

log = logging.getLogger("strmsync.tracker")


def now_ms() -> int:
    return int(time.time() * 1000)


class IncrementalTracker:
    """Reads and advances ``last_exec_time`` for tasks.

    ``store`` is anything with ``update_task(task_id, **fields)``; the
    PocketBase client in production.
    """

    def __init__(self, store=None):
        self.store = store
        self._lock = threading.Lock()

    @staticmethod
    def is_already_synced(task: TaskConfig, file: RemoteFile) -> bool:
        """True when an incremental task may skip ``file`` without any I/O."""
        if not task.is_increment or not task.last_exec_time:
            return False
        if file.modified_at is None:
            return False
        return file.modified_at <= task.last_exec_time

    def advance(self, task: TaskConfig, run_started_ms: int) -> int:
        """Move ``last_exec_time`` forward to the run's start; never backwards."""
        with self._lock:
            previous = task.last_exec_time or 0
            if run_started_ms <= previous:
                log.debug(f"  lastExecTime for {task.name} stays at {previous}")
                return previous
            task.last_exec_time = run_started_ms
        if self.store is not None:
            if self.store.update_task(task.id, last_exec_time=run_started_ms) is None:
                log.warning(f"  Failed to persist lastExecTime for task {task.name}")
        log.info(f"  lastExecTime for {task.name} → {run_started_ms}")
        return run_started_ms
