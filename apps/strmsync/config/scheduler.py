"""
scheduler.py — Cron and on-demand task triggering.

Every tick the active tasks are reloaded from the store, due cron triggers
fire, and runs of tasks that were disabled are cancelled. A trigger for a
task that is already running is dropped, never queued; manual triggers go
through the same per-task lock.
"""

import datetime
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from croniter import croniter

from constants import MAX_CONCURRENT_TASKS, SCHEDULER_TICK
from tasks import TaskConfig

log = logging.getLogger("strmsync.scheduler")

RunFn = Callable[..., object]


def normalise_cron(expr: str) -> str | None:
    """Return a 5-field cron expression, or None if ``expr`` is unusable.

    Quartz-style 6/7-field expressions (leading seconds, optional trailing
    year, ``?`` for "no specific value") are reduced to minute resolution.
    """
    fields = (expr or "").split()
    if len(fields) in (6, 7):
        fields = fields[1:6]
    if len(fields) != 5:
        return None
    normalised = " ".join("*" if f == "?" else f for f in fields)
    return normalised if croniter.is_valid(normalised) else None


def next_fire_time(expr: str, after: float) -> float:
    start = datetime.datetime.fromtimestamp(after).astimezone()
    return croniter(expr, start).get_next(float)


class Scheduler:
    """Fires task runs on a bounded worker pool.

    Args:
        store:       provides ``list_active_tasks()`` and ``get_task(id)``
        run_fn:      ``run_fn(task, cancel_event, is_increment)``
        max_workers: how many different tasks may run at once
        tick:        seconds between schedule checks
    """

    def __init__(self, store, run_fn: RunFn, max_workers: int = MAX_CONCURRENT_TASKS,
                 tick: int = SCHEDULER_TICK, clock: Callable[[], float] = time.time):
        self.store = store
        self.run_fn = run_fn
        self.tick_seconds = tick
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="task")
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._cancel: dict[str, threading.Event] = {}
        self._tasks: dict[str, TaskConfig] = {}
        self._schedule: dict[str, tuple[str, float | None]] = {}
        self.wake = threading.Event()

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    def _acquire(self, task_id: str) -> "threading.Lock | None":
        """The task's run lock, acquired; None if a run already holds it."""
        with self._guard:
            lock = self._locks.setdefault(task_id, threading.Lock())
            return lock if lock.acquire(blocking=False) else None

    def is_running(self, task_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(task_id)
        return lock is not None and lock.locked()

    def trigger(self, task: TaskConfig, reason: str = "manual",
                is_increment: bool | None = None) -> Future | None:
        """Start a run of ``task`` unless one is already in progress.

        Returns the run's Future, or None if the trigger was dropped.
        """
        lock = self._acquire(task.id)
        if lock is None:
            log.info(f"Task '{task.name}' is already running, {reason} trigger dropped")
            return None

        cancel = threading.Event()
        with self._guard:
            self._cancel[task.id] = cancel
        log.info(f"Task '{task.name}' triggered ({reason})")
        try:
            return self._executor.submit(self._run, task, cancel, lock, is_increment)
        except RuntimeError:
            self._release(task.id, cancel, lock)
            raise

    def trigger_by_id(self, task_id: str, is_increment: bool | None = None) -> Future | None:
        """Manual trigger by record ID (webhook)."""
        with self._guard:
            task = self._tasks.get(task_id)
        if task is None:
            task = self.store.get_task(task_id)
        if task is None or not task.is_active:
            log.warning(f"Manual trigger for unknown or inactive task {task_id}")
            return None
        return self.trigger(task, reason="manual", is_increment=is_increment)

    def cancel(self, task_id: str) -> bool:
        """Ask a running task to stop between files."""
        with self._guard:
            event = self._cancel.get(task_id)
        if event is None:
            return False
        event.set()
        log.info(f"Cancellation requested for task {task_id}")
        return True

    def _run(self, task: TaskConfig, cancel: threading.Event,
             lock: threading.Lock, is_increment: bool | None):
        try:
            return self.run_fn(task, cancel, is_increment)
        except Exception as e:
            log.error(f"Task '{task.name}' crashed: {e}", exc_info=True)
            raise
        finally:
            self._release(task.id, cancel, lock)

    def _release(self, task_id: str, cancel: threading.Event, lock: threading.Lock) -> None:
        with self._guard:
            if self._cancel.get(task_id) is cancel:
                del self._cancel[task_id]
        lock.release()

    # ------------------------------------------------------------------
    # Cron
    # ------------------------------------------------------------------

    def sync_tasks(self, tasks: list[TaskConfig], now: float) -> None:
        """Replace the known task set; cancel runs of tasks that disappeared."""
        active = {t.id: t for t in tasks if t.is_active}
        with self._guard:
            gone = [task_id for task_id in self._tasks if task_id not in active]
            self._tasks = active
            for task_id in gone:
                self._schedule.pop(task_id, None)
            # held locks stay until their run releases them
            for task_id in [t for t, lock in self._locks.items()
                            if t not in active and not lock.locked()]:
                del self._locks[task_id]

        for task_id in gone:
            self.cancel(task_id)

        for task in active.values():
            previous = self._schedule.get(task.id)
            if previous is not None and previous[0] == task.cron:
                continue
            fire_at = None
            if task.cron:
                expr = normalise_cron(task.cron)
                if expr is None:
                    log.warning(f"Task '{task.name}': unusable cron expression {task.cron!r}")
                else:
                    fire_at = next_fire_time(expr, now)
            self._schedule[task.id] = (task.cron, fire_at)

    def due(self, now: float) -> list[TaskConfig]:
        """Tasks whose cron time has passed; their next fire time is advanced."""
        ready: list[TaskConfig] = []
        for task_id, (cron, fire_at) in list(self._schedule.items()):
            if fire_at is None or fire_at > now:
                continue
            task = self._tasks.get(task_id)
            if task is None:
                continue
            ready.append(task)
            self._schedule[task_id] = (cron, next_fire_time(normalise_cron(cron), now))
        return ready

    def tick(self, now: float | None = None) -> list[Future]:
        now = self._clock() if now is None else now
        tasks = self.store.list_active_tasks()
        if tasks is None:
            log.warning("Could not load tasks, keeping the previous schedule")
        else:
            self.sync_tasks(tasks, now)

        futures = []
        for task in self.due(now):
            future = self.trigger(task, reason="cron")
            if future is not None:
                futures.append(future)
        return futures

    def run_forever(self, stop: threading.Event) -> None:
        """Scheduler loop; ``wake`` forces an early tick."""
        while not stop.is_set():
            try:
                self.tick()
            except Exception as e:
                log.error(f"Scheduler tick failed: {e}", exc_info=True)
            self.wake.wait(timeout=self.tick_seconds)
            self.wake.clear()

    def shutdown(self, wait: bool = True) -> None:
        with self._guard:
            events = list(self._cancel.values())
        for event in events:
            event.set()
        self._executor.shutdown(wait=wait)
