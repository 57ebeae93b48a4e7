"""
refresh.py — Post-run refresh notifications.

After a run that produced output, optionally asks OpenList to rescan the
task's remote path and/or Emby to rescan its libraries. Both calls are
best-effort: failures are logged and reported, never raised.
"""

import logging
from dataclasses import dataclass
from typing import Callable

import requests

from constants import USER_AGENT
from openlist import OpenListError
from tasks import TaskConfig

log = logging.getLogger("strmsync.refresh")


class RefreshFailure(Exception):
    """A refresh endpoint rejected the request or could not be reached."""


@dataclass
class RefreshResult:
    target: str
    ok: bool
    error: str = ""


def trigger_emby_refresh(task: TaskConfig, timeout: int = 10) -> None:
    """POST /emby/Library/Refresh on the task's Emby server."""
    if not task.emby_server_url:
        raise RefreshFailure("emby_server_url not set")
    auth = None
    if task.emby_username:
        auth = (task.emby_username, task.emby_password)
    try:
        resp = requests.post(
            f"{task.emby_server_url.rstrip('/')}/emby/Library/Refresh",
            params={"api_key": task.emby_api_key} if task.emby_api_key else None,
            headers={"User-Agent": USER_AGENT},
            auth=auth,
            timeout=timeout,
        )
        resp.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise RefreshFailure(f"Emby refresh failed: {e}") from e
    log.info(f"  Emby refresh triggered for {task.strm_path}")


class RefreshNotifier:
    """Runs the enabled refresh calls for a finished task run.

    ``openlist_refresh`` is the bound ``OpenListClient.refresh`` of the
    run's source, or None when the task has no usable source.
    """

    def __init__(self, emby_refresh: Callable[[TaskConfig], None] = trigger_emby_refresh):
        self.emby_refresh = emby_refresh

    def notify(self, task: TaskConfig,
               openlist_refresh: Callable[[str], None] | None) -> list[RefreshResult]:
        results: list[RefreshResult] = []

        if task.enable_openlist_refresh:
            if openlist_refresh is None:
                results.append(self._failed("openlist", "no OpenList source configured"))
            else:
                try:
                    openlist_refresh(task.path)
                    results.append(RefreshResult("openlist", True))
                except OpenListError as e:
                    results.append(self._failed("openlist", str(e)))

        if task.enable_emby_refresh:
            try:
                self.emby_refresh(task)
                results.append(RefreshResult("emby", True))
            except RefreshFailure as e:
                results.append(self._failed("emby", str(e)))

        return results

    @staticmethod
    def _failed(target: str, error: str) -> RefreshResult:
        log.warning(f"  {target} refresh failed: {error}")
        return RefreshResult(target, False, error)
