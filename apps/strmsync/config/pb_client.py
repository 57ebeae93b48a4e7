"""
pb_client.py — PocketBase REST API client.

Task and OpenList source records live in PocketBase; strmsync only reads
them and writes back ``last_exec_time``. Failures are logged and reported
as None/False so one bad request never takes the scheduler down.
"""

import logging

import requests

from constants import OPENLIST_COLLECTION, TASKS_COLLECTION
from tasks import OpenListConfig, TaskConfig

log = logging.getLogger("strmsync")


class PocketBaseClient:
    """Lightweight PocketBase REST API client for task records."""

    def __init__(self, base_url: str, tasks_collection: str = TASKS_COLLECTION,
                 openlist_collection: str = OPENLIST_COLLECTION):
        self.base_url = base_url.rstrip("/")
        self.api = f"{self.base_url}/api"
        self.tasks_collection = tasks_collection
        self.openlist_collection = openlist_collection
        self._session = requests.Session()

    def _url(self, collection: str, record_id: str = "") -> str:
        url = f"{self.api}/collections/{collection}/records"
        if record_id:
            url += f"/{record_id}"
        return url

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskConfig | None:
        """Look up a task by PocketBase ID."""
        try:
            resp = self._session.get(self._url(self.tasks_collection, task_id), timeout=5)
            resp.raise_for_status()
            return TaskConfig.from_record(resp.json())
        except Exception as e:
            log.warning(f"PB: task get failed: {e}")
        return None

    def list_active_tasks(self) -> list[TaskConfig] | None:
        """Fetch all active tasks; None if the store could not be read."""
        records = self._paginate(self.tasks_collection, filter_str="is_active = true")
        if records is None:
            return None
        tasks: list[TaskConfig] = []
        for record in records:
            try:
                tasks.append(TaskConfig.from_record(record))
            except (KeyError, TypeError, ValueError) as e:
                log.warning(f"PB: skipping malformed task record {record.get('id')}: {e}")
        return tasks

    def update_task(self, record_id: str, **fields) -> dict | None:
        """Update fields on a task record."""
        try:
            resp = self._session.patch(
                self._url(self.tasks_collection, record_id), json=fields, timeout=5,
            )
            resp.raise_for_status()
            return resp.json()
        except Exception as e:
            log.warning(f"PB: update task failed: {e}")
        return None

    # ------------------------------------------------------------------
    # OpenList sources
    # ------------------------------------------------------------------

    def get_openlist_config(self, record_id: str) -> OpenListConfig | None:
        """Look up an OpenList source by PocketBase ID."""
        try:
            resp = self._session.get(
                self._url(self.openlist_collection, record_id), timeout=5,
            )
            resp.raise_for_status()
            return OpenListConfig.from_record(resp.json())
        except Exception as e:
            log.warning(f"PB: openlist config get failed: {e}")
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _paginate(self, collection: str, filter_str: str = "",
                  per_page: int = 200) -> list[dict] | None:
        """All records of ``collection`` matching ``filter_str``, oldest first.

        None if any page fails, so callers never act on a partial task list.
        """
        params = {"perPage": per_page, "sort": "created"}
        if filter_str:
            params["filter"] = filter_str

        records: list[dict] = []
        page, total_pages = 1, 1
        while page <= total_pages:
            try:
                resp = self._session.get(
                    self._url(collection), params={**params, "page": page}, timeout=10,
                )
                resp.raise_for_status()
                body = resp.json()
            except (requests.exceptions.RequestException, ValueError) as e:
                log.warning(f"PB: {collection} page {page} unavailable: {e}")
                return None
            records.extend(body.get("items") or [])
            total_pages = body.get("totalPages") or 1
            page += 1
        return records

    def health_check(self) -> bool:
        """True once PocketBase answers its health endpoint."""
        try:
            return self._session.get(f"{self.api}/health", timeout=5).ok
        except requests.exceptions.RequestException:
            return False
