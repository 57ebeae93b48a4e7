"""
tasks.py — Task and OpenList source configuration records.

Both are read from the record store as plain dicts and converted here.
Field names in the store are snake_case; the camelCase names of older
exports are accepted too.
"""

from dataclasses import dataclass


def _pick(record: dict, *keys: str, default=None):
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return default


def _as_bool(value, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _as_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class TaskConfig:
    """One scheduled synchronisation job.

    ``last_exec_time`` is the only field a run mutates.
    """
    id: str
    name: str
    path: str
    strm_path: str
    openlist_config_id: str = ""
    rename_regex: str = ""
    cron: str = ""
    need_scrap: bool = False
    is_increment: bool = True
    last_exec_time: int = 0
    is_active: bool = True
    enable_openlist_refresh: bool = False
    enable_emby_refresh: bool = False
    emby_server_url: str = ""
    emby_api_key: str = ""
    emby_username: str = ""
    emby_password: str = ""

    @classmethod
    def from_record(cls, record: dict) -> "TaskConfig":
        return cls(
            id=str(record["id"]),
            name=_pick(record, "name", "task_name", "taskName", default=str(record["id"])),
            path=_pick(record, "path", default="/"),
            strm_path=_pick(record, "strm_path", "strmPath", default=""),
            openlist_config_id=str(_pick(record, "openlist_config", "openlist_config_id",
                                         "openlistConfigId", default="")),
            rename_regex=_pick(record, "rename_regex", "renameRegex", default=""),
            cron=_pick(record, "cron", default=""),
            need_scrap=_as_bool(_pick(record, "need_scrap", "needScrap")),
            is_increment=_as_bool(_pick(record, "is_increment", "isIncrement"), default=True),
            last_exec_time=_as_int(_pick(record, "last_exec_time", "lastExecTime")),
            is_active=_as_bool(_pick(record, "is_active", "isActive"), default=True),
            enable_openlist_refresh=_as_bool(
                _pick(record, "enable_openlist_refresh", "enableOpenlistRefresh")),
            enable_emby_refresh=_as_bool(
                _pick(record, "enable_emby_refresh", "enableEmbyRefresh")),
            emby_server_url=_pick(record, "emby_server_url", "embyServerUrl", default=""),
            emby_api_key=_pick(record, "emby_api_key", "embyApiKey", default=""),
            emby_username=_pick(record, "emby_username", "embyUsername", default=""),
            emby_password=_pick(record, "emby_password", "embyPassword", default=""),
        )


@dataclass
class OpenListConfig:
    """Connection details for one OpenList server."""
    id: str
    base_url: str
    token: str = ""
    strm_base_url: str = ""
    is_active: bool = True

    @classmethod
    def from_record(cls, record: dict) -> "OpenListConfig":
        return cls(
            id=str(record["id"]),
            base_url=_pick(record, "base_url", "baseUrl", default="").rstrip("/"),
            token=_pick(record, "token", default=""),
            strm_base_url=_pick(record, "strm_base_url", "strmBaseUrl", default=""),
            is_active=_as_bool(_pick(record, "is_active", "isActive"), default=True),
        )
