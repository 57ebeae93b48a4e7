"""
constants.py — Shared configuration and constants for strmsync.

All environment variables, extension tables, and regex patterns that are
used across multiple modules are centralised here.
"""

import os
import re


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


# ---------------------------------------------------------------------------
# Environment-variable configuration
# ---------------------------------------------------------------------------

POCKETBASE_URL = os.environ.get("POCKETBASE_URL", "http://pocketbase:8090")
TASKS_COLLECTION = os.environ.get("TASKS_COLLECTION", "strm_tasks")
OPENLIST_COLLECTION = os.environ.get("OPENLIST_COLLECTION", "openlist_configs")

# Scheduler
SCHEDULER_TICK = int(os.environ.get("SCHEDULER_TICK_SECS", "30"))
MAX_CONCURRENT_TASKS = int(os.environ.get("MAX_CONCURRENT_TASKS", "4"))

# Pipeline
PIPELINE_WORKERS = int(os.environ.get("PIPELINE_WORKERS", "4"))
CLEANUP_ORPHANS = _env_bool("CLEANUP_ORPHANS", "true")

# OpenList
OPENLIST_TIMEOUT = int(os.environ.get("OPENLIST_TIMEOUT_SECS", "30"))
RETRY_ATTEMPTS = int(os.environ.get("RETRY_ATTEMPTS", "3"))
RETRY_BACKOFF = float(os.environ.get("RETRY_BACKOFF_SECS", "2"))

# Name extraction
AI_BASE_URL = os.environ.get("AI_BASE_URL", "https://api.openai.com/v1")
AI_API_KEY = os.environ.get("AI_API_KEY", "")
AI_MODEL = os.environ.get("AI_MODEL", "gpt-3.5-turbo")
AI_TIMEOUT = int(os.environ.get("AI_TIMEOUT_SECS", "30"))
AI_QPM_LIMIT = int(os.environ.get("AI_QPM_LIMIT", "60"))
AI_PROMPT = os.environ.get("AI_PROMPT", "")
EXTRACTOR = os.environ.get("EXTRACTOR", "llm" if AI_API_KEY else "rules").lower()

# TMDB scraping (tasks with need_scrap; disabled without an API key)
TMDB_API_KEY = os.environ.get("TMDB_API_KEY", "")
TMDB_BASE = os.environ.get("TMDB_BASE_URL", "https://api.themoviedb.org/3")
TMDB_IMAGE_BASE = os.environ.get("TMDB_IMAGE_BASE_URL", "https://image.tmdb.org/t/p")
TMDB_LANGUAGE = os.environ.get("TMDB_LANGUAGE", "zh-CN")
POSTER_SIZE = "w500"
BACKDROP_SIZE = "w1280"

# Webhook
WEBHOOK_PORT = int(os.environ.get("WEBHOOK_PORT", "8080"))

USER_AGENT = "strmsync/1.0"

# ---------------------------------------------------------------------------
# Extension tables (used by the classifier and the rule-based extractor)
# ---------------------------------------------------------------------------

VIDEO_EXTENSIONS = {
    ".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".webm", ".m4v",
    ".m2ts", ".ts", ".rmvb", ".rm", ".3gp", ".mpeg", ".mpg", ".vob",
}

SUBTITLE_EXTENSIONS = {".srt", ".ass", ".ssa", ".vtt", ".sub", ".idx", ".sup"}

METADATA_EXTENSIONS = {".nfo"}

IMAGE_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".webp", ".bmp", ".gif", ".tif", ".tiff",
}

STRM_SUFFIX = ".strm"

# ---------------------------------------------------------------------------
# Compiled regex patterns
# ---------------------------------------------------------------------------

# Characters that media servers don't allow in filenames
UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*]')

# S01E02 style markers, used when decomposing legacy extraction filenames
EPISODE_MARKER = re.compile(r'[Ss](\d{1,2})[\s._-]*[Ee](\d{1,3})')

# "(2010)"; a bare number may be part of the title ("Blade Runner 2049")
YEAR_MARKER = re.compile(r"\((\d{4})\)")

# Separators between a video stem and a companion's language/flag suffix
COMPANION_SEPARATORS = (".", "-", "_", " ")
