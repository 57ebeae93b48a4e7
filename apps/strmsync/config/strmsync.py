#!/usr/bin/env python3
"""
strmsync — OpenList → .strm mirror.

Mirrors directory trees served by OpenList into local .strm pointer files
for Emby/Jellyfin, on each task's cron schedule or on demand.

PocketBase holds the task and source records. No local state files.

Schema (PocketBase):
  strm_tasks:        id, name, path, openlist_config (relation), strm_path,
                     rename_regex, cron, need_scrap, is_increment,
                     last_exec_time, is_active, enable_openlist_refresh,
                     enable_emby_refresh, emby_server_url, emby_api_key,
                     emby_username, emby_password
  openlist_configs:  id, base_url, token, strm_base_url, is_active

Per task run:
  1. Walk the remote tree (lazily, one directory listing at a time)
  2. Pipeline each file: classify → eligibility → name → path → write
  3. Remove stale pointer files (complete full runs only)
  4. Advance last_exec_time, then fire OpenList/Emby refreshes

Environment variables:
  POCKETBASE_URL         — PocketBase API URL (default: http://pocketbase:8090)
  TASKS_COLLECTION       — task collection name (default: strm_tasks)
  OPENLIST_COLLECTION    — source collection name (default: openlist_configs)
  SCHEDULER_TICK_SECS    — seconds between cron checks (default: 30)
  MAX_CONCURRENT_TASKS   — tasks that may run at once (default: 4)
  PIPELINE_WORKERS       — files processed in parallel per run (default: 4)
  OPENLIST_TIMEOUT_SECS  — OpenList request timeout (default: 30)
  RETRY_ATTEMPTS         — retries for listing/extraction calls (default: 3)
  RETRY_BACKOFF_SECS     — base back-off, doubled per retry (default: 2)
  EXTRACTOR              — llm or rules (default: llm if AI_API_KEY is set)
  AI_BASE_URL            — OpenAI-compatible API base URL
  AI_API_KEY             — API key for the extraction model
  AI_MODEL               — model name (default: gpt-3.5-turbo)
  AI_TIMEOUT_SECS        — extraction request timeout (default: 30)
  AI_QPM_LIMIT           — extraction requests per minute (default: 60)
  AI_PROMPT              — replaces the built-in extraction prompt
  TMDB_API_KEY           — enables NFO/artwork scraping for need_scrap tasks
  TMDB_LANGUAGE          — metadata language (default: zh-CN)
  CLEANUP_ORPHANS        — delete stale pointer files on full runs (default: true)
  WEBHOOK_PORT           — port for the trigger webhook server (default: 8080)
"""

import logging
import threading
import time

from constants import (
    CLEANUP_ORPHANS,
    EXTRACTOR,
    MAX_CONCURRENT_TASKS,
    PIPELINE_WORKERS,
    POCKETBASE_URL,
    SCHEDULER_TICK,
    TMDB_API_KEY,
    WEBHOOK_PORT,
)
from extraction import build_extractor
from pb_client import PocketBaseClient
from runner import TaskRunner
from scraper import build_scraper
from scheduler import Scheduler

import webhook as webhook_mod

log = logging.getLogger("strmsync")


def wait_for_pocketbase(pb: PocketBaseClient) -> bool:
    """Wait for PocketBase to become available."""
    log.info(f"Waiting for PocketBase at {POCKETBASE_URL}...")
    for _ in range(60):
        if pb.health_check():
            log.info("PocketBase is ready")
            return True
        time.sleep(2)
    log.warning("PocketBase not available after 2 minutes")
    return False


def main():
    """Entry point — run the scheduler loop."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log.info("=" * 60)
    log.info("strmsync starting")
    log.info(f"  PocketBase:     {POCKETBASE_URL}")
    log.info(f"  Tick:           {SCHEDULER_TICK}s")
    log.info(f"  Task workers:   {MAX_CONCURRENT_TASKS}")
    log.info(f"  File workers:   {PIPELINE_WORKERS}")
    log.info(f"  Extraction:     {EXTRACTOR}")
    log.info(f"  TMDB scraping:  {'enabled' if TMDB_API_KEY else 'disabled (no TMDB_API_KEY)'}")
    log.info(f"  Orphan cleanup: {'enabled' if CLEANUP_ORPHANS else 'disabled'}")
    log.info(f"  Webhook port:   {WEBHOOK_PORT}")
    log.info("=" * 60)

    pb = PocketBaseClient(POCKETBASE_URL)
    wait_for_pocketbase(pb)

    runner = TaskRunner(pb, extractor=build_extractor(), scraper=build_scraper())
    scheduler = Scheduler(pb, runner.run)
    webhook_mod.start_server(scheduler, WEBHOOK_PORT)

    stop = threading.Event()
    try:
        scheduler.run_forever(stop)
    except KeyboardInterrupt:
        log.info("Shutting down")
    finally:
        stop.set()
        scheduler.shutdown(wait=True)


if __name__ == "__main__":
    main()
