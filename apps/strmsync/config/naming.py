"""
naming.py — Canonical output base names.

Order of operations for one filename:
  1. Task rename regex ("pattern|replacement"), one substitution pass
  2. Metadata extraction on the renamed name, if the task enables it
  3. Deterministic name from the extraction, else the renamed stem
"""

import logging
import re
import threading
import time
from typing import Callable

from classifier import split_ext
from constants import RETRY_ATTEMPTS, RETRY_BACKOFF
from extraction import (
    REASON_MALFORMED,
    REASON_TIMEOUT,
    REASON_UNAVAILABLE,
    ExtractionError,
    ExtractionMalformed,
    ExtractionTimeout,
    Extractor,
    NameExtractionResult,
)
from formatting import format_extraction
from retry import call_with_backoff
from tasks import TaskConfig

log = logging.getLogger("strmsync.naming")

# Java-style $1 group references in stored rename rules
_DOLLAR_GROUP = re.compile(r"\$(\d+)")


def apply_rename(name: str, rename_regex: str) -> str:
    """Apply a ``pattern|replacement`` rule; the raw name wins on no match."""
    if not rename_regex:
        return name
    pattern, _, replacement = rename_regex.partition("|")
    replacement = _DOLLAR_GROUP.sub(r"\\g<\1>", replacement)
    try:
        renamed, count = re.subn(pattern, replacement, name)
    except re.error as e:
        log.warning(f"  Invalid rename regex {rename_regex!r}: {e}")
        return name
    if count == 0 or not renamed.strip():
        return name
    return renamed


class NameResolver:
    """Resolves output base names for one run of one task.

    Extraction results are memoised per (name, hint) so a video and its
    companions trigger a single collaborator call.
    """

    def __init__(self, task: TaskConfig, extractor: Extractor | None = None,
                 max_retries: int = RETRY_ATTEMPTS, backoff: float = RETRY_BACKOFF,
                 sleep: Callable[[float], None] = time.sleep):
        self.task = task
        self.extractor = extractor
        self.max_retries = max_retries
        self.backoff = backoff
        self._sleep = sleep
        self._cache: dict[tuple[str, str | None], NameExtractionResult] = {}
        self._lock = threading.Lock()

    def resolve(self, raw_name: str,
                hint: str | None = None) -> tuple[str | None, NameExtractionResult | None]:
        """Return ``(base_name, extraction)``.

        ``base_name`` is None when extraction identified an episode it
        cannot place (tv without season/episode); the file is skipped.
        """
        renamed = apply_rename(raw_name, self.task.rename_regex)
        fallback = split_ext(renamed)[0]

        if not self.task.need_scrap or self.extractor is None:
            return fallback, None

        result = self._extract(renamed, hint)
        if not result.success:
            return fallback, result

        base = format_extraction(result)
        if base:
            return base, result
        if result.type == "tv":
            return None, result
        return fallback, result

    def _extract(self, name: str, hint: str | None) -> NameExtractionResult:
        key = (name, hint)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            result = call_with_backoff(
                lambda: self.extractor.extract(name, hint),
                retry_on=(ExtractionTimeout,),
                label=f"extract {name}",
                max_retries=self.max_retries,
                backoff=self.backoff,
                sleep=self._sleep,
            )
        except ExtractionMalformed as e:
            log.warning(f"  Extraction malformed for {name}: {e}")
            result = NameExtractionResult.failure(REASON_MALFORMED)
        except ExtractionTimeout as e:
            log.warning(f"  Extraction timed out for {name}: {e}")
            result = NameExtractionResult.failure(REASON_TIMEOUT)
        except ExtractionError as e:
            log.warning(f"  Extraction failed for {name}: {e}")
            result = NameExtractionResult.failure(REASON_UNAVAILABLE)

        with self._lock:
            self._cache[key] = result
        return result
