"""
cleanup.py — Remove pointer files whose remote source has gone.

Only runs after a complete, non-incremental run: at that point every live
remote video has claimed its output path, so any other .strm under the
output root is stale. Files sharing a stale pointer's base name (subtitles,
NFO, artwork written by the media server) go with it.
"""

import logging
from pathlib import Path

from constants import COMPANION_SEPARATORS, STRM_SUFFIX

log = logging.getLogger("strmsync.cleanup")


def _belongs_to(candidate: Path, stem: str) -> bool:
    name = candidate.name
    return name.startswith(stem) and name[len(stem):len(stem) + 1] in COMPANION_SEPARATORS


def _prune_empty_dirs(directory: Path) -> None:
    """Remove empty directories bottom-up (the root itself is kept)."""
    if not directory.exists():
        return
    for dirpath in sorted(directory.rglob("*"), reverse=True):
        if dirpath.is_dir() and not any(dirpath.iterdir()):
            dirpath.rmdir()


def remove_orphans(output_root: Path, produced: set[Path]) -> list[Path]:
    """Delete stale pointer files (and their companions) under ``output_root``.

    Returns the removed paths.
    """
    if not output_root.exists():
        return []

    removed: list[Path] = []
    for strm in sorted(output_root.rglob(f"*{STRM_SUFFIX}")):
        if strm in produced or not strm.is_file():
            continue
        stem = strm.name[:-len(STRM_SUFFIX)]
        live_stems = [p.name[:-len(STRM_SUFFIX)] for p in produced
                      if p.parent == strm.parent and p.name.endswith(STRM_SUFFIX)]
        for sibling in sorted(strm.parent.iterdir()):
            if sibling in produced or not sibling.is_file() or sibling.suffix == STRM_SUFFIX:
                continue
            if any(_belongs_to(sibling, live) for live in live_stems):
                continue
            if _belongs_to(sibling, stem):
                sibling.unlink()
                removed.append(sibling)
        strm.unlink()
        removed.append(strm)
        log.info(f"  ✗ {strm.relative_to(output_root)}")

    _prune_empty_dirs(output_root)
    if removed:
        log.info(f"  Removed {len(removed)} stale file(s)")
    return removed
