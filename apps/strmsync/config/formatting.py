"""
formatting.py — Output name formatting and sanitisation.

Produces media-server friendly base names for films and TV episodes. The
format is fixed so the same metadata always yields the same bytes.
"""

import re

from constants import UNSAFE_CHARS
from extraction import NameExtractionResult


def sanitise(name: str) -> str:
    """Remove characters that media servers don't allow in filenames."""
    name = UNSAFE_CHARS.sub("", name)
    name = re.sub(r"\s+", " ", name).strip()
    name = name.rstrip(". ")
    return name


def format_media_name(title: str, year: str | int | None) -> str:
    """Format a film name: Title (Year)."""
    title = sanitise(title)
    if year:
        return f"{title} ({year})"
    return title


def format_episode(title: str, season: int, episode: int) -> str:
    """Format an episode name: Show Name SXXEXX."""
    return f"{sanitise(title)} S{season:02d}E{episode:02d}"


def format_extraction(result: NameExtractionResult) -> str | None:
    """Base name for a successful extraction, or None if it can't be placed.

    TV results without both season and episode return None.
    """
    if not result.success or not sanitise(result.title or ""):
        return None
    if result.type == "tv":
        if result.season is None or result.episode is None:
            return None
        return format_episode(result.title, result.season, result.episode)
    if result.type == "movie":
        return format_media_name(result.title, result.year)
    return sanitise(result.title)
