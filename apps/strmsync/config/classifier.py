"""
classifier.py — File type classification and companion matching.

Classification is by extension only, case-insensitive, and total: anything
not in a known table is OTHER.
"""

from enum import Enum

from constants import (
    COMPANION_SEPARATORS,
    IMAGE_EXTENSIONS,
    METADATA_EXTENSIONS,
    SUBTITLE_EXTENSIONS,
    VIDEO_EXTENSIONS,
)
from openlist import RemoteFile


class FileType(Enum):
    VIDEO = "video"
    SUBTITLE = "subtitle"
    METADATA = "metadata"
    IMAGE = "image"
    OTHER = "other"


_TABLES = (
    (VIDEO_EXTENSIONS, FileType.VIDEO),
    (SUBTITLE_EXTENSIONS, FileType.SUBTITLE),
    (METADATA_EXTENSIONS, FileType.METADATA),
    (IMAGE_EXTENSIONS, FileType.IMAGE),
)

COMPANION_TYPES = {FileType.SUBTITLE, FileType.METADATA}


def split_ext(filename: str) -> tuple[str, str]:
    """Split ``name.ext`` into ``("name", ".ext")``. Dot-files have no extension."""
    dot = filename.rfind(".")
    if dot <= 0:
        return filename, ""
    return filename[:dot], filename[dot:]


def classify(filename: str) -> FileType:
    if filename.startswith("."):
        return FileType.OTHER
    ext = split_ext(filename)[1].lower()
    for extensions, file_type in _TABLES:
        if ext in extensions:
            return file_type
    return FileType.OTHER


def find_video_sibling(companion: RemoteFile,
                       siblings: list[RemoteFile]) -> tuple[RemoteFile, str] | None:
    """Find the video a subtitle/NFO belongs to.

    Returns ``(video, suffix)`` where ``suffix`` is the part of the
    companion's name after the video stem (``Movie.chs.srt`` matched to
    ``Movie.mkv`` gives ``.chs.srt``). The longest matching stem wins.
    """
    best: tuple[RemoteFile, str] | None = None
    best_len = -1
    for video in siblings:
        if video.is_dir or classify(video.name) is not FileType.VIDEO:
            continue
        stem = split_ext(video.name)[0]
        name = companion.name
        if not name.startswith(stem) or len(stem) <= best_len:
            continue
        rest = name[len(stem):]
        if rest[:1] in COMPANION_SEPARATORS:
            best = (video, rest)
            best_len = len(stem)
    return best
