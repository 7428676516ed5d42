"""
inventory.py – Movie inventory scanning.

Produces a fresh, read-only snapshot of the titles found under the movie
root.  Each title is identified by its canonical path; nothing here is ever
persisted.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from typing import Iterable

from errors import IoError

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS: frozenset[str] = frozenset(
    {".mkv", ".mp4", ".avi", ".m4v", ".mov", ".wmv", ".ts", ".m2ts", ".mpg", ".mpeg", ".webm", ".iso"}
)

# Folders that mark a directory as a single disc-structured title.
DISC_FOLDERS: frozenset[str] = frozenset({"VIDEO_TS", "BDMV"})

POSTER_NAME = "poster.jpg"


@dataclass(frozen=True)
class MovieEntry:
    """One title on disk, identified by its canonical path."""

    path: str
    name: str
    poster_path: str | None = field(default=None, compare=False)

    @property
    def movie_id(self) -> str:
        """Stable hex id used to address the movie over HTTP."""
        return movie_id_for(self.path)


def movie_id_for(path: str) -> str:
    return hashlib.sha1(path.encode("utf-8")).hexdigest()


def _is_video(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in VIDEO_EXTENSIONS


def _looks_like_title(directory: str) -> bool:
    """Return ``True`` if *directory* directly holds a video or a disc structure."""
    try:
        with os.scandir(directory) as it:
            for entry in it:
                if entry.name in DISC_FOLDERS and entry.is_dir():
                    return True
                if _is_video(entry.name) and entry.is_file():
                    return True
    except OSError as exc:
        logger.debug("Cannot inspect %s: %s", directory, exc)
    return False


def _make_entry(canonical: str) -> MovieEntry:
    poster = os.path.join(canonical, POSTER_NAME)
    return MovieEntry(
        path=canonical,
        name=os.path.basename(canonical),
        poster_path=poster if os.path.isfile(poster) else None,
    )


def scan_movies(movie_root: str, recursive: bool = False) -> frozenset[MovieEntry]:
    """Scan *movie_root* and return one :class:`MovieEntry` per title.

    Symlinks are followed once and their resolved target becomes the
    identity.  Hidden entries and dangling links are skipped.

    Args:
        movie_root: The movie source directory.
        recursive: If True, directories that hold neither a video file nor a
            disc structure are treated as grouping folders and descended into.

    Returns:
        A frozenset of entries keyed (for equality) by canonical path.

    Raises:
        IoError: If *movie_root* cannot be listed.
    """
    root = os.path.realpath(movie_root)
    entries: dict[str, MovieEntry] = {}
    pending: list[str] = [root]
    visited: set[str] = set()

    while pending:
        directory = pending.pop()
        if directory in visited:
            continue
        visited.add(directory)

        try:
            with os.scandir(directory) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            if directory == root:
                raise IoError(f"Cannot read movie directory {movie_root!r}: {exc}") from exc
            logger.warning("Skipping unreadable folder %s: %s", directory, exc)
            continue

        for child in children:
            if child.name.startswith("."):
                continue

            canonical = os.path.realpath(child.path)
            if not os.path.exists(canonical):
                logger.debug("Skipping dangling link %s", child.path)
                continue

            if os.path.isdir(canonical):
                if recursive and not _looks_like_title(canonical):
                    pending.append(canonical)
                    continue
            elif not os.path.isfile(canonical):
                logger.debug("Skipping special file %s", child.path)
                continue
            elif recursive and directory != root and not _is_video(child.name):
                # Loose non-video files inside grouping folders are not titles
                continue

            entries.setdefault(canonical, _make_entry(canonical))

    logger.debug("Inventory of %s: %d titles", root, len(entries))
    return frozenset(entries.values())


def index_by_id(movies: Iterable[MovieEntry]) -> dict[str, MovieEntry]:
    """Map each movie's :attr:`MovieEntry.movie_id` to the entry."""
    return {movie.movie_id: movie for movie in movies}
