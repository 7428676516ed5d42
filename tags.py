"""
tags.py – Tag assignment store.

Holds the desired mapping from tag name to the movies assigned to it, which
is the single source of truth for what the reconciler should materialise.
Movies are referenced by canonical path.  The store also allocates the leaf
name each movie's symlink uses, keeping it stable for the life of the process.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from dataclasses import dataclass
from typing import Iterable

from errors import InvalidTagName

logger = logging.getLogger(__name__)

# Tag names are used verbatim as directory names, so they share the
# filesystem's single-segment limit.
MAX_TAG_BYTES = 255


@dataclass(frozen=True, order=True)
class Assignment:
    tag: str
    movie_path: str


def validate_tag(tag: str) -> str:
    """Return *tag* unchanged if it is usable as a tag directory name.

    Raises:
        InvalidTagName: If the name is empty, reserved, or not a single
            path segment.
    """
    if not isinstance(tag, str) or not tag:
        raise InvalidTagName("Tag name must be a non-empty string")
    if tag != tag.strip():
        raise InvalidTagName(f"Tag name {tag!r} has leading or trailing whitespace")
    if "/" in tag or "\0" in tag:
        raise InvalidTagName(f"Tag name {tag!r} must be a single path segment")
    if tag in (".", "..") or tag.startswith("."):
        raise InvalidTagName(f"Tag name {tag!r} is reserved")
    if len(tag.encode("utf-8")) > MAX_TAG_BYTES:
        raise InvalidTagName(f"Tag name {tag[:32]!r}... is too long")
    return tag


def _hashed_leaf(movie_path: str) -> str:
    """Disambiguated leaf name: ``"<stem> [<8 hex>]<ext>"``.

    The suffix depends only on the canonical path, so it is the same on
    every run.
    """
    base = os.path.basename(movie_path)
    digest = hashlib.sha1(movie_path.encode("utf-8")).hexdigest()[:8]
    stem, ext = os.path.splitext(base)
    if os.path.isdir(movie_path) or not stem:
        # Folder names such as "Heat (1995)" carry no extension
        stem, ext = base, ""
    return f"{stem} [{digest}]{ext}"


class TagStore:
    """In-memory tag → movies mapping with stable leaf-name allocation."""

    def __init__(self) -> None:
        self._tags: dict[str, set[str]] = {}
        self._leaves: dict[str, str] = {}
        self._leaf_owners: dict[str, str] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_tag_root(cls, tag_root: str) -> "TagStore":
        """Seed a store from the managed links already present on disk.

        Leaf names found on disk are adopted so that a restart does not
        rename existing links.  Dangling links are ignored; the next
        reconciliation pass removes them.
        """
        store = cls()
        store.load_from_disk(tag_root)
        return store

    def load_from_disk(self, tag_root: str) -> int:
        """Replace the store's contents with the links found under *tag_root*.

        Returns:
            The number of assignments loaded.
        """
        found: list[tuple[str, str, str]] = []
        try:
            with os.scandir(tag_root) as it:
                tag_entries = sorted(it, key=lambda e: e.name)
        except FileNotFoundError:
            tag_entries = []

        for tag_entry in tag_entries:
            if tag_entry.name.startswith(".") or not tag_entry.is_dir(follow_symlinks=False):
                continue
            try:
                validate_tag(tag_entry.name)
                with os.scandir(tag_entry.path) as it:
                    links = sorted(it, key=lambda e: e.name)
            except InvalidTagName:
                logger.warning("Ignoring tag directory with unusable name: %s", tag_entry.path)
                continue
            except OSError as exc:
                logger.warning("Cannot read tag directory %s: %s", tag_entry.path, exc)
                continue
            for link in links:
                if not link.is_symlink():
                    continue
                target = os.path.realpath(link.path)
                if os.path.exists(target):
                    found.append((tag_entry.name, link.name, target))

        with self._lock:
            self._tags.clear()
            self._leaves.clear()
            self._leaf_owners.clear()
            for tag, leaf, target in found:
                if target not in self._leaves and leaf not in self._leaf_owners:
                    self._leaves[target] = leaf
                    self._leaf_owners[leaf] = target
                self._tags.setdefault(tag, set()).add(target)
            # Targets whose on-disk leaf is owned by another movie
            for _, _, target in found:
                if target not in self._leaves:
                    self.leaf_name(target)

        logger.info("Loaded %d tag assignments from %s", len(found), tag_root)
        return len(found)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, tag: str, movie_path: str) -> None:
        validate_tag(tag)
        with self._lock:
            self._tags.setdefault(tag, set()).add(movie_path)
            self.leaf_name(movie_path)

    def remove(self, tag: str, movie_path: str) -> None:
        with self._lock:
            movies = self._tags.get(tag)
            if not movies:
                return
            movies.discard(movie_path)
            if not movies:
                del self._tags[tag]

    def toggle(self, tag: str, movie_path: str) -> bool:
        """Flip membership of *movie_path* in *tag*.

        Returns:
            ``True`` if the movie is now tagged, ``False`` if it was removed.
        """
        with self._lock:
            if movie_path in self._tags.get(tag, ()):
                self.remove(tag, movie_path)
                return False
            self.add(tag, movie_path)
            return True

    def replace(self, assignments: Iterable[Assignment]) -> None:
        """Replace every assignment with *assignments* (a front-end snapshot).

        All tag names are validated before anything changes.
        """
        new_tags: dict[str, set[str]] = {}
        for assignment in assignments:
            validate_tag(assignment.tag)
            new_tags.setdefault(assignment.tag, set()).add(assignment.movie_path)
        with self._lock:
            self._tags = new_tags
            for movies in new_tags.values():
                for movie_path in movies:
                    self.leaf_name(movie_path)

    def prune(self, existing_paths: Iterable[str]) -> list[Assignment]:
        """Drop assignments whose movie is no longer in the inventory.

        Returns:
            The pruned assignments, sorted.
        """
        existing = set(existing_paths)
        pruned: list[Assignment] = []
        with self._lock:
            for tag in list(self._tags):
                gone = self._tags[tag] - existing
                for movie_path in gone:
                    pruned.append(Assignment(tag, movie_path))
                self._tags[tag] -= gone
                if not self._tags[tag]:
                    del self._tags[tag]
        return sorted(pruned)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def tags(self) -> list[str]:
        with self._lock:
            return sorted(self._tags)

    def tags_for(self, movie_path: str) -> frozenset[str]:
        with self._lock:
            return frozenset(tag for tag, movies in self._tags.items() if movie_path in movies)

    def movies_for(self, tag: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._tags.get(tag, ()))

    def snapshot(self) -> frozenset[Assignment]:
        with self._lock:
            return frozenset(
                Assignment(tag, movie_path)
                for tag, movies in self._tags.items()
                for movie_path in movies
            )

    def leaf_name(self, movie_path: str) -> str:
        """Return the symlink leaf name for *movie_path*, allocating it once.

        The first movie to claim a base name keeps it; a later movie with the
        same base name gets a hash-suffixed name.
        """
        with self._lock:
            leaf = self._leaves.get(movie_path)
            if leaf is not None:
                return leaf

            leaf = os.path.basename(movie_path)
            if leaf in self._leaf_owners:
                leaf = _hashed_leaf(movie_path)
                logger.info(
                    "Leaf name collision for %s, using %r", movie_path, leaf
                )
            self._leaves[movie_path] = leaf
            self._leaf_owners[leaf] = movie_path
            return leaf

    def leaf_names(self) -> dict[str, str]:
        """Return a copy of the canonical-path → leaf-name allocation."""
        with self._lock:
            return dict(self._leaves)
