"""
reconcile.py – Filesystem reconciliation of the tag directory tree.

Makes the symlink tree under the tag root exactly match the tag assignment
store.  A pass runs in four strictly sequential phases:

1. Re-scan the movie inventory and prune assignments whose movie vanished.
2. Compute the desired link set from the store.
3. Observe the links actually present under the tag root (two levels deep).
4. Diff both snapshots and apply the minimal set of directory / link
   operations.

The diff (:func:`desired_links`, :func:`plan_changes`) works on plain frozen
snapshots and never touches the filesystem, so it can be tested in memory.
Applying is partial-failure tolerant: each failed operation is recorded and
the pass carries on with the rest.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from errors import IoError, UnexpectedContent
from inventory import scan_movies
from tags import Assignment, TagStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Snapshot types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class ManagedLink:
    """One symlink ``tag_root/<tag>/<leaf> -> target``."""

    tag: str
    leaf: str
    target: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.tag, self.leaf)

    def path(self, tag_root: str) -> str:
        return os.path.join(tag_root, self.tag, self.leaf)


@dataclass(frozen=True)
class Failure:
    """A single recorded failure: error kind, subject, and message."""

    kind: str
    subject: str
    message: str

    @classmethod
    def from_exc(cls, subject: str, exc: BaseException) -> "Failure":
        kind = type(exc).__name__
        if isinstance(exc, OSError):
            kind = IoError.__name__
        return cls(kind=kind, subject=subject, message=str(exc))

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "subject": self.subject, "message": self.message}


@dataclass(frozen=True)
class Observation:
    """What is currently on disk under the tag root."""

    links: frozenset[ManagedLink] = frozenset()
    dirs: frozenset[str] = frozenset()
    stray_links: frozenset[str] = frozenset()
    blocked: frozenset[str] = frozenset()
    anomalies: tuple[Failure, ...] = ()


@dataclass(frozen=True)
class LinkPlan:
    """Operations needed to turn the observed tree into the desired one."""

    remove_stray: tuple[str, ...] = ()
    create_dirs: tuple[str, ...] = ()
    remove: tuple[ManagedLink, ...] = ()
    create: tuple[ManagedLink, ...] = ()
    remove_dirs: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not (
            self.remove_stray or self.create_dirs or self.remove or self.create or self.remove_dirs
        )

    @property
    def operation_count(self) -> int:
        return (
            len(self.remove_stray)
            + len(self.create_dirs)
            + len(self.remove)
            + len(self.create)
            + len(self.remove_dirs)
        )


@dataclass
class LinkReport:
    """Outcome of one filesystem reconciliation pass."""

    created: list[ManagedLink] = field(default_factory=list)
    removed: list[ManagedLink] = field(default_factory=list)
    created_dirs: list[str] = field(default_factory=list)
    removed_dirs: list[str] = field(default_factory=list)
    removed_stray: list[str] = field(default_factory=list)
    pruned: list[Assignment] = field(default_factory=list)
    failures: list[Failure] = field(default_factory=list)
    anomalies: list[Failure] = field(default_factory=list)
    live_tags: frozenset[str] = frozenset()
    known_tags: frozenset[str] = frozenset()
    partial: bool = False

    @property
    def mutations(self) -> int:
        return (
            len(self.created)
            + len(self.removed)
            + len(self.created_dirs)
            + len(self.removed_dirs)
            + len(self.removed_stray)
        )

    @property
    def ok(self) -> bool:
        return not (self.failures or self.anomalies or self.partial)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": [{"tag": l.tag, "name": l.leaf, "target": l.target} for l in self.created],
            "removed": [{"tag": l.tag, "name": l.leaf, "target": l.target} for l in self.removed],
            "created_dirs": list(self.created_dirs),
            "removed_dirs": list(self.removed_dirs),
            "removed_stray": list(self.removed_stray),
            "pruned": [{"tag": a.tag, "movie": a.movie_path} for a in self.pruned],
            "failures": [f.to_dict() for f in self.failures],
            "anomalies": [f.to_dict() for f in self.anomalies],
            "live_tags": sorted(self.live_tags),
            "partial": self.partial,
        }


# ---------------------------------------------------------------------------
# Pure diff
# ---------------------------------------------------------------------------


def desired_links(
    assignments: Iterable[Assignment],
    leaf_names: Mapping[str, str],
    inventory_paths: Iterable[str],
) -> frozenset[ManagedLink]:
    """Compute the desired link set from the store and the current inventory.

    Assignments whose movie is not in *inventory_paths* produce no link.

    Args:
        assignments: The store snapshot.
        leaf_names: Canonical path → allocated leaf name.
        inventory_paths: Canonical paths of the movies currently on disk.

    Returns:
        A frozenset of :class:`ManagedLink`.
    """
    present = set(inventory_paths)
    return frozenset(
        ManagedLink(a.tag, leaf_names.get(a.movie_path, os.path.basename(a.movie_path)), a.movie_path)
        for a in assignments
        if a.movie_path in present
    )


def plan_changes(desired: frozenset[ManagedLink], observed: Observation) -> LinkPlan:
    """Diff *desired* against *observed* and return the operations to apply.

    A link whose ``(tag, leaf)`` matches but whose target differs shows up
    in both ``remove`` and ``create``.  Tags blocked by unexpected content
    are left untouched.
    """
    blocked = observed.blocked
    wanted = {link for link in desired if link.tag not in blocked}
    present = {link for link in observed.links if link.tag not in blocked}

    wanted_tags = {link.tag for link in wanted}
    return LinkPlan(
        remove_stray=tuple(sorted(observed.stray_links)),
        create_dirs=tuple(sorted(wanted_tags - observed.dirs)),
        remove=tuple(sorted(present - wanted)),
        create=tuple(sorted(wanted - present)),
        remove_dirs=tuple(sorted(observed.dirs - wanted_tags - blocked)),
    )


# ---------------------------------------------------------------------------
# Observation
# ---------------------------------------------------------------------------


def _link_target(path: str) -> str:
    raw = os.readlink(path)
    if not os.path.isabs(raw):
        raw = os.path.join(os.path.dirname(path), raw)
    return os.path.normpath(raw)


def observe_tag_root(tag_root: str) -> Observation:
    """Enumerate what is on disk under *tag_root*, two levels deep.

    Symlinks directly in the tag root are stray and will be removed.  Regular
    files in the tag root, and anything other than a symlink inside a tag
    directory, are reported as :class:`~errors.UnexpectedContent`; the tag
    owning such content is blocked for the rest of the pass.

    Raises:
        IoError: If the tag root itself cannot be listed.
    """
    try:
        with os.scandir(tag_root) as it:
            top = sorted(it, key=lambda e: e.name)
    except OSError as exc:
        raise IoError(f"Cannot read tag directory {tag_root!r}: {exc}") from exc

    links: set[ManagedLink] = set()
    dirs: set[str] = set()
    stray: set[str] = set()
    blocked: set[str] = set()
    anomalies: list[Failure] = []

    for entry in top:
        if entry.name.startswith("."):
            continue

        if entry.is_symlink():
            stray.add(entry.path)
            continue

        if not entry.is_dir(follow_symlinks=False):
            anomalies.append(Failure(
                UnexpectedContent.__name__,
                entry.path,
                "Regular file in tag directory root",
            ))
            blocked.add(entry.name)
            continue

        dirs.add(entry.name)
        try:
            with os.scandir(entry.path) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            anomalies.append(Failure.from_exc(entry.path, exc))
            blocked.add(entry.name)
            continue

        for child in children:
            if child.is_symlink():
                try:
                    links.add(ManagedLink(entry.name, child.name, _link_target(child.path)))
                except OSError as exc:
                    anomalies.append(Failure.from_exc(child.path, exc))
                    blocked.add(entry.name)
            else:
                anomalies.append(Failure(
                    UnexpectedContent.__name__,
                    child.path,
                    "Only managed symlinks may live in a tag directory",
                ))
                blocked.add(entry.name)

    for anomaly in anomalies:
        logger.warning("Tag directory anomaly at %s: %s", anomaly.subject, anomaly.message)

    return Observation(
        links=frozenset(links),
        dirs=frozenset(dirs),
        stray_links=frozenset(stray),
        blocked=frozenset(blocked),
        anomalies=tuple(anomalies),
    )


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class Reconciler:
    """Runs filesystem reconciliation passes for one movie root / tag root pair."""

    def __init__(
        self,
        movie_root: str,
        tag_root: str,
        *,
        recursive: bool = False,
        max_workers: int = 4,
    ) -> None:
        self.movie_root = movie_root
        self.tag_root = tag_root
        self.recursive = recursive
        self.max_workers = max(1, int(max_workers))

    def run(self, store: TagStore, stop_event: threading.Event | None = None) -> LinkReport:
        """Run one snapshot / diff / apply pass.

        Args:
            store: The tag assignment store.  Assignments whose movie has
                vanished are pruned from it.
            stop_event: When set mid-pass, no new operations are started and
                the report is marked partial.

        Returns:
            The :class:`LinkReport` for this pass.

        Raises:
            IoError: If the movie root or tag root cannot be read.
        """
        stop_event = stop_event or threading.Event()
        report = LinkReport()

        inventory = scan_movies(self.movie_root, recursive=self.recursive)
        paths = {movie.path for movie in inventory}
        report.pruned = store.prune(paths)
        for assignment in report.pruned:
            logger.info("Pruned assignment %r -> %s (movie is gone)", assignment.tag, assignment.movie_path)

        desired = desired_links(store.snapshot(), store.leaf_names(), paths)
        observed = observe_tag_root(self.tag_root)
        report.anomalies.extend(observed.anomalies)
        report.known_tags = frozenset({l.tag for l in desired} | observed.dirs)

        plan = plan_changes(desired, observed)
        if plan.empty:
            logger.debug("Tag tree at %s already up to date", self.tag_root)
        else:
            logger.info(
                "Reconciling %s: %d to create, %d to remove",
                self.tag_root, len(plan.create), len(plan.remove),
            )
            self._apply(plan, report, stop_event)

        report.live_tags = self.live_tags(desired)
        return report

    def live_tags(self, desired: frozenset[ManagedLink]) -> frozenset[str]:
        """Tags that, re-read from disk, carry at least one valid desired link."""
        try:
            observed = observe_tag_root(self.tag_root)
        except IoError:
            logger.exception("Cannot re-read %s", self.tag_root)
            return frozenset()
        valid = (observed.links & desired)
        return frozenset(
            link.tag for link in valid
            if link.tag not in observed.blocked and os.path.exists(link.target)
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _apply(self, plan: LinkPlan, report: LinkReport, stop_event: threading.Event) -> None:
        # Stray links first: one may occupy the name of a tag directory.
        for path in plan.remove_stray:
            if stop_event.is_set():
                report.partial = True
                return
            if self._guarded(path, self._remove_link_path, path, report):
                report.removed_stray.append(path)
                logger.info("Removed stray link: %s", path)

        for tag in plan.create_dirs:
            if stop_event.is_set():
                report.partial = True
                return
            tag_dir = os.path.join(self.tag_root, tag)
            if self._guarded(tag_dir, os.mkdir, tag_dir, report):
                report.created_dirs.append(tag)
                logger.info("Created tag directory: %s", tag_dir)

        # Links whose directory could not be created were already reported.
        failed_dirs = {f.subject for f in report.failures}
        removals = self._run_concurrently(plan.remove, self._remove_link, stop_event, report)
        report.removed.extend(removals)

        # A stale link that could not be removed still occupies its slot.
        occupied = {link.key for link in plan.remove} - {link.key for link in removals}
        creations = [
            link for link in plan.create
            if os.path.join(self.tag_root, link.tag) not in failed_dirs
            and link.key not in occupied
        ]
        report.created.extend(self._run_concurrently(creations, self._create_link, stop_event, report))

        for tag in plan.remove_dirs:
            if stop_event.is_set():
                report.partial = True
                return
            tag_dir = os.path.join(self.tag_root, tag)
            if self._guarded(tag_dir, os.rmdir, tag_dir, report):
                report.removed_dirs.append(tag)
                logger.info("Removed empty tag directory: %s", tag_dir)

        if stop_event.is_set():
            report.partial = True

    def _guarded(self, subject: str, func: Callable[..., Any], arg: Any, report: LinkReport) -> bool:
        try:
            func(arg)
        except (OSError, UnexpectedContent) as exc:
            failure = Failure.from_exc(subject, exc)
            report.failures.append(failure)
            logger.error("%s failed for %s: %s", failure.kind, subject, exc)
            return False
        return True

    def _run_concurrently(
        self,
        links: Sequence[ManagedLink],
        func: Callable[[ManagedLink], None],
        stop_event: threading.Event,
        report: LinkReport,
    ) -> list[ManagedLink]:
        """Run *func* for each link on a bounded pool; return the successes.

        Queued operations that have not started when *stop_event* is set are
        skipped.
        """
        if not links:
            return []

        def _task(link: ManagedLink) -> tuple[ManagedLink, BaseException | None, bool]:
            if stop_event.is_set():
                return link, None, False
            try:
                func(link)
            except (OSError, UnexpectedContent) as exc:
                return link, exc, True
            return link, None, True

        done: list[ManagedLink] = []
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reconcile") as pool:
            results = list(pool.map(_task, links))

        for link, exc, started in results:
            if not started:
                report.partial = True
            elif exc is not None:
                failure = Failure.from_exc(link.path(self.tag_root), exc)
                report.failures.append(failure)
                logger.error("%s failed for %s: %s", failure.kind, failure.subject, exc)
            else:
                done.append(link)
        return done

    def _create_link(self, link: ManagedLink) -> None:
        path = link.path(self.tag_root)
        os.symlink(link.target, path)
        logger.info("Created symlink: %s -> %s", path, link.target)

    def _remove_link(self, link: ManagedLink) -> None:
        self._remove_link_path(link.path(self.tag_root))
        logger.info("Removed symlink: %s (was -> %s)", link.path(self.tag_root), link.target)

    @staticmethod
    def _remove_link_path(path: str) -> None:
        # Re-check right before unlinking; real files are never deleted.
        if not os.path.islink(path):
            raise UnexpectedContent(f"{path} is no longer a symlink")
        os.unlink(path)


def cleanup_broken_links(tag_root: str) -> int:
    """Scan *tag_root* for broken symlinks and remove them.

    Args:
        tag_root: The tag directory root.

    Returns:
        The number of broken symlinks deleted.
    """
    if not tag_root or not os.path.isdir(tag_root):
        logger.warning("Cleanup aborted: invalid tag path %r", tag_root)
        return 0

    deleted_count = 0
    for root, dirs, files in os.walk(tag_root):
        for name in files + dirs:
            path = os.path.join(root, name)
            if os.path.islink(path) and not os.path.exists(path):
                try:
                    os.unlink(path)
                    logger.info("Deleted broken symlink: %s", path)
                    deleted_count += 1
                except OSError as exc:
                    logger.error("Error deleting broken symlink %s: %s", path, exc)

    return deleted_count
