"""
engine.py – Reconciliation cycles and the trigger interface.

A cycle is one filesystem reconciliation pass followed by one library
visibility pass.  The visibility pass only ever sees tags whose directory
already holds a live link, so the account never sees a library before its
content exists.

Only one cycle runs at a time per ``(tag root, account)``.  A trigger that
arrives while a cycle is running does not start a parallel pass: it is folded
into the next cycle, which starts as soon as the running one ends and covers
every trigger queued in the meantime.  Engines for different accounts on
the same tag root share one store and take turns writing the tree.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Iterable

from config import server_configured, validate_paths
from errors import GatewayError, TaggerError
from jellyfin import JellyfinGateway
from reconcile import LinkReport, Reconciler, cleanup_broken_links
from retry import RetryConfig
from tags import Assignment, TagStore
from visibility import GrantReport, ServerGateway, VisibilitySynchronizer, visible_tags

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Complete outcome of one reconcile-and-sync cycle."""

    status: str
    message: str = ""
    links: LinkReport | None = None
    grants: GrantReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "links": self.links.to_dict() if self.links is not None else None,
            "grants": self.grants.to_dict() if self.grants is not None else None,
        }


class TagEngine:
    """Owns the tag store and runs serialized reconcile-and-sync cycles."""

    def __init__(
        self,
        config: dict[str, Any],
        store: TagStore | None = None,
        gateway: ServerGateway | None = None,
        fs_lock: threading.Lock | None = None,
    ) -> None:
        self.movie_root, self.tag_root = validate_paths(config)
        self.config = config
        self.store = store if store is not None else TagStore.from_tag_root(self.tag_root)
        self._gateway = gateway

        self._cond = threading.Condition()
        self._running = False
        self._requested = 0
        self._completed = 0
        self._last_report: CycleReport | None = None
        self._stop = threading.Event()
        # Shared by every engine writing the same tag root
        self._fs_lock = fs_lock if fs_lock is not None else threading.Lock()

    def __repr__(self) -> str:
        return f"TagEngine(movie_root={self.movie_root!r}, tag_root={self.tag_root!r})"

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def update_config(self, config: dict[str, Any]) -> None:
        self.config = config

    @property
    def reconciler(self) -> Reconciler:
        return Reconciler(
            self.movie_root,
            self.tag_root,
            recursive=bool(self.config.get("recursive_scan", False)),
            max_workers=int(self.config.get("max_workers", 4)),
        )

    def gateway(self) -> ServerGateway | None:
        if self._gateway is not None:
            return self._gateway
        if not server_configured(self.config):
            return None
        return JellyfinGateway.from_config(self.config)

    def server_tag_root(self) -> str:
        """The tag root as the media server sees it."""
        return str(self.config.get("tag_path_in_jellyfin", "")).strip() or self.tag_root

    def library_path(self, tag: str) -> str:
        """Path of a tag directory as the media server sees it."""
        return os.path.join(self.server_tag_root(), tag)

    def synchronizer(self) -> VisibilitySynchronizer | None:
        gateway = self.gateway()
        account = str(self.config.get("account", "")).strip()
        if gateway is None or not account:
            return None
        return VisibilitySynchronizer(
            gateway,
            account,
            library_prefix=str(self.config.get("library_prefix", "")),
            enforce_grant_limit=bool(self.config.get("enforce_grant_limit", False)),
            library_path=self.library_path if self.config.get("auto_create_libraries") else None,
            managed_root=self.server_tag_root(),
            retry=RetryConfig.from_config(self.config),
            max_workers=int(self.config.get("max_workers", 4)),
        )

    # ------------------------------------------------------------------
    # Trigger interface
    # ------------------------------------------------------------------

    def reconcile_and_sync(self, assignments: Iterable[Assignment] | None = None) -> CycleReport:
        """Optionally replace the store with *assignments*, then run a cycle.

        Returns:
            The report of the cycle that covered this trigger.
        """
        if assignments is not None:
            self.store.replace(assignments)
        return self.trigger()

    def trigger(self) -> CycleReport:
        """Run a cycle, or join the next one if a cycle is already running."""
        with self._cond:
            self._requested += 1
            ticket = self._requested
            if self._running:
                logger.info("Reconciliation already running, queued trigger #%d", ticket)
                while self._completed < ticket or self._last_report is None:
                    self._cond.wait()
                return self._last_report
            self._running = True

        while True:
            with self._cond:
                covered = self._requested
            try:
                report = self._run_cycle()
            except BaseException:
                # Release every queued trigger, not only the ones this cycle covered
                with self._cond:
                    self._running = False
                    self._completed = self._requested
                    self._last_report = CycleReport("error", "Reconciliation crashed")
                    self._cond.notify_all()
                raise
            with self._cond:
                self._completed = covered
                self._last_report = report
                self._cond.notify_all()
                if self._requested == covered:
                    self._running = False
                    return report
            logger.info("Running queued reconciliation (triggers up to #%d)", self._requested)

    def request_stop(self) -> None:
        """Ask the running cycle to stop starting new operations."""
        self._stop.set()

    @property
    def running(self) -> bool:
        with self._cond:
            return self._running

    def cleanup(self) -> int:
        """Remove broken symlinks under the tag root, outside of any running cycle."""
        with self._fs_lock:
            return cleanup_broken_links(self.tag_root)

    def reload(self) -> int:
        """Re-seed the store from the links on disk, outside of any running cycle.

        Returns:
            The number of assignments loaded.
        """
        with self._fs_lock:
            return self.store.load_from_disk(self.tag_root)

    def _run_cycle(self) -> CycleReport:
        with self._fs_lock:
            try:
                return self._run_cycle_locked()
            except Exception as exc:
                logger.exception("Reconciliation cycle crashed")
                return CycleReport("error", f"Reconciliation crashed: {exc}")

    def _run_cycle_locked(self) -> CycleReport:
        self._stop.clear()
        try:
            links = self.reconciler.run(self.store, self._stop)
        except TaggerError as exc:
            logger.exception("Filesystem reconciliation aborted")
            return CycleReport("error", f"Filesystem reconciliation aborted: {exc}")

        message = (
            f"{len(links.created)} links created, {len(links.removed)} removed, "
            f"{len(links.failures)} failures"
        )
        grants: GrantReport | None = None
        synchronizer = self.synchronizer()
        if links.partial:
            message += "; stopped before visibility sync"
        elif synchronizer is None:
            message += "; visibility sync skipped (no server configured)"
        else:
            desired = visible_tags(links.live_tags, self.config)
            try:
                grants = synchronizer.sync(desired, known_tags=links.known_tags, stop_event=self._stop)
            except GatewayError as exc:
                logger.exception("Library visibility sync aborted")
                return CycleReport(
                    "error", f"{message}; library visibility sync aborted: {exc}", links=links
                )
            message += (
                f"; {len(grants.granted)} libraries granted, {len(grants.revoked)} revoked, "
                f"{len(grants.failures)} failures"
            )

        ok = links.ok and not links.partial and (grants is None or grants.ok)
        status = "success" if ok else "partial"
        logger.info("Reconciliation cycle finished (%s): %s", status, message)
        return CycleReport(status, message, links=links, grants=grants)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_ENGINES: dict[tuple[str, str], TagEngine] = {}
# tag root -> (store, filesystem lock), shared by every engine writing that tree
_TREES: dict[str, tuple[TagStore, threading.Lock]] = {}
_ENGINES_LOCK = threading.Lock()


def get_engine(config: dict[str, Any]) -> TagEngine:
    """Return the process-wide engine for the configured tag root / account.

    Engines for the same tag root share one store and one filesystem lock,
    so a rebuilt engine never writes the tree while an older one still is.

    Raises:
        ConfigError: If the movie / tag paths are misconfigured.
    """
    movie_root, tag_root = validate_paths(config)
    key = (tag_root, str(config.get("account", "")).strip())
    with _ENGINES_LOCK:
        engine = _ENGINES.get(key)
        if engine is None or engine.movie_root != movie_root:
            tree = _TREES.get(tag_root)
            if tree is None:
                engine = TagEngine(config)
                _TREES[tag_root] = (engine.store, engine._fs_lock)
            else:
                store, fs_lock = tree
                engine = TagEngine(config, store=store, fs_lock=fs_lock)
            _ENGINES[key] = engine
        else:
            engine.update_config(config)
        return engine


def stop_engines() -> None:
    """Ask every running cycle to stop starting new operations."""
    with _ENGINES_LOCK:
        engines = list(_ENGINES.values())
    for engine in engines:
        engine.request_stop()
    logger.info("Requested stop of %d engine(s)", len(engines))


def reset_engines() -> None:
    with _ENGINES_LOCK:
        _ENGINES.clear()
        _TREES.clear()
