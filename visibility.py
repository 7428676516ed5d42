"""
visibility.py – Library visibility synchronisation for the configured account.

Each tag is exposed as one server library, named ``library_prefix + tag``.
:class:`VisibilitySynchronizer` diffs the tags the account should see against
the grants the server currently reports and issues only the missing grants
and the surplus revokes.  Grants are re-read from the server on every pass.

Only libraries that belong to tags are ever revoked; grants to any other
library the account has are left alone.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

from errors import AuthError, GatewayError, NotFoundError
from reconcile import Failure
from retry import DEFAULT_RETRY_CONFIG, RetryConfig, call_with_retry

logger = logging.getLogger(__name__)


class ServerGateway(Protocol):
    """Contract of the media-server client consumed by the synchronizer."""

    def list_libraries(self) -> dict[str, str]: ...

    def list_library_locations(self) -> dict[str, list[str]]: ...

    def list_grants(self, account: str) -> set[str]: ...

    def grant(self, account: str, library_id: str) -> None: ...

    def revoke(self, account: str, library_id: str) -> None: ...


@dataclass(frozen=True, order=True)
class GrantChange:
    tag: str
    library_id: str


@dataclass
class GrantReport:
    """Outcome of one visibility pass."""

    granted: list[GrantChange] = field(default_factory=list)
    revoked: list[GrantChange] = field(default_factory=list)
    created_libraries: list[GrantChange] = field(default_factory=list)
    failures: list[Failure] = field(default_factory=list)
    partial: bool = False

    @property
    def ok(self) -> bool:
        return not (self.failures or self.partial)

    def to_dict(self) -> dict[str, Any]:
        return {
            "granted": [{"tag": c.tag, "library_id": c.library_id} for c in self.granted],
            "revoked": [{"tag": c.tag, "library_id": c.library_id} for c in self.revoked],
            "created_libraries": [
                {"tag": c.tag, "library_id": c.library_id} for c in self.created_libraries
            ],
            "failures": [f.to_dict() for f in self.failures],
            "partial": self.partial,
        }


def _normalize(path: str) -> str:
    return os.path.normpath(path.rstrip("/") or "/")


def visible_tags(live_tags: Iterable[str], config: dict[str, Any]) -> frozenset[str]:
    """Select which live tags the account should see.

    ``visibility_mode`` ``"all"`` shows every live tag except ``hidden_tags``;
    ``"opt_in"`` shows only live tags listed in ``visible_tags``.
    """
    live = frozenset(live_tags)
    mode = str(config.get("visibility_mode", "all"))
    if mode == "opt_in":
        return live & frozenset(config.get("visible_tags") or ())
    return live - frozenset(config.get("hidden_tags") or ())


class VisibilitySynchronizer:
    """Keeps one account's tag-library grants equal to a desired tag set."""

    def __init__(
        self,
        gateway: ServerGateway,
        account: str,
        *,
        library_prefix: str = "",
        enforce_grant_limit: bool = False,
        library_path: Callable[[str], str] | None = None,
        managed_root: str | None = None,
        retry: RetryConfig = DEFAULT_RETRY_CONFIG,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            gateway: Server gateway.
            account: Account name or id whose grants are managed.
            library_prefix: Prefix that turns a tag name into a library name.
            enforce_grant_limit: Finish every revoke before the first grant,
                for servers that cap the number of grants per account.
            library_path: When given, missing tag libraries are created at
                ``library_path(tag)`` (requires ``gateway.create_library``).
            managed_root: Directory holding the tag directories as the server
                sees them.  Any library with a location directly below it
                belongs to a tag, whether or not that tag still exists.
            retry: Retry policy for transport failures.
            max_workers: Size of the worker pool for grant / revoke calls.
            sleep: Backoff sleep function.
        """
        self.gateway = gateway
        self.account = account
        self.library_prefix = library_prefix
        self.enforce_grant_limit = enforce_grant_limit
        self.library_path = library_path
        self.managed_root = _normalize(managed_root) if managed_root else None
        self.retry = retry
        self.max_workers = max(1, int(max_workers))
        self._sleep = sleep

    def library_name(self, tag: str) -> str:
        return f"{self.library_prefix}{tag}"

    def _call(self, func: Callable[..., Any], *args: Any, operation_name: str) -> Any:
        return call_with_retry(
            func, *args, config=self.retry, operation_name=operation_name, sleep=self._sleep
        )

    def _managed_libraries(
        self,
        libraries: dict[str, str],
        tags: Iterable[str],
        locations: dict[str, list[str]] | None = None,
    ) -> dict[str, str]:
        """Map library id → tag for every library that belongs to a tag."""
        managed: dict[str, str] = {}
        if self.managed_root and locations:
            for library_id, paths in locations.items():
                for path in paths:
                    path = _normalize(path)
                    if os.path.dirname(path) == self.managed_root:
                        managed[library_id] = os.path.basename(path)
                        break
        prefix = self.library_prefix
        if prefix:
            for name, library_id in libraries.items():
                if name.startswith(prefix) and len(name) > len(prefix):
                    managed[library_id] = name[len(prefix):]
        else:
            for tag in tags:
                library_id = libraries.get(tag)
                if library_id is not None:
                    managed[library_id] = tag
        return managed

    def sync(
        self,
        desired_tags: Iterable[str],
        known_tags: Iterable[str] = (),
        stop_event: threading.Event | None = None,
    ) -> GrantReport:
        """Make the account's tag-library grants equal *desired_tags*.

        Args:
            desired_tags: Tags whose library the account should see.
            known_tags: Other tag names that may still have a library (e.g.
                tags removed in this cycle); without a library prefix only
                libraries named after a desired or known tag are managed.
            stop_event: When set, no new grant / revoke call is started.

        Returns:
            The :class:`GrantReport` for this pass.

        Raises:
            AuthError: If the server rejects the credentials; the pass stops.
            GatewayError: If libraries or grants cannot be read.
        """
        stop_event = stop_event or threading.Event()
        desired = frozenset(desired_tags)
        report = GrantReport()

        libraries = self._call(self.gateway.list_libraries, operation_name="list libraries")
        current = set(self._call(
            self.gateway.list_grants, self.account, operation_name=f"list grants of {self.account!r}"
        ))
        locations = None
        if self.managed_root:
            locations = self._call(
                self.gateway.list_library_locations, operation_name="list library locations"
            )
        managed = self._managed_libraries(libraries, desired | frozenset(known_tags), locations)

        wanted: dict[str, str] = {}
        for tag in sorted(desired):
            library_id = libraries.get(self.library_name(tag))
            if library_id is None:
                library_id = self._create_library(tag, report)
                if library_id is None:
                    continue
                managed[library_id] = tag
            wanted[library_id] = tag

        to_add = [GrantChange(wanted[i], i) for i in sorted(set(wanted) - current)]
        to_remove = [
            GrantChange(managed[i], i) for i in sorted((current & set(managed)) - set(wanted))
        ]
        if not to_add and not to_remove:
            logger.debug("Grants of %r already up to date", self.account)
            return report

        logger.info(
            "Syncing grants of %r: %d to grant, %d to revoke",
            self.account, len(to_add), len(to_remove),
        )
        batches: list[list[tuple[str, GrantChange]]]
        removals = [("revoke", change) for change in to_remove]
        additions = [("grant", change) for change in to_add]
        if self.enforce_grant_limit:
            batches = [removals, additions]
        else:
            batches = [removals + additions]

        for batch in batches:
            self._run_batch(batch, report, stop_event)
        return report

    def _create_library(self, tag: str, report: GrantReport) -> str | None:
        name = self.library_name(tag)
        create = getattr(self.gateway, "create_library", None)
        if self.library_path is None or create is None:
            failure = Failure(NotFoundError.__name__, tag, f"No server library named {name!r}")
            report.failures.append(failure)
            logger.error("Cannot expose tag %r: %s", tag, failure.message)
            return None
        try:
            library_id = self._call(
                create, name, self.library_path(tag), operation_name=f"create library {name!r}"
            )
        except AuthError:
            raise
        except GatewayError as exc:
            report.failures.append(Failure.from_exc(tag, exc))
            logger.error("Failed to create library %r: %s", name, exc)
            return None
        logger.info("Created library %r for tag %r", name, tag)
        report.created_libraries.append(GrantChange(tag, library_id))
        return library_id

    def _run_batch(
        self,
        batch: list[tuple[str, GrantChange]],
        report: GrantReport,
        stop_event: threading.Event,
    ) -> None:
        """Apply one batch of grant / revoke calls on a bounded pool.

        An :class:`~errors.AuthError` stops every call not yet started and
        is re-raised once the in-flight calls have finished.
        """
        if not batch:
            return
        abort = threading.Event()

        def _task(item: tuple[str, GrantChange]) -> tuple[str, GrantChange, BaseException | None, bool]:
            action, change = item
            if stop_event.is_set() or abort.is_set():
                return action, change, None, False
            func = self.gateway.grant if action == "grant" else self.gateway.revoke
            try:
                self._call(
                    func, self.account, change.library_id,
                    operation_name=f"{action} {self.library_name(change.tag)!r}",
                )
            except AuthError as exc:
                abort.set()
                return action, change, exc, True
            except GatewayError as exc:
                return action, change, exc, True
            return action, change, None, True

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="grants") as pool:
            results = list(pool.map(_task, batch))

        auth_error: BaseException | None = None
        for action, change, exc, started in results:
            if not started:
                report.partial = True
            elif exc is not None:
                if isinstance(exc, AuthError):
                    auth_error = auth_error or exc
                report.failures.append(Failure.from_exc(change.tag, exc))
                logger.error("Failed to %s library of tag %r: %s", action, change.tag, exc)
            elif action == "grant":
                report.granted.append(change)
                logger.info("Granted %r access to library %r", self.account, self.library_name(change.tag))
            else:
                report.revoked.append(change)
                logger.info("Revoked %r access to library %r", self.account, self.library_name(change.tag))

        if auth_error is not None:
            raise auth_error
