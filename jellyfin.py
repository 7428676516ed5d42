"""
jellyfin.py – Jellyfin API client helpers.

Thin wrappers around ``requests`` for the Jellyfin endpoints the tagger
needs (virtual folders, users, user policies), plus :class:`JellyfinGateway`,
which adapts them to the server gateway contract used by the visibility
synchronizer.  HTTP and network failures are translated into the
:mod:`errors` gateway taxonomy.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

import requests

from errors import AuthError, NotFoundError, RejectedError, TransportError

logger = logging.getLogger(__name__)

# Non-5xx statuses worth retrying (request timeout, rate limiting).
_TRANSIENT_STATUSES: frozenset[int] = frozenset({408, 429})

# ---------------------------------------------------------------------------
# Low-level request helpers
# ---------------------------------------------------------------------------


def _headers(api_key: str) -> dict[str, str]:
    return {"X-Emby-Token": api_key, "Accept": "application/json"}


def _raise_for_status(response: requests.Response, what: str) -> None:
    """Map a non-2xx *response* onto the gateway error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return
    msg = f"{what} (Status {status}): {response.text}"
    if status in (401, 403):
        raise AuthError(msg)
    if status == 404:
        raise NotFoundError(msg)
    if status >= 500 or status in _TRANSIENT_STATUSES:
        raise TransportError(msg)
    raise RejectedError(msg)


def _request(
    method: str,
    url: str,
    api_key: str,
    what: str,
    *,
    timeout: int = 30,
    ok_statuses: tuple[int, ...] = (),
    **kwargs: Any,
) -> requests.Response:
    """Perform one HTTP request with an explicit timeout.

    Args:
        method: HTTP method.
        url: Absolute URL.
        api_key: Jellyfin API key.
        what: Human-readable description used in error messages.
        timeout: HTTP request timeout in seconds.
        ok_statuses: Extra non-2xx statuses to accept without raising.

    Raises:
        TransportError: On connection errors, timeouts, or 5xx responses.
        AuthError, NotFoundError, RejectedError: On 4xx responses.
    """
    try:
        response = requests.request(
            method, url, headers=_headers(api_key), timeout=timeout, **kwargs
        )
    except requests.exceptions.RequestException as exc:
        raise TransportError(f"{what}: {exc!s}") from exc
    if response.status_code not in ok_statuses:
        _raise_for_status(response, what)
    return response


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def get_virtual_folders(base_url: str, api_key: str, timeout: int = 30) -> list[dict[str, Any]]:
    """Fetch the raw virtual folder (library) list from Jellyfin.

    Returns:
        The list of folder dicts (``Name``, ``ItemId``, ``Locations``, ...).
    """
    response = _request(
        "GET", f"{base_url}/Library/VirtualFolders", api_key, "Failed to list libraries", timeout=timeout
    )
    try:
        folders = response.json()
    except ValueError as exc:
        raise RejectedError(f"Malformed library list: {exc!s}") from exc
    return [f for f in folders if isinstance(f, dict)] if isinstance(folders, list) else []


def get_libraries(base_url: str, api_key: str, timeout: int = 30) -> dict[str, str]:
    """Fetch library names and ids from Jellyfin.

    Args:
        base_url: Jellyfin server base URL.
        api_key: Jellyfin API key.
        timeout: HTTP request timeout.

    Returns:
        A mapping of library name to ``ItemId``.  Folders missing either
        field are skipped.
    """
    libraries: dict[str, str] = {}
    for folder in get_virtual_folders(base_url, api_key, timeout=timeout):
        name = folder.get("Name")
        item_id = folder.get("ItemId")
        if name and item_id is not None:
            libraries[str(name)] = str(item_id)
    return libraries


def add_virtual_folder(
    base_url: str,
    api_key: str,
    name: str,
    paths: list[str],
    collection_type: str = "movies",
    refresh_library: bool = True,
    timeout: int = 30,
) -> None:
    """Create a new virtual folder (library) in Jellyfin.

    An already existing library (409) is not an error; the paths are still
    added to it.

    Args:
        base_url: Jellyfin server base URL.
        api_key: Jellyfin API key.
        name: Name of the new library.
        paths: List of absolute paths (as Jellyfin sees them) to include.
        collection_type: Type of media (e.g., "movies", "mixed").
        refresh_library: Whether to trigger a library scan after creation.
        timeout: HTTP request timeout.
    """
    # Step 1: Create the virtual folder shell.  Paths are added separately;
    # passing them here makes Jellyfin answer 400.
    create_params = {
        "name": name,
        "refreshLibrary": "false",
    }
    if collection_type != "mixed":
        create_params["collectionType"] = collection_type

    _request(
        "POST",
        f"{base_url}/Library/VirtualFolders",
        api_key,
        f"Failed to create virtual folder {name!r}",
        timeout=timeout,
        ok_statuses=(409,),
        params=create_params,
        data="",
    )

    # Step 2: Add each path using a JSON body
    for path in paths:
        _request(
            "POST",
            f"{base_url}/Library/VirtualFolders/Paths",
            api_key,
            f"Failed to add path {path!r} to library {name!r}",
            timeout=timeout,
            json={"Name": name, "Path": path},
        )

    # Step 3: Trigger a library refresh if requested
    if refresh_library:
        _request(
            "POST",
            f"{base_url}/Library/Refresh",
            api_key,
            f"Failed to trigger library refresh for {name!r}",
            timeout=timeout,
        )


def get_users(base_url: str, api_key: str, timeout: int = 30) -> list[dict[str, Any]]:
    """Fetch all users (including their ``Policy``) from Jellyfin."""
    response = _request("GET", f"{base_url}/Users", api_key, "Failed to list users", timeout=timeout)
    try:
        users = response.json()
    except ValueError as exc:
        raise RejectedError(f"Malformed user list: {exc!s}") from exc
    return [u for u in users if isinstance(u, dict)] if isinstance(users, list) else []


def set_user_policy(
    base_url: str, api_key: str, user_id: str, policy: dict[str, Any], timeout: int = 30
) -> None:
    """Replace a user's policy.  Jellyfin expects the complete policy object."""
    _request(
        "POST",
        f"{base_url}/Users/{user_id}/Policy",
        api_key,
        f"Failed to update policy of user {user_id!r}",
        timeout=timeout,
        json=policy,
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


def _enabled_folders(policy: dict[str, Any]) -> list[str]:
    folders = policy.get("EnabledFolders") or []
    return [str(f) for f in folders]


class JellyfinGateway:
    """Server gateway backed by the Jellyfin HTTP API.

    A grant is membership of a library id in the account's
    ``Policy.EnabledFolders``.  An account with ``EnableAllFolders`` sees every
    library; the first grant or revoke turns that off and lists the
    libraries explicitly.

    Every grant / revoke is a read-modify-write of the whole policy, so they
    are serialized per gateway.
    """

    def __init__(self, base_url: str, api_key: str, timeout: int = 30) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._policy_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "JellyfinGateway":
        return cls(
            str(config.get("jellyfin_url", "")),
            str(config.get("api_key", "")),
            timeout=int(config.get("request_timeout", 30)),
        )

    def __repr__(self) -> str:
        return f"JellyfinGateway(base_url={self.base_url!r})"

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def list_libraries(self) -> dict[str, str]:
        return get_libraries(self.base_url, self.api_key, timeout=self.timeout)

    def list_library_locations(self) -> dict[str, list[str]]:
        """Map each library ``ItemId`` to the folder paths it scans."""
        locations: dict[str, list[str]] = {}
        for folder in get_virtual_folders(self.base_url, self.api_key, timeout=self.timeout):
            item_id = folder.get("ItemId")
            if item_id is None:
                continue
            locations[str(item_id)] = [str(p) for p in folder.get("Locations") or [] if p]
        return locations

    def list_grants(self, account: str) -> set[str]:
        policy = self._user(account).get("Policy") or {}
        if policy.get("EnableAllFolders"):
            return set(self.list_libraries().values())
        return set(_enabled_folders(policy))

    def grant(self, account: str, library_id: str) -> None:
        self._update_folders(account, library_id, add=True)

    def revoke(self, account: str, library_id: str) -> None:
        self._update_folders(account, library_id, add=False)

    def create_library(self, name: str, path: str) -> str:
        """Create a movies library at *path* and return its id."""
        add_virtual_folder(
            self.base_url, self.api_key, name, [path], collection_type="movies", timeout=self.timeout
        )
        library_id = self.list_libraries().get(name)
        if library_id is None:
            raise NotFoundError(f"Library {name!r} missing right after creation")
        return library_id

    def describe_users(self) -> list[dict[str, Any]]:
        """List users with the flags the user-libraries screen shows."""
        described = []
        for user in get_users(self.base_url, self.api_key, timeout=self.timeout):
            policy = user.get("Policy") or {}
            described.append({
                "id": user.get("Id"),
                "name": user.get("Name"),
                "is_admin": bool(policy.get("IsAdministrator")),
                "is_disabled": bool(policy.get("IsDisabled")),
                "all_folders": bool(policy.get("EnableAllFolders")),
                "enabled_folders": _enabled_folders(policy),
            })
        return described

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _user(self, account: str) -> dict[str, Any]:
        """Resolve *account* (user name or id) to a fresh user object."""
        for user in get_users(self.base_url, self.api_key, timeout=self.timeout):
            if account in (user.get("Id"), user.get("Name")):
                return user
        raise NotFoundError(f"Jellyfin account {account!r} not found")

    def _update_folders(self, account: str, library_id: str, add: bool) -> None:
        with self._policy_lock:
            user = self._user(account)
            policy: dict[str, Any] = dict(user.get("Policy") or {})
            libraries = self.list_libraries()
            if add and library_id not in libraries.values():
                raise NotFoundError(f"Library {library_id!r} not found")

            if policy.get("EnableAllFolders"):
                folders = list(libraries.values())
            else:
                folders = _enabled_folders(policy)

            if add and library_id not in folders:
                folders.append(library_id)
            elif not add:
                folders = [f for f in folders if f != library_id]

            policy["EnableAllFolders"] = False
            policy["EnabledFolders"] = folders
            set_user_policy(self.base_url, self.api_key, str(user["Id"]), policy, timeout=self.timeout)
            logger.debug(
                "%s library %s for %r", "Granted" if add else "Revoked", library_id, account
            )
