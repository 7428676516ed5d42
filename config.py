"""
config.py – Configuration persistence helpers.

Handles loading and saving the application's ``config.json`` file, including
backwards-compatible key migration, first-run default creation, and
validation of the movie / tag directory layout.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from typing import Any

from errors import ConfigError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

CONFIG_DIR: str = os.path.join(os.path.dirname(__file__), "config")
CONFIG_FILE: str = os.path.join(CONFIG_DIR, "config.json")

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

VISIBILITY_MODES: frozenset[str] = frozenset({"all", "opt_in"})

DEFAULT_CONFIG: dict[str, Any] = {
    "movie_path": "",
    "tag_path": "",
    "recursive_scan": False,
    "jellyfin_url": "",
    "api_key": "",
    "account": "",
    "library_prefix": "",
    "tag_path_in_jellyfin": "",
    "auto_create_libraries": False,
    "visibility_mode": "all",
    "visible_tags": [],
    "hidden_tags": [],
    "enforce_grant_limit": False,
    "max_workers": 4,
    "request_timeout": 30,
    "log_level": "INFO",
    "retry": {
        "max_retries": 3,
        "base_delay": 0.5,
        "max_delay": 5.0,
    },
    "scheduler": {
        "reconcile_enabled": False,
        "reconcile_schedule": "*/15 * * * *",
        "cleanup_enabled": True,
        "cleanup_schedule": "0 * * * *",
    },
}

# Keys renamed since the first release: old name -> new name.
_LEGACY_KEYS: dict[str, str] = {
    "movie_dir": "movie_path",
    "tag_dir": "tag_path",
}

# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def load_config() -> dict[str, Any]:
    """Load configuration from disk.

    If the config file does not exist it is created from :data:`DEFAULT_CONFIG`
    and a copy of that default dict is returned.  When loading an existing
    file:

    * Missing keys are filled in from :data:`DEFAULT_CONFIG` (forward-compat).
    * Legacy keys ``movie_dir`` / ``tag_dir`` are migrated to their new
      names and the updated config is persisted automatically.

    Returns:
        The (possibly migrated) configuration dictionary.
    """
    if not os.path.exists(CONFIG_FILE):
        cfg = copy.deepcopy(DEFAULT_CONFIG)
        save_config(cfg)
        return cfg

    try:
        with open(CONFIG_FILE, "r") as fh:
            cfg: dict[str, Any] = json.load(fh)
    except (OSError, ValueError):
        # If the file is corrupt or unreadable, fall back to safe defaults
        logger.exception("Could not read %s, using defaults", CONFIG_FILE)
        return copy.deepcopy(DEFAULT_CONFIG)

    if not isinstance(cfg, dict):
        logger.error("Config file %s does not hold an object, using defaults", CONFIG_FILE)
        return copy.deepcopy(DEFAULT_CONFIG)

    # Migrate renamed keys
    migrated = False
    for old_key, new_key in _LEGACY_KEYS.items():
        if old_key in cfg:
            if cfg[old_key] and not cfg.get(new_key):
                cfg[new_key] = cfg[old_key]
            cfg.pop(old_key)
            migrated = True

    # Fill in any keys added after initial creation
    for key, default_value in DEFAULT_CONFIG.items():
        cfg.setdefault(key, copy.deepcopy(default_value))
        # Ensure nested dictionaries (like scheduler) also have defaults
        if isinstance(default_value, dict) and isinstance(cfg[key], dict):
            for sub_key, sub_val in default_value.items():
                cfg[key].setdefault(sub_key, sub_val)

    if migrated:
        save_config(cfg)

    return cfg


def save_config(config: dict[str, Any]) -> None:
    """Persist *config* to :data:`CONFIG_FILE` as pretty-printed JSON.

    Args:
        config: The configuration dictionary to write.
    """
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(CONFIG_FILE, "w") as fh:
        json.dump(config, fh, indent=4)


def validate_paths(config: dict[str, Any]) -> tuple[str, str]:
    """Check the movie / tag directory layout and return both canonical roots.

    The tag root is created if it does not exist yet.

    Args:
        config: The application configuration dict.

    Returns:
        A ``(movie_root, tag_root)`` tuple of canonical absolute paths.

    Raises:
        ConfigError: If a path is unset, the movie root is not a directory,
            or the tag root lies inside the movie root.
    """
    movie_path = str(config.get("movie_path", "")).strip()
    tag_path = str(config.get("tag_path", "")).strip()
    if not movie_path or not tag_path:
        raise ConfigError("Movie path or tag path not configured")

    movie_root = os.path.realpath(movie_path)
    if not os.path.isdir(movie_root):
        raise ConfigError(f"Movie path is not a directory: {movie_path!r}")

    tag_root = os.path.realpath(tag_path)
    if os.path.commonpath([movie_root, tag_root]) == movie_root:
        raise ConfigError(
            f"Tag path {tag_path!r} must not be inside the movie path {movie_path!r}"
        )

    try:
        os.makedirs(tag_root, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Cannot create tag path {tag_path!r}: {exc}") from exc
    if not os.path.isdir(tag_root):
        raise ConfigError(f"Tag path is not a directory: {tag_path!r}")

    return movie_root, tag_root


def server_configured(config: dict[str, Any]) -> bool:
    """Return ``True`` when enough server settings exist to sync visibility."""
    return all(
        str(config.get(key, "")).strip()
        for key in ("jellyfin_url", "api_key", "account")
    )
