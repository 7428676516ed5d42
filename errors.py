"""
errors.py – Exception hierarchy for the movie tagger.

Errors fall in two groups.  Component-local errors (a single link, a single
grant) are caught by the reconciler / synchronizer and collected into a
report.  Whole-pass errors (configuration, unreadable movie root, rejected
credentials) propagate to the engine, which turns them into an error result.
"""

from __future__ import annotations


class TaggerError(RuntimeError):
    """Base error type."""


class ConfigError(TaggerError):
    """Movie / tag roots or server settings are misconfigured."""


class InvalidTagName(TaggerError, ValueError):
    """A tag name is not usable as a single directory name."""


class IoError(TaggerError):
    """A filesystem operation failed at the OS level."""


class UnexpectedContent(TaggerError):
    """Non-symlink data was found where only managed links are expected."""


# ---------------------------------------------------------------------------
# Server gateway errors
# ---------------------------------------------------------------------------


class GatewayError(TaggerError):
    """Base class for errors raised by a server gateway."""


class AuthError(GatewayError):
    """The server rejected the configured credentials."""


class TransportError(GatewayError):
    """Network-level failure or transient server error (retryable)."""


class NotFoundError(GatewayError):
    """The library or account does not exist on the server."""


class RejectedError(GatewayError):
    """The server refused the request for a non-transient reason."""
