"""
NFT Mirror — Error Taxonomy

Fatal-immediate errors abort the enclosing operation. Retryable-transient
errors are classified by nftmirror.utils.retry and only surface once the
retry budget is exhausted. Expected absence (404/400 on a token lookup, an
empty trait payload) is not an exception at all.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.exc import IntegrityError

UNIQUE_VIOLATION_SQLSTATE = "23505"


class MirrorError(Exception):
    """Base class for every error raised by the mirroring engine."""


class ConfigurationError(MirrorError):
    """Invalid or missing configuration detected before a run starts."""


class SyncAbortedError(MirrorError):
    """A run stopped early on a fatal error or a shutdown request."""


class SourceError(MirrorError):
    """The marketplace API could not satisfy a request."""


class InvalidTokenError(SourceError, ValueError):
    """A token id that is not an integer."""

    def __init__(self, token_id: Any):
        self.token_id = token_id
        super().__init__(f"Invalid token ID: {token_id!r}")


class SourceResponseError(SourceError):
    """
    The API answered 2xx but flagged the payload as unsuccessful.

    Carries the raw payload for the logs. Never retried.
    """

    def __init__(self, message: str, payload: dict[str, Any] | None = None):
        self.payload = payload or {}
        super().__init__(message)


class StoreError(MirrorError):
    """A store operation returned an unusable result."""


def _sqlstate(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, exc):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_unique_violation(exc: BaseException) -> bool:
    """True when exc is a duplicate-key failure (another writer got there first)."""
    if not isinstance(exc, IntegrityError):
        return False
    if _sqlstate(exc) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    message = str(getattr(exc, "orig", exc)).lower()
    return "unique constraint" in message or "duplicate key" in message


def sqlstate_of(exc: BaseException) -> str | None:
    """SQLSTATE code carried by a DBAPI error, if the driver exposes one."""
    return _sqlstate(exc)
