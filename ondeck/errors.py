"""
Data Access Error Taxonomy.

Every failure that crosses the data-access boundary is reported as one of
the classes below so callers can tell a dropped connection (recoverable
from the offline cache) from a revoked permission or a rejected input
(never masked by cached rows).

Corrupt cache entries and local storage failures never appear here: the
offline cache absorbs them and reports a miss instead.
"""

from __future__ import annotations

import socket
from typing import Optional

import httpx
from supabase import AuthApiError, AuthError, PostgrestAPIError

__all__ = [
    "DataAccessError",
    "ConnectivityError",
    "AuthorizationError",
    "NotSignedInError",
    "DataValidationError",
    "classify_error",
    "is_connectivity_error",
]


class DataAccessError(Exception):
    """Base class for failures reported by repositories and services."""

    retryable: bool = False

    def __init__(self, message: str, original_error: Optional[BaseException] = None) -> None:
        self.message: str = message
        self.original_error: Optional[BaseException] = original_error
        super().__init__(self.message)


class ConnectivityError(DataAccessError):
    """The remote service could not be reached (offline, timeout, DNS)."""

    retryable = True


class AuthorizationError(DataAccessError):
    """The caller is not allowed to perform the operation."""


class NotSignedInError(AuthorizationError):
    """The operation needs a caller identity and no session exists."""


class DataValidationError(DataAccessError):
    """Input rejected by the client or by a server-side constraint.

    ``message`` is safe to show to the user.
    """


# ---------------------------------------------------------------------------
# Classification tables
# ---------------------------------------------------------------------------

# PostgREST / Postgres codes that mean "you may not do this".
_AUTHORIZATION_CODES: frozenset[str] = frozenset({
    "42501",     # insufficient_privilege (RLS)
    "PGRST301",  # JWT expired / invalid
    "PGRST302",  # anonymous access disabled
    "401",
    "403",
})

# Gateway failures in front of PostgREST behave like an unreachable host.
_CONNECTIVITY_CODES: frozenset[str] = frozenset({"502", "503", "504"})

# Postgres error classes that are input problems rather than server bugs.
_VALIDATION_CODE_PREFIXES: tuple[str, ...] = ("22", "23", "42", "PGRST1", "P0001")

_VALIDATION_MESSAGES: dict[str, str] = {
    "23505": "That record already exists.",
    "23503": "The record refers to something that no longer exists.",
    "23502": "A required field is missing.",
    "23514": "One of the values is not allowed.",
}


def is_connectivity_error(exc: BaseException) -> bool:
    """Return ``True`` when *exc* means the remote service was unreachable.

    This is the single predicate behind every cache-fallback decision.
    """
    if isinstance(exc, ConnectivityError):
        return True
    if isinstance(exc, DataAccessError):
        return False
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    if isinstance(exc, PostgrestAPIError):
        return str(exc.code) in _CONNECTIVITY_CODES
    if isinstance(exc, AuthError):
        # The auth client wraps transport failures in AuthRetryableError.
        return type(exc).__name__ == "AuthRetryableError"
    # DNS resolution failures
    return isinstance(exc, (socket.gaierror, socket.herror))


def classify_error(exc: BaseException, operation_name: str = "") -> DataAccessError:
    """Map a raw client exception onto the data-access taxonomy.

    Parameters
    ----------
    exc:
        The exception raised by the Supabase client, httpx or the socket
        layer.  ``DataAccessError`` instances are returned unchanged.
    operation_name:
        Human-readable label prefixed to the message, e.g.
        ``"get_players (players)"``.

    Returns
    -------
    DataAccessError
        A ``ConnectivityError``, ``AuthorizationError``,
        ``DataValidationError`` or a plain ``DataAccessError`` for anything
        unrecognised.  The original exception is kept on
        ``original_error``.
    """
    if isinstance(exc, DataAccessError):
        return exc

    prefix = f"{operation_name}: " if operation_name else ""

    if is_connectivity_error(exc):
        return ConnectivityError(
            f"{prefix}cannot reach the server. Check your internet connection.",
            exc,
        )

    if isinstance(exc, PostgrestAPIError):
        code = str(exc.code or "")
        detail = exc.message or str(exc)
        if code in _AUTHORIZATION_CODES:
            return AuthorizationError(
                f"{prefix}you do not have access to this data.", exc,
            )
        if code in _VALIDATION_MESSAGES:
            return DataValidationError(_VALIDATION_MESSAGES[code], exc)
        if code.startswith(_VALIDATION_CODE_PREFIXES):
            return DataValidationError(detail, exc)
        return DataAccessError(f"{prefix}{detail}", exc)

    if isinstance(exc, AuthApiError):
        status = getattr(exc, "status", None)
        if status in (400, 422):
            return DataValidationError(exc.message, exc)
        return AuthorizationError(f"{prefix}{exc.message}", exc)

    if isinstance(exc, AuthError):
        return AuthorizationError(f"{prefix}{exc}", exc)

    return DataAccessError(f"{prefix}{exc}", exc)
