"""Failure taxonomy shared by services, dependencies, and routers.

Every error carries a stable ``reason`` slug and the HTTP status the
application maps it to.  The exception handler registered in
:mod:`api.main` renders ``{"error": reason, "detail": message}`` and never
includes traceback detail.
"""

from __future__ import annotations


class PlatformError(Exception):
    """Base class for all expected, caller-visible failures."""

    reason: str = "error"
    status_code: int = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.reason.replace("_", " "))
        self.message = message or self.reason.replace("_", " ")


class Unauthenticated(PlatformError):
    """No resolvable identity."""

    reason = "unauthenticated"
    status_code = 401


class Blocked(PlatformError):
    """Identity is on the block-list."""

    reason = "blocked"
    status_code = 403


class NotAllowed(PlatformError):
    """Identity has no allow-list entry."""

    reason = "not_allowed"
    status_code = 403


class Forbidden(PlatformError):
    """Identity lacks the admin classification for a privileged operation."""

    reason = "forbidden"
    status_code = 403


class NotFound(PlatformError):
    reason = "not_found"
    status_code = 404


class Conflict(PlatformError):
    """A transition precondition does not hold."""

    reason = "conflict"
    status_code = 409


class ValidationError(PlatformError):
    reason = "validation_error"
    status_code = 400


class UpstreamError(PlatformError):
    """A collaborator (store, mail transport, bot check) failed."""

    reason = "upstream_error"
    status_code = 502
