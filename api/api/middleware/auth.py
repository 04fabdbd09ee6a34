"""Authentication middleware that resolves the caller's session token.

Reads the credential from ``Authorization: Bearer <token>`` or, failing
that, the session cookie.  A valid credential populates ``request.state``
with ``email`` (lowercased), ``sub``, and ``jti``.  A request without any
credential continues anonymously with ``request.state.email = None``;
endpoints that need an identity enforce it through the dependencies in
:mod:`api.middleware.access`.

A credential that is present but malformed, forged, expired, or revoked is
rejected here with a 401 JSON body.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.security import TokenManager

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Revocation cache
# ---------------------------------------------------------------------------


class _RevocationCache:
    """TTL cache for session revocation lookups.

    Caches the per-subject cut-off (or its absence) for a short TTL to
    reduce database pressure and survive brief outages.

    Parameters
    ----------
    ttl_seconds:
        How long each cache entry remains valid (default: 30 seconds).
    max_entries:
        Hard cap on cache size.  Stale entries are cleaned before inserting
        once it is reached.
    """

    _MISSING = object()

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        max_entries: int = 10_000,
    ) -> None:
        self._cache: dict[str, tuple[datetime | None, float]] = {}
        self._ttl = ttl_seconds
        self._max_entries = max_entries

    def get(self, key: str) -> Any:
        """Return the cached cut-off, or ``_MISSING`` on miss/expiry."""
        entry = self._cache.get(key)
        if entry is None:
            return self._MISSING
        cutoff, cached_at = entry
        if time.monotonic() - cached_at > self._ttl:
            del self._cache[key]
            return self._MISSING
        return cutoff

    def set(self, key: str, cutoff: datetime | None) -> None:
        if len(self._cache) >= self._max_entries:
            self.cleanup()
        self._cache[key] = (cutoff, time.monotonic())

    def invalidate_subject(self, subject: str) -> None:
        """Drop every entry whose subject id or email is *subject*."""
        for key in [k for k in self._cache if subject in k.split("|")]:
            del self._cache[key]

    def cleanup(self) -> None:
        """Remove all entries whose TTL has expired."""
        now = time.monotonic()
        stale = [k for k, (_, t) in self._cache.items() if now - t > self._ttl]
        for k in stale:
            del self._cache[k]


_revocation_cache = _RevocationCache()

# Revocation checker: injected at startup via init_revocation_checker().
_check_revocation: Callable[[str, str, float], Any] | None = None


def _cache_key(sub: str, email: str) -> str:
    return f"{sub}|{email}"


def init_revocation_checker(session_factory: Any) -> None:
    """Wire the session revocation checker into the auth middleware.

    The checker looks up the latest ``revoked_before`` cut-off recorded for
    the token's subject or email and reports the token as revoked when it
    was issued before that cut-off.

    Behaviour on database failure: a cached cut-off is used if present;
    otherwise the request is rejected (fail-closed) and an ERROR is logged.
    """
    global _check_revocation  # noqa: PLW0603

    async def _checker(sub: str, email: str, issued_at: float) -> bool:
        key = _cache_key(sub, email)
        cutoff = _revocation_cache.get(key)
        if cutoff is _RevocationCache._MISSING:
            from fuelflow_core.state.repository import SessionRevocationRepository

            try:
                async with session_factory() as session:
                    cutoff = await SessionRevocationRepository(session).revoked_before([sub, email])
            except Exception:
                logger.error(
                    "Revocation check failed for sub=%s and no cached result available; failing closed",
                    sub,
                    exc_info=True,
                )
                return True
            _revocation_cache.set(key, cutoff)

        if cutoff is None:
            return False
        return issued_at < cutoff.timestamp()

    _check_revocation = _checker


def reset_revocation_checker() -> None:
    """Detach the revocation checker (used at shutdown and by tests)."""
    global _check_revocation  # noqa: PLW0603
    _check_revocation = None


def forget_cached_revocation(subject: str) -> None:
    """Drop cached cut-offs for *subject* (a subject id or an email) after a new revocation."""
    _revocation_cache.invalidate_subject(subject)


def extract_credential(request: Request, cookie_name: str) -> str | None:
    """Return the raw credential from the Bearer header or session cookie.

    Returns ``""`` when an ``Authorization`` header is present but does not
    use the Bearer scheme, so the caller can reject it as malformed.
    """
    auth_header = request.headers.get("authorization")
    if auth_header:
        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return ""
        return parts[1].strip()
    cookie = request.cookies.get(cookie_name)
    if cookie:
        return cookie.strip()
    return None


def _unauthenticated(detail: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "unauthenticated", "detail": detail})


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that resolves session credentials.

    On each request the middleware:

    1. Extracts the credential (Bearer header, then session cookie).
    2. Lets credential-less requests through anonymously.
    3. Validates the token via :class:`TokenManager`.
    4. Rejects revoked sessions when a revocation checker is installed.
    5. Stores ``email``, ``sub``, and ``jti`` on ``request.state``.
    """

    def __init__(self, app: Any, token_manager: TokenManager, cookie_name: str) -> None:
        super().__init__(app)
        self._token_manager = token_manager
        self._cookie_name = cookie_name
        logger.info("AuthenticationMiddleware initialised (cookie=%s)", cookie_name)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.email = None
        request.state.sub = None
        request.state.jti = None

        credential = extract_credential(request, self._cookie_name)
        if credential is None:
            return await call_next(request)
        if not credential:
            return _unauthenticated("Authorization header must use Bearer scheme")

        try:
            claims = self._token_manager.validate_token(credential)
        except PermissionError as exc:
            error_msg = str(exc)
            if "expired" in error_msg.lower():
                return _unauthenticated("Token has expired")
            return _unauthenticated(f"Invalid token: {error_msg}")

        email = claims.email.strip().lower()
        if _check_revocation is not None:
            if await _check_revocation(claims.sub, email, claims.iat):
                return _unauthenticated("Session has been revoked")

        request.state.email = email
        request.state.sub = claims.sub
        request.state.jti = claims.jti

        return await call_next(request)
