"""Session token issuance and validation.

Tokens are HMAC-SHA256 signed and self-contained::

    ffs.<urlsafe-b64 JSON payload>.<hex signature over the JSON payload>

The payload carries ``sub`` (opaque subject id from the credential system),
``email``, ``iat``, ``exp``, and ``jti``.  Validation failures raise
:class:`PermissionError`; the message contains ``"expired"`` for tokens
past their ``exp`` so the middleware can report them distinctly.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
import uuid

from pydantic import BaseModel, ValidationError

from api.config import APISettings, PlatformEnv

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "ffs"


class TokenClaims(BaseModel):
    """Validated claims carried by a session token."""

    sub: str
    email: str
    iat: float
    exp: float
    jti: str


class TokenManager:
    """Issue and validate HMAC-signed session tokens.

    Parameters
    ----------
    secret:
        Signing key shared with the credential system.
    ttl_seconds:
        Default lifetime for issued tokens.
    """

    def __init__(self, secret: str, ttl_seconds: int = 3600) -> None:
        if not secret:
            raise ValueError("TokenManager requires a non-empty secret")
        self._secret = secret.encode("utf-8")
        self._ttl = ttl_seconds

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(self, *, sub: str, email: str, ttl_seconds: int | None = None) -> str:
        """Mint a token for *sub* / *email*."""
        now = time.time()
        payload = {
            "sub": sub,
            "email": email.strip().lower(),
            "iat": now,
            "exp": now + (ttl_seconds if ttl_seconds is not None else self._ttl),
            "jti": uuid.uuid4().hex,
        }
        payload_json = json.dumps(payload, separators=(",", ":"))
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}.{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify signature and expiry and return the claims.

        Raises
        ------
        PermissionError
            If the token is malformed, its signature does not match, or it
            has expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")

        try:
            payload_json = base64.urlsafe_b64decode(parts[1].encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError):
            raise PermissionError("Malformed token payload")

        if not hmac.compare_digest(self._sign(payload_json), parts[2]):
            raise PermissionError("Invalid token signature")

        try:
            claims = TokenClaims.model_validate_json(payload_json)
        except ValidationError:
            raise PermissionError("Token payload is missing required claims")

        if claims.exp < time.time():
            raise PermissionError("Token has expired")
        if not claims.email.strip():
            raise PermissionError("Token carries no email")
        return claims


def build_token_manager(settings: APISettings) -> TokenManager:
    """Construct the process-wide :class:`TokenManager` from settings.

    In dev an unset secret is replaced by a random per-process value so the
    service still starts; tokens then do not survive restarts.  Other
    environments refuse to start without a configured secret.
    """
    secret = settings.auth_token_secret.get_secret_value()
    if not secret:
        if settings.platform_env != PlatformEnv.DEV:
            raise RuntimeError(
                f"FUELFLOW_AUTH_TOKEN_SECRET must be set in {settings.platform_env.value} mode. Refusing to start."
            )
        secret = f"dev-{secrets.token_hex(32)}"
        logger.warning(
            "FUELFLOW_AUTH_TOKEN_SECRET not set; generated random per-process dev secret. "
            "Tokens will not survive process restarts."
        )
    return TokenManager(secret, ttl_seconds=settings.auth_token_ttl_seconds)
