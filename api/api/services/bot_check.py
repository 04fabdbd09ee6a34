"""hCaptcha verification client used when capturing a contract signature.

:meth:`BotCheckVerifier.verify` never raises.  A missing secret, a missing
token, a non-2xx reply, a malformed body, or a transport error all yield
``False``; the caller records that outcome on the acceptance record instead
of aborting the signature.
"""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)


class BotCheckVerifier:
    """Thin async wrapper around the hCaptcha ``siteverify`` endpoint.

    Parameters
    ----------
    secret:
        hCaptcha account secret.  When empty every check fails.
    verify_url:
        Verification endpoint.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport (tests inject ``httpx.MockTransport``).
    """

    def __init__(
        self,
        secret: str,
        verify_url: str = "https://hcaptcha.com/siteverify",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._secret = secret
        self._verify_url = verify_url
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    async def verify(self, token: str | None, client_ip: str | None = None) -> bool:
        """Return ``True`` only when hCaptcha confirms *token*."""
        if not self._secret:
            logger.debug("Bot check skipped: no secret configured")
            return False
        if not token:
            return False

        form = {"secret": self._secret, "response": token}
        if client_ip:
            form["remoteip"] = client_ip

        try:
            resp = await self._client.post(self._verify_url, data=form)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("Bot check returned HTTP %s", exc.response.status_code)
            return False
        except httpx.RequestError as exc:
            logger.warning("Bot check request failed: %s", exc)
            return False
        except ValueError:
            logger.warning("Bot check returned a non-JSON body")
            return False

        passed = isinstance(body, dict) and body.get("success") is True
        if not passed:
            logger.info("Bot check rejected token (errors=%s)", body.get("error-codes") if isinstance(body, dict) else None)
        return passed

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()
