"""Transactional email dispatch through the Resend REST API.

INVARIANT: :meth:`MailService.dispatch` makes at most one delivery attempt
per call and never raises.  Every outcome, including a missing API key,
malformed attachments, HTTP errors, and transport errors, comes back as a
:class:`DeliveryResult`.

Attachment content may be given as raw bytes or as a base64 string.  It is
normalised to raw bytes before reaching the transport, which re-encodes it
for the JSON wire format.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

import httpx

from api.middleware.prometheus import EMAILS_TOTAL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attachment:
    """A file to attach.  ``content`` is raw bytes or base64 text."""

    filename: str
    content: bytes | str
    content_type: str = "application/pdf"


@dataclass(frozen=True)
class OutboundEmail:
    """A fully normalised message ready for the transport."""

    sender: str
    to: list[str]
    subject: str
    html: str
    bcc: list[str] = field(default_factory=list)
    attachments: list[tuple[str, bytes, str]] = field(default_factory=list)


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one dispatch: ``Delivered(message_id)`` or ``Failed(reason)``."""

    delivered: bool
    message_id: str | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, message_id: str | None) -> DeliveryResult:
        return cls(delivered=True, message_id=message_id)

    @classmethod
    def failed(cls, reason: str) -> DeliveryResult:
        return cls(delivered=False, reason=reason)


def split_addresses(value: str | Sequence[str] | None) -> list[str]:
    """Accept a list or a comma-separated string and return clean addresses."""
    if not value:
        return []
    items = value.split(",") if isinstance(value, str) else list(value)
    return [a.strip() for a in items if a and a.strip()]


def normalise_attachment_content(content: bytes | str) -> bytes:
    """Return raw bytes for *content*.

    Raises
    ------
    ValueError
        If a string is not valid base64.
    """
    if isinstance(content, (bytes, bytearray)):
        return bytes(content)
    try:
        return base64.b64decode(content.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("Attachment content is neither bytes nor valid base64") from exc


class ResendTransport:
    """Single-shot HTTP client for ``POST /emails`` on the Resend API.

    Parameters
    ----------
    api_key:
        Resend API key.  When empty, :meth:`send` reports a failure without
        making a request.
    base_url:
        Root URL of the Resend API.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport (tests inject ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    async def send(self, message: OutboundEmail) -> DeliveryResult:
        if not self._api_key:
            return DeliveryResult.failed("mail transport not configured")

        payload: dict[str, object] = {
            "from": message.sender,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
        }
        if message.bcc:
            payload["bcc"] = message.bcc
        if message.attachments:
            payload["attachments"] = [
                {
                    "filename": filename,
                    "content": base64.b64encode(data).decode("ascii"),
                    "content_type": content_type,
                }
                for filename, data, content_type in message.attachments
            ]

        try:
            resp = await self._client.post("/emails", json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:200]
            logger.warning("Resend returned HTTP %s: %s", exc.response.status_code, detail)
            return DeliveryResult.failed(f"HTTP {exc.response.status_code}: {detail}")
        except httpx.RequestError as exc:
            logger.warning("Resend request failed: %s", exc)
            return DeliveryResult.failed(f"transport error: {exc.__class__.__name__}")
        except ValueError:
            return DeliveryResult.failed("mail provider returned a non-JSON body")

        message_id = body.get("id") if isinstance(body, dict) else None
        return DeliveryResult.ok(message_id)

    async def close(self) -> None:
        await self._client.aclose()


class MailService:
    """Compose and dispatch one email through a transport.

    Parameters
    ----------
    transport:
        Object with ``async send(OutboundEmail) -> DeliveryResult``.
    sender:
        ``From`` header for every message.
    default_bcc:
        Addresses copied on every message (list or comma-separated string).
    """

    def __init__(
        self,
        transport: ResendTransport,
        sender: str,
        default_bcc: str | Sequence[str] | None = None,
    ) -> None:
        self._transport = transport
        self._sender = sender
        self._default_bcc = split_addresses(default_bcc)

    async def dispatch(
        self,
        to: str | Sequence[str],
        subject: str,
        html: str,
        attachments: Sequence[Attachment] = (),
        bcc: str | Sequence[str] | None = None,
    ) -> DeliveryResult:
        """Send one message.  One attempt, no retry, never raises."""
        recipients = split_addresses(to)
        if not recipients:
            return DeliveryResult.failed("no recipients")

        try:
            files = [
                (a.filename, normalise_attachment_content(a.content), a.content_type) for a in attachments
            ]
        except ValueError as exc:
            logger.warning("Dropping email %r: %s", subject, exc)
            return DeliveryResult.failed(str(exc))

        message = OutboundEmail(
            sender=self._sender,
            to=recipients,
            subject=subject,
            html=html,
            bcc=split_addresses(bcc) or self._default_bcc,
            attachments=files,
        )

        try:
            result = await self._transport.send(message)
        except Exception as exc:
            logger.error("Mail transport raised unexpectedly", exc_info=True)
            result = DeliveryResult.failed(f"transport error: {exc.__class__.__name__}")

        EMAILS_TOTAL.labels(outcome="delivered" if result.delivered else "failed").inc()
        if result.delivered:
            logger.info("Email %r delivered to %s (id=%s)", subject, recipients, result.message_id)
        else:
            logger.warning("Email %r to %s failed: %s", subject, recipients, result.reason)
        return result

    async def close(self) -> None:
        await self._transport.close()
