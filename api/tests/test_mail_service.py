"""Tests for api/api/services/mail_service.py

Covers:
- Attachment normalisation from bytes and base64 text
- Malformed base64 is reported as a failed delivery, not raised
- Missing API key, HTTP errors, and transport errors yield Failed results
- Default BCC and explicit BCC handling
- Delivery outcome counter
"""

from __future__ import annotations

import base64
import json

import httpx
import pytest
from prometheus_client import REGISTRY

from api.services.mail_service import (
    Attachment,
    MailService,
    ResendTransport,
    normalise_attachment_content,
    split_addresses,
)


def _counter(outcome: str) -> float:
    return REGISTRY.get_sample_value("fuelflow_emails_total", {"outcome": outcome}) or 0.0


def _service(handler, api_key: str = "re_test_key", default_bcc: str | None = None) -> MailService:
    transport = ResendTransport(api_key=api_key, base_url="https://resend.test", transport=httpx.MockTransport(handler))
    return MailService(transport, sender="FuelFlow <test@fuelflow.test>", default_bcc=default_bcc)


class TestHelpers:
    def test_bytes_pass_through(self) -> None:
        assert normalise_attachment_content(b"%PDF-1.4") == b"%PDF-1.4"

    def test_base64_decoded(self) -> None:
        encoded = base64.b64encode(b"%PDF-1.4").decode()
        assert normalise_attachment_content(encoded) == b"%PDF-1.4"

    def test_bad_base64_raises(self) -> None:
        with pytest.raises(ValueError):
            normalise_attachment_content("not base64!!")

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, []),
            ("", []),
            ("a@x.com", ["a@x.com"]),
            ("a@x.com, b@x.com ,", ["a@x.com", "b@x.com"]),
            (["a@x.com", " ", "b@x.com"], ["a@x.com", "b@x.com"]),
        ],
    )
    def test_split_addresses(self, value, expected) -> None:
        assert split_addresses(value) == expected


class TestDispatch:
    @pytest.mark.asyncio
    async def test_delivered_with_default_bcc(self, mail_service: MailService, mail_recorder) -> None:
        result = await mail_service.dispatch(
            to="jane@example.com",
            subject="Hello",
            html="<p>hi</p>",
            attachments=[Attachment(filename="a.pdf", content=b"%PDF")],
        )

        assert result.delivered is True
        assert result.message_id == "email-1"
        sent = mail_recorder.sent[0]
        assert sent["from"] == "FuelFlow <test@fuelflow.test>"
        assert sent["to"] == ["jane@example.com"]
        assert sent["bcc"] == ["ops@fuelflow.test"]
        assert sent["attachments"][0]["filename"] == "a.pdf"
        assert base64.b64decode(sent["attachments"][0]["content"]) == b"%PDF"

    @pytest.mark.asyncio
    async def test_explicit_bcc_replaces_default(self, mail_service: MailService, mail_recorder) -> None:
        await mail_service.dispatch(to="jane@example.com", subject="s", html="h", bcc="audit@fuelflow.test")
        assert mail_recorder.sent[0]["bcc"] == ["audit@fuelflow.test"]

    @pytest.mark.asyncio
    async def test_base64_attachment_sent_once_encoded(self, mail_service: MailService, mail_recorder) -> None:
        encoded = base64.b64encode(b"%PDF-data").decode()
        await mail_service.dispatch(
            to="jane@example.com", subject="s", html="h", attachments=[Attachment(filename="a.pdf", content=encoded)]
        )
        assert mail_recorder.sent[0]["attachments"][0]["content"] == encoded

    @pytest.mark.asyncio
    async def test_bad_attachment_is_failed_without_request(self, mail_service: MailService, mail_recorder) -> None:
        result = await mail_service.dispatch(
            to="jane@example.com", subject="s", html="h", attachments=[Attachment(filename="a.pdf", content="%%%")]
        )
        assert result.delivered is False
        assert mail_recorder.sent == []

    @pytest.mark.asyncio
    async def test_no_recipients(self, mail_service: MailService, mail_recorder) -> None:
        result = await mail_service.dispatch(to="", subject="s", html="h")
        assert result.delivered is False
        assert result.reason == "no recipients"
        assert mail_recorder.sent == []

    @pytest.mark.asyncio
    async def test_missing_api_key(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"id": "x"})

        service = _service(handler, api_key="")
        try:
            result = await service.dispatch(to="jane@example.com", subject="s", html="h")
        finally:
            await service.close()

        assert result.delivered is False
        assert result.reason == "mail transport not configured"
        assert calls == []

    @pytest.mark.asyncio
    async def test_http_error(self, mail_service: MailService, mail_recorder) -> None:
        mail_recorder.fail_status = 429
        result = await mail_service.dispatch(to="jane@example.com", subject="s", html="h")
        assert result.delivered is False
        assert result.reason.startswith("HTTP 429")
        assert len(mail_recorder.sent) == 1

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        service = _service(handler)
        try:
            result = await service.dispatch(to="jane@example.com", subject="s", html="h")
        finally:
            await service.close()

        assert result.delivered is False
        assert result.reason == "transport error: ConnectError"

    @pytest.mark.asyncio
    async def test_authorization_header(self) -> None:
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["path"] = request.url.path
            json.loads(request.content)
            return httpx.Response(200, json={"id": "abc"})

        service = _service(handler)
        try:
            await service.dispatch(to="jane@example.com", subject="s", html="h")
        finally:
            await service.close()

        assert seen == {"auth": "Bearer re_test_key", "path": "/emails"}

    @pytest.mark.asyncio
    async def test_outcome_counter(self, mail_service: MailService, mail_recorder) -> None:
        delivered_before = _counter("delivered")
        failed_before = _counter("failed")

        await mail_service.dispatch(to="jane@example.com", subject="s", html="h")
        mail_recorder.fail_status = 500
        await mail_service.dispatch(to="jane@example.com", subject="s", html="h")

        assert _counter("delivered") == delivered_before + 1
        assert _counter("failed") == failed_before + 1
