"""Unit tests for the WhatsApp API client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from tenant_jobs.errors import RemoteHttpError
from tenant_jobs.messaging_client import (
    WuzapiClient,
    categorize_error,
    is_group_jid,
    normalize_phone,
)


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def fake_session(response=None, side_effect=None):
    session = MagicMock()
    session.post = MagicMock(return_value=response, side_effect=side_effect)
    session.close = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session


def test_normalize_phone():
    assert normalize_phone("+55 (11) 99999-0000") == "5511999990000"
    assert normalize_phone("120363025@g.us") == "120363025@g.us"
    assert normalize_phone("5511999990000-1612345678") == "5511999990000-1612345678@g.us"
    assert is_group_jid("120363025@g.us")
    assert not is_group_jid("5511999990000")


@pytest.mark.parametrize(
    "status_code, message, category",
    [
        (0, "Request timeout", "TIMEOUT"),
        (0, "Network error: refused", "NETWORK_ERROR"),
        (401, "denied", "UNAUTHORIZED"),
        (404, "not found", "DISCONNECTED"),
        (500, "instance disconnected", "DISCONNECTED"),
        (400, "number blocked", "BLOCKED_NUMBER"),
        (400, "bad request", "INVALID_NUMBER"),
        (200, "phone not on whatsapp", "INVALID_NUMBER"),
        (429, "slow down", "RATE_LIMIT"),
        (502, "bad gateway", "SERVER_BUSY"),
        (409, "conflict", "API_ERROR"),
    ],
)
def test_categorize_error(status_code, message, category):
    assert categorize_error(RemoteHttpError(status_code, message)) == category


@pytest.mark.asyncio
async def test_send_text_success():
    """Test sending a text message with the instance token header."""
    session = fake_session(FakeResponse(200, '{"success": true, "data": {"Id": "m1"}}'))

    with patch("aiohttp.ClientSession", return_value=session):
        client = WuzapiClient("https://wuzapi.example.com/", "inst-token")
        result = await client.send_text("+55 11 99999-0000", "Hello")

    assert result == {"success": True, "data": {"Id": "m1"}}
    args, kwargs = session.post.call_args
    assert args[0] == "https://wuzapi.example.com/chat/send/text"
    assert kwargs["json"] == {"Phone": "5511999990000", "Body": "Hello"}
    assert kwargs["headers"]["token"] == "inst-token"


@pytest.mark.asyncio
async def test_context_manager_shares_session():
    session = fake_session(FakeResponse(200, '{"success": true}'))

    with patch("aiohttp.ClientSession", return_value=session) as session_cls:
        async with WuzapiClient("https://wuzapi.example.com", "inst-token") as client:
            await client.send_text("5511999990000", "one")
            await client.send_text("5511999990001", "two")

    assert session_cls.call_count == 1
    assert session.post.call_count == 2
    session.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_send_document():
    session = fake_session(FakeResponse(200, "{}"))

    with patch("aiohttp.ClientSession", return_value=session):
        client = WuzapiClient("https://wuzapi.example.com", "inst-token")
        await client.send_media(
            "5511999990000", "document", "https://cdn.example.com/a.pdf", caption="Invoice"
        )

    args, kwargs = session.post.call_args
    assert args[0] == "https://wuzapi.example.com/chat/send/document"
    assert kwargs["json"] == {
        "Phone": "5511999990000",
        "Document": "https://cdn.example.com/a.pdf",
        "Caption": "Invoice",
        "FileName": "document.pdf",
    }


@pytest.mark.asyncio
async def test_unsupported_media_type():
    client = WuzapiClient("https://wuzapi.example.com", "inst-token")
    with pytest.raises(ValueError):
        await client.send_media("5511999990000", "sticker", "https://cdn.example.com/a.webp")


@pytest.mark.asyncio
async def test_http_error_status():
    """Test that a 4xx/5xx response raises RemoteHttpError."""
    session = fake_session(FakeResponse(500, "Internal Server Error"))

    with patch("aiohttp.ClientSession", return_value=session):
        client = WuzapiClient("https://wuzapi.example.com", "inst-token")
        with pytest.raises(RemoteHttpError) as exc_info:
            await client.send_text("5511999990000", "Hello")

    assert exc_info.value.status_code == 500
    assert exc_info.value.response_body == "Internal Server Error"
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_success_false_is_an_error():
    session = fake_session(FakeResponse(200, '{"success": false, "error": "number blocked"}'))

    with patch("aiohttp.ClientSession", return_value=session):
        client = WuzapiClient("https://wuzapi.example.com", "inst-token")
        with pytest.raises(RemoteHttpError) as exc_info:
            await client.send_text("5511999990000", "Hello")

    assert categorize_error(exc_info.value) == "BLOCKED_NUMBER"


@pytest.mark.asyncio
async def test_non_json_body():
    session = fake_session(FakeResponse(200, "OK"))

    with patch("aiohttp.ClientSession", return_value=session):
        client = WuzapiClient("https://wuzapi.example.com", "inst-token")
        assert await client.send_text("5511999990000", "Hello") == {"raw": "OK"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, category",
    [
        (aiohttp.ClientConnectionError("connection refused"), "NETWORK_ERROR"),
        (asyncio.TimeoutError(), "TIMEOUT"),
    ],
)
async def test_transport_errors(error, category):
    session = fake_session(side_effect=error)

    with patch("aiohttp.ClientSession", return_value=session):
        client = WuzapiClient("https://wuzapi.example.com", "inst-token")
        with pytest.raises(RemoteHttpError) as exc_info:
            await client.send_text("5511999990000", "Hello")

    assert exc_info.value.status_code == 0
    assert exc_info.value.retryable
    assert categorize_error(exc_info.value) == category
