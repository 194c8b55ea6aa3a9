"""HTTP client for the WhatsApp API (WUZAPI)."""

import asyncio
import json
import re
from typing import Any, Dict, Optional

import aiohttp

from tenant_jobs.errors import RemoteHttpError

MEDIA_ENDPOINTS = {
    "image": ("/chat/send/image", "Image"),
    "video": ("/chat/send/video", "Video"),
    "document": ("/chat/send/document", "Document"),
}

# Failure categories that retrying cannot fix
PERMANENT_FAILURES = frozenset({"INVALID_NUMBER", "BLOCKED_NUMBER", "DISCONNECTED", "UNAUTHORIZED"})


def is_group_jid(phone: str) -> bool:
    return phone.endswith("@g.us") or bool(re.fullmatch(r"\d+-\d+", phone))


def normalize_phone(phone: str) -> str:
    """Digits-only phone number, or the group JID unchanged."""
    if is_group_jid(phone):
        return phone if phone.endswith("@g.us") else f"{phone}@g.us"
    return re.sub(r"\D", "", phone)


def categorize_error(error: RemoteHttpError) -> str:
    """
    Classify a send failure for campaign reports and retry decisions.

    Authentication and disconnection failures stop a campaign; invalid and
    blocked numbers are skipped; everything else is worth retrying.
    """
    status = error.status_code
    message = str(error).lower()

    if status == 0:
        return "TIMEOUT" if "timeout" in message else "NETWORK_ERROR"
    if status in (401, 403) or "unauthorized" in message:
        return "UNAUTHORIZED"
    if status == 404 or "disconnected" in message or "not connected" in message:
        return "DISCONNECTED"
    if "blocked" in message:
        return "BLOCKED_NUMBER"
    if status == 400 or "invalid number" in message or "not on whatsapp" in message:
        return "INVALID_NUMBER"
    if status == 429:
        return "RATE_LIMIT"
    if status >= 500:
        return "SERVER_BUSY"
    return "API_ERROR"


class WuzapiClient:
    """Send WhatsApp messages through a WUZAPI instance.

    Use as an async context manager to share one HTTP session across many
    sends; otherwise each call opens its own session.
    """

    def __init__(self, base_url: str, instance_token: str, timeout: float = 30.0):
        """
        Args:
            base_url: Base URL of the WUZAPI server
            instance_token: Token of the tenant's WhatsApp instance, sent as the ``token`` header
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.instance_token = instance_token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "WuzapiClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def send_text(self, phone: str, body: str) -> Dict[str, Any]:
        """
        Send a text message.

        Raises:
            RemoteHttpError: If the API rejects the message or cannot be reached
        """
        return await self._post(
            "/chat/send/text", {"Phone": normalize_phone(phone), "Body": body}
        )

    async def send_media(
        self,
        phone: str,
        media_type: str,
        media_url: str,
        caption: str = "",
        file_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send an image, video or document by URL."""
        if media_type not in MEDIA_ENDPOINTS:
            raise ValueError(f"Unsupported media type: {media_type}")

        endpoint, field = MEDIA_ENDPOINTS[media_type]
        payload = {"Phone": normalize_phone(phone), field: media_url, "Caption": caption}
        if media_type == "document":
            payload["FileName"] = file_name or "document.pdf"
        return await self._post(endpoint, payload)

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        headers = {"token": self.instance_token, "Content-Type": "application/json"}

        if self._session is not None:
            return await self._request(self._session, url, payload, headers)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await self._request(session, url, payload, headers)

    async def _request(
        self,
        session: aiohttp.ClientSession,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> Dict[str, Any]:
        try:
            async with session.post(url, json=payload, headers=headers) as resp:
                response_body = await resp.text()

                if resp.status >= 400:
                    raise RemoteHttpError(
                        status_code=resp.status,
                        message=f"Failed to send message: {response_body}",
                        response_body=response_body,
                    )

                try:
                    data = json.loads(response_body) if response_body else {}
                except ValueError:
                    data = {"raw": response_body}
                if isinstance(data, dict) and data.get("success") is False:
                    raise RemoteHttpError(
                        status_code=resp.status,
                        message=f"Message rejected: {data.get('error') or response_body}",
                        response_body=response_body,
                    )
                return data if isinstance(data, dict) else {"data": data}

        except aiohttp.ClientError as e:
            raise RemoteHttpError(
                status_code=0,
                message=f"Network error: {str(e)}",
            ) from e
        except asyncio.TimeoutError as e:
            raise RemoteHttpError(status_code=0, message="Request timeout") from e
