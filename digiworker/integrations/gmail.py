"""Gmail REST integration."""

from __future__ import annotations

import base64
import logging
from email.message import EmailMessage
from typing import Any, Optional

import httpx

from ..config import GmailConfig
from .base import EmailIntegration

logger = logging.getLogger(__name__)


class GmailClient(EmailIntegration):
    """Minimal Gmail API client authenticated with an OAuth access token.

    Obtaining and refreshing the token is the caller's concern.
    """

    def __init__(
        self,
        access_token: Optional[str],
        base_url: str = GmailConfig().base_url,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._client = client

    @classmethod
    def from_config(cls, config: GmailConfig) -> "GmailClient":
        return cls(access_token=config.access_token, base_url=config.base_url)

    async def is_connected(self) -> bool:
        return bool(self._access_token)

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._access_token}"}
        url = f"{self._base_url}{path}"
        if self._client is not None:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def send(self, to: str, subject: str, body: str) -> str:
        message = EmailMessage()
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode()
        data = await self._request("POST", "/messages/send", json={"raw": raw})
        logger.info(f"Sent email to {to}")
        return data.get("id", "")

    async def read_recent(self, n: int) -> list[dict[str, Any]]:
        listing = await self._request(
            "GET", "/messages", params={"maxResults": n, "labelIds": "INBOX"}
        )
        summaries: list[dict[str, Any]] = []
        for ref in listing.get("messages", [])[:n]:
            msg = await self._request(
                "GET",
                f"/messages/{ref['id']}",
                params={"format": "metadata", "metadataHeaders": ["From", "Subject"]},
            )
            headers = {
                h["name"]: h["value"] for h in msg.get("payload", {}).get("headers", [])
            }
            summaries.append(
                {
                    "id": msg.get("id", ref["id"]),
                    "from": headers.get("From"),
                    "subject": headers.get("Subject"),
                    "snippet": msg.get("snippet", ""),
                }
            )
        logger.info(f"Read {len(summaries)} emails")
        return summaries

    async def modify_labels(self, email_id: str, label: str) -> None:
        await self._request(
            "POST", f"/messages/{email_id}/modify", json={"addLabelIds": [label]}
        )
        logger.info(f"Added label {label} to email {email_id}")
