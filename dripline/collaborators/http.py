"""Email delivery through an HTTP provider API."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..exceptions import CollaboratorError, TransientCollaboratorError
from .base import EmailSender

logger = logging.getLogger(__name__)


class HttpEmailSender(EmailSender):
    """POST messages as JSON to a provider endpoint.

    Transport errors and 5xx/429 responses are transient; other 4xx
    responses are permanent rejections.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        sender: str = "no-reply@localhost",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = endpoint
        self.sender = sender
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def send_email(self, to: str, subject: str, body: str) -> None:
        payload = {"from": self.sender, "to": to, "subject": subject, "body": body}
        try:
            response = await self._client.post(self.endpoint, json=payload)
        except httpx.TransportError as e:
            raise TransientCollaboratorError(f"Email provider unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientCollaboratorError(
                f"Email provider unavailable: HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise CollaboratorError(
                f"Email provider rejected message to {to}: HTTP {response.status_code}"
            )
        logger.info(f"Email to {to} accepted by provider")

    async def close(self) -> None:
        await self._client.aclose()
