from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .errors import MailDeliveryError

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
DEFAULT_TIMEOUT_SECONDS = 10.0


class MailTransport(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> Optional[str]:
        """Deliver one message; return the provider message id.

        Raises MailDeliveryError on any rejection or transport failure.
        """


class ResendTransport(MailTransport):
    def __init__(
        self,
        api_key: str,
        sender: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        url: str = RESEND_SEND_URL,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.client = client
        self.timeout = timeout
        self.url = url

    async def _post(self, client: httpx.AsyncClient, body: dict):
        return await client.post(
            self.url,
            json=body,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )

    async def send(self, to: str, subject: str, html: str) -> Optional[str]:
        body = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        try:
            if self.client is not None:
                resp = await self._post(self.client, body)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await self._post(client, body)
        except httpx.HTTPError as e:
            raise MailDeliveryError(f"resend transport error: {e}") from e

        if resp.status_code >= 400:
            raise MailDeliveryError(
                f"resend rejected message ({resp.status_code}): "
                f"{resp.text[:200]}"
            )
        try:
            return resp.json().get("id")
        except ValueError:
            return None
