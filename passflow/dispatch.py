from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .infra.timings import timeit

logger = logging.getLogger(__name__)

QSTASH_DEFAULT_URL = "https://qstash.upstash.io"


# ----------------------------
# Delayed dispatch interface
# ----------------------------
class DispatchScheduler(ABC):
    @abstractmethod
    async def schedule(
            self, scheduled_id: str, delay_seconds: float
    ) -> Optional[str]:
        """Ask for a trigger callback after ``delay_seconds``.

        Returns the provider message id, or None when nothing was queued.
        Never raises: the periodic sweep picks up whatever is not pushed.
        """


class NullScheduler(DispatchScheduler):
    async def schedule(self, scheduled_id, delay_seconds):
        logger.info("no dispatch service configured; %s left to the sweep",
                    scheduled_id)
        return None


class QStashScheduler(DispatchScheduler):
    def __init__(
        self,
        *,
        token: str,
        callback_url: str,
        trigger_secret: str = "",
        base_url: str = QSTASH_DEFAULT_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ) -> None:
        self.token = token
        self.callback_url = callback_url
        self.trigger_secret = trigger_secret
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    def _headers(self, delay_seconds: float) -> dict:
        delay_ms = int(max(0.0, delay_seconds) * 1000)
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Delay": f"{delay_ms}ms",
        }
        if self.trigger_secret:
            # forwarded verbatim to the trigger endpoint
            headers["Upstash-Forward-Authorization"] = (
                f"Bearer {self.trigger_secret}"
            )
        return headers

    async def _publish(self, client: httpx.AsyncClient, scheduled_id: str,
                       delay_seconds: float) -> httpx.Response:
        return await client.post(
            f"{self.base_url}/v2/publish/{self.callback_url}",
            json={"scheduledIssuanceId": scheduled_id},
            headers=self._headers(delay_seconds),
            timeout=self.timeout,
        )

    async def schedule(
            self, scheduled_id: str, delay_seconds: float
    ) -> Optional[str]:
        if not self.token:
            logger.info("QSTASH_TOKEN not set; %s left to the sweep",
                        scheduled_id)
            return None
        try:
            async with timeit("dispatch.publish"):
                if self.client is not None:
                    resp = await self._publish(
                        self.client, scheduled_id, delay_seconds
                    )
                else:
                    async with httpx.AsyncClient() as client:
                        resp = await self._publish(
                            client, scheduled_id, delay_seconds
                        )
        except httpx.HTTPError as e:
            logger.error("dispatch publish for %s failed: %s",
                         scheduled_id, e)
            return None

        if resp.status_code >= 400:
            logger.error("dispatch publish for %s rejected (%s): %s",
                         scheduled_id, resp.status_code, resp.text[:200])
            return None
        try:
            message_id = resp.json().get("messageId")
        except ValueError:
            message_id = None
        logger.info("scheduled %s for delivery in %.0fs (message %s)",
                    scheduled_id, delay_seconds, message_id)
        return message_id
