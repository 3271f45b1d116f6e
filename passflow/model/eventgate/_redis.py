from __future__ import annotations
from typing import Optional
import redis.asyncio as redis

KEY_PREFIX = "passflow:evt:"


def event_key(evt_id: str) -> str:
    return KEY_PREFIX + evt_id


class EventGate:
    """SET NX with a TTL; the key expires long after any redelivery."""

    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        first = await self.r.set(event_key(evt_id), "1", nx=True, ex=self.ttl)
        return bool(first)

    async def forget(self, evt_id: str) -> None:
        await self.r.delete(event_key(evt_id))
