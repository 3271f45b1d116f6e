from __future__ import annotations
from typing import Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ...infra.sql import Gated


class EventGate:
    """Exact-replay filter for processor webhook deliveries.

    Uses the webhook_events_seen table (created with the ORM metadata).
    ON CONFLICT ... RETURNING works on PostgreSQL and SQLite >= 3.35.
    """

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        # True -> first delivery; False -> replay
        if not evt_id:
            return True
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO webhook_events_seen(idempotency_key, created_at)
                  VALUES(:k, :ts)
                  ON CONFLICT (idempotency_key) DO NOTHING
                  RETURNING idempotency_key
                """), {"k": evt_id, "ts": now_ts()})).first()
        return row is not None

    async def forget(self, evt_id: str) -> None:
        # let a redelivery through when processing of the first one failed
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM webhook_events_seen "
                         "WHERE idempotency_key = :k"),
                    {"k": evt_id},
                )
