"""
Scheduled issuance store.

A record moves PENDING -> CLAIMED -> PROCESSED and nothing else. Both steps
are single conditional UPDATEs, so any number of push triggers and sweeps
may race on the same record; the row itself arbitrates:

  reserve   sets claimed_at      WHERE is_processed = FALSE
                                   AND claimed_at IS NULL
  finalize  sets is_processed,   WHERE is_processed = FALSE
            processed_at,          AND claimed_at IS NOT NULL
            created_pass_id

A record that is CLAIMED but never reaches PROCESSED had its issuance fail
after the reservation. It is left as-is (a blind retry could double-issue
against a slow success) and is reported by ``list_anomalies``.
"""
from __future__ import annotations
import uuid
from typing import List, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AlreadyClaimed
from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from .db import (
    ScheduledIssuance, DEFAULT_CONFIGURATION, DIRECT, SYSTEM_SELLER,
)

PENDING = "PENDING"
CLAIMED = "CLAIMED"
PROCESSED = "PROCESSED"


def state_of(rec: ScheduledIssuance) -> str:
    if rec.is_processed:
        return PROCESSED
    if rec.claimed_at is not None:
        return CLAIMED
    return PENDING


class ScheduledIssuanceStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def create(
        self,
        *,
        scheduled_for: float,
        client_name: str,
        client_email: str,
        guests: int,
        days: int,
        seller_id: str = SYSTEM_SELLER,
        configuration_id: str = DEFAULT_CONFIGURATION,
        delivery_method: str = DIRECT,
        order_id: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> ScheduledIssuance:
        rec = ScheduledIssuance(
            id=uuid.uuid4().hex,
            scheduled_for=float(scheduled_for),
            client_name=client_name,
            client_email=client_email,
            guests=guests,
            days=days,
            seller_id=seller_id,
            configuration_id=configuration_id,
            delivery_method=delivery_method,
            order_id=order_id,
            created_at=created_at if created_at is not None else now_ts(),
            is_processed=False,
        )
        async with self.gated():
            async with self.db.begin():
                self.db.add(rec)
        return rec

    async def get(self, scheduled_id: str) -> Optional[ScheduledIssuance]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(ScheduledIssuance)
                    .where(ScheduledIssuance.id == scheduled_id)
                    .execution_options(populate_existing=True)
                )).scalars().first()

    async def set_dispatch_message(
            self, scheduled_id: str, message_id: str
    ) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  UPDATE scheduled_issuances
                  SET dispatch_message_id = :mid
                  WHERE id = :id
                """), {"id": scheduled_id, "mid": message_id})

    # ----------------------------
    # claim protocol
    # ----------------------------
    async def reserve(
            self, scheduled_id: str, now: Optional[float] = None
    ) -> bool:
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE scheduled_issuances
                  SET claimed_at = :now
                  WHERE id = :id
                    AND is_processed = FALSE
                    AND claimed_at IS NULL
                """), {
                    "id": scheduled_id,
                    "now": now if now is not None else now_ts(),
                })
        return res.rowcount == 1

    async def finalize(
            self, scheduled_id: str, pass_id: str, now: Optional[float] = None
    ) -> bool:
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE scheduled_issuances
                  SET is_processed = TRUE,
                      processed_at = :now,
                      created_pass_id = :pass_id
                  WHERE id = :id
                    AND is_processed = FALSE
                    AND claimed_at IS NOT NULL
                """), {
                    "id": scheduled_id,
                    "pass_id": pass_id,
                    "now": now if now is not None else now_ts(),
                })
        return res.rowcount == 1

    async def claim(
            self, scheduled_id: str, now: Optional[float] = None
    ) -> ScheduledIssuance:
        """Reserve the record for issuance or raise ``AlreadyClaimed``.

        Returns the refreshed row. Pair with ``finalize`` once the pass
        exists.
        """
        if not await self.reserve(scheduled_id, now):
            raise AlreadyClaimed(scheduled_id)
        rec = await self.get(scheduled_id)
        if rec is None:
            # reserve() only matches existing rows
            raise AlreadyClaimed(scheduled_id)
        return rec

    async def release(self, scheduled_id: str) -> bool:
        # operator action: put a stuck reservation back to PENDING
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE scheduled_issuances
                  SET claimed_at = NULL
                  WHERE id = :id
                    AND is_processed = FALSE
                    AND claimed_at IS NOT NULL
                """), {"id": scheduled_id})
        return res.rowcount == 1

    # ----------------------------
    # queries
    # ----------------------------
    async def list_overdue(
            self, now: float, limit: int = 500
    ) -> List[ScheduledIssuance]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(ScheduledIssuance)
                    .where(
                        ScheduledIssuance.scheduled_for <= now,
                        ScheduledIssuance.is_processed.is_(False),
                        ScheduledIssuance.claimed_at.is_(None),
                    )
                    .order_by(ScheduledIssuance.scheduled_for.asc())
                    .limit(limit)
                )).scalars().all()
        return list(rows)

    async def list_anomalies(
            self, older_than: float
    ) -> List[ScheduledIssuance]:
        # claimed before `older_than` and still without a pass
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(ScheduledIssuance)
                    .where(
                        ScheduledIssuance.is_processed.is_(False),
                        ScheduledIssuance.claimed_at.is_not(None),
                        ScheduledIssuance.claimed_at <= older_than,
                    )
                    .order_by(ScheduledIssuance.claimed_at.asc())
                )).scalars().all()
        return list(rows)

    async def list_upcoming(self, limit: int = 200) -> List[ScheduledIssuance]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(ScheduledIssuance)
                    .where(ScheduledIssuance.is_processed.is_(False))
                    .order_by(ScheduledIssuance.scheduled_for.asc())
                    .limit(max(1, min(limit, 500)))
                )).scalars().all()
        return list(rows)


def to_dict(rec: ScheduledIssuance) -> dict:
    return {
        "id": rec.id,
        "state": state_of(rec),
        "scheduled_for": to_iso(rec.scheduled_for),
        "client_name": rec.client_name,
        "client_email": rec.client_email,
        "guests": rec.guests,
        "days": rec.days,
        "seller_id": rec.seller_id,
        "configuration_id": rec.configuration_id,
        "delivery_method": rec.delivery_method,
        "order_id": rec.order_id,
        "claimed_at": to_iso(rec.claimed_at),
        "processed_at": to_iso(rec.processed_at),
        "created_pass_id": rec.created_pass_id,
        "dispatch_message_id": rec.dispatch_message_id,
    }
