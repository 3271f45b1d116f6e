"""
Payment reconciliation gate.

The processor reports one payment through two channels (server webhook and
browser return redirect) that may arrive in either order, both, or with
different or missing transaction ids. Before a confirmation may create an
order, and therefore a pass, it is matched against existing orders:

  1. exact match on payment_id
  2. otherwise (customer_email, amount) created inside the dedup window,
     restricted to id-less orders when the confirmation carries an id

Two different ids are two payments, even for the same customer and amount.
An id-less order matched by a confirmation with an id adopts that id.

The second rule is a heuristic with a known race window: two confirmations
without ids arriving at the same instant can both insert. Exact ids are
protected by the unique constraint on orders.payment_id.

Reconciling does not route. Both channels may see the same unrouted order,
so routing is claimed separately with ``claim_routing``.
"""
from __future__ import annotations
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_cents, from_cents, to_iso
from ..infra.sql import Gated
from .db import Order, SYSTEM_SELLER

DEFAULT_DEDUP_WINDOW_SECONDS = 5 * 60

DELIVERY_NOW = "now"
DELIVERY_FUTURE = "future"


@dataclass(frozen=True)
class PaymentConfirmation:
    payment_id: Optional[str]
    amount: Decimal
    currency: str
    customer_name: str
    customer_email: str
    guests: int
    days: int
    delivery_type: str = DELIVERY_NOW
    delivery_at: Optional[float] = None
    seller_id: str = SYSTEM_SELLER
    source: str = "webhook"


@dataclass(frozen=True)
class ReconcileResult:
    is_new: bool
    order: Order


class OrderStore:
    def __init__(
        self, *, db: AsyncSession, gated: Gated,
        dedup_window: float = DEFAULT_DEDUP_WINDOW_SECONDS,
    ) -> None:
        self.db = db
        self.gated = gated
        self.dedup_window = dedup_window

    async def _find_existing(
            self, c: PaymentConfirmation, cents: int, now: float
    ) -> Optional[Order]:
        stmt = (
            select(Order)
            .where(
                Order.customer_email == c.customer_email,
                Order.amount == cents,
                Order.created_at >= now - self.dedup_window,
            )
            .order_by(Order.created_at.desc())
            .limit(1)
        )
        if c.payment_id:
            hit = (await self.db.execute(
                select(Order).where(Order.payment_id == c.payment_id)
            )).scalars().first()
            if hit is not None:
                return hit
            stmt = stmt.where(Order.payment_id.is_(None))
        return (await self.db.execute(stmt)).scalars().first()

    async def reconcile(
            self, c: PaymentConfirmation, now: Optional[float] = None
    ) -> ReconcileResult:
        now = now if now is not None else now_ts()
        cents = to_cents(c.amount)
        order = Order(
            id=uuid.uuid4().hex,
            payment_id=c.payment_id or None,
            amount=cents,
            currency=c.currency,
            customer_name=c.customer_name,
            customer_email=c.customer_email,
            guests=c.guests,
            days=c.days,
            delivery_type=c.delivery_type,
            delivery_at=c.delivery_at,
            seller_id=c.seller_id,
            source=c.source,
            status="PAID",
            created_at=now,
        )
        existing = None
        try:
            async with self.gated():
                async with self.db.begin():
                    existing = await self._find_existing(c, cents, now)
                    if existing is None:
                        self.db.add(order)
                    elif c.payment_id and existing.payment_id is None:
                        existing.payment_id = c.payment_id
        except IntegrityError:
            # a concurrent confirmation with the same payment_id won
            if not c.payment_id:
                raise
            existing = await self.get_by_payment_id(c.payment_id)
            if existing is None:
                raise
        # detached: later rollbacks in this session must not expire it
        result = ReconcileResult(existing is None, existing or order)
        self.db.expunge(result.order)
        return result

    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Order).where(Order.payment_id == payment_id)
                )).scalars().first()

    async def claim_routing(self, order_id: str, now: float) -> bool:
        """True for exactly one caller per order until ``release_routing``."""
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE orders SET routed_at = :now
                  WHERE id = :id AND routed_at IS NULL
                """), {"id": order_id, "now": now})
        return res.rowcount == 1

    async def release_routing(self, order_id: str) -> None:
        # routing failed before anything was issued or scheduled
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("UPDATE orders SET routed_at = NULL WHERE id = :id"),
                    {"id": order_id},
                )

    async def attach_pass(self, order_id: str, pass_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("UPDATE orders SET pass_id = :p WHERE id = :id"),
                    {"id": order_id, "p": pass_id},
                )

    async def attach_scheduled(self, order_id: str, scheduled_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("""
                      UPDATE orders SET scheduled_issuance_id = :s
                      WHERE id = :id
                    """),
                    {"id": order_id, "s": scheduled_id},
                )


def to_dict(o: Order) -> dict:
    return {
        "order_id": o.id,
        "payment_id": o.payment_id or "",
        "status": o.status,
        "amount": str(from_cents(o.amount)),
        "currency": o.currency,
        "customer_name": o.customer_name,
        "customer_email": o.customer_email,
        "guests": o.guests,
        "days": o.days,
        "delivery_type": o.delivery_type,
        "delivery_at": to_iso(o.delivery_at),
        "created_at": to_iso(o.created_at),
        "pass_id": o.pass_id,
        "scheduled_issuance_id": o.scheduled_issuance_id,
    }
