"""
Pass issuer.

Writes the pass first; it is the durable commitment to the customer. The
access credential and the analytics row follow in their own transactions.
When one of those fails the pass is still returned and the failure is listed
in ``IssuedPass.errors``; nothing is rolled back.
"""
from __future__ import annotations
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import DAY_SECONDS, now_ts, random_base36, to_cents
from .infra.sql import Gated
from .infra.timings import timeit
from .model.configstore import ResolvedConfiguration
from .model.db import AccessCredential, AnalyticsRecord, Pass, DIRECT
from .model.db import SYSTEM_SELLER
from .model.pricing import breakdown

logger = logging.getLogger(__name__)

CREDENTIAL_TTL_SECONDS = 30 * DAY_SECONDS
CODE_ATTEMPTS = 3

# processor passes have no seller; analytics attribute them to the shop
ONLINE_SELLER_NAME = "Online"
ONLINE_SELLER_EMAIL = "direct@elocalpass.com"
ONLINE_LOCATION = "Online"
ONLINE_DISTRIBUTOR = "Elocalpass"


@dataclass(frozen=True)
class IssuanceRequest:
    customer_name: str
    customer_email: str
    guests: int
    days: int
    seller_id: str = SYSTEM_SELLER
    # falls back to the configuration's delivery method
    delivery_method: Optional[str] = None


@dataclass
class IssuedPass:
    pass_: Pass
    credential: Optional[AccessCredential] = None
    analytics: Optional[AnalyticsRecord] = None
    magic_link: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.errors


def new_pass_code(processor_origin: bool, now: float) -> str:
    ms = int(now * 1000)
    if processor_origin:
        return f"PASS_{ms}_{random_base36(9)}"
    return f"EL-{ms}-{random_base36(9)}"


def magic_link_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/customer/access?token={token}"


def landing_url(base_url: str, code: str) -> str:
    return f"{base_url.rstrip('/')}/landing/{code}"


class PassIssuer:
    def __init__(self, *, db: AsyncSession, gated: Gated,
                 base_url: str) -> None:
        self.db = db
        self.gated = gated
        self.base_url = base_url

    async def _persist(self, obj) -> None:
        async with self.gated():
            async with self.db.begin():
                self.db.add(obj)
        # detached, so a later rollback in this session cannot expire it
        self.db.expunge(obj)

    async def _write_pass(self, req: IssuanceRequest,
                          resolved: ResolvedConfiguration,
                          delivery_method: str, cost: int,
                          now: float) -> Pass:
        for attempt in range(1, CODE_ATTEMPTS + 1):
            code = new_pass_code(resolved.processor_origin, now)
            pass_ = Pass(
                id=uuid.uuid4().hex,
                code=code,
                seller_id=req.seller_id,
                customer_name=req.customer_name,
                customer_email=req.customer_email,
                guests=req.guests,
                days=req.days,
                cost=cost,
                expires_at=now + req.days * DAY_SECONDS,
                is_active=True,
                landing_url=(None if delivery_method == DIRECT
                             else landing_url(self.base_url, code)),
                created_at=now,
            )
            try:
                await self._persist(pass_)
                return pass_
            except IntegrityError:
                if attempt == CODE_ATTEMPTS:
                    raise
                logger.warning("pass code collision on %s, retrying", code)
        raise AssertionError("unreachable")

    async def issue(
        self,
        req: IssuanceRequest,
        resolved: ResolvedConfiguration,
        now: Optional[float] = None,
    ) -> IssuedPass:
        """Create a pass, its portal credential and its analytics row.

        ``now`` is the activation instant; the pass expires ``days`` after
        it. Raises ``InvalidGuestsOrDays`` before anything is written.
        """
        now = now if now is not None else now_ts()
        configuration = resolved.configuration
        configuration.validate(req.guests, req.days)

        delivery_method = req.delivery_method or configuration.delivery_method
        prices = breakdown(configuration.pricing, req.guests, req.days)

        async with timeit("issuer.pass"):
            pass_ = await self._write_pass(
                req, resolved, delivery_method, to_cents(prices.total), now
            )
        issued = IssuedPass(pass_=pass_)
        logger.info("issued pass %s for %s (%d guests, %d days)",
                    pass_.code, req.customer_email, req.guests, req.days)

        credential = AccessCredential(
            token=secrets.token_hex(32),
            pass_id=pass_.id,
            customer_email=req.customer_email,
            customer_name=req.customer_name,
            expires_at=now + CREDENTIAL_TTL_SECONDS,
            created_at=now,
        )
        try:
            async with timeit("issuer.credential"):
                await self._persist(credential)
            issued.credential = credential
            issued.magic_link = magic_link_url(self.base_url, credential.token)
        except SQLAlchemyError as e:
            logger.error("access credential for pass %s not written: %s",
                         pass_.code, e)
            issued.errors.append(f"credential: {e}")

        seller = resolved.seller
        if resolved.processor_origin or seller is None:
            seller_name, seller_email = ONLINE_SELLER_NAME, ONLINE_SELLER_EMAIL
            location, distributor = ONLINE_LOCATION, ONLINE_DISTRIBUTOR
        else:
            seller_name, seller_email = seller.name, seller.email
            location, distributor = (seller.location_name,
                                     seller.distributor_name)

        analytics = AnalyticsRecord(
            id=uuid.uuid4().hex,
            pass_id=pass_.id,
            pass_code=pass_.code,
            customer_name=req.customer_name,
            customer_email=req.customer_email,
            guests=req.guests,
            days=req.days,
            cost=pass_.cost,
            expires_at=pass_.expires_at,
            delivery_method=delivery_method,
            seller_id=req.seller_id,
            seller_name=seller_name,
            seller_email=seller_email,
            location_name=location,
            distributor_name=distributor,
            configuration_id=configuration.id,
            configuration_name=configuration.name,
            pricing_type=configuration.pricing.kind,
            base_amount=to_cents(prices.base),
            guest_amount=to_cents(prices.guests),
            day_amount=to_cents(prices.days),
            commission_amount=to_cents(prices.commission),
            tax_amount=to_cents(prices.tax),
            total_amount=to_cents(prices.total),
            magic_link_url=issued.magic_link,
            landing_url=pass_.landing_url,
            welcome_email_sent=False,
            rebuy_email_scheduled=configuration.send_rebuy_email,
            created_at=now,
        )
        try:
            async with timeit("issuer.analytics"):
                await self._persist(analytics)
            issued.analytics = analytics
        except SQLAlchemyError as e:
            logger.error("analytics for pass %s not written: %s",
                         pass_.code, e)
            issued.errors.append(f"analytics: {e}")

        return issued

    async def mark_welcome_sent(self, pass_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  UPDATE pass_analytics
                  SET welcome_email_sent = TRUE
                  WHERE pass_id = :pid
                """), {"pid": pass_id})
