"""
Issuance pipeline: payment intake, the push trigger and the fallback sweep.

Push trigger and sweep share ``_process``; whichever claims the scheduled
record first issues the pass, the other gets ALREADY_CLAIMED. Configuration
is resolved and validated before the claim so that a bad record stays
PENDING and is retried by later sweeps.

Payment intake claims the right to route an order before issuing or
scheduling anything. A routing attempt that fails before a pass or a
scheduled record exists gives the claim back, so a redelivered confirmation
finishes the job instead of being taken for a duplicate.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .dispatch import DispatchScheduler, NullScheduler
from .errors import AlreadyClaimed, ConfigurationNotFound, ValidationError
from .helpers import now_ts
from .infra.sql import Gated
from .infra.timings import timeit
from .issuer import IssuanceRequest, IssuedPass, PassIssuer
from .model.configstore import ConfigurationStore, ResolvedConfiguration
from .model.db import DEFAULT_CONFIGURATION, DIRECT, Order
from .model.orders import (
    DEFAULT_DEDUP_WINDOW_SECONDS, DELIVERY_NOW, OrderStore,
    PaymentConfirmation,
)
from .model.scheduled import PENDING, ScheduledIssuanceStore, state_of
from .notify import Customer, NotificationDispatcher, NotificationResult

logger = logging.getLogger(__name__)

# ProcessOutcome.status
PROCESSED = "PROCESSED"
ALREADY_CLAIMED = "ALREADY_CLAIMED"
NOT_FOUND = "NOT_FOUND"
FAILED = "FAILED"      # validation; record left PENDING
ANOMALY = "ANOMALY"    # reserved but no pass; record left CLAIMED
ERROR = "ERROR"        # unexpected failure before the reservation


@dataclass(frozen=True)
class ProcessOutcome:
    scheduled_id: str
    status: str
    pass_id: Optional[str] = None
    pass_code: Optional[str] = None
    notification: Optional[NotificationResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (PROCESSED, ALREADY_CLAIMED)

    def to_dict(self) -> dict:
        return {
            "scheduledIssuanceId": self.scheduled_id,
            "status": self.status,
            "passId": self.pass_id,
            "passCode": self.pass_code,
            "emailSent": bool(self.notification and self.notification.sent),
            "error": self.error,
        }


@dataclass
class SweepResult:
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    results: List[ProcessOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "errors": self.errors,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class PaymentOutcome:
    is_new: bool
    order: Order
    pass_code: Optional[str] = None
    scheduled_id: Optional[str] = None
    notification: Optional[NotificationResult] = None


@dataclass(frozen=True)
class SellerRequest:
    seller_id: str
    customer_name: str
    customer_email: str
    guests: int
    days: int
    # defaults to the configuration's method
    delivery_method: Optional[str] = None
    # epoch seconds; None or a past instant issues immediately
    deliver_at: Optional[float] = None


@dataclass
class SellerOutcome:
    pass_id: Optional[str] = None
    pass_code: Optional[str] = None
    landing_url: Optional[str] = None
    scheduled_id: Optional[str] = None
    notification: Optional[NotificationResult] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "passId": self.pass_id,
            "passCode": self.pass_code,
            "landingUrl": self.landing_url,
            "scheduledIssuanceId": self.scheduled_id,
            "emailSent": bool(self.notification and self.notification.sent),
            "errors": self.errors,
        }


class IssuancePipeline:
    def __init__(
        self,
        *,
        sessions: async_sessionmaker[AsyncSession],
        gated: Gated,
        notifier: NotificationDispatcher,
        dispatcher: Optional[DispatchScheduler] = None,
        base_url: str,
        dedup_window: float = DEFAULT_DEDUP_WINDOW_SECONDS,
    ) -> None:
        self.sessions = sessions
        self.gated = gated
        self.notifier = notifier
        self.dispatcher = dispatcher or NullScheduler()
        self.base_url = base_url
        self.dedup_window = dedup_window

    # ----------------------------
    # shared
    # ----------------------------
    async def _welcome(
        self, db: AsyncSession, issuer: PassIssuer, issued: IssuedPass,
        resolved: ResolvedConfiguration,
    ) -> NotificationResult:
        pass_ = issued.pass_
        result = await self.notifier.notify(
            pass_,
            Customer(pass_.customer_name, pass_.customer_email),
            resolved.configuration,
            templates=ConfigurationStore(db=db, gated=self.gated),
            magic_link=issued.magic_link,
        )
        if result.sent and issued.analytics is not None:
            try:
                await issuer.mark_welcome_sent(pass_.id)
            except SQLAlchemyError as e:
                logger.error("welcome email for %s sent but not recorded: %s",
                             pass_.code, e)
        return result

    # ----------------------------
    # payment intake
    # ----------------------------
    async def accept_payment(
        self, c: PaymentConfirmation, now: Optional[float] = None
    ) -> PaymentOutcome:
        """Reconcile a processor confirmation and route the order.

        Immediate orders get their pass now; future orders become a
        scheduled issuance plus a delayed trigger. A duplicate confirmation
        returns the existing order and does nothing else, unless an earlier
        attempt failed to route it.
        """
        now = now if now is not None else now_ts()
        async with self.sessions() as db:
            configs = ConfigurationStore(db=db, gated=self.gated)
            resolved = await configs.resolve(c.seller_id, DEFAULT_CONFIGURATION)
            resolved.configuration.validate(c.guests, c.days)

            orders = OrderStore(db=db, gated=self.gated,
                                dedup_window=self.dedup_window)
            async with timeit("orders.reconcile"):
                rec = await orders.reconcile(c, now)
            order = rec.order
            if not await orders.claim_routing(order.id, now):
                logger.info("duplicate confirmation for order %s (%s)",
                            order.id, c.source)
                return PaymentOutcome(False, order,
                                      scheduled_id=order.scheduled_issuance_id)
            if not rec.is_new:
                logger.warning("order %s was never routed; routing it now "
                               "(%s)", order.id, c.source)

            if order.delivery_type == DELIVERY_NOW:
                return await self._route_now(db, orders, order, rec.is_new,
                                             resolved, now)
            return await self._route_future(db, orders, order, rec.is_new,
                                            now)

    async def _route_now(
        self, db: AsyncSession, orders: OrderStore, order: Order,
        is_new: bool, resolved: ResolvedConfiguration, now: float,
    ) -> PaymentOutcome:
        issuer = PassIssuer(db=db, gated=self.gated, base_url=self.base_url)
        try:
            issued = await issuer.issue(
                IssuanceRequest(
                    customer_name=order.customer_name,
                    customer_email=order.customer_email,
                    guests=order.guests,
                    days=order.days,
                    seller_id=order.seller_id,
                    delivery_method=DIRECT,
                ),
                resolved,
                now=now,
            )
        except Exception:
            logger.critical("order %s is paid but has no pass; waiting for "
                            "a redelivery", order.id, exc_info=True)
            await orders.release_routing(order.id)
            raise
        await orders.attach_pass(order.id, issued.pass_.id)
        result = await self._welcome(db, issuer, issued, resolved)
        return PaymentOutcome(is_new, order, pass_code=issued.pass_.code,
                              notification=result)

    async def _route_future(
        self, db: AsyncSession, orders: OrderStore, order: Order,
        is_new: bool, now: float,
    ) -> PaymentOutcome:
        store = ScheduledIssuanceStore(db=db, gated=self.gated)
        scheduled_for = (order.delivery_at if order.delivery_at is not None
                         else now)
        try:
            sched = await store.create(
                scheduled_for=scheduled_for,
                client_name=order.customer_name,
                client_email=order.customer_email,
                guests=order.guests,
                days=order.days,
                seller_id=order.seller_id,
                configuration_id=DEFAULT_CONFIGURATION,
                delivery_method=DIRECT,
                order_id=order.id,
                created_at=now,
            )
        except Exception:
            logger.critical("order %s is paid but was not scheduled; waiting "
                            "for a redelivery", order.id, exc_info=True)
            await orders.release_routing(order.id)
            raise
        scheduled_id = sched.id

        # the record exists and the sweep will issue it from here on
        try:
            await orders.attach_scheduled(order.id, scheduled_id)
        except SQLAlchemyError as e:
            logger.error("order %s scheduled as %s but not linked: %s",
                         order.id, scheduled_id, e)
        await self._dispatch(store, scheduled_id, scheduled_for - now)
        logger.info("order %s scheduled as %s", order.id, scheduled_id)
        return PaymentOutcome(is_new, order, scheduled_id=scheduled_id)

    async def _dispatch(self, store: ScheduledIssuanceStore,
                        scheduled_id: str, delay: float) -> None:
        message_id = await self.dispatcher.schedule(scheduled_id,
                                                    max(0.0, delay))
        if not message_id:
            return
        try:
            await store.set_dispatch_message(scheduled_id, message_id)
        except SQLAlchemyError as e:
            logger.error("dispatch message %s for %s not recorded: %s",
                         message_id, scheduled_id, e)

    # ----------------------------
    # seller-requested issuance
    # ----------------------------
    async def issue_for_seller(
        self, req: SellerRequest, now: Optional[float] = None
    ) -> SellerOutcome:
        """Issue a pass under the seller's own configuration.

        With ``deliver_at`` in the future the pass becomes a scheduled
        issuance instead; it is priced and validated again when it fires.
        """
        now = now if now is not None else now_ts()
        async with self.sessions() as db:
            configs = ConfigurationStore(db=db, gated=self.gated)
            seller = await configs.get_seller(req.seller_id)
            if seller is None or not seller.configuration_id:
                raise ConfigurationNotFound(req.seller_id)
            resolved = await configs.resolve(seller.id,
                                             seller.configuration_id)
            configuration = resolved.configuration
            configuration.validate(req.guests, req.days)
            delivery_method = configuration.delivery_for(req.delivery_method)

            if req.deliver_at is not None and req.deliver_at > now:
                store = ScheduledIssuanceStore(db=db, gated=self.gated)
                sched = await store.create(
                    scheduled_for=req.deliver_at,
                    client_name=req.customer_name,
                    client_email=req.customer_email,
                    guests=req.guests,
                    days=req.days,
                    seller_id=seller.id,
                    configuration_id=configuration.id,
                    delivery_method=delivery_method,
                    created_at=now,
                )
                scheduled_id = sched.id
                await self._dispatch(store, scheduled_id,
                                     req.deliver_at - now)
                logger.info("seller %s scheduled %s for %s", seller.id,
                            scheduled_id, req.customer_email)
                return SellerOutcome(scheduled_id=scheduled_id)

            issuer = PassIssuer(db=db, gated=self.gated,
                                base_url=self.base_url)
            issued = await issuer.issue(
                IssuanceRequest(
                    customer_name=req.customer_name,
                    customer_email=req.customer_email,
                    guests=req.guests,
                    days=req.days,
                    seller_id=seller.id,
                    delivery_method=delivery_method,
                ),
                resolved,
                now=now,
            )
            result = await self._welcome(db, issuer, issued, resolved)
            return SellerOutcome(
                pass_id=issued.pass_.id,
                pass_code=issued.pass_.code,
                landing_url=issued.pass_.landing_url,
                notification=result,
                errors=list(issued.errors),
            )

    # ----------------------------
    # scheduled issuance
    # ----------------------------
    async def _process(self, scheduled_id: str, now: float) -> ProcessOutcome:
        async with self.sessions() as db:
            store = ScheduledIssuanceStore(db=db, gated=self.gated)
            rec = await store.get(scheduled_id)
            if rec is None:
                return ProcessOutcome(scheduled_id, NOT_FOUND)
            if state_of(rec) != PENDING:
                return ProcessOutcome(scheduled_id, ALREADY_CLAIMED)

            request = IssuanceRequest(
                customer_name=rec.client_name,
                customer_email=rec.client_email,
                guests=rec.guests,
                days=rec.days,
                seller_id=rec.seller_id,
                delivery_method=rec.delivery_method,
            )
            order_id = rec.order_id
            try:
                configs = ConfigurationStore(db=db, gated=self.gated)
                resolved = await configs.resolve(rec.seller_id,
                                                 rec.configuration_id)
                resolved.configuration.validate(request.guests, request.days)
            except ValidationError as e:
                logger.warning("scheduled issuance %s rejected: %s",
                               scheduled_id, e)
                return ProcessOutcome(scheduled_id, FAILED, error=str(e))

            try:
                async with timeit("scheduled.claim"):
                    await store.claim(scheduled_id, now)
            except AlreadyClaimed:
                return ProcessOutcome(scheduled_id, ALREADY_CLAIMED)

            issuer = PassIssuer(db=db, gated=self.gated,
                                base_url=self.base_url)
            try:
                issued = await issuer.issue(request, resolved, now=now)
            except Exception as e:
                logger.critical(
                    "scheduled issuance %s is claimed but no pass was "
                    "issued; manual reissue required", scheduled_id,
                    exc_info=True,
                )
                return ProcessOutcome(scheduled_id, ANOMALY, error=str(e))

            async with timeit("scheduled.finalize"):
                finalized = await store.finalize(scheduled_id,
                                                 issued.pass_.id, now)
            if not finalized:
                logger.critical(
                    "scheduled issuance %s lost its reservation; pass %s "
                    "issued without a finalized record", scheduled_id,
                    issued.pass_.code,
                )
                return ProcessOutcome(scheduled_id, ANOMALY,
                                      pass_id=issued.pass_.id,
                                      pass_code=issued.pass_.code,
                                      error="reservation lost")

            if order_id:
                orders = OrderStore(db=db, gated=self.gated)
                await orders.attach_pass(order_id, issued.pass_.id)

            result = await self._welcome(db, issuer, issued, resolved)
            logger.info("scheduled issuance %s processed as %s",
                        scheduled_id, issued.pass_.code)
            return ProcessOutcome(scheduled_id, PROCESSED,
                                  pass_id=issued.pass_.id,
                                  pass_code=issued.pass_.code,
                                  notification=result)

    async def on_scheduled_trigger(
        self, scheduled_id: str, now: Optional[float] = None
    ) -> ProcessOutcome:
        now = now if now is not None else now_ts()
        async with timeit("scheduled.trigger"):
            return await self._process(scheduled_id, now)

    async def sweep_overdue(
        self, now: Optional[float] = None, limit: int = 500
    ) -> SweepResult:
        """Process every overdue PENDING record, one at a time.

        Each record is activated at the moment it is processed. A caller
        that passes ``now`` pins both the cutoff and the activation instant.
        """
        cutoff = now if now is not None else now_ts()
        async with self.sessions() as db:
            store = ScheduledIssuanceStore(db=db, gated=self.gated)
            due = [r.id for r in await store.list_overdue(cutoff, limit)]

        sweep = SweepResult()
        for scheduled_id in due:
            try:
                outcome = await self._process(
                    scheduled_id, now if now is not None else now_ts()
                )
            except Exception as e:
                logger.exception("sweep: scheduled issuance %s failed",
                                 scheduled_id)
                outcome = ProcessOutcome(scheduled_id, ERROR, error=str(e))
            sweep.results.append(outcome)
            if outcome.status == PROCESSED:
                sweep.processed += 1
            elif outcome.status in (ALREADY_CLAIMED, NOT_FOUND):
                # lost to a concurrent trigger
                sweep.skipped += 1
            else:
                sweep.errors += 1

        if due:
            logger.info("sweep: %d due, %d processed, %d errors, %d skipped",
                        len(due), sweep.processed, sweep.errors, sweep.skipped)
        return sweep
