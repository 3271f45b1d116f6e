import asyncio
import json
import uuid
from decimal import Decimal
from typing import List, Optional, Tuple

import pytest

from passflow.dispatch import DispatchScheduler
from passflow.errors import MailDeliveryError
from passflow.helpers import now_ts
from passflow.infra.sql import make_async_engine
from passflow.mail import MailTransport
from passflow.model.db import (
    Base, EmailTemplate, PassConfigurationRow, Seller,
)
from passflow.model.orders import PaymentConfirmation
from passflow.model.scheduled import ScheduledIssuanceStore
from passflow.notify import NotificationDispatcher
from passflow.pipeline import IssuancePipeline

BASE_URL = "https://passes.test"


class FakeTransport(MailTransport):
    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.sent: List[Tuple[str, str, str]] = []

    async def send(self, to, subject, html):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise MailDeliveryError("mailbox unavailable")
        self.sent.append((to, subject, html))
        return f"msg-{len(self.sent)}"


class FakeScheduler(DispatchScheduler):
    def __init__(self) -> None:
        self.calls: List[Tuple[str, float]] = []

    async def schedule(self, scheduled_id, delay_seconds):
        self.calls.append((scheduled_id, delay_seconds))
        return f"qmsg-{len(self.calls)}"


class Seeder:
    """Writes configuration-store rows the pipeline only ever reads."""

    def __init__(self, sessions, gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def configuration(self, config_id: str, doc: dict,
                            name: str = "Test configuration") -> None:
        async with self.sessions() as db:
            async with db.begin():
                db.add(PassConfigurationRow(
                    id=config_id, name=name, document=json.dumps(doc),
                ))

    async def seller(self, seller_id: str, configuration_id: Optional[str],
                     **kw) -> None:
        async with self.sessions() as db:
            async with db.begin():
                db.add(Seller(
                    id=seller_id,
                    name=kw.get("name", "Beach Kiosk"),
                    email=kw.get("email", "kiosk@example.com"),
                    location_name=kw.get("location_name", "Playa"),
                    distributor_name=kw.get("distributor_name", "Coast Co"),
                    configuration_id=configuration_id,
                ))

    async def template(self, *, html: str, subject: str = "Hi {customerName}",
                       configuration_id: Optional[str] = None,
                       is_default: bool = False,
                       created_at: Optional[float] = None) -> str:
        tid = uuid.uuid4().hex
        async with self.sessions() as db:
            async with db.begin():
                db.add(EmailTemplate(
                    id=tid,
                    name=f"template {tid[:6]}",
                    configuration_id=configuration_id,
                    subject=subject,
                    html=html,
                    is_default=is_default,
                    created_at=created_at if created_at is not None
                    else now_ts(),
                ))
        return tid

    async def scheduled(self, **kw) -> str:
        kw.setdefault("client_name", "Ana Lopez")
        kw.setdefault("client_email", "ana@example.com")
        kw.setdefault("guests", 2)
        kw.setdefault("days", 3)
        kw.setdefault("scheduled_for", now_ts() - 60)
        async with self.sessions() as db:
            rec = await ScheduledIssuanceStore(db=db, gated=self.gated).create(
                **kw
            )
        return rec.id


@pytest.fixture
async def db_env(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'passflow-test.db'}"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
def sessions(db_env):
    return db_env[0]


@pytest.fixture
def gated(db_env):
    return db_env[1]


@pytest.fixture
def seed(sessions, gated):
    return Seeder(sessions, gated)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def pipeline(sessions, gated, transport, scheduler):
    return IssuancePipeline(
        sessions=sessions,
        gated=gated,
        notifier=NotificationDispatcher(transport, timeout=2.0),
        dispatcher=scheduler,
        base_url=BASE_URL,
    )


def confirmation(**kw) -> PaymentConfirmation:
    fields = dict(
        payment_id="TX-1",
        amount=Decimal("49.00"),
        currency="USD",
        customer_name="Ana Lopez",
        customer_email="ana@example.com",
        guests=2,
        days=3,
    )
    fields.update(kw)
    return PaymentConfirmation(**fields)


@pytest.fixture
def make_confirmation():
    return confirmation
