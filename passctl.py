#!/usr/bin/env python3
import argparse
import asyncio
import json
import os
import sys
import uuid

from sqlalchemy import select

from passflow.helpers import now_ts, to_iso
from passflow.infra.sql import make_async_engine
from passflow.logs import setup_logging
from passflow.model.db import (
    Base, DEFAULT_CONFIGURATION, EmailTemplate, PassConfigurationRow,
)
from passflow.model.scheduled import ScheduledIssuanceStore, to_dict
from passflow.notify import GENERIC_SUBJECT

DEFAULT_TEMPLATE_HTML = """\
<p>Hello {customerName}!</p>
<p>Your pass <strong>{qrCode}</strong> is ready: {guests} guest(s),
{days} day(s), valid until {expirationDate}.</p>
<p><a href="{magicLink}">Open my pass</a></p>
"""

# processor orders: free pass, direct delivery, wide bounds
DEFAULT_CONFIGURATION_DOC = {
    "button2PricingType": "FIXED",
    "button2FixedPrice": 0,
    "button3DeliveryMethod": "DIRECT",
    "button1GuestsRangeMax": 50,
    "button1DaysRangeMax": 365,
}


def _database_url(args) -> str:
    return args.database_url or os.environ.get(
        "DATABASE_URL", "sqlite:///./passflow.db"
    )


async def cmd_init_db(args) -> int:
    engine, SessionAsync, gated = make_async_engine(_database_url(args))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if not args.no_seed:
        async with SessionAsync() as db:
            async with db.begin():
                if await db.get(PassConfigurationRow,
                                DEFAULT_CONFIGURATION) is None:
                    db.add(PassConfigurationRow(
                        id=DEFAULT_CONFIGURATION,
                        name="Default Configuration",
                        document=json.dumps(DEFAULT_CONFIGURATION_DOC),
                    ))
                    print("==> seeded default configuration")
                has_default = (await db.execute(
                    select(EmailTemplate.id)
                    .where(EmailTemplate.is_default.is_(True))
                    .limit(1)
                )).first()
                if has_default is None:
                    db.add(EmailTemplate(
                        id=uuid.uuid4().hex,
                        name="Default welcome",
                        configuration_id=None,
                        subject=GENERIC_SUBJECT,
                        html=DEFAULT_TEMPLATE_HTML,
                        is_default=True,
                        created_at=now_ts(),
                    ))
                    print("==> seeded default email template")
    await engine.dispose()
    print("==> schema ready")
    return 0


async def cmd_sweep(args) -> int:
    # same wiring as the server, so mail and dispatch settings apply
    if args.database_url:
        os.environ["DATABASE_URL"] = args.database_url
    from passflow.server import build_pipeline, engine
    pipeline = build_pipeline()
    try:
        result = await pipeline.sweep_overdue(limit=args.limit)
    finally:
        await engine.dispose()
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.errors == 0 else 1


async def cmd_anomalies(args) -> int:
    engine, SessionAsync, gated = make_async_engine(_database_url(args))
    async with SessionAsync() as db:
        store = ScheduledIssuanceStore(db=db, gated=gated)
        rows = await store.list_anomalies(now_ts() - args.older_than)
    await engine.dispose()
    if not rows:
        print("no stuck reservations")
        return 0
    for r in rows:
        d = to_dict(r)
        print(f"{d['id']}  claimed {to_iso(r.claimed_at)}  "
              f"{d['client_email']}  guests={d['guests']} days={d['days']}")
    return 2


async def cmd_release(args) -> int:
    engine, SessionAsync, gated = make_async_engine(_database_url(args))
    async with SessionAsync() as db:
        store = ScheduledIssuanceStore(db=db, gated=gated)
        ok = await store.release(args.scheduled_id)
    await engine.dispose()
    if not ok:
        print(f"==> {args.scheduled_id} is not a stuck reservation",
              file=sys.stderr)
        return 1
    print(f"==> released {args.scheduled_id}; the next sweep reissues it")
    return 0


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(
        description="Operate the scheduled pass issuance pipeline."
    )
    ap.add_argument("--database-url", default=None,
                    help="defaults to $DATABASE_URL")
    ap.add_argument("--log-level", default=None)
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("init-db", help="create tables and seed defaults")
    p.add_argument("--no-seed", action="store_true")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("sweep", help="process overdue scheduled issuances")
    p.add_argument("--limit", type=int, default=500)
    p.set_defaults(func=cmd_sweep)

    p = sub.add_parser("anomalies",
                       help="list claimed records that never got a pass")
    p.add_argument("--older-than", type=float, default=300.0,
                   help="seconds since the claim (default: 300)")
    p.set_defaults(func=cmd_anomalies)

    p = sub.add_parser("release", help="clear a stuck reservation")
    p.add_argument("scheduled_id")
    p.set_defaults(func=cmd_release)

    args = ap.parse_args(argv)
    setup_logging(args.log_level)
    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
