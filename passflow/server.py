from __future__ import annotations
import asyncio
import logging
import os
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_303_SEE_OTHER

from .dispatch import QStashScheduler, QSTASH_DEFAULT_URL
from .errors import InvalidRequest, ValidationError
from .helpers import bearer_ok, from_iso, is_valid_email, now_ts
from .infra.sql import Gated, make_async_engine
from .infra.timings import snapshot, timeit
from .logs import setup_logging
from .mail import ResendTransport
from .model.db import Base
from .model.eventgate import BACKEND as EVENTGATE_BACKEND, new_gate
from .model.orders import OrderStore, DEFAULT_DEDUP_WINDOW_SECONDS
from .model.orders import to_dict as order_to_dict
from .model.scheduled import ScheduledIssuanceStore
from .model.scheduled import to_dict as scheduled_to_dict
from .notify import NotificationDispatcher
from .payments import PaymentAdapter, PayPal, WEBHOOK_SECRET
from .pipeline import (
    ANOMALY, FAILED, NOT_FOUND, IssuancePipeline, SellerRequest,
)

logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./passflow.db")
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000")

# bearer secret forwarded by the dispatch service; empty disables the check
TRIGGER_SECRET = os.environ.get("TRIGGER_SECRET", "")
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")
# shared with the seller portal, which authenticates the seller itself
SELLER_API_TOKEN = os.environ.get("SELLER_API_TOKEN", "")

QSTASH_URL = os.environ.get("QSTASH_URL", QSTASH_DEFAULT_URL)
QSTASH_TOKEN = os.environ.get("QSTASH_TOKEN", "")

RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
MAIL_FROM = os.environ.get("MAIL_FROM", "passes@localhost")
MAIL_TIMEOUT_SECONDS = float(os.environ.get("MAIL_TIMEOUT_SECONDS", "15"))

SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "60"))
DEDUP_WINDOW_SECONDS = float(
    os.environ.get("DEDUP_WINDOW_SECONDS", DEFAULT_DEDUP_WINDOW_SECONDS)
)
# claims younger than this are in flight, not anomalies
ANOMALY_AFTER_SECONDS = float(os.environ.get("ANOMALY_AFTER_SECONDS", "300"))


engine, SessionAsync, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


def db_gate() -> Gated:
    return gated


adapter: PaymentAdapter = PayPal(WEBHOOK_SECRET)

app = FastAPI(
    title="Passflow",
    default_response_class=ORJSONResponse,
)


def build_pipeline(http: Optional[httpx.AsyncClient] = None
                   ) -> IssuancePipeline:
    transport = None
    if RESEND_API_KEY:
        transport = ResendTransport(RESEND_API_KEY, MAIL_FROM, client=http)
    dispatcher = QStashScheduler(
        token=QSTASH_TOKEN,
        callback_url=f"{PUBLIC_BASE_URL.rstrip('/')}/api/scheduled/trigger",
        trigger_secret=TRIGGER_SECRET,
        base_url=QSTASH_URL,
        client=http,
    )
    return IssuancePipeline(
        sessions=SessionAsync,
        gated=gated,
        notifier=NotificationDispatcher(transport,
                                        timeout=MAIL_TIMEOUT_SECONDS),
        dispatcher=dispatcher,
        base_url=PUBLIC_BASE_URL,
        dedup_window=DEDUP_WINDOW_SECONDS,
    )


def get_pipeline() -> IssuancePipeline:
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is None:
        raise RuntimeError("pipeline not initialized")
    return pipeline


async def scheduled_store(
    db: AsyncSession = Depends(get_db), g: Gated = Depends(db_gate),
) -> ScheduledIssuanceStore:
    return ScheduledIssuanceStore(db=db, gated=g)


async def order_store(
    db: AsyncSession = Depends(get_db), g: Gated = Depends(db_gate),
) -> OrderStore:
    return OrderStore(db=db, gated=g, dedup_window=DEDUP_WINDOW_SECONDS)


async def event_gate(
    db: AsyncSession = Depends(get_db), g: Gated = Depends(db_gate),
):
    if EVENTGATE_BACKEND == "redis":
        return new_gate(backend="redis", r=app.state.redis)
    return new_gate(backend="pg", db=db, gated=g)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    setup_logging()
    logger.info("Passflow is starting up...")
    logger.info("   - Event gate backend: %s",
                "Redis" if EVENTGATE_BACKEND == "redis" else "SQL")
    logger.info("   - Mail transport: %s",
                "Resend" if RESEND_API_KEY else "disabled")
    logger.info("   - Delayed dispatch: %s",
                "QStash" if QSTASH_TOKEN else "sweep only")


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=32),
    )
    app.state.pipeline = build_pipeline(app.state.http)


@app.on_event("startup")
async def _redis_start():
    if EVENTGATE_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


async def _sweep_loop(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await app.state.pipeline.sweep_overdue()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("periodic sweep failed")


@app.on_event("startup")
async def _sweep_start():
    if SWEEP_INTERVAL_SECONDS > 0:
        app.state.sweeper = asyncio.create_task(
            _sweep_loop(SWEEP_INTERVAL_SECONDS)
        )


@app.on_event("shutdown")
async def _sweep_stop():
    task = getattr(app.state, "sweeper", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweeper = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


# ----------------------------
# Helpers
# ----------------------------
def require_trigger(request: Request) -> None:
    if not bearer_ok(request.headers.get("authorization"), TRIGGER_SECRET):
        raise HTTPException(401, detail="unauthorized")


def require_admin(request: Request) -> None:
    if not bearer_ok(request.headers.get("authorization"), ADMIN_TOKEN):
        raise HTTPException(401, detail="unauthorized")


def require_seller_portal(request: Request) -> None:
    if not bearer_ok(request.headers.get("authorization"), SELLER_API_TOKEN):
        raise HTTPException(401, detail="unauthorized")


def seller_request(seller_id: str, body: dict) -> SellerRequest:
    email = str(body.get("clientEmail") or "").strip().lower()
    if not is_valid_email(email):
        raise InvalidRequest("clientEmail is missing or invalid")
    name = str(body.get("clientName") or "").strip()
    if not name:
        raise InvalidRequest("clientName is required")
    try:
        guests, days = int(body["guests"]), int(body["days"])
    except (KeyError, TypeError, ValueError):
        raise InvalidRequest("guests and days must be integers")
    raw = body.get("deliverAt")
    try:
        deliver_at = from_iso(str(raw)) if raw else None
    except ValueError:
        raise InvalidRequest(f"invalid deliverAt {raw!r}")
    return SellerRequest(
        seller_id=seller_id,
        customer_name=name,
        customer_email=email,
        guests=guests,
        days=days,
        delivery_method=body.get("deliveryMethod") or None,
        deliver_at=deliver_at,
    )


# ----------------------------
# Payment processor: webhook
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    gate=Depends(event_gate),
    pipeline: IssuancePipeline = Depends(get_pipeline),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    if not adapter.is_completed(event):
        # acknowledged so the processor stops redelivering
        return {"ok": True, "ignored": event.get("event_type")}

    evt_id = adapter.event_id(event)
    async with timeit("eventgate.mark"):
        first = await gate.mark_event_seen(evt_id)
    if not first:
        return {"ok": True, "idempotent": True}

    try:
        confirmation = adapter.confirmation_from_event(event)
        outcome = await pipeline.accept_payment(confirmation)
    except ValidationError as e:
        # redelivering the same event cannot fix it
        raise HTTPException(400, detail=str(e))
    except Exception:
        if evt_id:
            await gate.forget(evt_id)
        raise

    return {
        "ok": True,
        "idempotent": not outcome.is_new,
        "order_id": outcome.order.id,
        "pass_code": outcome.pass_code,
        "scheduled_issuance_id": outcome.scheduled_id,
    }


# ----------------------------
# Payment processor: browser return
# ----------------------------
@app.api_route("/payments/return", methods=["GET", "POST"])
async def payments_return(
    request: Request,
    pipeline: IssuancePipeline = Depends(get_pipeline),
):
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: str(v) for k, v in form.items()})

    try:
        confirmation = adapter.confirmation_from_return(params)
        outcome = await pipeline.accept_payment(confirmation)
    except ValidationError as e:
        raise HTTPException(400, detail=str(e))

    return RedirectResponse(
        url=f"/payment-success?orderId={outcome.order.id}",
        status_code=HTTP_303_SEE_OTHER,
    )


# ----------------------------
# API: order lookup (polled by the success page)
# ----------------------------
@app.get("/api/orders/payment/{payment_id}")
async def get_order_by_payment(
    payment_id: str, orders: OrderStore = Depends(order_store),
):
    async with timeit("db.get_order"):
        order = await orders.get_by_payment_id(payment_id)
    if order is None:
        # webhook may still be processing; let the client keep polling
        raise HTTPException(404, detail="order not found")
    return order_to_dict(order)


# ----------------------------
# Scheduled issuance: push trigger and sweep
# ----------------------------
@app.post("/api/scheduled/trigger", dependencies=[Depends(require_trigger)])
async def scheduled_trigger(
    payload: dict,
    pipeline: IssuancePipeline = Depends(get_pipeline),
):
    scheduled_id = payload.get("scheduledIssuanceId")
    if not scheduled_id:
        raise HTTPException(400, detail="scheduledIssuanceId is required")

    outcome = await pipeline.on_scheduled_trigger(str(scheduled_id))
    if outcome.status == NOT_FOUND:
        raise HTTPException(404, detail="scheduled issuance not found")
    if outcome.status == FAILED:
        raise HTTPException(400, detail=outcome.error)
    if outcome.status == ANOMALY:
        raise HTTPException(500, detail="issuance failed after claim")
    return {"ok": True, **outcome.to_dict()}


@app.post("/api/scheduled/sweep", dependencies=[Depends(require_trigger)])
async def scheduled_sweep(
    pipeline: IssuancePipeline = Depends(get_pipeline),
):
    result = await pipeline.sweep_overdue()
    return {"ok": True, **result.to_dict()}


# ----------------------------
# Seller portal: issue a pass under the seller's configuration
# ----------------------------
@app.post("/api/sellers/{seller_id}/passes",
          dependencies=[Depends(require_seller_portal)])
async def seller_issue_pass(
    seller_id: str,
    payload: dict,
    pipeline: IssuancePipeline = Depends(get_pipeline),
):
    try:
        outcome = await pipeline.issue_for_seller(
            seller_request(seller_id, payload)
        )
    except ValidationError as e:
        raise HTTPException(400, detail=str(e))
    return {"ok": True, **outcome.to_dict()}


# ----------------------------
# Admin JSON feeds
# ----------------------------
@app.get("/api/admin/scheduled", dependencies=[Depends(require_admin)])
async def api_admin_scheduled(
    limit: int = 200,
    store: ScheduledIssuanceStore = Depends(scheduled_store),
):
    rows = await store.list_upcoming(limit)
    return {"items": [scheduled_to_dict(r) for r in rows], "limit": limit}


@app.get("/api/admin/scheduled/anomalies",
         dependencies=[Depends(require_admin)])
async def api_admin_anomalies(
    older_than_seconds: float = ANOMALY_AFTER_SECONDS,
    store: ScheduledIssuanceStore = Depends(scheduled_store),
):
    rows = await store.list_anomalies(now_ts() - older_than_seconds)
    return {"items": [scheduled_to_dict(r) for r in rows],
            "total": len(rows)}


@app.post("/api/admin/scheduled/{scheduled_id}/release",
          dependencies=[Depends(require_admin)])
async def api_admin_release(
    scheduled_id: str,
    store: ScheduledIssuanceStore = Depends(scheduled_store),
):
    if not await store.release(scheduled_id):
        raise HTTPException(409, detail="not a stuck reservation")
    logger.warning("reservation on %s released by operator", scheduled_id)
    return {"ok": True, "scheduledIssuanceId": scheduled_id}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def api_admin_timings():
    return {"items": snapshot()}
