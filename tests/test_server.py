import json

import httpx
import pytest

from passflow import server
from passflow.model.scheduled import ScheduledIssuanceStore
from passflow.payments import (
    EVENT_CAPTURE_COMPLETED, SIGNATURE_HEADER, WEBHOOK_SECRET, sign,
)


@pytest.fixture
async def client(sessions, gated, pipeline):
    async def _db():
        async with sessions() as session:
            yield session

    server.app.dependency_overrides[server.get_db] = _db
    server.app.dependency_overrides[server.db_gate] = lambda: gated
    server.app.dependency_overrides[server.get_pipeline] = lambda: pipeline
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c
    server.app.dependency_overrides.clear()


def webhook_body(event_id="WH-1", capture_id="CAP-1",
                 event_type=EVENT_CAPTURE_COMPLETED, **order) -> bytes:
    doc = {"customerName": "Ana Lopez", "customerEmail": "ana@example.com",
           "guests": 2, "days": 3}
    doc.update(order)
    return json.dumps({
        "id": event_id,
        "event_type": event_type,
        "resource": {
            "id": capture_id,
            "amount": {"value": "49.00", "currency_code": "USD"},
            "custom_id": json.dumps(doc),
        },
    }).encode()


async def post_webhook(client, body: bytes):
    return await client.post(
        "/payments/webhook",
        content=body,
        headers={SIGNATURE_HEADER: sign(body, WEBHOOK_SECRET),
                 "content-type": "application/json"},
    )


async def test_webhook_issues_pass_once(client):
    body = webhook_body()
    r = await post_webhook(client, body)
    assert r.status_code == 200
    data = r.json()
    assert data["ok"] and not data["idempotent"]
    assert data["pass_code"].startswith("PASS_")

    again = await post_webhook(client, body)
    assert again.json() == {"ok": True, "idempotent": True}

    # redelivery under a new event id still dedups on the capture id
    other = await post_webhook(client, webhook_body(event_id="WH-2"))
    assert other.json()["idempotent"] is True
    assert other.json()["order_id"] == data["order_id"]


async def test_webhook_rejects_bad_signature(client):
    r = await client.post("/payments/webhook", content=webhook_body(),
                          headers={SIGNATURE_HEADER: "nope"})
    assert r.status_code == 400


async def test_webhook_ignores_other_events(client):
    r = await post_webhook(client,
                           webhook_body(event_type="PAYMENT.CAPTURE.DENIED"))
    assert r.status_code == 200
    assert r.json()["ignored"] == "PAYMENT.CAPTURE.DENIED"


async def test_webhook_with_invalid_order_is_400(client):
    r = await post_webhook(client, webhook_body(customerEmail="nope"))
    assert r.status_code == 400


async def test_return_redirects_to_the_same_order(client):
    hook = (await post_webhook(client, webhook_body())).json()
    r = await client.get("/payments/return", params={
        "tx": "CAP-1", "st": "Completed", "amt": "49.00", "cc": "USD",
        "cm": json.dumps({"customerName": "Ana Lopez",
                          "customerEmail": "ana@example.com",
                          "guests": 2, "days": 3}),
    })
    assert r.status_code == 303
    assert r.headers["location"] == (
        f"/payment-success?orderId={hook['order_id']}")


async def test_order_lookup_by_payment_id(client):
    await post_webhook(client, webhook_body(capture_id="CAP-77"))
    r = await client.get("/api/orders/payment/CAP-77")
    assert r.status_code == 200
    assert r.json()["payment_id"] == "CAP-77"
    assert r.json()["pass_id"]

    missing = await client.get("/api/orders/payment/CAP-78")
    assert missing.status_code == 404


async def test_trigger_requires_secret_when_configured(
        client, seed, monkeypatch):
    monkeypatch.setattr(server, "TRIGGER_SECRET", "s3cret")
    sid = await seed.scheduled()

    r = await client.post("/api/scheduled/trigger",
                          json={"scheduledIssuanceId": sid})
    assert r.status_code == 401

    r = await client.post("/api/scheduled/trigger",
                          json={"scheduledIssuanceId": sid},
                          headers={"Authorization": "Bearer s3cret"})
    assert r.status_code == 200
    assert r.json()["status"] == "PROCESSED"

    r = await client.post("/api/scheduled/trigger",
                          json={"scheduledIssuanceId": sid},
                          headers={"Authorization": "Bearer s3cret"})
    assert r.status_code == 200
    assert r.json()["status"] == "ALREADY_CLAIMED"


async def test_trigger_errors(client, seed):
    r = await client.post("/api/scheduled/trigger", json={})
    assert r.status_code == 400
    r = await client.post("/api/scheduled/trigger",
                          json={"scheduledIssuanceId": "missing"})
    assert r.status_code == 404

    sid = await seed.scheduled(seller_id="ghost", configuration_id="cfg-x")
    r = await client.post("/api/scheduled/trigger",
                          json={"scheduledIssuanceId": sid})
    assert r.status_code == 400


async def test_sweep_endpoint(client, seed):
    await seed.scheduled()
    await seed.scheduled()
    r = await client.post("/api/scheduled/sweep")
    assert r.status_code == 200
    assert r.json()["processed"] == 2
    assert r.json()["errors"] == 0


async def test_admin_anomalies_and_release(client, seed, sessions, gated):
    sid = await seed.scheduled()
    async with sessions() as db:
        await ScheduledIssuanceStore(db=db, gated=gated).reserve(sid, 1000.0)

    r = await client.get("/api/admin/scheduled/anomalies")
    assert [i["id"] for i in r.json()["items"]] == [sid]

    r = await client.post(f"/api/admin/scheduled/{sid}/release")
    assert r.status_code == 200
    r = await client.post(f"/api/admin/scheduled/{sid}/release")
    assert r.status_code == 409

    r = await client.get("/api/admin/scheduled")
    assert [i["state"] for i in r.json()["items"]] == ["PENDING"]


async def test_admin_requires_token_when_configured(client, monkeypatch):
    monkeypatch.setattr(server, "ADMIN_TOKEN", "adm")
    r = await client.get("/api/admin/timings")
    assert r.status_code == 401
    r = await client.get("/api/admin/timings",
                         headers={"Authorization": "Bearer adm"})
    assert r.status_code == 200
    assert isinstance(r.json()["items"], list)


async def test_seller_route_issues_under_seller_configuration(
        client, seed, monkeypatch):
    monkeypatch.setattr(server, "SELLER_API_TOKEN", "portal")
    await seed.configuration("cfg-beach", {"button3DeliveryMethod": "BOTH",
                                           "button2FixedPrice": 20})
    await seed.seller("seller-1", "cfg-beach")
    body = {"clientName": "Luis Diaz", "clientEmail": "Luis@Example.com",
            "guests": 2, "days": 2, "deliveryMethod": "DIRECT"}

    r = await client.post("/api/sellers/seller-1/passes", json=body)
    assert r.status_code == 401

    auth = {"Authorization": "Bearer portal"}
    r = await client.post("/api/sellers/seller-1/passes", json=body,
                          headers=auth)
    assert r.status_code == 200
    data = r.json()
    assert data["passCode"].startswith("EL-")
    assert data["landingUrl"] is None
    assert data["emailSent"] is True

    later = dict(body, deliverAt="2099-01-01T09:00:00Z")
    r = await client.post("/api/sellers/seller-1/passes", json=later,
                          headers=auth)
    assert r.status_code == 200
    assert r.json()["passCode"] is None
    assert r.json()["scheduledIssuanceId"]


@pytest.mark.parametrize("seller_id, body", [
    ("seller-1", {"clientName": "Luis", "clientEmail": "nope",
                  "guests": 2, "days": 2}),
    ("seller-1", {"clientName": "Luis", "clientEmail": "luis@example.com",
                  "guests": "two", "days": 2}),
    ("seller-1", {"clientName": "Luis", "clientEmail": "luis@example.com",
                  "guests": 2, "days": 2, "deliverAt": "soon"}),
    ("nobody", {"clientName": "Luis", "clientEmail": "luis@example.com",
                "guests": 2, "days": 2}),
])
async def test_seller_route_rejects_bad_requests(client, seed, seller_id,
                                                 body):
    await seed.configuration("cfg-beach", {"button3DeliveryMethod": "BOTH"})
    await seed.seller("seller-1", "cfg-beach")
    r = await client.post(f"/api/sellers/{seller_id}/passes", json=body)
    assert r.status_code == 400
