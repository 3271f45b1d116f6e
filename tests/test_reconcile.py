import asyncio
from decimal import Decimal

from sqlalchemy import func, select

from passflow.model.db import Order
from passflow.model.orders import OrderStore, to_dict

T0 = 1_760_000_000.0


async def count_orders(sessions) -> int:
    async with sessions() as db:
        return (await db.execute(select(func.count(Order.id)))).scalar_one()


async def reconcile(sessions, gated, c, now):
    async with sessions() as db:
        return await OrderStore(db=db, gated=gated).reconcile(c, now)


async def test_same_payment_id_creates_one_order(
        sessions, gated, make_confirmation):
    first = await reconcile(sessions, gated, make_confirmation(), T0)
    again = await reconcile(sessions, gated, make_confirmation(), T0 + 3600)
    assert first.is_new
    assert not again.is_new
    assert again.order.id == first.order.id
    assert await count_orders(sessions) == 1


async def test_missing_ids_deduplicated_inside_window(
        sessions, gated, make_confirmation):
    a = await reconcile(sessions, gated, make_confirmation(payment_id=None),
                        T0)
    b = await reconcile(sessions, gated, make_confirmation(payment_id=None),
                        T0 + 120)
    assert a.is_new and not b.is_new
    assert b.order.id == a.order.id
    assert await count_orders(sessions) == 1


async def test_missing_ids_outside_window_are_distinct(
        sessions, gated, make_confirmation):
    a = await reconcile(sessions, gated, make_confirmation(payment_id=None),
                        T0)
    b = await reconcile(sessions, gated, make_confirmation(payment_id=None),
                        T0 + 301)
    assert a.is_new and b.is_new
    assert await count_orders(sessions) == 2


async def test_return_without_id_matches_webhook_order(
        sessions, gated, make_confirmation):
    hook = await reconcile(sessions, gated,
                           make_confirmation(payment_id="CAP-9"), T0)
    ret = await reconcile(sessions, gated,
                          make_confirmation(payment_id=None, source="return"),
                          T0 + 5)
    assert not ret.is_new
    assert ret.order.id == hook.order.id


async def test_different_amount_is_a_new_order(
        sessions, gated, make_confirmation):
    await reconcile(sessions, gated, make_confirmation(payment_id=None), T0)
    other = await reconcile(
        sessions, gated,
        make_confirmation(payment_id=None, amount=Decimal("12.00")), T0 + 5,
    )
    assert other.is_new
    assert await count_orders(sessions) == 2


async def test_order_stores_amount_in_cents(
        sessions, gated, make_confirmation):
    res = await reconcile(sessions, gated,
                          make_confirmation(amount=Decimal("49.995")), T0)
    assert res.order.amount == 5000
    d = to_dict(res.order)
    assert d["amount"] == "50.00"
    assert d["payment_id"] == "TX-1"
    assert d["status"] == "PAID"


async def test_lookup_by_payment_id(sessions, gated, make_confirmation):
    await reconcile(sessions, gated, make_confirmation(payment_id="CAP-7"),
                    T0)
    async with sessions() as db:
        store = OrderStore(db=db, gated=gated)
        assert (await store.get_by_payment_id("CAP-7")) is not None
        assert (await store.get_by_payment_id("CAP-8")) is None


async def test_distinct_ids_inside_window_are_distinct_orders(
        sessions, gated, make_confirmation):
    a = await reconcile(sessions, gated, make_confirmation(payment_id="TX-A"),
                        T0)
    b = await reconcile(sessions, gated, make_confirmation(payment_id="TX-B"),
                        T0 + 60)
    assert a.is_new and b.is_new
    assert b.order.id != a.order.id
    assert b.order.payment_id == "TX-B"
    assert await count_orders(sessions) == 2


async def test_webhook_after_idless_return_adopts_its_id(
        sessions, gated, make_confirmation):
    ret = await reconcile(sessions, gated,
                          make_confirmation(payment_id=None, source="return"),
                          T0)
    hook = await reconcile(sessions, gated,
                           make_confirmation(payment_id="CAP-3"), T0 + 5)
    assert not hook.is_new
    assert hook.order.id == ret.order.id
    async with sessions() as db:
        found = await OrderStore(db=db, gated=gated).get_by_payment_id("CAP-3")
    assert found.id == ret.order.id
    assert await count_orders(sessions) == 1


async def test_routing_is_claimed_once(sessions, gated, make_confirmation):
    res = await reconcile(sessions, gated, make_confirmation(), T0)
    async with sessions() as db:
        store = OrderStore(db=db, gated=gated)
        assert await store.claim_routing(res.order.id, T0)
        assert not await store.claim_routing(res.order.id, T0 + 1)
        await store.release_routing(res.order.id)
        assert await store.claim_routing(res.order.id, T0 + 2)


async def test_concurrent_routing_claims_have_one_winner(
        sessions, gated, make_confirmation):
    res = await reconcile(sessions, gated, make_confirmation(), T0)

    async def attempt():
        async with sessions() as db:
            return await OrderStore(db=db, gated=gated).claim_routing(
                res.order.id, T0)

    results = await asyncio.gather(attempt(), attempt(), attempt())
    assert sorted(results) == [False, False, True]
