import pytest

from passflow.model.eventgate import RedisEventGate, SqlEventGate, new_gate


class FakeRedis:
    """Just the SET NX / DELETE subset the gate uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        self.data.pop(key, None)


async def test_sql_gate_filters_replays(sessions, gated):
    async with sessions() as db:
        gate = new_gate(backend="pg", db=db, gated=gated)
        assert isinstance(gate, SqlEventGate)
        assert await gate.mark_event_seen("WH-1")
        assert not await gate.mark_event_seen("WH-1")
        assert await gate.mark_event_seen("WH-2")

        await gate.forget("WH-1")
        assert await gate.mark_event_seen("WH-1")


async def test_sql_gate_lets_missing_keys_through(sessions, gated):
    async with sessions() as db:
        gate = new_gate(backend="pg", db=db, gated=gated)
        assert await gate.mark_event_seen(None)
        assert await gate.mark_event_seen(None)


async def test_redis_gate_filters_replays():
    r = FakeRedis()
    gate = new_gate(backend="redis", r=r, ttl_seconds=60)
    assert isinstance(gate, RedisEventGate)
    assert await gate.mark_event_seen("WH-1")
    assert not await gate.mark_event_seen("WH-1")
    assert r.ttls["passflow:evt:WH-1"] == 60

    await gate.forget("WH-1")
    assert await gate.mark_event_seen("WH-1")
    assert await gate.mark_event_seen("")


def test_factory_requires_its_backend_resources():
    with pytest.raises(RuntimeError):
        new_gate(backend="redis")
    with pytest.raises(RuntimeError):
        new_gate(backend="pg")
