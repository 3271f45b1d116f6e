"""Webhook replay filter with a SQL (default) or Redis backend.

Both backends expose ``mark_event_seen(key) -> bool`` (True on first
delivery) and ``forget(key)``.
"""
import os
from typing import Optional, Union

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import Gated
from ._postgres import EventGate as SqlEventGate
from ._redis import EventGate as RedisEventGate

BACKEND = os.getenv("EVENTGATE_BACKEND", "pg").lower()  # 'pg' | 'redis'
DEFAULT_TTL_SECONDS = 7 * 24 * 3600

EventGate = Union[SqlEventGate, RedisEventGate]


def new_gate(*, backend: str = BACKEND,
             db: Optional[AsyncSession] = None,
             r: Optional[redis.Redis] = None,
             ttl_seconds: int = DEFAULT_TTL_SECONDS,
             gated: Optional[Gated] = None) -> EventGate:
    if backend == "redis":
        if r is None:
            raise RuntimeError("redis event gate needs r=redis.Redis")
        return RedisEventGate(r=r, ttl_seconds=ttl_seconds)
    if db is None or gated is None:
        raise RuntimeError("sql event gate needs db=AsyncSession and gated")
    return SqlEventGate(db=db, gated=gated)


__all__ = ["EventGate", "SqlEventGate", "RedisEventGate", "new_gate",
           "BACKEND"]
