import os
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

# zero-arg factory: `async with gated(): ...` around every DB round trip
Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    # concurrent claimers wait for the write lock instead of failing
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
)


def normalize_async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_gate(limit: int) -> Gated:
    """Cap in-flight DB work at ``limit`` so callers queue here, not in the
    pool where they would hit pool_timeout under bursts."""
    sem = asyncio.Semaphore(max(1, limit))

    def gated():
        return _gated(sem)

    return gated


def _pool_kwargs(db_url: str) -> Tuple[dict, Optional[int]]:
    if not db_url.startswith("postgresql+asyncpg://"):
        return {}, None
    pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
    return dict(
        pool_size=pool_size,
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
    ), pool_size


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


def make_async_engine(database_url: str):
    """Return ``(engine, SessionAsync, gated)`` for a sync-style URL."""
    db_url = normalize_async_url(database_url)
    pool_kw, pool_size = _pool_kwargs(db_url)

    engine = create_async_engine(
        db_url, future=True, pool_pre_ping=True,
        echo=os.getenv("DB_ECHO", "") == "1", **pool_kw,
    )
    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # the gate follows the pool size unless overridden
    default_limit = pool_size if pool_size is not None else 10
    gate_limit = int(os.getenv("DB_GATE_LIMIT", default_limit))
    return engine, SessionAsync, make_gate(gate_limit)
