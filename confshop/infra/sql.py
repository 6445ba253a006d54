import os
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, NamedTuple, Tuple

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

# `async with gated(): ...` around every statement a store runs
Gated = Callable[[], AsyncContextManager[None]]


class Database(NamedTuple):
    engine: AsyncEngine
    sessions: async_sessionmaker
    gate: asyncio.Semaphore
    gated: Gated


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def _pool_options(db_url: str) -> Tuple[dict, int]:
    """Engine kwargs plus the default gate size for this backend."""
    kw = dict(future=True, pool_pre_ping=True)
    if not db_url.startswith("postgresql+asyncpg://"):
        return kw, int(os.getenv("DB_GATE_LIMIT", "10"))

    pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
    kw.update(
        pool_size=pool_size,
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
    )
    return kw, int(os.getenv("DB_GATE_LIMIT", pool_size))


def _sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA busy_timeout=5000;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        # cart lines and entitlements reference catalog rows / accounts
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.close()


# DB gate: bounds in-flight statements to what the pool can serve
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(database_url: str) -> Database:
    db_url = _normalize_async_url(database_url)
    kw, gate_limit = _pool_options(db_url)

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _sqlite_pragmas(engine)

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(gate)

    return Database(engine, sessions, gate, gated)


async def create_schema(engine: AsyncEngine, metadata: MetaData) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
