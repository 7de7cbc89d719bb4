"""
Async engine, session factory and the DB gate.

Postgres (asyncpg) in production, SQLite (aiosqlite) for development and
tests. SQLite has no row locks, so every transaction starts with
BEGIN IMMEDIATE and writers queue on the database lock; busy_timeout does
the waiting.
"""

import os
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, NamedTuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)
from sqlalchemy.orm import DeclarativeMeta

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


@dataclass
class GatedAsyncSession:
    """What request handlers get: a session plus the gate guarding it."""
    session: AsyncSession
    gated: Gated


class EngineBundle(NamedTuple):
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    db_gate: asyncio.Semaphore
    gated: Gated


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


# DB-GATE: at most gate_limit open transactions per process, so requests
# queue here instead of timing out inside the pool
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _sqlite_connect(dbapi_connection, _record):
    # BEGIN is emitted by _sqlite_begin
    dbapi_connection.isolation_level = None
    cur = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cur.execute(pragma)
    cur.close()


def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_async_engine(database_url: str) -> EngineBundle:
    db_url = async_url(database_url)
    is_postgres = db_url.startswith("postgresql+asyncpg://")

    kw = dict(future=True, pool_pre_ping=True)
    if is_postgres:
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        event.listen(engine.sync_engine, "connect", _sqlite_connect)
        event.listen(engine.sync_engine, "begin", _sqlite_begin)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return EngineBundle(engine, SessionAsync, db_gate, gated)


async def create_schema(engine: AsyncEngine, base: DeclarativeMeta) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(base.metadata.create_all)


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name
