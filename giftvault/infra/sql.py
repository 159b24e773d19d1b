# infra/sql.py
"""Async engine, session factory and the DB gate for one database URL."""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, NamedTuple

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from .. import config

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


class Database(NamedTuple):
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gated: Gated
    dialect: str


def normalize_async_url(url: str) -> str:
    for prefix, driver in _ASYNC_DRIVERS:
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


def dialect_of(url: str) -> str:
    """'sqlite' or 'postgresql' (or whatever backend the URL names)."""
    return make_url(normalize_async_url(url)).get_backend_name()


# DB-GATE: bounds concurrent units of work to what the pool can serve
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def open_database(database_url: str) -> Database:
    db_url = normalize_async_url(database_url)
    dialect = dialect_of(db_url)
    kw = dict(future=True, pool_pre_ping=True)
    if dialect == "postgresql":
        kw.update(
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            pool_timeout=config.DB_POOL_TIMEOUT,
        )

    engine = create_async_engine(db_url, **kw)

    if dialect == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in _SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # sqlite: one writer at a time
    gate_limit = config.DB_GATE_LIMIT or (
        config.DB_POOL_SIZE if dialect == "postgresql" else 1
    )
    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return Database(engine, SessionAsync, gated, dialect)
