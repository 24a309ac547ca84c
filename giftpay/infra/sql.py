"""Async database handle.

A :class:`Database` owns one SQLAlchemy async engine, its session factory
and a semaphore ("the gate") bounding how many transactions run at once.
Without the gate a burst of webhooks queues up inside the connection pool
and starts hitting ``pool_timeout``; with it they wait in the event loop.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncSession, async_sessionmaker, create_async_engine
)

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


def normalize_async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _install_sqlite_pragmas(engine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


class Database:
    def __init__(self, database_url: str, *, pool_size: int = 10,
                 max_overflow: int = 10, pool_timeout: int = 30,
                 gate_limit: Optional[int] = None) -> None:
        self.url = normalize_async_url(database_url)
        kw = dict(pool_pre_ping=True)
        if self.url.startswith("postgresql+asyncpg://"):
            kw.update(pool_size=pool_size, max_overflow=max_overflow,
                      pool_timeout=pool_timeout)

        self.engine = create_async_engine(self.url, **kw)
        if self.url.startswith("sqlite+aiosqlite://"):
            _install_sqlite_pragmas(self.engine)

        self.SessionAsync = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._gate = asyncio.Semaphore(max(1, gate_limit or pool_size))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Gated session for reads."""
        async with self._gate:
            async with self.SessionAsync() as db:
                yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Gated session inside BEGIN ... COMMIT (ROLLBACK on error)."""
        async with self._gate:
            async with self.SessionAsync() as db:
                async with db.begin():
                    yield db

    async def create_schema(self, metadata: MetaData) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
