from __future__ import annotations

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

# Seconds a SQLite writer waits on a locked database before failing.
SQLITE_BUSY_TIMEOUT_SEC = 30.0


class Base(DeclarativeBase):
    """Declarative base shared by thread, message and memory tables."""


def create_engine(db_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine; SQLite files get a generous lock timeout.

    Turns on different threads write concurrently, so SQLite writers queue on
    the database lock instead of failing immediately.
    """

    connect_args = {}
    if make_url(db_url).get_backend_name() == "sqlite":
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT_SEC
    return create_async_engine(db_url, echo=echo, connect_args=connect_args)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Sessions keep loaded attributes after commit so services can return rows."""

    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet."""

    # Registers the mapped classes on Base.metadata.
    from threadline.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
