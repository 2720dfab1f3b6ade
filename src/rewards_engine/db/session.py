from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from rewards_engine.core.settings import settings


def configure_sqlite_engine(target: AsyncEngine) -> AsyncEngine:
    """Make SQLite transactions take the write lock up front.

    pysqlite's implicit BEGIN is disabled and every transaction starts with
    ``BEGIN IMMEDIATE``, which serializes writers and keeps SAVEPOINTs working.
    No-op for other dialects.
    """

    if target.dialect.name != "sqlite":
        return target

    @event.listens_for(target.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None

    @event.listens_for(target.sync_engine, "begin")
    def _begin_immediate(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return target


engine = configure_sqlite_engine(
    create_async_engine(settings.database_url, echo=settings.database_echo, future=True)
)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session
