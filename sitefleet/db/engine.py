# sitefleet/db/engine.py
"""
SQLModel async engine and session management.
Supports SQLite (default, via aiosqlite) and any async URL in DATABASE_URL.
"""

import os

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from .. import models  # noqa: F401  (registers tables on SQLModel.metadata)

SessionMaker = async_sessionmaker[AsyncSession]


def build_engine(database_url: str) -> AsyncEngine:
    """
    Creates the async engine. File-backed SQLite gets WAL mode; in-memory
    SQLite shares one connection so every session sees the same database.
    """
    is_sqlite = database_url.startswith("sqlite")
    is_memory = is_sqlite and (":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"))

    kwargs = {"echo": False}
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
    if is_memory:
        kwargs["poolclass"] = StaticPool
    elif is_sqlite:
        path = database_url.split("///", 1)[-1]
        if path:
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    engine = create_async_engine(database_url, **kwargs)

    if is_sqlite and not is_memory:
        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.close()

    return engine


def build_session_maker(engine: AsyncEngine) -> SessionMaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_db_and_tables(engine: AsyncEngine) -> None:
    """Creates all tables defined in SQLModel models."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

