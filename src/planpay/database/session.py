"""
Database engine and session management.

One :class:`Database` per process, built from settings at startup. Every
mutating operation opens its own session and transaction.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .models import Base

logger = logging.getLogger(__name__)


class Database:
    def __init__(self, url: str, echo: bool = False):
        self.url = url
        if url.startswith("sqlite"):
            self.engine = create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
            )

            @event.listens_for(self.engine.sync_engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                # Let SQLAlchemy emit BEGIN instead of pysqlite's deferred one
                dbapi_connection.isolation_level = None
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            @event.listens_for(self.engine.sync_engine, "begin")
            def begin_immediate(conn):
                # SQLite ignores FOR UPDATE; take the write lock up front instead
                conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            self.engine = create_async_engine(
                url,
                echo=echo,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
                pool_recycle=1800,
                pool_pre_ping=True,
            )
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured at %s", self.engine.url.render_as_string(hide_password=True))

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
