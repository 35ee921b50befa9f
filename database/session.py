"""
Async engine and transaction scopes for the SQL follow-up store.

Plain URLs from settings.yaml are mapped onto async drivers:
  postgresql:// postgres://   asyncpg
  mysql:// mysql+pymysql://   aiomysql
  sqlite://                   aiosqlite

    await init_db()
    async with get_session() as db:     # commits on exit, rolls back on error
        await db.execute(...)
    await close_db()

SqlFollowUpStore takes any ``SessionScope``; ``make_session_scope(engine)``
builds one for an engine other than the global one.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

# server databases only; SQLite runs without a pool
_POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: Optional[AsyncEngine] = None
_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in _ASYNC_DRIVERS:
        return db_url
    return f"{_ASYNC_DRIVERS[scheme]}://{rest}"


def create_engine_for(db_url: str, echo: bool = None) -> AsyncEngine:
    """Engine for a sync or async URL; ``echo`` defaults to settings.debug."""
    url = _to_async_url(db_url)
    options = {"echo": get_settings().debug if echo is None else echo}
    if url.startswith("sqlite"):
        engine = create_async_engine(url, **options)
        _emit_sqlite_begin(engine)
        return engine
    options.update(_POOL_OPTIONS)
    return create_async_engine(url, **options)


def _emit_sqlite_begin(engine: AsyncEngine) -> None:
    """
    The sqlite3 driver defers BEGIN on its own, which breaks SAVEPOINT.
    Switch it to autocommit and emit BEGIN from SQLAlchemy instead.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine_for(get_settings().database.url)
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=_engine.url.render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def _transaction(factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def make_session_scope(engine: AsyncEngine) -> SessionScope:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return lambda: _transaction(factory)


def get_session() -> AsyncContextManager[AsyncSession]:
    """One transaction on the global engine."""
    global _factory
    if _factory is None:
        _factory = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _transaction(_factory)


async def init_db(engine: AsyncEngine = None) -> None:
    """Create missing tables."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _factory = None
    logger.info("database_closed")
