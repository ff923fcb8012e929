"""
Async engine and transactional sessions for the SQL store.

URL schemes are mapped to their async drivers:

    postgresql:// postgres://   → postgresql+asyncpg://   (extra: postgres)
    mysql:// mysql+pymysql://   → mysql+aiomysql://       (extra: mysql)
    sqlite://                   → sqlite+aiosqlite://

    await init_db()
    async with get_session() as db:     # commits on exit, rolls back on error
        ...
    await close_db()

`configure_engine(url)` points the module at another database (tests,
migration script); otherwise `database.url` from settings is used.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None
_url_override: Optional[str] = None


def _to_async_url(db_url: str) -> str:
    """Swap a sync scheme for its async driver; unknown or async schemes pass through."""
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        return db_url
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def _engine_kwargs(db_url: str, echo: bool) -> dict:
    if db_url.startswith("sqlite"):
        # aiosqlite runs the connection on its own thread
        return {"echo": echo, "connect_args": {"check_same_thread": False}}
    return {
        "echo": echo,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _redacted(engine: AsyncEngine) -> str:
    return engine.url.render_as_string(hide_password=True)


def configure_engine(url: Optional[str] = None) -> None:
    """Drop the current engine (without disposing it) and use `url` for the next one."""
    global _engine, _session_factory, _url_override
    _engine = None
    _session_factory = None
    _url_override = url


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = _to_async_url(_url_override or settings.database.url)
        _engine = create_async_engine(db_url, **_engine_kwargs(db_url, settings.debug))
        logger.info("database_engine_created", dialect=_engine.dialect.name, url=_redacted(_engine))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction per block."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.debug("database_transaction_rolled_back", error=str(e))
            raise


async def init_db() -> list[str]:
    """Create missing tables. Returns the table names the models define."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    tables = sorted(Base.metadata.tables)
    logger.info("database_initialized", dialect=engine.dialect.name, tables=tables)
    return tables


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed", url=_redacted(_engine))
    _engine = None
    _session_factory = None
