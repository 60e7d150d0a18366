"""Database engine and sessions for the lead store.

Engines are built on first use so importing the models (alembic, tests)
never needs a reachable database.
"""

from typing import AsyncIterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from settings import settings

Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker] = None


def _configured_dsn() -> str:
    dsn = settings.postgres_dsn
    if not dsn or "://" not in dsn:
        raise RuntimeError("POSTGRES_DSN is not configured")
    return dsn


def sync_dsn(dsn: str) -> str:
    # alembic runs on the blocking driver
    return dsn.replace("+asyncpg", "")


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(_configured_dsn(), pool_pre_ping=True, future=True)
    return _engine


def get_sessionmaker() -> async_sessionmaker:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _sessionmaker


def get_alembic_engine() -> Engine:
    return create_engine(sync_dsn(_configured_dsn()), future=True)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with get_sessionmaker()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
