"""
Database engine and session management with SQLAlchemy async.

The runner, the scheduler and the API each open their own sessions from the
same factory so that concurrent passes never share a transaction.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite connections get a generous busy timeout: concurrent runner passes
    and lock acquisitions contend on the single database file, and a writer
    must wait for the current one instead of failing immediately.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["timeout"] = 30

    return create_async_engine(
        database_url,
        echo=echo,
        poolclass=NullPool,
        connect_args=connect_args,
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.DATABASE_URL)
async_session_maker = build_session_maker(engine)
