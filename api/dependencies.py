"""
FastAPI dependencies: database session, caller identity, runner
"""

from typing import AsyncGenerator, Optional
from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import async_session_maker
from ingestion.runner import JobRunner


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session per request"""
    async with async_session_maker() as session:
        yield session


async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> str:
    """
    Caller identity.

    Authentication happens upstream; this service trusts the X-User-ID
    header set by the gateway.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-ID header"
        )
    return x_user_id.strip()


def get_runner() -> JobRunner:
    return JobRunner(session_maker=async_session_maker)
