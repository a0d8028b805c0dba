"""
Shared FastAPI dependencies
"""

from typing import AsyncGenerator, Optional
from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.database import async_session_maker
import logging

logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped database session"""
    async with async_session_maker() as session:
        yield session


async def require_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")):
    """
    Guard for operator write endpoints.

    No-op when API_KEY is unset (local development).
    """
    if not settings.API_KEY:
        return
    if x_api_key != settings.API_KEY:
        logger.warning("Rejected operator request with missing or invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
