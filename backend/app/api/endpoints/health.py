"""
Health and Status Endpoints for Monitoring.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.db.session import get_async_session

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    environment: str
    database_connected: bool


@router.get("/health", response_model=HealthResponse)
async def health_check(session: AsyncSession = Depends(get_async_session)) -> HealthResponse:
    """
    Health check including a database round trip.

    Returns:
        Health status; "unhealthy" if the database cannot be reached
    """
    settings = get_settings()

    try:
        await session.execute(text("SELECT 1"))
        connected = True
    except SQLAlchemyError as e:
        logger.error(f"Health check failed: {e}")
        connected = False

    return HealthResponse(
        status="healthy" if connected else "unhealthy",
        environment=settings.app_env,
        database_connected=connected,
    )
