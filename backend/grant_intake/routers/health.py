"""Health-check router."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from sqlalchemy import text

from grant_intake import __version__, database

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/")
async def root():
    """Health check"""
    return {"status": "ok", "message": "Grant Intake API is running"}


@router.get("/api/health")
async def health_check():
    """Detailed health check with database reachability."""
    db_status = "not_configured"
    if database.engine is not None:
        try:
            async with database.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            db_status = "connected"
        except Exception as e:
            logger.warning("Database health check failed: %s", e)
            db_status = "unreachable"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {"database": db_status},
    }
