# backend/bloom_booking/routes/v1/health.py
"""
Health check endpoint for monitoring and load balancer health checks.
"""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...core.config import Settings, get_settings
from ...database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(
    response: Response,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict[str, str]:
    database = "ok"
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("health_database_unreachable", extra={"error": str(exc)})
        database = "unavailable"
        response.status_code = 503
    response.headers["X-Site-Mode"] = settings.site_mode
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
