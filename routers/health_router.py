"""
Health Router - liveness with database and Redis probes
"""

import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db, ping

logger = logging.getLogger(__name__)

health_router = APIRouter(prefix="/api", tags=["health"])


@health_router.get("/health")
async def health(request: Request, db: AsyncSession = Depends(get_db)):
    """200 when the database answers; Redis is reported but optional."""
    checks = {}

    try:
        await ping(db)
        checks["database"] = "ok"
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Health check: database unavailable: {e}")
        await db.rollback()
        checks["database"] = "error"

    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is None:
        checks["redis"] = "not_configured"
    else:
        try:
            await redis_client.ping()
            checks["redis"] = "ok"
        except (RedisError, OSError) as e:
            logger.warning(f"Health check: redis unavailable: {e}")
            checks["redis"] = "error"

    healthy = checks["database"] == "ok"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
