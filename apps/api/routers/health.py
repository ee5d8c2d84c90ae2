"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import require_payten_credentials, settings
from database import engine

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Overall service health.
    Database and Redis failures degrade the status instead of failing the probe.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "payment_gateway": "configured" if settings.PAYTEN_API_KEY and settings.PAYTEN_MERCHANT_ID else "missing",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once payments can be taken."""
    try:
        require_payten_credentials()
    except ValueError:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": ["PAYTEN_API_KEY", "PAYTEN_MERCHANT_ID"]},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
