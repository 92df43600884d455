"""
Health check endpoints.
Used for monitoring, deployment readiness checks, and basic connectivity tests.
"""

from fastapi import APIRouter, HTTPException

from app.core.errors import InfrastructureError
from app.core.settings import settings
from app.models.base import utc_now
from app.store import get_store
from app.store.base import INCIDENTS


router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
async def health_check():
    """
    Basic health check endpoint.
    Returns 200 if service is running.
    """
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": utc_now().isoformat()
    }


@router.get("/db")
async def database_health():
    """
    Store connectivity check.
    Performs a single point read against the incidents collection.
    """
    store = get_store()
    try:
        store.get(INCIDENTS, "__health__")
    except InfrastructureError as e:
        raise HTTPException(
            status_code=503,
            detail=f"Database connection failed: {e.message}"
        )

    return {
        "status": "healthy",
        "database": "memory" if settings.USE_MOCK_DB else "firestore",
        "connected": True,
        "timestamp": utc_now().isoformat()
    }
