"""Health check endpoints for monitoring."""
from typing import Any, Dict

from fastapi import APIRouter, Depends

from billing_service.api.dependencies import get_store
from billing_service.core.config import settings
from billing_service.core.database import get_db_debug_info
from billing_service.models.schemas import HealthResponse
from billing_service.models.tables import utcnow
from billing_service.services.store import BillingStore

router = APIRouter(tags=["health"])


@router.api_route("/health", methods=["GET", "HEAD"], response_model=HealthResponse)
async def health_check():
    """Basic liveness check (supports GET & HEAD)."""
    return HealthResponse(status="healthy", timestamp=utcnow(), service=settings.SERVICE_NAME)


@router.get("/health/detailed")
async def detailed_health_check(store: BillingStore = Depends(get_store)) -> Dict[str, Any]:
    """Detailed health check with a database probe."""
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": utcnow(),
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
        "environment": settings.ENVIRONMENT,
        "services": {},
    }

    try:
        await store.ping()
        health_status["services"]["database"] = "healthy"
    except Exception as e:
        health_status["services"]["database"] = f"unhealthy: {e}"
        health_status["status"] = "degraded"

    health_status["database"] = get_db_debug_info(store.engine)
    return health_status
