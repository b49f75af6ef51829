"""
Health endpoints.

/healthz is a liveness check with a short scheduler summary; /readyz also
checks database connectivity when a database is configured.
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from gameloop.api.deps import get_services
from gameloop.core.config import settings
from gameloop.core.database import check_connection
from gameloop.features.scheduler.jobs import Services

logger = logging.getLogger("gameloop.api")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz(services: Services = Depends(get_services)):
    orchestrator = services.orchestrator
    return {
        "status": "ok",
        "scheduler": {
            "running": orchestrator.running,
            "jobs": orchestrator.job_names(),
            "in_flight": orchestrator.in_flight(),
        },
    }


@router.get("/readyz")
def readyz():
    if not settings.DATABASE_URL:
        return {"ready": True, "db": "not_configured"}
    if check_connection():
        return {"ready": True, "db": "ok"}
    logger.warning("readiness check failed", extra={"error_code": "db_unavailable"})
    return JSONResponse(status_code=503, content={"ready": False, "db": "unavailable"})
