"""Health & Readiness Probes — liveness and readiness endpoints.

Invariants:
    - GET /health/ always returns 200 if process is up (liveness)
    - GET /health/ready returns 503 if the orchestrator registry is not initialized

Design Decisions:
    - Readiness does not call the analysis backend: a backend outage degrades the
      workflow (stale banner) but the BFF itself can still serve snapshots
"""

import logging
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("/", status_code=status.HTTP_200_OK)
async def health_check():
    """Basic liveness probe. Returns 200 if the process is up."""
    return {
        "status": "healthy",
        "service": "pocflow",
        "version": "1.0.0",
    }


@router.get("/ready")
async def readiness_check(request: Request):
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "reason": "registry_unavailable"},
        )
    current = registry.current
    return {
        "status": "ready",
        "checks": {
            "registry": "healthy",
            "active_session": current.session_id if current else None,
        },
    }
