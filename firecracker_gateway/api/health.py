import logging
from fastapi import APIRouter, Request
from datetime import datetime, timezone

logger = logging.getLogger(__name__)
router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def health_check(request: Request):
    """Basic health check endpoint"""
    return {
        "status": "healthy",
        "service": request.app.state.settings.service_name,
        "timestamp": _now(),
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness check - verifies the execution backend can serve requests"""
    backend = getattr(request.app.state, "backend", None)
    backend_health = {}
    if backend is not None:
        try:
            backend_health = await backend.health_check()
        except Exception as e:
            logger.error(f"Backend health check error: {e}", exc_info=True)

    checks = {
        "backend": backend is not None,
        "firecracker": backend_health.get("status") == "healthy",
    }

    # In debug/dev mode, allow readiness without a working Firecracker host
    debug_mode = getattr(request.app.state.settings, "debug", False)
    all_ready = all(checks.values()) or debug_mode

    return {
        "ready": all_ready,
        "checks": checks,
        "debug_mode": debug_mode,
        "timestamp": _now(),
    }


@router.get("/live")
async def liveness_check():
    """Liveness check - simple ping"""
    return {"alive": True}
