"""
Health check API routes.
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
import logging

from ...models.schemas import HealthResponse
from ...utils.clock import isoformat, utcnow
from ...utils.telemetry import metrics_collector

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns:
        Status, current time and process uptime in seconds
    """
    return HealthResponse(
        status="healthy",
        timestamp=utcnow(),
        uptime=metrics_collector.uptime
    )


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness check for collaborators.

    The session store must be reachable; an open responder circuit only
    degrades the service since replies fall back to canned messages.
    """
    services = {}
    overall_status = "healthy"

    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "services": {"engine": "not_initialized"}}
        )

    try:
        store_health = await engine.store.health_check()
        services["session_store"] = store_health.get("status", "unknown")
        if store_health.get("status") != "healthy":
            overall_status = "unhealthy"
    except Exception as e:
        logger.error(f"Session store health check failed: {e}")
        services["session_store"] = "unhealthy"
        overall_status = "unhealthy"

    circuit = engine.responder.circuit_state
    services["responder"] = "not_configured" if not engine.responder.configured else circuit
    if circuit == "open" and overall_status == "healthy":
        overall_status = "degraded"

    services["connections"] = engine.gateway.stats()["connections"]

    return JSONResponse(
        status_code=503 if overall_status == "unhealthy" else 200,
        content={
            "status": overall_status,
            "timestamp": isoformat(utcnow()),
            "services": services
        }
    )


@router.get("/live")
async def liveness_check():
    """
    Simple liveness check.

    Returns:
        Basic alive status
    """
    return {"status": "alive", "timestamp": isoformat(utcnow())}
