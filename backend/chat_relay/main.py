"""
FastAPI application entry point for the chat relay.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
from typing import Any, Dict

from .config import settings
from .api.routes import admin, health, sessions
from .api.websocket import websocket_endpoint
from .errors import RelayError
from .relay import ConnectionGateway, RelayEngine
from .services.responder_client import ResponderClient
from .session import create_session_store
from .utils.rate_limit import TokenBucketLimiter
from .utils.telemetry import setup_telemetry, metrics_collector
from .utils.middleware import (
    RequestIDMiddleware,
    TimingMiddleware,
    RateLimitMiddleware
)

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

# HTTP status for each relay error code.
ERROR_STATUS_CODES: Dict[str, int] = {
    "authentication_failed": 401,
    "permission_denied": 403,
    "not_found": 404,
    "validation_error": 422,
    "session_closed": 409,
    "invalid_state": 409,
    "rate_limited": 429,
    "upstream_degraded": 502,
    "upstream_unavailable": 503,
}


def _build_session_store():
    if settings.session_store_backend == "in_memory":
        return create_session_store("in_memory")

    return create_session_store(
        "http",
        base_url=settings.session_store_url,
        token=settings.get_session_store_token(),
        timeout=settings.session_store_timeout,
        user_agent=f"MindCareChatRelay/{settings.app_version}"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle events.
    Build the relay components on startup, release them on shutdown.
    """
    # === STARTUP ===
    try:
        logger.info("=" * 60)
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")
        logger.info(f"Environment: {settings.environment}")
        logger.info(f"Debug mode: {settings.debug}")
        logger.info("=" * 60)

        # Session store
        store = _build_session_store()
        await store.initialize()
        app.state.store = store
        logger.info(f"✓ Session store: {type(store).__name__}")

        try:
            store_health = await store.health_check()
            if store_health.get("status") == "healthy":
                logger.info("✓ Session store health check passed")
            else:
                logger.warning(f"✗ Session store health check failed: {store_health}")
        except Exception as e:
            logger.warning(f"✗ Session store health check error: {e}")

        # Responder
        responder = ResponderClient(settings)
        await responder.initialize()
        app.state.responder = responder

        # Relay
        limiter = None
        if settings.rate_limit_enabled:
            limiter = TokenBucketLimiter(
                capacity=settings.rate_limit_capacity,
                refill_rate=settings.rate_limit_refill_per_second,
                idle_ttl=settings.rate_limit_idle_ttl,
                max_keys=settings.rate_limit_max_keys
            )

        gateway = ConnectionGateway()
        app.state.gateway = gateway
        app.state.engine = RelayEngine(
            gateway=gateway,
            store=store,
            responder=responder,
            settings=settings,
            limiter=limiter
        )

        logger.info("=" * 60)
        logger.info("✓ Application started successfully")
        logger.info(f"WebSocket: ws://{settings.api_host}:{settings.api_port}/ws")
        logger.info(f"Health check: http://{settings.api_host}:{settings.api_port}/health")
        logger.info("=" * 60)

    except Exception as e:
        logger.error(f"Failed to start application: {e}", exc_info=True)
        raise

    yield  # === APPLICATION RUNS HERE ===

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    if hasattr(app.state, 'responder'):
        try:
            await app.state.responder.cleanup()
        except Exception as e:
            logger.error(f"Error during responder cleanup: {e}")

    if hasattr(app.state, 'store'):
        try:
            await app.state.store.cleanup()
        except Exception as e:
            logger.error(f"Error during session store cleanup: {e}")

    logger.info("✓ Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Real-time counseling session relay between users, an AI responder and human counselors",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Process-Time", "X-RateLimit-Limit"]
)

# Add custom middleware (order matters - applied in reverse)
app.add_middleware(TimingMiddleware, slow_threshold=settings.slow_request_seconds)
app.add_middleware(RequestIDMiddleware)

if settings.rate_limit_enabled:
    app.add_middleware(
        RateLimitMiddleware,
        capacity=settings.rate_limit_capacity * 3,
        refill_rate=settings.rate_limit_refill_per_second * 3
    )

if settings.enable_telemetry:
    setup_telemetry(app)

# Include API routes
app.include_router(
    health.router,
    prefix="/health",
    tags=["Health"]
)

app.include_router(
    sessions.router,
    prefix=f"{settings.api_prefix}/sessions",
    tags=["Sessions"]
)

app.include_router(
    admin.router,
    prefix=settings.api_prefix,
    tags=["Admin"]
)

# Add WebSocket endpoint
app.add_api_websocket_route(
    "/ws",
    websocket_endpoint,
    name="websocket"
)


# Root endpoint
@app.get("/", tags=["Root"])
async def root() -> Dict[str, Any]:
    """API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "status": "operational",
        "endpoints": {
            "websocket": "/ws",
            "health": "/health",
            "metrics": "/metrics" if settings.enable_telemetry else "disabled",
            "api": settings.api_prefix
        }
    }


@app.exception_handler(RelayError)
async def relay_exception_handler(request: Request, exc: RelayError) -> JSONResponse:
    """Map relay errors raised by HTTP routes onto status codes."""
    request_id = getattr(request.state, "request_id", "unknown")
    status_code = ERROR_STATUS_CODES.get(exc.code, 400)

    logger.info(
        f"Request {request_id} failed with {exc.code}: {exc.message}",
        extra={"path": request.url.path, "method": request.method, "error_code": exc.code}
    )

    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, **exc.to_event(), "request_id": request_id}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle uncaught exceptions gracefully.

    Args:
        request: FastAPI request
        exc: Exception that was raised

    Returns:
        JSON error response
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        f"Unhandled exception in request {request_id}: {exc}",
        exc_info=True,
        extra={
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else "unknown"
        }
    )

    metrics_collector.record_error()

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred",
            "request_id": request_id
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chat_relay.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
