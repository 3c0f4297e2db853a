import logging
import sys
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from bridge.core.config import settings
from bridge.core.exceptions import ServerFault, ValidationError
from bridge.core.limiter import limiter
from bridge.core.logging_config import (
    get_correlation_id,
    init_application_logging,
    set_correlation_id,
)
from bridge.db.init_db import init_database

# Initialize structured logging
init_application_logging()

logger = logging.getLogger("bridge.main")

# Create database tables
init_database()

app = FastAPI(
    title=settings.app_name,
    description="Relay that hands commands from an automation agent to a browser tab and results back",
    version=settings.version,
)

# Attach limiter to app.state for access in route decorators
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

logger.info(
    "Rate limiting initialized with configuration: create_session=%s",
    settings.rate_limit_create_session,
)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tag every request with a correlation id, honouring one sent by the caller."""

    async def dispatch(self, request: Request, call_next):
        set_correlation_id(request.headers.get("x-correlation-id"))
        correlation_id = get_correlation_id()
        try:
            response = await call_next(request)
        finally:
            set_correlation_id(None)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


app.add_middleware(CorrelationIdMiddleware)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    logger.info(
        "Rejected request: %s", exc.message,
        extra={"path": request.url.path, "task": request.query_params.get("task")},
    )
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)


@app.exception_handler(ServerFault)
async def server_fault_handler(request: Request, exc: ServerFault) -> JSONResponse:
    logger.error("Server fault: %s", exc.message, exc_info=exc.__cause__ is not None)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled error: %s", exc,
        exc_info=exc,
        extra={"path": request.url.path, "task": request.query_params.get("task")},
    )
    return JSONResponse({"error": "Internal server error"}, status_code=500)


from bridge.api import mailbox  # noqa: E402

app.include_router(mailbox.router, tags=["Mailbox"])


@app.get("/health")
def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@app.get("/api/health")
def api_health_check():
    """
    Enhanced health check endpoint with database connectivity and version info.
    """
    from bridge.core.utils.database_helpers import check_database_health

    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.version,
        "environment": {
            "dev_mode": settings.dev_mode,
            "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        },
        "services": {},
    }

    try:
        db_health = check_database_health()
        health_status["services"]["database"] = {
            "status": db_health["status"],
            "type": db_health["database_type"],
            "connected": db_health["connected"],
            "table_count": db_health["table_count"],
            "last_error": db_health.get("last_error"),
        }
        if db_health["status"] != "healthy":
            health_status["status"] = "degraded"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["services"]["database"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "unhealthy"

    health_status["services"]["rate_limiting"] = {
        "status": "enabled" if getattr(app.state, "limiter", None) else "disabled",
        "storage": "redis" if settings.redis_url else "memory",
        "configuration": {"create_session": settings.rate_limit_create_session},
    }

    status_code = 503 if health_status["status"] == "unhealthy" else 200
    return JSONResponse(health_status, status_code=status_code)
