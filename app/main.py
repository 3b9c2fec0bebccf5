"""
FastAPI Application Entry Point

This module sets up the FastAPI application with all middleware,
routing, and configuration for the Citizen Alerts backend.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.alerts import proof_store
from app.api.v1.api import api_router
from app.core.config import settings, setup_logging
from app.core.exceptions import CitizenAlertsException, format_exception_for_logging
from app.core.metrics import REQUEST_COUNT, REQUEST_DURATION
from app.models.database import check_database_health, create_tables, engine, wait_for_database

# =============================================================================
# Application Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events for proper resource management.
    """
    # Setup logging early before any logger usage
    setup_logging()
    # Bind global context to all logs
    structlog.contextvars.bind_contextvars(
        app=settings.APP_NAME,
        environment=settings.ENVIRONMENT,
        version=settings.APP_VERSION,
    )
    logger = structlog.get_logger(__name__)

    # Startup
    logger.info("Starting Citizen Alerts application", version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
    logger.info("Logging configured", log_level=settings.LOG_LEVEL, log_format=settings.LOG_FORMAT)

    if not settings.SERVICE_API_KEY:
        logger.warning("SERVICE_API_KEY is not set; status webhook will reject every call")

    proof_store.ensure_folders()

    # Initialize database
    try:
        # Wait for DB to be ready (useful in container orchestration)
        await wait_for_database()
        await create_tables()
        logger.info("Database tables initialized")

        db_health = await check_database_health()
        if db_health["status"] == "healthy":
            logger.info("Database connection verified", **db_health)
        else:
            logger.error("Database health check failed", **db_health)

    except Exception as e:
        logger.error("Database initialization failed", error=str(e))
        raise

    logger.info(
        "Application startup completed successfully",
        environment=settings.ENVIRONMENT,
        debug=settings.DEBUG
    )

    yield

    # Shutdown
    logger.info("Shutting down Citizen Alerts application")
    try:
        await engine.dispose()
        logger.info("Database engine disposed")
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))

    logger.info("Application shutdown completed")


# =============================================================================
# FastAPI Application Setup
# =============================================================================

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=settings.APP_DESCRIPTION,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json" if settings.SHOW_DOCS else None,
    docs_url="/docs" if settings.SHOW_DOCS else None,
    redoc_url="/redoc" if settings.SHOW_DOCS else None,
    lifespan=lifespan,
)

# =============================================================================
# Middleware Configuration
# =============================================================================

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

# Compression middleware
app.add_middleware(GZipMiddleware, minimum_size=1000)

# =============================================================================
# Request/Response Middleware
# =============================================================================

@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Log all requests and add request ID for tracing.
    """
    # Generate request ID
    request_id = str(uuid.uuid4())[:8]
    request.state.request_id = request_id

    # Get logger with request context
    logger = structlog.get_logger(__name__).bind(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else None,
    )

    # Record request start time
    start_time = time.time()

    logger.info("Incoming request")

    try:
        response = await call_next(request)
    except Exception as exc:
        duration = time.time() - start_time
        logger.error(
            "Request failed",
            error=str(exc),
            duration=f"{duration:.3f}s",
            exc_info=True
        )
        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=request.url.path,
            status_code=500
        ).inc()
        raise

    duration = time.time() - start_time

    # Update metrics
    REQUEST_COUNT.labels(
        method=request.method,
        endpoint=request.url.path,
        status_code=response.status_code
    ).inc()

    REQUEST_DURATION.labels(
        method=request.method,
        endpoint=request.url.path
    ).observe(duration)

    # Add response headers
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{duration:.3f}s"

    logger.info(
        "Request completed",
        status_code=response.status_code,
        duration=f"{duration:.3f}s"
    )

    return response


# =============================================================================
# Exception Handlers
# =============================================================================

def error_response(
    request: Request,
    status_code: int,
    message: str,
    error_code: Optional[str],
    details: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Error envelope shared by every handler."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": message,
            "error_code": error_code,
            "details": jsonable_encoder(details or {}),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": getattr(request.state, "request_id", None),
        },
        headers=headers,
    )


@app.exception_handler(CitizenAlertsException)
async def citizen_alerts_exception_handler(request: Request, exc: CitizenAlertsException):
    """Handle custom application exceptions."""
    status_code = getattr(exc, "status_code", status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger = structlog.get_logger(__name__).bind(
        request_id=getattr(request.state, "request_id", "unknown"),
    )

    if status_code >= 500:
        logger.error("Application error", **format_exception_for_logging(exc))
    else:
        logger.info("Request rejected", **format_exception_for_logging(exc))

    return error_response(
        request,
        status_code,
        exc.message,
        exc.error_code,
        exc.details,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    logger = structlog.get_logger(__name__).bind(
        request_id=getattr(request.state, "request_id", "unknown"),
    )

    logger.warning("Validation error", errors=jsonable_encoder(exc.errors()))

    return error_response(
        request,
        status.HTTP_400_BAD_REQUEST,
        "Input validation failed",
        "VALIDATION_ERROR",
        {"errors": exc.errors()},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Unknown routes, wrong methods and other framework-level HTTP errors."""
    error_code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
    return error_response(
        request,
        exc.status_code,
        str(exc.detail),
        error_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def internal_server_error_handler(request: Request, exc: Exception):
    """Handle internal server errors."""
    logger = structlog.get_logger(__name__).bind(
        request_id=getattr(request.state, "request_id", "unknown"),
    )

    logger.error("Internal server error", error=str(exc), exc_info=exc)

    # In production, don't expose internal error details
    error_message = (
        "An internal server error occurred"
        if settings.is_production
        else str(exc)
    )

    return error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_message,
        "INTERNAL_ERROR",
    )


# =============================================================================
# Health Check and Monitoring Endpoints
# =============================================================================

@app.get("/health")
async def health_check():
    """
    Application health check endpoint.

    Reports database and PostGIS availability.
    """
    health_data = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "services": {}
    }

    db_health = await check_database_health()
    health_data["services"]["database"] = db_health

    if db_health.get("status") != "healthy":
        health_data["status"] = "unhealthy"
        health_data["unhealthy_services"] = ["database"]

    status_code = 200 if health_data["status"] == "healthy" else 503
    return JSONResponse(content=health_data, status_code=status_code)


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    if not settings.METRICS_ENABLED:
        return Response(status_code=404)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# =============================================================================
# Static Files and Assets
# =============================================================================

# Proof assets; folders are created by the lifespan
app.mount(
    settings.UPLOAD_URL_PREFIX,
    StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False),
    name="uploads",
)

# =============================================================================
# API Routes
# =============================================================================

app.include_router(
    api_router,
    prefix=settings.API_V1_PREFIX,
)


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/")
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Citizen Alerts API",
        "version": settings.APP_VERSION,
        "docs_url": "/docs" if settings.SHOW_DOCS else None,
        "health_url": "/health",
        "api_prefix": settings.API_V1_PREFIX,
        "environment": settings.ENVIRONMENT,
        "status": "running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# =============================================================================
# Application Factory
# =============================================================================

def create_app() -> FastAPI:
    """
    Application factory function.

    Returns:
        Configured FastAPI application instance
    """
    return app


# =============================================================================
# CLI and Development Server
# =============================================================================

if __name__ == "__main__":
    """
    Run the application directly for development.

    For production, use: uvicorn app.main:app --host 0.0.0.0 --port 8000
    """

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    uvicorn.run(
        "app.main:app",
        host="127.0.0.1",
        port=8000,
        reload=settings.AUTO_RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
