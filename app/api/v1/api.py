"""
API Router v1

This module aggregates all API v1 routes and provides the main API router
that gets mounted to the FastAPI application in main.py.
"""

from fastapi import APIRouter

from app.api.v1.alerts import router as alerts_router

# =============================================================================
# Main API Router
# =============================================================================

api_router = APIRouter()

# =============================================================================
# Include Sub-Routers
# =============================================================================

# Alerts API endpoints
api_router.include_router(
    alerts_router,
    prefix="/alerts",
    tags=["alerts"],
    responses={
        400: {"description": "Validation or processing error"},
        401: {"description": "Authentication required"},
        404: {"description": "Alert not found"},
        413: {"description": "File too large"},
        415: {"description": "Unsupported media type"},
        500: {"description": "Internal server error"},
    },
)
