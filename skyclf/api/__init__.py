"""
API endpoints and dependencies for the SkyClf application.
"""

from fastapi import APIRouter

from .dependencies import get_engine, get_orchestrator, get_settings
from .endpoints import router

# Create main router
api_router = APIRouter()

# Include all endpoints
api_router.include_router(router, prefix="/api")

__all__ = ["api_router", "get_engine", "get_orchestrator", "get_settings"]
