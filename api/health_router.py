"""
Health and Monitoring Router.

This module provides public, unauthenticated endpoints for health checks and
monitoring of the Music Share API.

Endpoints Provided:
- `/`: Service banner with links to the login and registration forms.
- `/healthcheck`: A basic, lightweight health check to confirm that the service
  is running.
- `/monitoring/ping`: A simple ping endpoint for basic connectivity testing.
- `/monitoring/detailed`: A comprehensive health check that verifies the status
  of the credential store database and the session store.
- `/monitoring/sessions/stats`: Session backend statistics and token refresh
  counters.

Architectural Design:
- Public Access: All endpoints in this module are listed as public paths of the
  auth gate, making them suitable for automated probes.
- Graceful Degradation: The detailed health check reports the status of
  individual components, so the service can report "degraded" rather than fail
  outright when one of them is down.
"""

from fastapi import APIRouter
from datetime import datetime, timezone
from typing import Dict, Any

from core.logging_config import get_logger
from core.database import get_database_info
from core.sessions import get_session_store
from services.token_manager import get_token_manager

logger = get_logger(__name__)

SERVICE_NAME = "Music Share API"
SERVICE_VERSION = "1.0.0"

health_router = APIRouter(tags=["Health & Monitoring"])

monitoring_router = APIRouter(prefix="/monitoring", tags=["Health & Monitoring"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@health_router.get("/")
async def index() -> Dict[str, Any]:
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "links": {"login": "/login", "register": "/register"},
    }


@health_router.get("/healthcheck")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint (no authentication required)

    Returns:
        Dict with status, timestamp, and version info
    """
    logger.debug("Health check requested")

    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": SERVICE_VERSION,
        "service": SERVICE_NAME,
    }


@monitoring_router.get("/ping")
async def ping() -> Dict[str, str]:
    """Simple ping endpoint for connectivity testing"""
    logger.debug("Ping requested")
    return {"message": "pong", "timestamp": _now(), "version": SERVICE_VERSION}


@monitoring_router.get("/detailed")
async def detailed_health_check() -> Dict[str, Any]:
    """Detailed health check with component status"""
    logger.info("Detailed health check requested")

    health_status = {
        "status": "healthy",
        "timestamp": _now(),
        "version": SERVICE_VERSION,
        "service": SERVICE_NAME,
        "components": {},
    }

    db_info = await get_database_info()
    health_status["components"]["database"] = {
        "status": "healthy" if db_info["connection_healthy"] else "unhealthy",
        "info": db_info,
    }
    if not db_info["connection_healthy"]:
        health_status["status"] = "degraded"

    session_health = await get_session_store().health_check()
    health_status["components"]["session_store"] = session_health
    if session_health.get("status") != "healthy":
        health_status["status"] = "degraded"

    return health_status


@monitoring_router.get("/sessions/stats")
async def get_session_stats() -> Dict[str, Any]:
    """Session backend statistics (no authentication required for monitoring)"""
    logger.info("Session stats requested")

    stats = await get_session_store().backend.stats()
    try:
        refreshes = get_token_manager().refresh_count
    except RuntimeError:
        refreshes = None

    return {
        "session_stats": stats,
        "token_refreshes": refreshes,
        "timestamp": _now(),
    }
