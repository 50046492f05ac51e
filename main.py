"""
Music Share API - Main Application Entry Point.

This module initializes and configures the FastAPI application for the Music
Share service, a social music-sharing backend: users register, log in, link a
music streaming account, share tracks, follow each other, and like or comment
on posts.

Key Responsibilities:
- Configure and launch the FastAPI application.
- Set up middleware for correlation, error handling, performance logging,
  request validation, security headers and the session auth gate.
- Initialize the credential store database, the session store, the music API
  provider and the token manager during the application lifespan.
- Mount API routers (health, authentication, social).

Architecture:
The application follows a standard FastAPI structure, with a clear separation
of concerns between the main application file, routers (`api`), core
infrastructure (`core`), domain services (`services`) and external API clients
(`providers`).
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.auth_endpoints import router as auth_router
from api.endpoints import router
from api.health_router import health_router, monitoring_router
from core.database import create_db_and_tables, dispose_engine, init_engine
from core.logging_config import setup_logging, get_logger
from core.middleware import (
    CorrelationMiddleware,
    ErrorHandlingMiddleware,
    PerformanceMiddleware,
    RequestValidationMiddleware,
)
from core.security_middleware import SessionAuthMiddleware, SecurityHeadersMiddleware
from core.sessions import create_backend, get_session_store, init_session_store
from core.settings import get_settings, init_settings
from providers.music_provider import init_music_provider
from services.token_manager import init_token_manager
from services.user_service import persist_refresh_token


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    settings = init_settings()
    setup_logging()
    logger = get_logger("api.startup")

    init_engine(settings.database_url)
    await create_db_and_tables()
    logger.info("Database initialized successfully")

    session_store = init_session_store(
        create_backend(settings.session_backend, settings.redis_url),
        ttl_seconds=settings.session_ttl_seconds,
    )
    logger.info(f"Session store initialized ({settings.session_backend})")

    provider = init_music_provider()
    init_token_manager(
        session_store,
        provider,
        expiry_skew_seconds=settings.token_expiry_skew_seconds,
        refresh_token_sink=persist_refresh_token,
    )

    logger.info("Service startup completed")
    yield

    # Cleanup on shutdown
    logger.info("Shutting down Music Share API")
    await get_session_store().backend.close()
    await dispose_engine()
    logger.info("Cleanup completed")


app = FastAPI(
    title="Music Share API",
    description="Social music sharing: post tracks, follow users, like and comment",
    version="1.0.0",
    lifespan=lifespan,
)

# Middleware runs outermost-last: the auth gate is innermost, correlation outermost
app.add_middleware(SessionAuthMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestValidationMiddleware)
app.add_middleware(PerformanceMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(CorrelationMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health routers FIRST (no authentication required for monitoring)
app.include_router(health_router)
app.include_router(monitoring_router)

app.include_router(auth_router)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().environment == "development",
        log_level=get_settings().log_level.lower(),
    )
