from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api.errors import register_exception_handlers
from .api.routes_health import router as health_router
from .auth.core import CredentialHasher, TokenService
from .auth.routes_auth import router as auth_router
from .auth.service import AuthService
from .config import Settings, get_settings
from .database import Database
from .rate_limit import RateLimiter, RateLimitMiddleware
from .telemetry.logger import RequestContextMiddleware, configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info("Starting starter-api (environment=%s)", settings.environment)
    app.state.db.create_all()
    logger.info("Database schema ready")
    yield
    app.state.db.dispose()
    logger.info("Shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    *,
    token_service: Optional[TokenService] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """
    Build the application. Every collaborator is constructed here from
    ``settings`` and stored on ``app.state``; the token service and rate
    limiter may be passed in pre-built (tests inject fake clocks this way).
    """
    if settings is None:
        settings = get_settings()
    configure_logging(settings)

    db = Database(settings)
    hasher = CredentialHasher(
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost,
        parallelism=settings.argon2_parallelism,
    )
    tokens = token_service if token_service is not None else TokenService(
        settings.jwt_secret,
        ttl=timedelta(hours=settings.jwt_expiration_hours),
    )
    limiter = rate_limiter if rate_limiter is not None else RateLimiter(
        rate=settings.rate_limit_rps,
        burst=settings.rate_limit_burst,
        idle_ttl=settings.rate_limit_idle_seconds,
    )

    docs_enabled = not settings.is_production
    app = FastAPI(
        title="Starter API",
        version=__version__,
        description="REST API starter: registration, login, JWT bearer auth and rate limiting.",
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings
    app.state.db = db
    app.state.hasher = hasher
    app.state.token_service = tokens
    app.state.rate_limiter = limiter
    app.state.auth_service = AuthService(
        db, hasher, tokens, password_min_length=settings.password_min_length,
    )

    register_exception_handlers(app)

    # Last added runs first: CORS, then request context, then rate limiting.
    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        exclude_paths=settings.rate_limit_exclude_paths,
        trust_forwarded_for=settings.trust_forwarded_for,
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(auth_router)

    return app


def run() -> None:
    """Console entry point: serve with uvicorn (graceful shutdown on SIGINT/SIGTERM)."""
    settings = get_settings()
    uvicorn.run(
        "starter_api.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    run()
