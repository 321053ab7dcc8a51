"""
authcore - FastAPI Application Entrypoint

This module initializes the FastAPI application with:
- CORS and security middleware
- Authentication and role administration routes
- Database lifecycle management
- A single exception handler rendering every AuthError

Long-lived shared state (rate limiter, permission cache, services) is
created once in the lifespan and kept on app.state.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authcore import __version__
from authcore.admin.roles import RoleAdministration
from authcore.admin.routes import router as admin_router
from authcore.audit.activity import ActivityLog
from authcore.auth.database import get_engine, get_session_factory, init_db
from authcore.auth.errors import AuthError, RateLimited
from authcore.auth.otp import OtpChallengeManager
from authcore.auth.rate_limit import RateLimiter
from authcore.auth.refresh import RefreshRotationEngine
from authcore.auth.routes import router as auth_router
from authcore.auth.service import AuthService
from authcore.config import Settings, settings as default_settings
from authcore.gateway.middleware import SecurityMiddleware
from authcore.gateway.rbac import PermissionCache, PermissionResolver, sql_role_loader
from authcore.logging import configure_logging, get_logger
from authcore.notifications import LogOtpNotifier, OtpNotifier

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine=None,
    notifier: Optional[OtpNotifier] = None,
    activity: Optional[ActivityLog] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to the environment-loaded settings
        engine: Pre-built engine (tests pass an in-memory one); the app
            only disposes engines it created itself
        notifier: OTP delivery; defaults to LogOtpNotifier
        activity: Audit sink front; defaults to the structured log

    Raises:
        RuntimeError: Signing keys missing, too short or identical
    """
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    problem = settings.signing_key_problem()
    if problem:
        # Tokens signed with a blank or shared key could be forged
        logger.error("signing_keys_invalid", reason=problem)
        raise RuntimeError(f"Refusing to start: {problem}")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            - Create tables and the session factory
            - Wire limiter, permission cache and services onto app.state

        Shutdown:
            - Dispose the engine if it was created here
        """
        owns_engine = engine is None
        db_engine = engine if engine is not None else get_engine(settings.DATABASE_URL)
        init_db(db_engine)
        session_factory = get_session_factory(db_engine)

        limiter = RateLimiter()
        audit = activity or ActivityLog()
        resolver = PermissionResolver(PermissionCache(), sql_role_loader(session_factory))
        otp = OtpChallengeManager(limiter, notifier or LogOtpNotifier(), settings)

        app.state.settings = settings
        app.state.db_engine = db_engine
        app.state.db_session_factory = session_factory
        app.state.rate_limiter = limiter
        app.state.permission_resolver = resolver
        app.state.auth_service = AuthService(
            limiter, otp, RefreshRotationEngine(settings), audit, settings
        )
        app.state.role_admin = RoleAdministration(resolver, audit)

        logger.info("app_started", environment=settings.ENVIRONMENT)

        yield

        if owns_engine:
            db_engine.dispose()

    app = FastAPI(
        title="authcore",
        description="Adaptive login, refresh rotation and role-based permissions",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        headers = None
        if isinstance(exc, RateLimited):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.message,
                "error_code": exc.error_code,
                "request_id": getattr(request.state, "request_id", None),
                **exc.detail,
            },
            headers=headers,
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "PUT", "PATCH"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    app.add_middleware(SecurityMiddleware)

    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": __version__}

    return app


app = create_app()
