"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.database import close_db
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.health import run_health_check
from backend.app.api.deps import Services, build_services
from backend.app.api.middleware import RequestLoggingMiddleware

# ── API routers ──
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.notifications import router as notification_router
from backend.app.api.v1.users import router as user_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(
    app_settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Build the application.

    Tests pass their own ``services`` to share stores with assertions;
    otherwise stores are wired from settings at startup.
    """
    app_settings = app_settings or default_settings

    # ── Application lifespan (startup / shutdown) ──
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage startup and shutdown events."""
        logger.info(
            "Starting %s v%s [%s]",
            app_settings.APP_NAME, app_settings.APP_VERSION, app_settings.ENVIRONMENT,
        )
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(app_settings)
        yield
        engine = app.state.services.engine
        if engine is not None:
            close_db(engine)
        logger.info("Shutting down %s", app_settings.APP_NAME)

    app = FastAPI(
        title=app_settings.APP_NAME,
        description=(
            "Crowd-verified emergency alert escalation. "
            "Aggregates corroborating taps into a severity score, "
            "widens the notification radius as severity rises, "
            "and notifies everyone inside the geo-fence."
        ),
        version=app_settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.services = services

    # ── Middleware stack (order matters — outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS if not app_settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(alert_router)
    app.include_router(notification_router)
    app.include_router(user_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": app_settings.APP_NAME,
            "version": app_settings.APP_VERSION,
            "environment": app_settings.ENVIRONMENT,
            "store_backend": app_settings.STORE_BACKEND,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    def health_check(request: Request):
        """Deep health probe; 503 when a component is unhealthy."""
        services: Services = request.app.state.services
        report = run_health_check(services.engine, services.aggregator.severity_policy())
        if report.status.value == "unhealthy":
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    return app


app = create_app()
