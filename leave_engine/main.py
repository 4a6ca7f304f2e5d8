"""Leave Engine — FastAPI Application Factory."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from leave_engine.common.exceptions import register_exception_handlers
from leave_engine.common.log_config import configure_logging
from leave_engine.common.rate_limit import limiter
from leave_engine.config import Settings, get_settings
from leave_engine.core_hr.router import router as core_hr_router
from leave_engine.database import build_engine, build_session_factory
from leave_engine.leave.router import router as leave_router
from leave_engine.workflow.router import router as workflow_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database engine on startup, dispose it on shutdown."""
    engine = build_engine(app.state.settings)
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    yield
    await engine.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application for *settings*."""
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Leave Engine",
        description="Leave accrual, balance ledger and approval workflows",
        version="1.0.0",
        docs_url="/api/docs" if settings.ENVIRONMENT != "production" else None,
        redoc_url="/api/redoc" if settings.ENVIRONMENT != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Exception handlers (RFC 7807)
    register_exception_handlers(app)

    # Rate limiting (slowapi)
    limiter.enabled = settings.RATE_LIMIT_ENABLED
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check
    @app.get("/api/v1/health", tags=["system"])
    async def health_check():
        return {
            "status": "healthy",
            "version": "1.0.0",
            "environment": settings.ENVIRONMENT,
        }

    # Register routers
    app.include_router(core_hr_router, prefix="/api/v1/core-hr", tags=["core-hr"])
    app.include_router(leave_router, prefix="/api/v1/leave", tags=["leave"])
    app.include_router(workflow_router, prefix="/api/v1/workflows", tags=["workflows"])

    return app


app = create_app()
