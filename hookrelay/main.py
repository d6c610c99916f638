"""
HookRelay - webhook relay service

FastAPI application entry point.
"""
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

# Import observability modules
from hookrelay.config import settings
from hookrelay.database import get_db
from hookrelay.logging_config import configure_logging, get_logger
from hookrelay.sentry_config import configure_sentry
from hookrelay.middleware.cors import PrefixCORSMiddleware
from hookrelay.middleware.logging import LoggingMiddleware
from hookrelay.routes.metrics import audit_write_failure_totals, router as metrics_router

# Import route modules
from hookrelay.routes.webhook_handler import router as webhook_handler_router
from hookrelay.routes.webhooks import router as webhooks_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

log = get_logger(component="main")

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Forwards inbound triggers to user-configured webhook URLs with signing, retries and delivery logs",
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

# Dashboard CORS; /webhook-handler sets its own headers
app.add_middleware(
    PrefixCORSMiddleware,
    path_prefix="/api",
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include inbound trigger endpoint
app.include_router(webhook_handler_router)

# Include webhook management routes
app.include_router(webhooks_router)


@app.get("/")
async def root():
    """Liveness endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health(db: AsyncSession = Depends(get_db)):
    """
    Detailed health check.

    Reports database connectivity and the audit writes dropped since
    process start. A non-zero audit count means delivery logs or
    counters are missing rows.
    """
    audit_failures = audit_write_failure_totals()

    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        log.error("health_check_database_failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "database": "unavailable",
                "audit_write_failures": audit_failures,
            },
        )

    return {
        "status": "degraded" if any(audit_failures.values()) else "healthy",
        "database": "connected",
        "audit_write_failures": audit_failures,
        "audit_mode": settings.WEBHOOK_AUDIT_MODE,
    }
