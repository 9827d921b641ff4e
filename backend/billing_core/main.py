"""
Billing Core - FastAPI Application

Main entry point for the billing and entitlement API.
Provides endpoints for jurisdiction routing, subscriptions, upgrade
sessions, usage quotas, Stripe webhooks and scheduled maintenance.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_core.config.settings import settings
from billing_core.infrastructure.exceptions import (
    BillingCoreError,
    ConfigurationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    SignatureError,
    UpstreamError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def run_periodic_sweep(interval_seconds: int) -> None:
    """Run the expiry sweeper every `interval_seconds` until cancelled."""
    from billing_core.api.dependencies import get_expiry_sweeper

    sweeper = get_expiry_sweeper()
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await sweeper.run_once()
        except Exception as e:
            logger.error(f"Scheduled expiry sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info(f"Billing Core starting in {settings.environment} mode...")

    if settings.database_url:
        try:
            from billing_core.infrastructure.db.database import init_db
            await init_db()
            logger.info("Relational store connection pool initialized")
        except Exception as e:
            logger.warning(f"Relational store initialization skipped: {e}")

    sweep_task = None
    if settings.sweep_interval_seconds > 0:
        sweep_task = asyncio.create_task(run_periodic_sweep(settings.sweep_interval_seconds))
        logger.info(f"Expiry sweeper scheduled every {settings.sweep_interval_seconds}s")

    yield

    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass

    from billing_core.api.dependencies import get_registry
    await get_registry().close()

    if settings.database_url:
        try:
            from billing_core.infrastructure.db.database import close_db
            await close_db()
            logger.info("Relational store connection pool closed")
        except Exception as e:
            logger.warning(f"Relational store shutdown error: {e}")

    logger.info("Billing Core shutting down...")


app = FastAPI(
    title="Billing Core",
    description="Multi-jurisdiction billing and entitlement service",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError):
    """Handle uniqueness and business-rule conflicts."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_error_handler(request: Request, exc: InvalidTransitionError):
    """Handle illegal state changes."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(SignatureError)
async def signature_error_handler(request: Request, exc: SignatureError):
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    """Storage or Stripe unavailable; callers (and Stripe) should retry."""
    logger.error(f"Upstream failure on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=503,
        content=exc.to_dict(),
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


@app.exception_handler(BillingCoreError)
async def general_error_handler(request: Request, exc: BillingCoreError):
    """Handle all other application errors."""
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "billing-core"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Billing Core API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from billing_core.api.routes import (  # noqa: E402
    jurisdictions,
    maintenance,
    subscribers,
    subscriptions,
    upgrade_sessions,
    usage,
    webhooks,
)

app.include_router(jurisdictions.router, prefix="/api", tags=["Jurisdictions"])
app.include_router(subscribers.router, prefix="/api", tags=["Subscribers"])
app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(upgrade_sessions.router, prefix="/api", tags=["Upgrade Sessions"])
app.include_router(usage.router, prefix="/api", tags=["Usage"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(maintenance.router, prefix="/api", tags=["Maintenance"])
