"""
E-Signature Status Sync API - Main Application

Keeps local signature workflow documents in step with the remote signing
provider and runs reminder campaigns for documents awaiting signatures.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from esign.api.v2.router import api_router
from esign.webhooks.esign import esign_webhook_router
from esign.config import settings
from esign.database import async_session_maker, init_db
from esign.exceptions import ESignException, RemoteProviderError, create_exception_handlers
from esign.middleware.correlation import CorrelationIdMiddleware, CorrelationLogFilter
from esign.services.container import build_services

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationLogFilter())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting E-Signature Status Sync API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    # SECURITY: Don't log full database URL, just prefix
    if settings.DATABASE_URL:
        logger.info(f"Database URL prefix: {settings.DATABASE_URL[:30]}...")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        # SECURITY: Don't log full exception details which may contain credentials
        logger.error(f"Database initialization failed: {type(e).__name__}")
        logger.warning("App starting without database - some features may not work")

    services = build_services(settings, async_session_maker)
    app.state.services = services
    if settings.REMINDER_SCHEDULER_ENABLED:
        # The first sweep runs immediately and rebuilds reminder plans lost on restart
        services.reminders.start(run_sweep_now=True)
    else:
        logger.info("Reminder scheduler disabled")
    yield
    # Shutdown
    logger.info("Shutting down E-Signature Status Sync API...")
    await services.aclose()


# SECURITY: Conditionally enable docs based on settings
docs_url = "/docs" if settings.DOCS_ENABLED else None
redoc_url = "/redoc" if settings.DOCS_ENABLED else None

app = FastAPI(
    title="E-Signature Status Sync API",
    description="Status reconciliation and reminder scheduling for remote e-signature agreements",
    version="1.0.0",
    docs_url=docs_url,
    redoc_url=redoc_url,
    lifespan=lifespan,
)

# CORS middleware
allowed_origins = [settings.FRONTEND_URL]

# Allow localhost origins for development/testing
if not settings.is_production:
    allowed_origins.extend([
        "http://localhost:5173",  # Vite dev server
        "http://localhost:3000",  # Alternative dev port
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

handlers = create_exception_handlers(allowed_origins)
app.add_exception_handler(ESignException, handlers["esign"])
app.add_exception_handler(StarletteHTTPException, handlers["http"])
app.add_exception_handler(RequestValidationError, handlers["validation"])
app.add_exception_handler(RemoteProviderError, handlers["remote"])
app.add_exception_handler(Exception, handlers["generic"])

# Include routers
app.include_router(api_router, prefix="/api/v2")
app.include_router(esign_webhook_router, prefix="/webhooks/esign", tags=["webhooks"])


@app.get("/")
async def root():
    """Root endpoint - API info."""
    response = {
        "name": "E-Signature Status Sync API",
        "version": "1.0.0",
        "health": "/health",
    }
    # Only include docs link if enabled
    if settings.DOCS_ENABLED:
        response["docs"] = "/docs"
    return response


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    services = getattr(app.state, "services", None)
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "scheduler_running": bool(services and services.reminders.scheduler.running),
        "provider_rate_limited": bool(services and services.guard.is_limited()),
    }


# For running with uvicorn directly (development only)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "esign.main:app",
        host="0.0.0.0",
        port=5001,
        reload=settings.DEBUG,
    )
