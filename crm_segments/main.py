"""
CRM Segments API - Main Application

SECURITY FEATURES:
- Conditional API docs (disabled in production by default)
- Structured logging without sensitive data
- Production-hardened configuration
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from crm_segments.api.router import api_router
from crm_segments.config import settings
from crm_segments.database import async_session_maker, init_db
from crm_segments.exceptions import CRMException, create_exception_handlers
from crm_segments.services.segmentation.engine import SegmentEngine
from crm_segments.services.segmentation.errors import SegmentationError
from crm_segments.services.segmentation.repositories import SqlCustomerRepository, SqlSegmentRepository
from crm_segments.tasks.segment_auto_update import (
    SegmentAutoUpdater,
    start_segment_scheduler,
    stop_segment_scheduler,
)

# Import all models to register them with SQLAlchemy metadata before init_db()
from crm_segments.models import CustomerLifecycle, CustomerSegment, SegmentMember  # noqa: F401

# Configure secure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def configure_segmentation(app: FastAPI, session_factory=async_session_maker) -> SegmentAutoUpdater:
    """Create the engine, repositories and auto-updater on ``app.state``."""
    engine = SegmentEngine()
    customers = SqlCustomerRepository(session_factory)
    segments = SqlSegmentRepository(session_factory)
    updater = SegmentAutoUpdater(engine, customers, segments)

    app.state.segment_engine = engine
    app.state.customer_repository = customers
    app.state.segment_repository = segments
    app.state.auto_updater = updater
    return updater


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting CRM Segments API...")
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

    updater = configure_segmentation(app)

    if settings.SEGMENT_AUTO_UPDATE_ENABLED:
        try:
            await updater.load()
        except SegmentationError as e:
            logger.error(f"Could not load auto-updated segments: {e}")
        start_segment_scheduler(updater)
    else:
        logger.info("Segment auto-update disabled")

    yield

    # Shutdown
    logger.info("Shutting down CRM Segments API...")
    stop_segment_scheduler()
    await updater.close()


# SECURITY: Conditionally enable docs based on settings
docs_url = "/docs" if settings.DOCS_ENABLED else None
redoc_url = "/redoc" if settings.DOCS_ENABLED else None

app = FastAPI(
    title="CRM Segments API",
    description="Rule-based customer segmentation with automatic membership updates",
    version="1.0.0",
    docs_url=docs_url,
    redoc_url=redoc_url,
    lifespan=lifespan,
)

# CORS middleware
# SECURITY: Restrict origins to known frontend URLs
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

handlers = create_exception_handlers(allowed_origins)
app.add_exception_handler(CRMException, handlers["crm"])
app.add_exception_handler(SegmentationError, handlers["segmentation"])
app.add_exception_handler(StarletteHTTPException, handlers["http"])
app.add_exception_handler(RequestValidationError, handlers["validation"])
app.add_exception_handler(Exception, handlers["generic"])

# Include routers
app.include_router(api_router, prefix="/api/v2")


@app.get("/")
async def root():
    """Root endpoint - API info."""
    response = {
        "name": "CRM Segments API",
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
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


# For running with uvicorn directly (development only)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "crm_segments.main:app",
        host="0.0.0.0",
        port=5001,
        reload=settings.DEBUG,
    )
