"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, jobs
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from bulk_export.scheduler import StagingJanitor

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Bulk Export API",
    description="Bulk export and edit of library records",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Initialize staging janitor
janitor = StagingJanitor()


# Include routers
app.include_router(health.router)
app.include_router(jobs.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Bulk Export API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")
    logger.info(f"Storage backend: {settings.STORAGE_BACKEND}")

    janitor.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Bulk Export API")
    janitor.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Bulk Export API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "upload": "/bulk-edit/{entity_type}/upload",
            "status": "/bulk-edit/jobs/{job_id}",
            "errors": "/bulk-edit/jobs/{job_id}/errors",
            "preview": "/bulk-edit/jobs/{job_id}/preview"
        }
    }
