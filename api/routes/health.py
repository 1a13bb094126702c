"""
Health check endpoint with database and job status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, text
from api.dependencies import get_db
from core.config import settings
from schemas.api import HealthCheckResponse
from models.export_job import ExportJob
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Configured storage backend
    - Job counts per status
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    jobs_by_status = {}

    if db_connected:
        try:
            result = await db.execute(
                select(ExportJob.status, func.count(ExportJob.id)).group_by(ExportJob.status)
            )
            jobs_by_status = {status.value: count for status, count in result.all()}
        except Exception as e:
            logger.error(f"Failed to count export jobs: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        storage_backend=settings.STORAGE_BACKEND,
        jobs_by_status=jobs_by_status
    )
