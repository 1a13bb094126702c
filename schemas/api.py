"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import EntityType, IdentifierType, JobStatus
from schemas.records import SkipRecord


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    storage_backend: str
    jobs_by_status: Dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.jobs_by_status.get(JobStatus.FAILED.value, 0) > 0:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "storage_backend": "s3",
                "jobs_by_status": {"completed": 12, "completed_with_errors": 2}
            }
        }


# ============================================================================
# Bulk Edit Job Schemas
# ============================================================================

class JobAcceptedResponse(BaseModel):
    """Returned when an upload is accepted and its job scheduled"""
    job_id: str
    entity_type: EntityType
    identifier_type: IdentifierType
    status: JobStatus = JobStatus.IN_PROGRESS
    total_records: int
    file_name: Optional[str] = None


class JobStatusResponse(BaseModel):
    """Job status as stored in the status store"""
    job_id: str
    entity_type: EntityType
    status: JobStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    total_records: int = 0
    total_processed: int = 0
    total_written: int = 0
    total_skipped: int = 0
    total_filtered: int = 0
    chunks_committed: int = 0
    outputs: Optional[Dict[str, str]] = None
    errors_output: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class JobErrorsResponse(BaseModel):
    """Skip records of a job"""
    job_id: str
    total_skipped: int
    errors: List[SkipRecord] = Field(default_factory=list)
