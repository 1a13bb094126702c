from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base, EntityType, JobStatus

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class ExportJob(Base):
    """
    Terminal record of each export job.

    Purpose:
    - Status store the API reads job outcomes from
    - Audit trail of processed / written / skipped counts
    - Full list of skip reasons so operators can diagnose without re-running
    """
    __tablename__ = "export_jobs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id = Column(String(64), unique=True, nullable=False, index=True)

    entity_type = Column(Enum(EntityType), nullable=False, index=True)
    status = Column(Enum(JobStatus), nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True, index=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    total_records = Column(Integer, default=0)
    total_processed = Column(Integer, default=0)
    total_written = Column(Integer, default=0)
    total_skipped = Column(Integer, default=0)
    total_filtered = Column(Integer, default=0)
    chunks_committed = Column(Integer, default=0)

    # Outputs
    outputs = Column(JSONType, nullable=True)  # format -> object key
    errors_output = Column(String(1024), nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)
    skip_records = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_export_job_entity_completed", "entity_type", "completed_at"),
    )
