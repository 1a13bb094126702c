"""
SQLAlchemy ORM models and shared enums.

Models:
    base: Base declarative class and shared enums (EntityType, IdentifierType,
          OutputFormat, JobStatus, RunnerState)
    export_job: Terminal outcome of each export job (status store)

Usage:
    from models.base import EntityType, OutputFormat, JobStatus
    from models.export_job import ExportJob
"""

__all__ = [
    "Base",
    "EntityType",
    "IdentifierType",
    "OutputFormat",
    "JobStatus",
    "RunnerState",
    "ExportJob",
]
