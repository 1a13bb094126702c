"""
Pydantic schemas for the records flowing through the export pipeline
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime
from models.base import EntityType, OutputFormat, JobStatus


class IdentifierRecord(BaseModel):
    """One raw identifier token read from the uploaded file."""

    value: str = Field(..., min_length=1)
    line_number: int = Field(..., ge=1)

    @field_validator("value", mode="before")
    @classmethod
    def strip_value(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    class Config:
        frozen = True


class ResolvedEntity(BaseModel):
    """Domain object fetched for an identifier."""

    entity_type: EntityType
    identifier: IdentifierRecord
    data: Dict[str, Any]


class ExportRow(BaseModel):
    """
    One flattened record for a single output format.

    Ensures:
    - Values line up with the declared columns
    - The source identifier travels with the row (lockstep checks)
    """

    format: OutputFormat
    identifier: str
    columns: Tuple[str, ...]
    values: Tuple[Any, ...]

    @model_validator(mode="after")
    def check_arity(self):
        if len(self.values) != len(self.columns):
            raise ValueError(
                f"Row has {len(self.values)} values for {len(self.columns)} columns"
            )
        return self

    def as_dict(self) -> Dict[str, Any]:
        return dict(zip(self.columns, self.values))


class SkipRecord(BaseModel):
    """Identifier excluded from the output and why."""

    identifier: str
    line_number: Optional[int] = None
    reason: str
    error_type: str


class JobProgress(BaseModel):
    """Progress snapshot emitted after every committed chunk."""

    job_id: str
    total: int
    processed: int
    written: int
    skipped: int

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return min(100, int(self.processed * 100 / self.total))


class JobOutcome(BaseModel):
    """Terminal record of a job, produced exactly once per run."""

    job_id: str
    entity_type: Optional[EntityType] = None
    status: JobStatus

    total_records: int = 0
    total_processed: int = 0
    total_written: int = 0
    total_skipped: int = 0
    total_filtered: int = 0
    chunks_committed: int = 0

    skip_records: List[SkipRecord] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    outputs: Dict[str, str] = Field(default_factory=dict)
    errors_output: Optional[str] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None
