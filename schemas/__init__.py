"""
Pydantic schemas for data validation and serialization.

This package defines the value types flowing through the export pipeline
and the request/response models of the API:

Schemas:
    records: IdentifierRecord, ResolvedEntity, ExportRow, SkipRecord,
             JobProgress, JobOutcome
    formats: Field-extraction specs (column headers, paths, processors)
             per entity kind
    api: API endpoint request/response schemas

Usage:
    from schemas.records import IdentifierRecord, ExportRow
    from schemas.formats import field_specs_for
    from schemas.api import JobStatusResponse

Example:
    record = IdentifierRecord(value=" 4552 ", line_number=3)
    assert record.value == "4552"

Validation:
    - IdentifierRecord values are stripped and must be non-empty
    - ExportRow values must line up with the declared columns
"""

__all__ = [
    "IdentifierRecord",
    "ResolvedEntity",
    "ExportRow",
    "SkipRecord",
    "JobProgress",
    "JobOutcome",
    "FieldSpec",
    "JobStatusResponse",
    "HealthCheckResponse",
]
