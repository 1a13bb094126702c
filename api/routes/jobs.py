"""
Bulk edit job endpoints: upload identifiers, track status, read errors
"""

import io
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Query, Request, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, get_lookup, get_session_factory, get_storage
from bulk_export.identifiers import IdentifierReader, default_identifier_schema
from bulk_export.jobs import build_export_job, new_job_id
from bulk_export.lookup import RecordLookup
from bulk_export.notifier import DatabaseOutcomeSink, JobOutcomeNotifier, LoggingOutcomeSink
from bulk_export.predicates import NAMED_PREDICATES
from bulk_export.runner import CancellationToken, ChunkRunner
from core.config import settings
from core.exceptions import ConfigurationError, MalformedInputError
from models.base import EntityType, IdentifierType, JobStatus, OutputFormat
from models.export_job import ExportJob
from schemas.api import JobAcceptedResponse, JobErrorsResponse, JobStatusResponse
from schemas.records import SkipRecord
from storage.base import Storage
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bulk-edit", tags=["Bulk Edit"])


def _cancellations(request: Request) -> Dict[str, CancellationToken]:
    if not hasattr(request.app.state, "cancellations"):
        request.app.state.cancellations = {}
    return request.app.state.cancellations


async def _get_job(db: AsyncSession, job_id: str) -> ExportJob:
    result = await db.execute(select(ExportJob).where(ExportJob.job_id == job_id))
    job = result.scalar_one_or_none()
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


async def execute_job(
    runner: ChunkRunner,
    lookup: RecordLookup,
    cancellations: Dict[str, CancellationToken]
):
    """Background task: run the job, then release the lookup client"""
    try:
        await runner.run()
    finally:
        cancellations.pop(runner.job_id, None)
        close = getattr(lookup, "close", None)
        if close is not None:
            await close()


@router.post("/{entity_type}/upload", response_model=JobAcceptedResponse, status_code=202)
async def upload_identifiers(
    request: Request,
    entity_type: EntityType,
    background_tasks: BackgroundTasks,
    identifier_type: IdentifierType = Query(..., description="Kind of identifiers in the file"),
    formats: List[OutputFormat] = Query([OutputFormat.CSV, OutputFormat.JSON], alias="format"),
    filter_name: Optional[str] = Query(None, alias="filter", description="Named export filter"),
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    storage: Storage = Depends(get_storage),
    lookup: RecordLookup = Depends(get_lookup),
    session_factory=Depends(get_session_factory)
):
    """
    Accept an identifiers file and start the export job in the background.

    The file is validated up front: malformed or empty files are rejected
    and no job is created.
    """
    request_id = getattr(request.state, "request_id", "-")
    content = await file.read()
    logger.info(
        f"[{request_id}] Upload {file.filename} for {entity_type.value} "
        f"by {identifier_type.value} ({len(content)} bytes)"
    )

    predicate = None
    if filter_name is not None:
        if filter_name not in NAMED_PREDICATES:
            raise HTTPException(status_code=400, detail=f"Unknown filter {filter_name}")
        predicate = NAMED_PREDICATES[filter_name]

    reader = IdentifierReader(content, default_identifier_schema(entity_type), name=file.filename)
    try:
        total = reader.validate()
    except MalformedInputError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())

    job_id = new_job_id()
    upload_path = Path(settings.UPLOAD_DIR) / job_id / Path(file.filename or "identifiers.csv").name
    upload_path.parent.mkdir(parents=True, exist_ok=True)
    upload_path.write_bytes(content)

    token = CancellationToken()
    try:
        runner = build_export_job(
            entity_type=entity_type,
            identifier_type=identifier_type,
            source=upload_path,
            lookup=lookup,
            storage=storage,
            job_id=job_id,
            formats=formats,
            predicate=predicate,
            cancellation=token,
            notifier=JobOutcomeNotifier([
                LoggingOutcomeSink(),
                DatabaseOutcomeSink(session_factory),
            ])
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())

    db.add(ExportJob(
        job_id=job_id,
        entity_type=entity_type,
        status=JobStatus.IN_PROGRESS,
        started_at=datetime.utcnow(),
        total_records=total
    ))
    await db.commit()

    cancellations = _cancellations(request)
    cancellations[job_id] = token
    background_tasks.add_task(execute_job, runner, lookup, cancellations)

    return JobAcceptedResponse(
        job_id=job_id,
        entity_type=entity_type,
        identifier_type=identifier_type,
        total_records=total,
        file_name=file.filename
    )


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, db: AsyncSession = Depends(get_db)):
    """Job status and counters from the status store"""
    job = await _get_job(db, job_id)
    return JobStatusResponse.model_validate(job)


@router.get("/jobs/{job_id}/errors", response_model=JobErrorsResponse)
async def get_job_errors(job_id: str, db: AsyncSession = Depends(get_db)):
    """Every skipped identifier with its reason"""
    job = await _get_job(db, job_id)
    errors = [SkipRecord(**s) for s in (job.skip_records or [])]
    return JobErrorsResponse(job_id=job_id, total_skipped=len(errors), errors=errors)


@router.get("/jobs/{job_id}/preview")
async def preview_job_output(
    job_id: str,
    output_format: OutputFormat = Query(OutputFormat.JSON, alias="format"),
    limit: int = Query(10, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    storage: Storage = Depends(get_storage)
) -> Dict[str, Any]:
    """First `limit` rows of a promoted output"""
    job = await _get_job(db, job_id)
    key = (job.outputs or {}).get(output_format.value)
    if key is None:
        raise HTTPException(
            status_code=404, detail=f"Job {job_id} has no {output_format.value} output"
        )

    try:
        content = storage.read(key)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail=f"Output {key} is missing")

    if output_format == OutputFormat.CSV:
        frame = pd.read_csv(io.BytesIO(content), dtype=str, keep_default_na=False, nrows=limit)
        rows = frame.to_dict(orient="records")
    else:
        lines = content.decode("utf-8").splitlines()[:limit]
        rows = [json.loads(line) for line in lines if line.strip()]

    return {"job_id": job_id, "format": output_format.value, "key": key, "rows": rows}


@router.post("/jobs/{job_id}/cancel", status_code=202)
async def cancel_job(request: Request, job_id: str, db: AsyncSession = Depends(get_db)):
    """Request cancellation; the job stops before its next chunk"""
    job = await _get_job(db, job_id)
    token = _cancellations(request).get(job_id)
    if token is None or job.status != JobStatus.IN_PROGRESS:
        raise HTTPException(status_code=409, detail=f"Job {job_id} is not running")
    token.cancel("Cancelled by user")
    logger.info(f"Cancellation requested for job {job_id}")
    return {"job_id": job_id, "status": "cancelling"}
