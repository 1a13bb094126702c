"""
Job wiring: build a ChunkRunner from explicit collaborators.

Every dependency (source, lookup, storage, notifier) is passed in; the
only module-level tables consulted are the static capability maps
(`RESOLVERS`, `FIELD_SPECS`, `ROW_FORMATS`).
"""

import uuid
from typing import Iterable, Optional, Sequence

from core.config import settings
from bulk_export.identifiers import (
    IdentifierInput,
    IdentifierReader,
    IdentifierSchema,
    default_identifier_schema
)
from bulk_export.lookup import RecordLookup
from bulk_export.notifier import JobOutcomeNotifier
from bulk_export.resolvers import RESOLVERS, RetryPolicy
from bulk_export.runner import CancellationToken, ChunkRunner, ProgressListener
from bulk_export.transformers import Predicate, RowTransformer
from bulk_export.writer import StreamingWriter
from models.base import EntityType, IdentifierType, OutputFormat
from schemas.formats import FieldSpec, field_specs_for
from schemas.records import JobOutcome
from storage.base import Storage
import logging

logger = logging.getLogger(__name__)

DEFAULT_FORMATS = (OutputFormat.CSV, OutputFormat.JSON)


def new_job_id() -> str:
    return str(uuid.uuid4())


def build_export_job(
    entity_type: EntityType,
    identifier_type: IdentifierType,
    source: IdentifierInput,
    lookup: RecordLookup,
    storage: Storage,
    job_id: Optional[str] = None,
    formats: Sequence[OutputFormat] = DEFAULT_FORMATS,
    notifier: Optional[JobOutcomeNotifier] = None,
    predicate: Optional[Predicate] = None,
    field_specs: Optional[Sequence[FieldSpec]] = None,
    schema: Optional[IdentifierSchema] = None,
    retry_policy: Optional[RetryPolicy] = None,
    chunk_size: Optional[int] = None,
    skip_limit: Optional[int] = None,
    prefetch: Optional[bool] = None,
    staging_dir: Optional[str] = None,
    prefix: Optional[str] = None,
    cleanup: Optional[bool] = None,
    cancellation: Optional[CancellationToken] = None,
    listeners: Iterable[ProgressListener] = ()
) -> ChunkRunner:
    """
    Assemble the pipeline for one job.

    Anything not passed explicitly falls back to settings.

    Raises:
        ConfigurationError: If the entity kind cannot be resolved by `identifier_type`
    """
    job_id = job_id or new_job_id()

    resolver = RESOLVERS[entity_type](
        lookup,
        identifier_type,
        retry_policy or RetryPolicy.from_settings()
    )
    transformer = RowTransformer(
        field_specs if field_specs is not None else field_specs_for(entity_type),
        formats,
        predicate
    )
    reader = IdentifierReader(source, schema or default_identifier_schema(entity_type))
    writer = StreamingWriter(
        job_id=job_id,
        columns_by_format=transformer.columns_by_format(),
        staging_dir=staging_dir or settings.STAGING_DIR,
        storage=storage,
        prefix=prefix if prefix is not None else settings.EXPORT_PREFIX,
        cleanup=settings.STAGING_CLEANUP if cleanup is None else cleanup
    )

    logger.info(
        f"Built job {job_id}: {entity_type.value} by {identifier_type.value}, "
        f"formats={[f.value for f in transformer.formats]}"
    )

    return ChunkRunner(
        job_id=job_id,
        entity_type=entity_type,
        source=reader,
        resolver=resolver,
        transformer=transformer,
        writer=writer,
        chunk_size=chunk_size or settings.EXPORT_CHUNK_SIZE,
        skip_limit=settings.EXPORT_SKIP_LIMIT if skip_limit is None else skip_limit,
        notifier=notifier,
        cancellation=cancellation,
        listeners=listeners,
        prefetch=settings.LOOKUP_PREFETCH if prefetch is None else prefetch
    )


async def run_export_job(**kwargs) -> JobOutcome:
    """Build and run a job; see `build_export_job` for the arguments."""
    runner = build_export_job(**kwargs)
    return await runner.run()
