"""
Bulk export pipeline for library records.

This package streams uploaded identifier files through a chunked
extract-transform-load pipeline:

Modules:
    identifiers: Delimited identifier file reader (pandas)
    lookup: Query-by-identifier collaborators (httpx, in-memory)
    resolvers: One resolver per entity kind, tagged StageResult output
    transformers: Field-spec driven row building for each output format
    predicates: Export eligibility filters
    writer: Multi-format staged writer with promotion to durable storage
    runner: Fault-tolerant chunk runner (state machine, skip limit)
    notifier: JobOutcome aggregation and delivery sinks
    jobs: Explicit job wiring
    scheduler: APScheduler janitor for stale staging directories

Architecture:
    Identifier Source -> Record Resolver -> Transform Stage
        -> Chunk Runner -> Streaming Writer -> Job Outcome Notifier

    Per-item failures become SkipRecords; job-level failures end the run
    but still finalize the writer and produce exactly one JobOutcome.

Usage:
    from bulk_export.jobs import build_export_job
    from bulk_export.lookup import HttpRecordLookup
    from storage import get_storage

Example:
    async with HttpRecordLookup() as lookup:
        runner = build_export_job(
            entity_type=EntityType.USER,
            identifier_type=IdentifierType.BARCODE,
            source="barcodes.csv",
            lookup=lookup,
            storage=get_storage(),
        )
        outcome = await runner.run()

    print(f"{outcome.status.value}: {outcome.total_written} rows written")
"""

__all__ = [
    "IdentifierReader",
    "RecordResolver",
    "RowTransformer",
    "StreamingWriter",
    "ChunkRunner",
    "JobOutcomeNotifier",
    "build_export_job",
]
