"""
Script to run one bulk export job from the command line
"""

import argparse
import asyncio
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import ConfigurationError
from core.logging import setup_logging
from bulk_export.jobs import build_export_job
from bulk_export.lookup import HttpRecordLookup, InMemoryRecordLookup
from bulk_export.notifier import DatabaseOutcomeSink, JobOutcomeNotifier, LoggingOutcomeSink
from bulk_export.predicates import NAMED_PREDICATES
from models.base import EntityType, IdentifierType, JobStatus, OutputFormat
from storage import get_storage

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export records for a file of identifiers")
    parser.add_argument("file", help="Identifiers file (one identifier per line)")
    parser.add_argument(
        "--entity-type", required=True, type=EntityType, choices=list(EntityType)
    )
    parser.add_argument(
        "--identifier-type", required=True, type=IdentifierType, choices=list(IdentifierType)
    )
    parser.add_argument(
        "--format", dest="formats", action="append", type=OutputFormat,
        choices=list(OutputFormat), help="Output format (repeatable, default: csv and json)"
    )
    parser.add_argument("--job-id", default=None)
    parser.add_argument("--chunk-size", type=int, default=None)
    parser.add_argument("--skip-limit", type=int, default=None)
    parser.add_argument("--filter", dest="filter_name", choices=sorted(NAMED_PREDICATES))
    parser.add_argument(
        "--records", default=None,
        help="JSON file with a list of entities to resolve against instead of the lookup service"
    )
    parser.add_argument(
        "--store-outcome", action="store_true", help="Also write the outcome to the status store"
    )
    return parser.parse_args(argv)


def _load_lookup(args: argparse.Namespace):
    if args.records is None:
        return HttpRecordLookup()
    with open(args.records, encoding="utf-8") as handle:
        records = json.load(handle)
    return InMemoryRecordLookup({args.entity_type: records})


async def run_export(args: argparse.Namespace):
    """Run the job described by the parsed arguments"""
    sinks = [LoggingOutcomeSink()]
    if args.store_outcome:
        from core.database import async_session_maker
        sinks.append(DatabaseOutcomeSink(async_session_maker))

    lookup = _load_lookup(args)
    try:
        runner = build_export_job(
            entity_type=args.entity_type,
            identifier_type=args.identifier_type,
            source=args.file,
            lookup=lookup,
            storage=get_storage(),
            job_id=args.job_id,
            formats=args.formats or [OutputFormat.CSV, OutputFormat.JSON],
            predicate=NAMED_PREDICATES.get(args.filter_name) if args.filter_name else None,
            chunk_size=args.chunk_size,
            skip_limit=args.skip_limit,
            notifier=JobOutcomeNotifier(sinks)
        )
        return await runner.run()
    finally:
        if isinstance(lookup, HttpRecordLookup):
            await lookup.close()


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging()
    logger.info(f"Storage backend: {settings.STORAGE_BACKEND}")

    try:
        outcome = asyncio.run(run_export(args))
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    print(outcome.model_dump_json(indent=2))
    return 1 if outcome.status in (JobStatus.FAILED, JobStatus.CANCELLED) else 0


if __name__ == "__main__":
    sys.exit(main())
