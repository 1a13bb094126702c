# ============================================================================
# File: bulk_export/runner.py
# Description: Fault-tolerant chunk runner driving the export pipeline
# ============================================================================
"""
Chunk Runner - Drives Read, Resolve, Transform, Commit over bounded chunks.

This module provides:
- Fixed-size chunking of the identifier source
- Per-item fault isolation (skippable failures become SkipRecords)
- A skip limit that fails the job once exceeded
- Atomic commit of each chunk to the streaming writer
- Cancellation between chunks
- Exactly-once finalize and exactly one JobOutcome on every path
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.exceptions import (
    ExportException,
    JobCancelledError,
    SkipLimitExceededError,
    WriteError
)
from bulk_export.identifiers import IdentifierReader
from bulk_export.notifier import JobOutcomeNotifier, summarize
from bulk_export.resolvers import RecordResolver
from bulk_export.results import Outcome
from bulk_export.transformers import RowTransformer
from bulk_export.writer import StreamingWriter
from models.base import EntityType, OutputFormat, RunnerState
from schemas.records import (
    ExportRow,
    IdentifierRecord,
    JobOutcome,
    JobProgress,
    ResolvedEntity,
    SkipRecord
)
import logging

logger = logging.getLogger(__name__)

ProgressListener = Callable[[JobProgress], Any]

# Cooperative cancellation lands in IDLE; task cancellation can interrupt any
# non-terminal state.
TRANSITIONS: Dict[RunnerState, tuple] = {
    RunnerState.IDLE: (RunnerState.READING, RunnerState.CANCELLED, RunnerState.FAILED),
    RunnerState.READING: (
        RunnerState.RESOLVING, RunnerState.COMPLETED, RunnerState.FAILED, RunnerState.CANCELLED
    ),
    RunnerState.RESOLVING: (
        RunnerState.TRANSFORMING, RunnerState.SKIPPING, RunnerState.FAILED, RunnerState.CANCELLED
    ),
    RunnerState.TRANSFORMING: (
        RunnerState.RESOLVING, RunnerState.SKIPPING, RunnerState.COMMITTING,
        RunnerState.FAILED, RunnerState.CANCELLED
    ),
    RunnerState.SKIPPING: (
        RunnerState.RESOLVING, RunnerState.COMMITTING, RunnerState.FAILED, RunnerState.CANCELLED
    ),
    RunnerState.COMMITTING: (RunnerState.IDLE, RunnerState.FAILED, RunnerState.CANCELLED),
    RunnerState.COMPLETED: (),
    RunnerState.FAILED: (),
    RunnerState.CANCELLED: (),
}


class CancellationToken:
    """Cooperative cancellation flag, honoured between chunks."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "Cancelled by request"):
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self, job_id: str):
        if self._cancelled:
            raise JobCancelledError(self.reason or "Cancelled", context={"job_id": job_id})


@dataclass
class RunState:
    """
    Mutable counters of one run.

    Owned by the runner and mutated only on its own flow.
    """

    job_id: str
    entity_type: EntityType
    state: RunnerState = RunnerState.IDLE

    total_records: int = 0
    processed: int = 0
    written: int = 0
    filtered: int = 0
    chunks_committed: int = 0
    skip_records: List[SkipRecord] = field(default_factory=list)

    failure: Optional[ExportException] = None
    cancellation: Optional[JobCancelledError] = None

    outputs: Dict[str, str] = field(default_factory=dict)
    errors_output: Optional[str] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def skipped(self) -> int:
        return len(self.skip_records)


class ChunkRunner:
    """
    Fault-tolerant chunk runner

    Responsibilities:
    - Pull identifiers in chunks of exactly `chunk_size`
    - Resolve then transform each identifier, switching on the stage result tag
    - Enforce the skip limit
    - Commit surviving rows per chunk, in input order
    - Always finalize the writer and emit one JobOutcome
    """

    def __init__(
        self,
        job_id: str,
        entity_type: EntityType,
        source: IdentifierReader,
        resolver: RecordResolver,
        transformer: RowTransformer,
        writer: StreamingWriter,
        chunk_size: int,
        skip_limit: int,
        notifier: Optional[JobOutcomeNotifier] = None,
        cancellation: Optional[CancellationToken] = None,
        listeners: Iterable[ProgressListener] = (),
        prefetch: bool = False
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        if skip_limit < 0:
            raise ValueError("skip_limit cannot be negative")

        self.job_id = job_id
        self.source = source
        self.resolver = resolver
        self.transformer = transformer
        self.writer = writer
        self.chunk_size = chunk_size
        self.skip_limit = skip_limit
        self.notifier = notifier
        self.cancellation = cancellation or CancellationToken()
        self.listeners = list(listeners)
        self.prefetch = prefetch

        self.state = RunState(job_id=job_id, entity_type=entity_type)
        self._started = False

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: RunnerState):
        current = self.state.state
        if target not in TRANSITIONS[current]:
            raise RuntimeError(f"Illegal runner transition {current.value} -> {target.value}")
        self.state.state = target

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self) -> JobOutcome:
        """
        Run the job to a terminal state.

        Pipeline errors never propagate: they are recorded on the run state
        and reported through the returned JobOutcome. Task cancellation is the
        exception; the job is still finalized and reported as cancelled, then
        the CancelledError is re-raised to the caller.
        """
        if self._started:
            raise RuntimeError(f"Runner for job {self.job_id} has already run")
        self._started = True

        self.state.started_at = datetime.utcnow()
        logger.info(
            f"Starting job {self.job_id} ({self.state.entity_type.value}, "
            f"chunk_size={self.chunk_size}, skip_limit={self.skip_limit})"
        )

        terminal = RunnerState.FAILED
        interrupted: Optional[asyncio.CancelledError] = None
        try:
            terminal = await self._process()

        except JobCancelledError as e:
            self.state.cancellation = e
            terminal = RunnerState.CANCELLED
            logger.warning(f"Job {self.job_id} cancelled: {e.message}")

        except asyncio.CancelledError as e:
            interrupted = e
            self.state.cancellation = JobCancelledError(
                "Job task was cancelled",
                context={"job_id": self.job_id, "state": self.state.state.value},
                original_exception=e
            )
            terminal = RunnerState.CANCELLED
            logger.warning(f"Job {self.job_id} task cancelled during {self.state.state.value}")

        except ExportException as e:
            self.state.failure = e
            logger.error(f"Job {self.job_id} failed: {e}")

        except Exception as e:
            self.state.failure = ExportException(
                "Unexpected error during export",
                context={"job_id": self.job_id, "state": self.state.state.value},
                original_exception=e
            )
            logger.exception(f"Job {self.job_id} failed with unexpected error")

        try:
            self._finalize()

            if self.state.failure is not None:
                terminal = RunnerState.FAILED
            self._transition(terminal)
            self.state.completed_at = datetime.utcnow()

            outcome = summarize(self.state)
            logger.info(
                f"Job {self.job_id} finished with status {outcome.status.value}: "
                f"{outcome.total_written} written, {outcome.total_skipped} skipped"
            )

            if self.notifier is not None:
                await self.notifier.notify(outcome)
        finally:
            if interrupted is not None:
                raise interrupted

        return outcome

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _process(self) -> RunnerState:
        self.state.total_records = self.source.validate()
        chunks = iter(self.source.chunks(self.chunk_size))

        while True:
            self.cancellation.raise_if_cancelled(self.job_id)

            self._transition(RunnerState.READING)
            chunk = next(chunks, None)
            if chunk is None:
                return RunnerState.COMPLETED

            await self._process_chunk(chunk)

    async def _process_chunk(self, chunk: List[IdentifierRecord]):
        surviving: List[Dict[OutputFormat, ExportRow]] = []
        filtered = 0

        if self.prefetch:
            await self.resolver.prefetch(chunk)

        try:
            for record in chunk:
                self._transition(RunnerState.RESOLVING)
                resolved = await self.resolver.resolve(record)

                if resolved.outcome == Outcome.FATAL:
                    raise resolved.error
                if resolved.outcome == Outcome.SKIP:
                    self._skip(record, resolved.error)
                    continue

                self._transition(RunnerState.TRANSFORMING)
                rows, dropped, failed = self._transform_all(resolved.value)
                if failed is not None:
                    self._skip(record, failed)
                    continue

                self.state.processed += 1
                filtered += dropped
                surviving.extend(rows)
        finally:
            if self.prefetch:
                self.resolver.clear_cache()

        self._transition(RunnerState.COMMITTING)
        self.writer.append_chunk(surviving)

        self.state.written += len(surviving)
        self.state.filtered += filtered
        self.state.chunks_committed += 1
        logger.info(
            f"Job {self.job_id}: committed chunk {self.state.chunks_committed} "
            f"({len(surviving)} rows, {filtered} filtered)"
        )

        self._transition(RunnerState.IDLE)
        await self._emit_progress()

    def _transform_all(self, entities: List[ResolvedEntity]):
        """
        Transform every entity of one identifier.

        Returns (rows, filtered count, skip error). A skip on any entity skips
        the whole identifier and none of its rows are kept.
        """
        rows: List[Dict[OutputFormat, ExportRow]] = []
        dropped = 0
        for entity in entities:
            transformed = self.transformer.transform(entity)
            if transformed.outcome == Outcome.FATAL:
                raise transformed.error
            if transformed.outcome == Outcome.SKIP:
                return [], 0, transformed.error
            if transformed.value is None:
                dropped += 1
            else:
                rows.append(transformed.value)
        return rows, dropped, None

    def _skip(self, record: IdentifierRecord, error: ExportException):
        self._transition(RunnerState.SKIPPING)
        self.state.processed += 1
        self.state.skip_records.append(
            SkipRecord(
                identifier=record.value,
                line_number=record.line_number,
                reason=error.message,
                error_type=type(error).__name__
            )
        )
        logger.warning(f"Skipped {record.value} (line {record.line_number}): {error.message}")

        if self.state.skipped > self.skip_limit:
            raise SkipLimitExceededError(
                f"Skip limit of {self.skip_limit} exceeded",
                skip_limit=self.skip_limit,
                skip_records=self.state.skip_records,
                context={"job_id": self.job_id, "identifier": record.value}
            )

    async def _emit_progress(self):
        if not self.listeners:
            return
        progress = JobProgress(
            job_id=self.job_id,
            total=self.state.total_records,
            processed=self.state.processed,
            written=self.state.written,
            skipped=self.state.skipped
        )
        for listener in self.listeners:
            try:
                result = listener(progress)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Progress listener failed for job {self.job_id}: {e}")

    def _finalize(self):
        """Stage the errors file and promote every output, exactly once."""
        if self.state.skip_records:
            try:
                self.writer.record_errors(self.state.skip_records)
            except WriteError as e:
                logger.error(f"Job {self.job_id}: {e}")
                self.state.failure = self.state.failure or e

        try:
            outputs = dict(self.writer.finalize())
        except WriteError as e:
            logger.error(f"Job {self.job_id}: {e}")
            self.state.failure = self.state.failure or e
            return

        self.state.errors_output = outputs.pop("errors", None)
        self.state.outputs = outputs
