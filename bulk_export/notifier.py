"""
Job outcome notifier.

`summarize` turns the runner's final state into a JobOutcome; the notifier
hands that outcome to every configured sink. Delivery belongs to the sinks:
a failing sink is logged and never changes the outcome.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Iterable, List, Optional

from sqlalchemy import select

from models.base import JobStatus
from models.export_job import ExportJob
from schemas.records import JobOutcome
import logging

if TYPE_CHECKING:
    from bulk_export.runner import RunState

logger = logging.getLogger(__name__)


def _status(state: "RunState") -> JobStatus:
    if state.failure is not None:
        return JobStatus.FAILED
    if state.cancellation is not None:
        return JobStatus.CANCELLED
    if state.skip_records:
        return JobStatus.COMPLETED_WITH_ERRORS
    return JobStatus.COMPLETED


def summarize(state: "RunState") -> JobOutcome:
    """
    Aggregate the run state into the terminal JobOutcome.

    Never raises: if aggregation itself breaks, a minimal failed outcome
    is returned so callers still get a terminal signal.
    """
    try:
        error = state.failure or state.cancellation
        return JobOutcome(
            job_id=state.job_id,
            entity_type=state.entity_type,
            status=_status(state),
            total_records=state.total_records,
            total_processed=state.processed,
            total_written=state.written,
            total_skipped=state.skipped,
            total_filtered=state.filtered,
            chunks_committed=state.chunks_committed,
            skip_records=list(state.skip_records),
            error=error.to_dict() if error is not None else None,
            outputs=dict(state.outputs),
            errors_output=state.errors_output,
            started_at=state.started_at,
            completed_at=state.completed_at
        )
    except Exception as e:
        logger.exception("Failed to summarize job state")
        return JobOutcome(
            job_id=str(getattr(state, "job_id", "unknown")),
            status=JobStatus.FAILED,
            error={
                "error_type": type(e).__name__,
                "message": f"Could not summarize job state: {e}"
            }
        )


# ============================================================================
# Sinks
# ============================================================================

class OutcomeSink(ABC):
    """Destination for job outcomes (status store, message bus, callback)."""

    @abstractmethod
    async def deliver(self, outcome: JobOutcome):
        pass


class LoggingOutcomeSink(OutcomeSink):
    async def deliver(self, outcome: JobOutcome):
        message = (
            f"Job {outcome.job_id} {outcome.status.value}: "
            f"processed={outcome.total_processed} written={outcome.total_written} "
            f"skipped={outcome.total_skipped} filtered={outcome.total_filtered}"
        )
        if outcome.status == JobStatus.FAILED:
            logger.error(f"{message} error={outcome.error}")
        else:
            logger.info(message)


class CallbackOutcomeSink(OutcomeSink):
    """Hands the outcome to a plain callable (sync or async)."""

    def __init__(self, callback: Callable[[JobOutcome], Any]):
        self.callback = callback

    async def deliver(self, outcome: JobOutcome):
        result = self.callback(outcome)
        if hasattr(result, "__await__"):
            await result


class DatabaseOutcomeSink(OutcomeSink):
    """
    Upsert the outcome into the `export_jobs` status store.

    Handles:
    - First delivery for a job (insert)
    - Repeated delivery for the same job id (update in place)
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def deliver(self, outcome: JobOutcome):
        async with self.session_factory() as session:
            result = await session.execute(
                select(ExportJob).where(ExportJob.job_id == outcome.job_id)
            )
            job: Optional[ExportJob] = result.scalar_one_or_none()

            if job is None:
                job = ExportJob(job_id=outcome.job_id)
                session.add(job)

            apply_outcome(job, outcome)
            await session.commit()
            logger.debug(f"Stored outcome for job {outcome.job_id}")


def apply_outcome(job: ExportJob, outcome: JobOutcome):
    """Copy a JobOutcome onto an ExportJob row."""
    job.entity_type = outcome.entity_type
    job.status = outcome.status
    job.started_at = outcome.started_at
    job.completed_at = outcome.completed_at
    job.duration_seconds = outcome.duration_seconds
    job.total_records = outcome.total_records
    job.total_processed = outcome.total_processed
    job.total_written = outcome.total_written
    job.total_skipped = outcome.total_skipped
    job.total_filtered = outcome.total_filtered
    job.chunks_committed = outcome.chunks_committed
    job.outputs = dict(outcome.outputs)
    job.errors_output = outcome.errors_output
    job.error_message = outcome.error.get("message") if outcome.error else None
    job.error_details = outcome.error
    job.skip_records = [s.model_dump() for s in outcome.skip_records]


class JobOutcomeNotifier:
    """Delivers each JobOutcome to every sink."""

    def __init__(self, sinks: Optional[Iterable[OutcomeSink]] = None):
        self.sinks: List[OutcomeSink] = list(sinks) if sinks is not None else [LoggingOutcomeSink()]

    async def notify(self, outcome: JobOutcome):
        for sink in self.sinks:
            try:
                await sink.deliver(outcome)
            except Exception as e:
                logger.error(
                    f"Outcome sink {type(sink).__name__} failed for job {outcome.job_id}: {e}"
                )
