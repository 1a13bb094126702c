"""
Unit tests for the job outcome notifier
"""

import logging
import pytest
from datetime import datetime
from unittest.mock import AsyncMock

from sqlalchemy import select

from bulk_export.notifier import (
    CallbackOutcomeSink,
    DatabaseOutcomeSink,
    JobOutcomeNotifier,
    LoggingOutcomeSink,
    OutcomeSink,
    summarize,
)
from bulk_export.runner import RunState
from core.exceptions import JobCancelledError, UpstreamError
from models.base import EntityType, JobStatus, RunnerState
from models.export_job import ExportJob
from schemas.records import JobOutcome, SkipRecord


def make_state(**overrides) -> RunState:
    state = RunState(job_id="job-1", entity_type=EntityType.USER)
    state.total_records = 3
    state.processed = 3
    state.written = 3
    state.started_at = datetime(2024, 1, 1, 10, 0, 0)
    state.completed_at = datetime(2024, 1, 1, 10, 0, 5)
    for key, value in overrides.items():
        setattr(state, key, value)
    return state


def skip(identifier="B", line=2):
    return SkipRecord(identifier=identifier, line_number=line, reason="No match found", error_type="NotFoundError")


class TestSummarize:

    def test_clean_run_completed(self):
        outcome = summarize(make_state(outputs={"csv": "k.csv"}))

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.total_written == 3
        assert outcome.outputs == {"csv": "k.csv"}
        assert outcome.error is None
        assert outcome.duration_seconds == 5

    def test_skips_mean_completed_with_errors(self):
        outcome = summarize(make_state(written=2, skip_records=[skip()]))

        assert outcome.status == JobStatus.COMPLETED_WITH_ERRORS
        assert outcome.total_skipped == 1
        assert outcome.skip_records[0].identifier == "B"

    def test_failure_wins_over_skips(self):
        outcome = summarize(make_state(
            skip_records=[skip()], failure=UpstreamError("Lookup service unavailable")
        ))

        assert outcome.status == JobStatus.FAILED
        assert outcome.error["error_type"] == "UpstreamError"
        assert outcome.error["message"] == "Lookup service unavailable"

    def test_cancellation(self):
        outcome = summarize(make_state(cancellation=JobCancelledError("Cancelled by operator")))

        assert outcome.status == JobStatus.CANCELLED
        assert outcome.error["message"] == "Cancelled by operator"

    def test_broken_state_still_yields_failed_outcome(self):
        state = make_state()
        state.skip_records = None

        outcome = summarize(state)

        assert outcome.job_id == "job-1"
        assert outcome.status == JobStatus.FAILED
        assert "Could not summarize" in outcome.error["message"]


class TestSinks:

    @pytest.mark.asyncio
    async def test_default_sink_logs(self, caplog):
        notifier = JobOutcomeNotifier()
        assert isinstance(notifier.sinks[0], LoggingOutcomeSink)

        with caplog.at_level(logging.INFO):
            await notifier.notify(JobOutcome(job_id="job-1", status=JobStatus.COMPLETED))

        assert "Job job-1 completed" in caplog.text

    @pytest.mark.asyncio
    async def test_sync_and_async_callbacks(self):
        received = []

        async def async_callback(outcome):
            received.append(("async", outcome.job_id))

        notifier = JobOutcomeNotifier([
            CallbackOutcomeSink(lambda outcome: received.append(("sync", outcome.job_id))),
            CallbackOutcomeSink(async_callback),
        ])
        await notifier.notify(JobOutcome(job_id="job-1", status=JobStatus.COMPLETED))

        assert received == [("sync", "job-1"), ("async", "job-1")]

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_block_others(self, caplog):
        class BrokenSink(OutcomeSink):
            async def deliver(self, outcome):
                raise ConnectionError("bus down")

        healthy = AsyncMock(spec=OutcomeSink)
        notifier = JobOutcomeNotifier([BrokenSink(), healthy])

        with caplog.at_level(logging.ERROR):
            await notifier.notify(JobOutcome(job_id="job-1", status=JobStatus.FAILED))

        healthy.deliver.assert_awaited_once()
        assert "BrokenSink failed for job job-1" in caplog.text


class TestDatabaseOutcomeSink:

    @pytest.mark.asyncio
    async def test_inserts_outcome(self, session_factory, db_session):
        outcome = summarize(make_state(
            written=2, skip_records=[skip()], outputs={"csv": "bulk-edit/job-1/job-1.csv"}
        ))

        await DatabaseOutcomeSink(session_factory).deliver(outcome)

        result = await db_session.execute(select(ExportJob).where(ExportJob.job_id == "job-1"))
        job = result.scalar_one()
        assert job.status == JobStatus.COMPLETED_WITH_ERRORS
        assert job.entity_type == EntityType.USER
        assert job.total_skipped == 1
        assert job.duration_seconds == 5
        assert job.outputs == {"csv": "bulk-edit/job-1/job-1.csv"}
        assert job.skip_records[0]["reason"] == "No match found"
        assert job.error_message is None

    @pytest.mark.asyncio
    async def test_second_delivery_updates_in_place(self, session_factory, db_session):
        sink = DatabaseOutcomeSink(session_factory)
        await sink.deliver(summarize(make_state()))
        await sink.deliver(summarize(make_state(failure=UpstreamError("timeout"))))

        result = await db_session.execute(select(ExportJob))
        jobs = result.scalars().all()
        assert len(jobs) == 1
        assert jobs[0].status == JobStatus.FAILED
        assert jobs[0].error_message == "timeout"
        assert jobs[0].error_details["error_type"] == "UpstreamError"


class TestRunState:

    def test_skipped_counts_skip_records(self):
        state = make_state(skip_records=[skip("B", 2), skip("H", 8)])

        assert state.skipped == 2
        assert state.state == RunnerState.IDLE
