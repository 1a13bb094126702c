"""
Unit tests for the fault-tolerant chunk runner
"""

import asyncio
import json
import pytest
from pathlib import Path
from unittest.mock import MagicMock

from bulk_export.jobs import build_export_job
from bulk_export.lookup import InMemoryRecordLookup
from bulk_export.notifier import CallbackOutcomeSink, JobOutcomeNotifier
from bulk_export.predicates import active_only
from bulk_export.resolvers import RetryPolicy
from bulk_export.runner import CancellationToken
from core.exceptions import UpstreamError
from models.base import EntityType, IdentifierType, JobStatus, OutputFormat, RunnerState
from schemas.formats import FieldSpec
from storage.local import LocalStorage
from tests.factories import make_user

CSV_KEY = "bulk-edit/job-1/job-1.csv"
JSON_KEY = "bulk-edit/job-1/job-1.json"
ERRORS_KEY = "bulk-edit/job-1/job-1-errors.csv"


def csv_lines(storage, key=CSV_KEY):
    return storage.read_text(key).splitlines()


def json_rows(storage, key=JSON_KEY):
    return [json.loads(line) for line in storage.read_text(key).splitlines()]


class FlakyLookup(InMemoryRecordLookup):
    """Fails the first `failures_per_value` lookups of every value with a transient error"""

    def __init__(self, records, failures_per_value=1):
        super().__init__(records)
        self.failures_per_value = failures_per_value
        self.attempts = {}

    async def find(self, entity_type, field, value):
        self.attempts[value] = self.attempts.get(value, 0) + 1
        if self.attempts[value] <= self.failures_per_value:
            raise UpstreamError("Lookup request timed out", transient=True)
        return await super().find(entity_type, field, value)


class TestChunkRunnerOutcomes:
    """Terminal outcomes of typical runs"""

    @pytest.mark.asyncio
    async def test_all_identifiers_resolve(self, make_runner, storage):
        """Every identifier written, in input order"""
        runner = make_runner(["A", "C", "D", "E", "F", "G"], chunk_size=4)

        outcome = await runner.run()

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.total_records == 6
        assert outcome.total_written == 6
        assert outcome.total_skipped == 0
        assert outcome.chunks_committed == 2
        assert outcome.outputs == {"csv": CSV_KEY, "json": JSON_KEY}
        assert outcome.errors_output is None

        lines = csv_lines(storage)
        assert lines[0] == "Barcode,User name,Last name"
        assert [line.split(",")[0] for line in lines[1:]] == ["A", "C", "D", "E", "F", "G"]

    @pytest.mark.asyncio
    async def test_missing_identifier_completes_with_errors(self, make_runner, storage):
        """Input A,B,C with chunk size 2 and B unknown keeps A and C"""
        runner = make_runner(["A", "B", "C"], chunk_size=2, skip_limit=5)

        outcome = await runner.run()

        assert outcome.status == JobStatus.COMPLETED_WITH_ERRORS
        assert outcome.total_written == 2
        assert outcome.total_skipped == 1
        assert [r["barcode"] for r in json_rows(storage)] == ["A", "C"]

        skip = outcome.skip_records[0]
        assert skip.identifier == "B"
        assert skip.line_number == 2
        assert skip.error_type == "NotFoundError"
        assert skip.reason == "No match found"

        assert outcome.errors_output == ERRORS_KEY
        error_lines = storage.read_text(ERRORS_KEY).splitlines()
        assert error_lines[0] == "identifier,line_number,error_type,reason"
        assert error_lines[1] == "B,2,NotFoundError,No match found"

    @pytest.mark.asyncio
    async def test_skip_limit_zero_keeps_committed_chunk(self, make_runner, storage):
        """Input A,B with limit 0: A was committed before B failed the job"""
        runner = make_runner(["A", "B"], chunk_size=1, skip_limit=0)

        outcome = await runner.run()

        assert outcome.status == JobStatus.FAILED
        assert outcome.error["error_type"] == "SkipLimitExceededError"
        assert [s.identifier for s in outcome.skip_records] == ["B"]
        assert csv_lines(storage) == ["Barcode,User name,Last name", "A,user_a,LastA"]

    @pytest.mark.asyncio
    async def test_skip_limit_exceeded_stops_reading(self, make_runner, storage, lookup):
        """Chunks after the crossing are never read; earlier chunks stay written"""
        runner = make_runner(["A", "C", "B", "X", "D", "E"], chunk_size=2, skip_limit=1)

        outcome = await runner.run()

        assert outcome.status == JobStatus.FAILED
        assert outcome.chunks_committed == 1
        assert [s.identifier for s in outcome.skip_records] == ["B", "X"]
        assert [r["barcode"] for r in json_rows(storage)] == ["A", "C"]
        looked_up = [call[3] for call in lookup.calls]
        assert "D" not in looked_up
        assert "E" not in looked_up

    @pytest.mark.asyncio
    async def test_skip_limit_crossed_mid_chunk_discards_its_survivors(self, make_runner, storage):
        runner = make_runner(["A", "C", "B", "X"], chunk_size=4, skip_limit=1)

        outcome = await runner.run()

        assert outcome.status == JobStatus.FAILED
        assert outcome.error["error_type"] == "SkipLimitExceededError"
        assert outcome.chunks_committed == 0
        assert outcome.total_written == 0
        assert outcome.outputs == {}
        assert not storage.exists(CSV_KEY)
        assert not storage.exists(JSON_KEY)
        assert [s.identifier for s in outcome.skip_records] == ["B", "X"]

    @pytest.mark.asyncio
    async def test_duplicate_matches_are_skipped(self, make_runner, storage, users):
        users_with_dup = users + [make_user("DUP"), make_user("DUP", id="other")]
        runner = make_runner(
            ["A", "DUP"], lookup=InMemoryRecordLookup({EntityType.USER: users_with_dup})
        )

        outcome = await runner.run()

        assert outcome.status == JobStatus.COMPLETED_WITH_ERRORS
        assert outcome.skip_records[0].reason == "Duplicate entry"

    @pytest.mark.asyncio
    async def test_instance_id_writes_one_row_per_holding(self, storage, staging_dir):
        lookup = InMemoryRecordLookup({EntityType.HOLDINGS_RECORD: [
            {"id": "h1", "instanceId": "inst-1"},
            {"id": "h2", "instanceId": "inst-2"},
            {"id": "h3", "instanceId": "inst-1"},
        ]})
        runner = build_export_job(
            entity_type=EntityType.HOLDINGS_RECORD,
            identifier_type=IdentifierType.INSTANCE_ID,
            source=b"inst-1\ninst-9\ninst-2\n",
            lookup=lookup,
            storage=storage,
            job_id="job-1",
            formats=[OutputFormat.CSV, OutputFormat.JSON],
            field_specs=[FieldSpec("Holdings record id", "id"), FieldSpec("Instance", "instanceId")],
            chunk_size=2,
            skip_limit=5,
            staging_dir=staging_dir,
            prefix="bulk-edit",
        )

        outcome = await runner.run()

        assert outcome.status == JobStatus.COMPLETED_WITH_ERRORS
        assert outcome.total_processed == 3
        assert outcome.total_written == 3
        assert [s.identifier for s in outcome.skip_records] == ["inst-9"]
        assert csv_lines(storage) == [
            "Holdings record id,Instance", "h1,inst-1", "h3,inst-1", "h2,inst-2"
        ]
        assert [r["id"] for r in json_rows(storage)] == ["h1", "h3", "h2"]

    @pytest.mark.asyncio
    async def test_failing_predicate_skips_only_that_identifier(self, make_runner, storage, users):
        def strict_active(entity):
            if entity.data["barcode"] == "C":
                raise KeyError("active")
            return entity.data["active"]

        runner = make_runner(["A", "C", "D"], chunk_size=1, predicate=strict_active)

        outcome = await runner.run()

        assert outcome.status == JobStatus.COMPLETED_WITH_ERRORS
        assert outcome.skip_records[0].identifier == "C"
        assert outcome.skip_records[0].reason == "Filter could not be evaluated"
        assert [r["barcode"] for r in json_rows(storage)] == ["A", "D"]

    @pytest.mark.asyncio
    async def test_missing_required_field_is_skipped(self, make_runner, storage, users):
        broken = make_user("H")
        del broken["personal"]["lastName"]
        runner = make_runner(
            ["A", "H", "C"], lookup=InMemoryRecordLookup({EntityType.USER: users + [broken]})
        )

        outcome = await runner.run()

        assert outcome.status == JobStatus.COMPLETED_WITH_ERRORS
        assert outcome.skip_records[0].identifier == "H"
        assert outcome.skip_records[0].error_type == "TransformError"
        assert [r["barcode"] for r in json_rows(storage)] == ["A", "C"]

    @pytest.mark.asyncio
    async def test_filtered_entities_are_not_errors(self, make_runner, storage, users):
        inactive = make_user("I", active=False)
        runner = make_runner(
            ["A", "I", "C"],
            lookup=InMemoryRecordLookup({EntityType.USER: users + [inactive]}),
            predicate=active_only
        )

        outcome = await runner.run()

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.total_filtered == 1
        assert outcome.total_skipped == 0
        assert [r["barcode"] for r in json_rows(storage)] == ["A", "C"]


class TestChunkRunnerFailures:
    """Fatal paths"""

    @pytest.mark.asyncio
    async def test_upstream_error_is_fatal_without_counting_as_skip(self, make_runner, storage, users):
        lookup = InMemoryRecordLookup(
            {EntityType.USER: users},
            failures={"D": UpstreamError("Lookup service error 503", transient=True)}
        )
        runner = make_runner(["A", "C", "D", "E"], lookup=lookup, chunk_size=2)

        outcome = await runner.run()

        assert outcome.status == JobStatus.FAILED
        assert outcome.error["error_type"] == "UpstreamError"
        assert outcome.total_skipped == 0
        assert outcome.chunks_committed == 1
        assert [r["barcode"] for r in json_rows(storage)] == ["A", "C"]

    @pytest.mark.asyncio
    async def test_transient_errors_retried_when_policy_allows(self, make_runner, storage, users):
        lookup = FlakyLookup({EntityType.USER: users}, failures_per_value=2)
        runner = make_runner(
            ["A", "C"], lookup=lookup,
            retry_policy=RetryPolicy(retryable=True, max_attempts=3)
        )

        outcome = await runner.run()

        assert outcome.status == JobStatus.COMPLETED
        assert lookup.attempts == {"A": 3, "C": 3}

    @pytest.mark.asyncio
    async def test_retries_exhausted_become_fatal(self, make_runner, users):
        lookup = FlakyLookup({EntityType.USER: users}, failures_per_value=5)
        runner = make_runner(
            ["A"], lookup=lookup,
            retry_policy=RetryPolicy(retryable=True, max_attempts=2)
        )

        outcome = await runner.run()

        assert outcome.status == JobStatus.FAILED
        assert lookup.attempts == {"A": 2}

    @pytest.mark.asyncio
    async def test_empty_input_fails_before_any_chunk(self, make_runner, lookup):
        delivered = []
        runner = make_runner(
            [], notifier=JobOutcomeNotifier([CallbackOutcomeSink(delivered.append)])
        )

        outcome = await runner.run()

        assert outcome.status == JobStatus.FAILED
        assert outcome.error["error_type"] == "EmptyInputError"
        assert outcome.outputs == {}
        assert lookup.calls == []
        assert delivered == [outcome]

    @pytest.mark.asyncio
    async def test_promotion_failure_keeps_staged_files(self, make_runner, staging_dir, tmp_path):
        class BrokenStorage(LocalStorage):
            def upload_file(self, path, local_file, content_type=None):
                raise OSError("bucket unavailable")

        runner = make_runner(["A", "C"])
        runner.writer.storage = BrokenStorage(tmp_path / "broken")

        outcome = await runner.run()

        assert outcome.status == JobStatus.FAILED
        assert outcome.error["error_type"] == "WriteError"
        assert (Path(staging_dir) / "job-1" / "job-1.csv").exists()

    @pytest.mark.asyncio
    async def test_finalize_called_exactly_once_on_failure(self, make_runner):
        runner = make_runner(["A", "B"], chunk_size=1, skip_limit=0)
        runner.writer.finalize = MagicMock(wraps=runner.writer.finalize)

        await runner.run()

        assert runner.writer.finalize.call_count == 1


class TestChunkRunnerLifecycle:
    """Cancellation, progress, state machine"""

    @pytest.mark.asyncio
    async def test_cancellation_between_chunks(self, make_runner, storage):
        token = CancellationToken()
        runner = make_runner(
            ["A", "C", "D", "E"],
            chunk_size=2,
            cancellation=token,
            listeners=[lambda progress: token.cancel("stop")]
        )

        outcome = await runner.run()

        assert outcome.status == JobStatus.CANCELLED
        assert outcome.error["error_type"] == "JobCancelledError"
        assert outcome.chunks_committed == 1
        assert [r["barcode"] for r in json_rows(storage)] == ["A", "C"]

    @pytest.mark.asyncio
    async def test_task_cancellation_still_finalizes_and_reports(self, make_runner, users, storage):
        class CancellingLookup(InMemoryRecordLookup):
            async def find(self, entity_type, field, value):
                if value == "D":
                    raise asyncio.CancelledError()
                return await super().find(entity_type, field, value)

        delivered = []
        runner = make_runner(
            ["A", "C", "D", "E"],
            chunk_size=2,
            lookup=CancellingLookup({EntityType.USER: users}),
            notifier=JobOutcomeNotifier([CallbackOutcomeSink(delivered.append)])
        )
        runner.writer.finalize = MagicMock(wraps=runner.writer.finalize)

        with pytest.raises(asyncio.CancelledError):
            await runner.run()

        assert runner.writer.finalize.call_count == 1
        assert runner.state.state == RunnerState.CANCELLED
        [outcome] = delivered
        assert outcome.status == JobStatus.CANCELLED
        assert outcome.error["error_type"] == "JobCancelledError"
        assert outcome.chunks_committed == 1
        assert [r["barcode"] for r in json_rows(storage)] == ["A", "C"]

    @pytest.mark.asyncio
    async def test_progress_reported_after_each_chunk(self, make_runner):
        seen = []
        runner = make_runner(["A", "B", "C", "D", "E"], chunk_size=2, listeners=[seen.append])

        await runner.run()

        assert [p.processed for p in seen] == [2, 4, 5]
        assert [p.written for p in seen] == [1, 3, 4]
        assert seen[-1].skipped == 1
        assert seen[-1].percent == 100

    @pytest.mark.asyncio
    async def test_prefetch_uses_batch_lookup(self, make_runner, lookup, storage):
        runner = make_runner(["A", "B", "C"], chunk_size=3, prefetch=True)

        outcome = await runner.run()

        assert outcome.status == JobStatus.COMPLETED_WITH_ERRORS
        assert [call[0] for call in lookup.calls] == ["find_many"]
        assert [r["barcode"] for r in json_rows(storage)] == ["A", "C"]

    @pytest.mark.asyncio
    async def test_runner_cannot_run_twice(self, make_runner):
        runner = make_runner(["A"])
        await runner.run()

        with pytest.raises(RuntimeError):
            await runner.run()

    def test_illegal_transition_raises(self, make_runner):
        runner = make_runner(["A"])

        with pytest.raises(RuntimeError):
            runner._transition(RunnerState.COMMITTING)

    def test_invalid_chunk_size_rejected(self, make_runner):
        with pytest.raises(ValueError):
            make_runner(["A"], chunk_size=0)


class TestChunkRunnerProperties:
    """Lockstep and idempotence"""

    @pytest.mark.asyncio
    async def test_formats_stay_in_lockstep(self, make_runner, storage):
        runner = make_runner(["G", "B", "A", "E", "X", "C"], chunk_size=4)

        await runner.run()

        csv_ids = [line.split(",")[0] for line in csv_lines(storage)[1:]]
        json_ids = [row["barcode"] for row in json_rows(storage)]
        assert csv_ids == json_ids == ["G", "A", "E", "C"]

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, make_runner, storage):
        ids = ["A", "B", "C", "X", "D"]

        first = await make_runner(ids, job_id="run-1").run()
        second = await make_runner(ids, job_id="run-2").run()

        assert first.skip_records == second.skip_records
        assert (
            json_rows(storage, "bulk-edit/run-1/run-1.json")
            == json_rows(storage, "bulk-edit/run-2/run-2.json")
        )
