"""
Job State Machine Tests
=======================
Exercises JobStateMachine against a mocked supabase client. Each table gets
its own MagicMock query chain (every builder method returns the chain), and
`execute()` results are queued per table.
"""

import pytest
import sys
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from job_state import JobStateMachine, JobConflictError, JobNotFoundError, JOBS_TABLE, LOGS_TABLE
from job_status import JobStatus, PipelineStage, SyncMode


class UniqueViolation(Exception):
    code = "23505"


def _chain(results):
    chain = MagicMock()
    for method in ("select", "insert", "update", "eq", "in_", "lt", "order", "limit", "range"):
        getattr(chain, method).return_value = chain
    chain.execute.side_effect = results
    return chain


def make_supabase(job_results=(), log_results=None):
    jobs = _chain(list(job_results))
    logs = _chain(log_results or [MagicMock(data=[])] * 10)
    supabase = MagicMock()
    supabase.table.side_effect = lambda name: {JOBS_TABLE: jobs, LOGS_TABLE: logs}[name]
    return supabase, jobs, logs


def result(data):
    return MagicMock(data=data)


def job_row(**overrides):
    row = {
        "id": "6f1c7c3e-0000-4000-8000-000000000001",
        "status": JobStatus.PENDING,
        "mode": SyncMode.INCREMENTAL,
        "stage": PipelineStage.INGEST,
        "cursor_page": 0,
        "new_contacts_added": 0,
        "orders_updated_count": 0,
        "trigger": "manual",
        "created_at": "2024-06-01T10:00:00+00:00",
        "updated_at": "2024-06-01T10:00:00+00:00",
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# 1. Creation and single-active rule
# ---------------------------------------------------------------------------

class TestCreateJob:

    @pytest.mark.asyncio
    async def test_creates_pending_job_and_logs(self):
        supabase, jobs, logs = make_supabase([
            result([]),                # stale scan
            result([job_row()]),       # insert
        ])
        machine = JobStateMachine(supabase, stale_timeout=300)

        job = await machine.create_job(SyncMode.INCREMENTAL, trigger="manual", user_id="u-1")

        assert job.status == JobStatus.PENDING
        inserted = jobs.insert.call_args[0][0]
        assert inserted["status"] == JobStatus.PENDING
        assert inserted["stage"] == PipelineStage.INGEST
        assert inserted["user_id"] == "u-1"
        assert "record_limit" not in inserted
        log_rows = logs.insert.call_args[0][0]
        assert "Incremental sync created" in log_rows[0]["message"]

    @pytest.mark.asyncio
    async def test_unique_violation_records_skipped_job(self):
        active = job_row(id="active-job", status=JobStatus.RUNNING)
        skipped = job_row(id="skipped-job", status=JobStatus.SKIPPED)
        supabase, jobs, logs = make_supabase([
            result([]),                # stale scan
            UniqueViolation('duplicate key value violates unique constraint "one_active_sync_job"'),
            result([active]),          # active lookup
            result([skipped]),         # skipped insert
        ])
        machine = JobStateMachine(supabase, stale_timeout=300)

        job = await machine.create_job(SyncMode.FULL, trigger="schedule")

        assert job.status == JobStatus.SKIPPED
        skipped_insert = jobs.insert.call_args_list[-1][0][0]
        assert skipped_insert["status"] == JobStatus.SKIPPED
        assert skipped_insert["finished_at"] is not None
        message = logs.insert.call_args[0][0][0]["message"]
        assert "active-job" in message and "running" in message

    @pytest.mark.asyncio
    async def test_other_insert_errors_propagate(self):
        supabase, _, _ = make_supabase([result([]), RuntimeError("connection reset")])
        machine = JobStateMachine(supabase, stale_timeout=300)

        with pytest.raises(RuntimeError):
            await machine.create_job(SyncMode.INCREMENTAL)

    @pytest.mark.asyncio
    async def test_invalid_mode_rejected(self):
        supabase, _, _ = make_supabase()
        with pytest.raises(ValueError):
            await JobStateMachine(supabase).create_job("everything")


# ---------------------------------------------------------------------------
# 2. Progress and transitions
# ---------------------------------------------------------------------------

class TestProgress:

    @pytest.mark.asyncio
    async def test_record_progress_uses_rpc_with_clamped_deltas(self):
        supabase, _, _ = make_supabase()
        machine = JobStateMachine(supabase)

        await machine.record_progress("job-1", page=3, new_contacts=-2, orders_updated=5)

        supabase.rpc.assert_called_once_with("record_sync_job_progress", {
            "p_job_id": "job-1",
            "p_page": 3,
            "p_new_contacts": 0,
            "p_orders_updated": 5,
        })

    @pytest.mark.asyncio
    async def test_add_orders_updated_does_not_move_cursor(self):
        supabase, _, _ = make_supabase()
        await JobStateMachine(supabase).add_orders_updated("job-1", 4)

        args = supabase.rpc.call_args[0][1]
        assert args["p_page"] == 0
        assert args["p_orders_updated"] == 4

    @pytest.mark.asyncio
    async def test_mark_running_only_from_pending(self):
        supabase, jobs, _ = make_supabase([result([job_row(status=JobStatus.RUNNING)]), result([])])
        machine = JobStateMachine(supabase)

        assert await machine.mark_running("job-1") is True
        assert await machine.mark_running("job-1") is False
        jobs.eq.assert_any_call("status", JobStatus.PENDING)

    @pytest.mark.asyncio
    async def test_terminal_transition_guarded_by_active_status(self):
        supabase, jobs, _ = make_supabase([result([])])
        machine = JobStateMachine(supabase)

        assert await machine.complete("job-1") is False
        update = jobs.update.call_args[0][0]
        assert update["status"] == JobStatus.COMPLETED
        status_filter = jobs.in_.call_args[0]
        assert status_filter[0] == "status"
        assert set(status_filter[1]) == JobStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_fail_stores_error_and_logs(self):
        supabase, jobs, logs = make_supabase([result([job_row(status=JobStatus.FAILED)])])
        machine = JobStateMachine(supabase)

        assert await machine.fail("job-1", "Contact page 4 failed: API error 503") is True
        assert jobs.update.call_args[0][0]["error_message"].startswith("Contact page 4")
        log_row = logs.insert.call_args[0][0][0]
        assert log_row["level"] == "error"
        assert "FATAL ERROR" in log_row["message"]

    @pytest.mark.asyncio
    async def test_transitions_scoped_to_attempt(self):
        supabase, jobs, logs = make_supabase([result([]), result([])])
        machine = JobStateMachine(supabase)

        await machine.advance_stage("job-1", PipelineStage.RECONCILE, attempt=2)
        jobs.eq.assert_any_call("attempt", 2)

        # The row belongs to a newer attempt, so the old run cannot fail it
        assert await machine.fail("job-1", "boom", attempt=1) is False
        jobs.eq.assert_any_call("attempt", 1)
        log_row = logs.insert.call_args[0][0][0]
        assert log_row["level"] == "warning"
        assert "FATAL ERROR" not in log_row["message"]


# ---------------------------------------------------------------------------
# 3. Resume
# ---------------------------------------------------------------------------

class TestResume:

    @pytest.mark.asyncio
    async def test_resume_failed_job(self):
        failed = job_row(status=JobStatus.FAILED, cursor_page=3, attempt=2)
        supabase, jobs, logs = make_supabase([
            result([failed]),                                        # get_job
            result([]),                                              # stale scan
            result([dict(failed, status=JobStatus.PENDING, attempt=3)]),  # update
        ])
        machine = JobStateMachine(supabase)

        job = await machine.resume(failed["id"])

        assert job.status == JobStatus.PENDING
        assert job.cursor_page == 3
        assert job.attempt == 3
        update = jobs.update.call_args[0][0]
        assert update["finished_at"] is None
        assert update["attempt"] == 3
        jobs.eq.assert_any_call("attempt", 2)
        assert "page 4" in logs.insert.call_args[0][0][0]["message"]

    @pytest.mark.asyncio
    async def test_resume_refuses_non_failed_job(self):
        supabase, _, _ = make_supabase([result([job_row(status=JobStatus.COMPLETED)])])
        with pytest.raises(JobConflictError):
            await JobStateMachine(supabase).resume("job-1")

    @pytest.mark.asyncio
    async def test_resume_refused_while_other_job_active(self):
        supabase, _, _ = make_supabase([
            result([job_row(status=JobStatus.FAILED)]),
            result([]),
            UniqueViolation("duplicate key value"),
        ])
        with pytest.raises(JobConflictError):
            await JobStateMachine(supabase).resume("job-1")

    @pytest.mark.asyncio
    async def test_resume_unknown_job(self):
        supabase, _, _ = make_supabase([result([])])
        with pytest.raises(JobNotFoundError):
            await JobStateMachine(supabase).resume("missing")


# ---------------------------------------------------------------------------
# 4. Staleness and restart
# ---------------------------------------------------------------------------

class TestStaleness:

    @pytest.mark.asyncio
    async def test_stale_jobs_become_failed(self):
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        stale = {"id": "stale-job", "updated_at": "2024-06-01T11:50:00+00:00"}
        supabase, jobs, logs = make_supabase([result([stale]), result([dict(stale, status=JobStatus.FAILED)])])
        machine = JobStateMachine(supabase, stale_timeout=300)

        stale_ids = await machine.reclassify_stale_jobs(now=now)

        assert stale_ids == ["stale-job"]
        cutoff = (now - timedelta(seconds=300)).isoformat()
        jobs.lt.assert_any_call("updated_at", cutoff)
        assert jobs.update.call_args[0][0]["status"] == JobStatus.FAILED
        assert logs.insert.call_args[0][0][0]["level"] == "warning"

    @pytest.mark.asyncio
    async def test_job_that_progressed_meanwhile_is_not_counted(self):
        stale = {"id": "stale-job", "updated_at": "2024-06-01T11:50:00+00:00"}
        supabase, _, _ = make_supabase([result([stale]), result([])])

        assert await JobStateMachine(supabase, stale_timeout=300).reclassify_stale_jobs() == []

    @pytest.mark.asyncio
    async def test_fail_interrupted_jobs(self):
        supabase, jobs, _ = make_supabase([
            result([{"id": "a"}, {"id": "b"}]),
            result([{"id": "a"}]),
            result([{"id": "b"}]),
        ])

        interrupted = await JobStateMachine(supabase).fail_interrupted_jobs()

        assert interrupted == ["a", "b"]
        assert jobs.update.call_args[0][0]["error_message"] == "interrupted"


# ---------------------------------------------------------------------------
# 5. Logs
# ---------------------------------------------------------------------------

class TestLogs:

    @pytest.mark.asyncio
    async def test_append_logs_timestamps_every_line(self):
        supabase, _, logs = make_supabase()
        await JobStateMachine(supabase).append_logs("job-1", ["one", "two"])

        rows = logs.insert.call_args[0][0]
        assert [r["job_id"] for r in rows] == ["job-1", "job-1"]
        assert all(r["message"].startswith("[") and "] " in r["message"] for r in rows)

    @pytest.mark.asyncio
    async def test_append_logs_failure_is_not_raised(self):
        supabase, _, _ = make_supabase(log_results=[RuntimeError("timeout")])
        await JobStateMachine(supabase).append_logs("job-1", ["line"])

    @pytest.mark.asyncio
    async def test_get_logs_range(self):
        supabase, _, logs = make_supabase(log_results=[result([{"message": "x"}])])

        rows = await JobStateMachine(supabase).get_logs("job-1", offset=10, limit=5)

        assert rows == [{"message": "x"}]
        logs.range.assert_called_once_with(10, 14)
