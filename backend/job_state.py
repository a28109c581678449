"""
Job State Machine: persisted lifecycle of a sync run.

The sync_jobs row is the only coordination point between worker steps: it acts
as checkpoint (cursor_page, stage, counters) and as lock. "At most one active
job" is enforced in the database by the partial unique index
`one_active_sync_job` over rows whose status is pending/running, so a second
insert fails with a unique violation and is recorded as a skipped job.

Logs are appended to the sync_job_logs table, one row per line.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

import config
from db import run_db, is_unique_violation
from job_status import JobStatus, PipelineStage, SyncMode
from models import SyncJob, utc_now

logger = logging.getLogger(__name__)

JOBS_TABLE = "sync_jobs"
LOGS_TABLE = "sync_job_logs"
PROGRESS_RPC = "record_sync_job_progress"


class JobConflictError(Exception):
    """Requested transition clashes with the job's state or with another active job."""
    pass


class JobNotFoundError(Exception):
    pass


def log_timestamp() -> str:
    return datetime.now().strftime("[%H:%M:%S]")


class JobStateMachine:
    """Reads and transitions sync_jobs rows."""

    def __init__(self, supabase, stale_timeout: int = None):
        self.supabase = supabase
        self.stale_timeout = stale_timeout if stale_timeout is not None else config.STALE_JOB_TIMEOUT_SECONDS

    # ==================== Creation ====================

    async def create_job(
        self, mode: str, trigger: str = "manual", user_id: str = None, record_limit: int = None
    ) -> SyncJob:
        """
        Create a pending job, or a skipped one when another job is active.

        Stale active jobs are reclassified first so a crashed run cannot block new
        triggers forever.
        """
        if not SyncMode.is_valid(mode):
            raise ValueError(f"Unsupported sync mode: {mode}")

        await self.reclassify_stale_jobs()

        now = utc_now().isoformat()
        row = {
            "status": JobStatus.PENDING,
            "mode": mode,
            "stage": PipelineStage.INGEST,
            "cursor_page": 0,
            "new_contacts_added": 0,
            "orders_updated_count": 0,
            "trigger": trigger,
            "updated_at": now,
        }
        if user_id:
            row["user_id"] = user_id
        if record_limit:
            row["record_limit"] = record_limit

        try:
            result = await run_db(lambda: self.supabase.table(JOBS_TABLE).insert(row).execute())
        except Exception as e:
            if not is_unique_violation(e):
                raise
            return await self._record_skipped(mode, trigger, user_id)

        job = SyncJob.from_row(result.data[0])
        label = "Full" if mode == SyncMode.FULL else "Incremental"
        limit_note = f" Record limit: {record_limit}." if record_limit else ""
        await self.append_logs(job.id, [f"{label} sync created ({trigger} trigger).{limit_note}"])
        logger.info(f"Created sync job {job.id} (mode={mode}, trigger={trigger})")
        return job

    async def _record_skipped(self, mode: str, trigger: str, user_id: Optional[str]) -> SyncJob:
        active = await self.get_active_job()
        now = utc_now().isoformat()
        row = {
            "status": JobStatus.SKIPPED,
            "mode": mode,
            "stage": PipelineStage.INGEST,
            "trigger": trigger,
            "updated_at": now,
            "finished_at": now,
        }
        if user_id:
            row["user_id"] = user_id
        result = await run_db(lambda: self.supabase.table(JOBS_TABLE).insert(row).execute())
        job = SyncJob.from_row(result.data[0])

        if active:
            message = f"Skipped: sync job {active.id} is already {active.status}."
        else:
            message = "Skipped: another sync job is already in progress."
        await self.append_logs(job.id, [message])
        logger.info(f"Sync job {job.id} skipped ({trigger} trigger): {message}")
        return job

    # ==================== Transitions ====================

    async def mark_running(self, job_id: str) -> bool:
        """pending → running. Returns False when the job was not pending."""
        result = await run_db(lambda: self.supabase.table(JOBS_TABLE).update({
            "status": JobStatus.RUNNING,
            "updated_at": utc_now().isoformat(),
        }).eq("id", job_id).eq("status", JobStatus.PENDING).execute())
        return bool(result.data)

    async def record_progress(
        self, job_id: str, page: int, new_contacts: int = 0, orders_updated: int = 0
    ) -> None:
        """
        Persist a committed page. The RPC keeps cursor_page = greatest(cursor_page, page)
        and only adds to the counters, so neither ever decreases.
        """
        await run_db(lambda: self.supabase.rpc(PROGRESS_RPC, {
            "p_job_id": job_id,
            "p_page": max(int(page), 0),
            "p_new_contacts": max(int(new_contacts), 0),
            "p_orders_updated": max(int(orders_updated), 0),
        }).execute())

    async def add_orders_updated(self, job_id: str, count: int) -> None:
        await self.record_progress(job_id, page=0, new_contacts=0, orders_updated=count)

    async def touch(self, job_id: str) -> None:
        """Heartbeat for steps that commit no counters, so the job is not seen as stale."""
        await self.record_progress(job_id, page=0)

    async def advance_stage(self, job_id: str, stage: str, attempt: int = None) -> None:
        def _update():
            query = self.supabase.table(JOBS_TABLE).update({
                "stage": stage,
                "updated_at": utc_now().isoformat(),
            }).eq("id", job_id).in_("status", list(JobStatus.ACTIVE))
            if attempt is not None:
                query = query.eq("attempt", attempt)
            return query.execute()

        await run_db(_update)

    async def _finish(self, job_id: str, status: str, error_message: str = None, attempt: int = None) -> bool:
        """Terminal transition. With `attempt`, only that run of the job may finish it."""
        now = utc_now().isoformat()
        data = {"status": status, "finished_at": now, "updated_at": now}
        if error_message is not None:
            data["error_message"] = error_message[:1000]

        def _update():
            query = self.supabase.table(JOBS_TABLE).update(data).eq(
                "id", job_id
            ).in_("status", list(JobStatus.ACTIVE))
            if attempt is not None:
                query = query.eq("attempt", attempt)
            return query.execute()

        result = await run_db(_update)
        return bool(result.data)

    async def complete(self, job_id: str, attempt: int = None) -> bool:
        return await self._finish(job_id, JobStatus.COMPLETED, attempt=attempt)

    async def fail(self, job_id: str, error: str, attempt: int = None) -> bool:
        changed = await self._finish(job_id, JobStatus.FAILED, error_message=error, attempt=attempt)
        if changed:
            await self.append_logs(job_id, [f"FATAL ERROR: {error}"], level="error")
        else:
            await self.append_logs(job_id, [f"Error after the run had already ended: {error}"], level="warning")
        return changed

    async def cancel(self, job_id: str) -> bool:
        changed = await self._finish(job_id, JobStatus.CANCELLED)
        if changed:
            await self.append_logs(job_id, ["Cancelled by user."], level="warning")
        return changed

    async def resume(self, job_id: str) -> SyncJob:
        """
        failed → pending, keeping cursor_page, stage and counters.

        Each resume starts a new attempt; worker steps still queued for the
        previous attempt see the mismatch and drop themselves.
        """
        job = await self.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.FAILED:
            raise JobConflictError(f"Only failed jobs can be continued (job is {job.status})")

        await self.reclassify_stale_jobs()
        try:
            result = await run_db(lambda: self.supabase.table(JOBS_TABLE).update({
                "status": JobStatus.PENDING,
                "attempt": job.attempt + 1,
                "finished_at": None,
                "error_message": None,
                "updated_at": utc_now().isoformat(),
            }).eq("id", job_id).eq("status", JobStatus.FAILED).eq("attempt", job.attempt).execute())
        except Exception as e:
            if is_unique_violation(e):
                raise JobConflictError("Another sync job is already in progress") from e
            raise
        if not result.data:
            raise JobConflictError(f"Job {job_id} changed state before it could be continued")

        resumed = SyncJob.from_row(result.data[0])
        if resumed.stage == PipelineStage.INGEST:
            where = f"page {resumed.cursor_page + 1}"
        else:
            where = f"the start of the {resumed.stage} stage"
        await self.append_logs(job_id, [f"Continue requested: resuming from {where}."])
        return resumed

    # ==================== Staleness ====================

    async def reclassify_stale_jobs(self, now: datetime = None) -> list[str]:
        """Fail active jobs with no progress inside the staleness window. Returns their ids."""
        now = now or utc_now()
        cutoff = (now - timedelta(seconds=self.stale_timeout)).isoformat()
        result = await run_db(lambda: self.supabase.table(JOBS_TABLE).select(
            "id, updated_at"
        ).in_("status", list(JobStatus.ACTIVE)).lt("updated_at", cutoff).execute())

        stale_ids = []
        for row in result.data or []:
            job_id = str(row["id"])
            message = (
                f"No progress since {row.get('updated_at')}; marked as failed "
                f"after {self.stale_timeout}s without updates."
            )
            try:
                updated = await run_db(lambda j=job_id: self.supabase.table(JOBS_TABLE).update({
                    "status": JobStatus.FAILED,
                    "finished_at": now.isoformat(),
                    "error_message": "stale",
                }).eq("id", j).in_("status", list(JobStatus.ACTIVE)).lt("updated_at", cutoff).execute())
            except Exception as e:
                logger.warning(f"Failed to reclassify stale job {job_id}: {e}")
                continue
            if updated.data:
                stale_ids.append(job_id)
                await self.append_logs(job_id, [message], level="warning")

        if stale_ids:
            logger.warning(f"Reclassified {len(stale_ids)} stale sync job(s) as failed: {stale_ids}")
        return stale_ids

    async def fail_interrupted_jobs(self) -> list[str]:
        """On process start no worker owns the active rows anymore; fail them so they can be continued."""
        result = await run_db(lambda: self.supabase.table(JOBS_TABLE).select(
            "id"
        ).in_("status", list(JobStatus.ACTIVE)).execute())
        interrupted = []
        for row in result.data or []:
            job_id = str(row["id"])
            try:
                if await self._finish(job_id, JobStatus.FAILED, error_message="interrupted"):
                    interrupted.append(job_id)
                    await self.append_logs(
                        job_id, ["Interrupted by server restart; use continue to resume."], level="warning"
                    )
            except Exception as e:
                logger.warning(f"Failed to reset interrupted job {job_id}: {e}")
        if interrupted:
            logger.info(f"Reset {len(interrupted)} interrupted sync job(s) to failed")
        return interrupted

    # ==================== Reads ====================

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        result = await run_db(lambda: self.supabase.table(JOBS_TABLE).select("*").eq(
            "id", job_id
        ).limit(1).execute())
        if not result.data:
            return None
        return SyncJob.from_row(result.data[0])

    async def get_active_job(self) -> Optional[SyncJob]:
        result = await run_db(lambda: self.supabase.table(JOBS_TABLE).select("*").in_(
            "status", list(JobStatus.ACTIVE)
        ).order("created_at", desc=True).limit(1).execute())
        if not result.data:
            return None
        return SyncJob.from_row(result.data[0])

    async def list_jobs(self, limit: int = 20) -> list[SyncJob]:
        result = await run_db(lambda: self.supabase.table(JOBS_TABLE).select("*").order(
            "created_at", desc=True
        ).limit(limit).execute())
        return [SyncJob.from_row(r) for r in result.data or []]

    # ==================== Logs ====================

    async def append_logs(self, job_id: str, messages: list[str], level: str = "info") -> None:
        """Append timestamped lines to the job's log. Never raises: a lost log line must not kill a run."""
        if not job_id or not messages:
            return
        stamp = log_timestamp()
        rows = [{"job_id": job_id, "level": level, "message": f"{stamp} {m}"} for m in messages]
        try:
            await run_db(lambda: self.supabase.table(LOGS_TABLE).insert(rows).execute())
        except Exception as e:
            logger.warning(f"Failed to append {len(rows)} log line(s) to job {job_id}: {e}")

    async def get_logs(self, job_id: str, offset: int = 0, limit: int = 200) -> list[dict]:
        offset = max(offset, 0)
        limit = max(limit, 1)
        result = await run_db(lambda: self.supabase.table(LOGS_TABLE).select(
            "created_at, level, message"
        ).eq("job_id", job_id).order("id").range(offset, offset + limit - 1).execute())
        return result.data or []
