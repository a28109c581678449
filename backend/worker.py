"""
Worker Continuation Driver.

A sync run is a chain of small steps. Each StepRequest names a job, a stage and
a position (page for ingest, keyset after_id for the later stages). Running a
step returns the next request, which goes back on the queue, so no single
call walks the whole listing and a crash loses at most one step.

    ingest (pages) → orders (open-order batches) → history (stale contacts)
        → reconcile (contact batches) → finalize

Every step re-reads the job first: a terminal job (cancelled, failed by the
staleness check) ends the chain, and so does a request from an earlier
attempt of a job that has since been continued. The job is read again after
the work, so a successor is only queued while the step still owns the job.
"""

import asyncio
import logging
from typing import Optional

import config
from commerce_client import CommerceClient
from ingest import IngestStage
from job_state import JobStateMachine
from job_status import JobStatus, PipelineStage, SyncMode
from marketing_client import MarketingClient
from models import StepRequest, SyncJob, utc_now
from order_refresh import OrderRefresher
from paginator import ContactPaginator
from reconciler import DownstreamReconciler
from record_store import RecordStore

logger = logging.getLogger(__name__)

# Scheduled incremental loop (one per process)
_schedule_task: Optional[asyncio.Task] = None


class SyncPipeline:
    """Executes one StepRequest against the persisted job."""

    def __init__(self, jobs, store, paginator, ingest, refresher, reconciler, pages_per_step: int = None):
        self.jobs = jobs
        self.store = store
        self.paginator = paginator
        self.ingest = ingest
        self.refresher = refresher
        self.reconciler = reconciler
        self.pages_per_step = max(pages_per_step or config.PAGES_PER_STEP, 1)

    async def run_step(self, request: StepRequest) -> Optional[StepRequest]:
        job = await self.jobs.get_job(request.job_id)
        if not job:
            logger.warning(f"Step for unknown job {request.job_id} dropped")
            return None
        if job.is_terminal:
            logger.info(f"Job {job.id} is {job.status}; dropping {request.stage} step")
            return None
        if job.attempt != request.attempt:
            logger.info(f"Job {job.id} is on attempt {job.attempt}; dropping {request.stage} step of attempt {request.attempt}")
            return None
        if job.status == JobStatus.PENDING:
            if not await self.jobs.mark_running(job.id):
                logger.info(f"Job {job.id} left pending before it could start; dropping step")
                return None
            job.status = JobStatus.RUNNING

        try:
            next_request = await self._dispatch(job, request)
        except Exception as e:
            logger.error(f"Sync job {job.id} failed in {request.stage} stage: {e}")
            await self.jobs.fail(job.id, str(e) or e.__class__.__name__, attempt=request.attempt)
            return None

        if next_request and not await self._still_owns(request):
            return None
        return next_request

    async def _dispatch(self, job: SyncJob, request: StepRequest) -> Optional[StepRequest]:
        if request.stage == PipelineStage.INGEST:
            return await self._ingest(job, request)
        if request.stage == PipelineStage.ORDERS:
            return await self._refresh_orders(job, request)
        if request.stage == PipelineStage.HISTORY:
            return await self._refresh_history(job, request)
        if request.stage == PipelineStage.RECONCILE:
            return await self._reconcile(job, request)
        if request.stage == PipelineStage.FINALIZE:
            await self._finalize(job, request)
            return None
        raise ValueError(f"Unknown pipeline stage: {request.stage}")

    async def _still_owns(self, request: StepRequest) -> bool:
        """The job may have been cancelled, reclassified or continued while the step ran."""
        job = await self.jobs.get_job(request.job_id)
        if not job or job.is_terminal or job.attempt != request.attempt:
            logger.info(f"Job {request.job_id} changed during its {request.stage} step; not queueing a successor")
            return False
        return True

    # ==================== Stages ====================

    async def _ingest(self, job: SyncJob, request: StepRequest) -> Optional[StepRequest]:
        settings = await self.store.get_settings()
        new_total = job.new_contacts_added
        page = request.page

        for _ in range(self.pages_per_step):
            if job.limit_reached(new_total):
                await self.jobs.append_logs(job.id, [f"Record limit of {job.record_limit} reached."])
                return await self._advance(job, request, PipelineStage.ORDERS)

            contact_page = await self.paginator.fetch_page(page, settings.batch_size, job.mode)
            if contact_page.is_empty:
                await self.jobs.append_logs(job.id, [f"Page {page} is empty; contact walk finished."])
                return await self._advance(job, request, PipelineStage.ORDERS)

            max_new = job.record_limit - new_total if job.record_limit else None
            result = await self.ingest.ingest_page(job, contact_page.items, job.mode, settings, max_new=max_new)
            await self.jobs.append_logs(
                job.id, [f"Page {page}: {len(contact_page.items)} contacts received."] + result.logs
            )
            await self.jobs.record_progress(job.id, page, result.new_contacts, result.orders_upserted)
            new_total += result.new_contacts

            if result.stop or job.limit_reached(new_total):
                return await self._advance(job, request, PipelineStage.ORDERS)
            page += 1

        return StepRequest(
            job_id=job.id, mode=job.mode, stage=PipelineStage.INGEST, page=page, attempt=request.attempt
        )

    async def _refresh_orders(self, job: SyncJob, request: StepRequest) -> Optional[StepRequest]:
        result = await self.refresher.refresh_batch(after_id=request.after_id)
        await self.jobs.append_logs(job.id, result.logs)
        await self.jobs.add_orders_updated(job.id, result.updated)
        if result.has_more:
            return StepRequest(
                job_id=job.id, mode=job.mode, stage=PipelineStage.ORDERS,
                after_id=result.last_id, attempt=request.attempt,
            )
        return await self._advance(job, request, PipelineStage.HISTORY)

    async def _refresh_history(self, job: SyncJob, request: StepRequest) -> Optional[StepRequest]:
        result = await self.refresher.refresh_history(job.created_at or utc_now(), after_id=request.after_id)
        await self.jobs.append_logs(job.id, result.logs)
        await self.jobs.touch(job.id)
        if result.has_more:
            return StepRequest(
                job_id=job.id, mode=job.mode, stage=PipelineStage.HISTORY,
                after_id=result.last_id, attempt=request.attempt,
            )
        return await self._advance(job, request, PipelineStage.RECONCILE)

    async def _reconcile(self, job: SyncJob, request: StepRequest) -> Optional[StepRequest]:
        settings = await self.store.get_settings()
        result = await self.reconciler.reconcile_batch(job, settings, after_id=request.after_id)
        await self.jobs.append_logs(job.id, result.logs)
        await self.jobs.touch(job.id)
        if result.has_more:
            return StepRequest(
                job_id=job.id, mode=job.mode, stage=PipelineStage.RECONCILE,
                after_id=result.last_id, attempt=request.attempt,
            )
        return await self._advance(job, request, PipelineStage.FINALIZE)

    async def _finalize(self, job: SyncJob, request: StepRequest) -> None:
        fresh = await self.jobs.get_job(job.id) or job
        if await self.jobs.complete(job.id, attempt=request.attempt):
            await self.jobs.append_logs(job.id, [
                f"Sync completed: {fresh.new_contacts_added} new contacts, "
                f"{fresh.orders_updated_count} orders updated."
            ])
            logger.info(f"Sync job {job.id} completed ({fresh.new_contacts_added} new contacts)")

    async def _advance(self, job: SyncJob, request: StepRequest, stage: str) -> StepRequest:
        await self.jobs.advance_stage(job.id, stage, attempt=request.attempt)
        await self.jobs.append_logs(job.id, [f"Entering {stage} stage."])
        return StepRequest(job_id=job.id, mode=job.mode, stage=stage, attempt=request.attempt)


class ContinuationDriver:
    """Single consumer over a bounded asyncio queue of StepRequests."""

    def __init__(self, pipeline: SyncPipeline, maxsize: int = None):
        self.pipeline = pipeline
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or config.WORKER_QUEUE_SIZE)
        self._task: Optional[asyncio.Task] = None

    def enqueue(self, request: StepRequest) -> None:
        """Fire-and-forget. Raises asyncio.QueueFull when the queue is saturated."""
        self.queue.put_nowait(request)

    async def _process(self, request: StepRequest) -> None:
        try:
            next_request = await self.pipeline.run_step(request)
        except Exception as e:
            # run_step fails the job itself; this only keeps the consumer alive
            logger.error(f"Worker step for job {request.job_id} raised: {e}")
            return
        if not next_request:
            return
        try:
            self.queue.put_nowait(next_request)
        except asyncio.QueueFull:
            logger.error(f"Worker queue full; failing job {next_request.job_id}")
            await self.pipeline.jobs.fail(next_request.job_id, "Worker queue is full", attempt=next_request.attempt)

    async def _consume(self):
        while True:
            request = await self.queue.get()
            try:
                await self._process(request)
            finally:
                self.queue.task_done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._consume())
            logger.info("Sync worker started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sync worker stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_until_idle(self, max_steps: int = 100_000) -> int:
        """Drain the queue inline, including the follow-up steps it produces. Returns steps run."""
        steps = 0
        while not self.queue.empty() and steps < max_steps:
            request = self.queue.get_nowait()
            try:
                await self._process(request)
            finally:
                self.queue.task_done()
            steps += 1
        return steps


class SyncService:
    """Trigger surface used by the HTTP routes and the schedule loop."""

    def __init__(self, jobs: JobStateMachine, driver: ContinuationDriver, store=None, commerce=None):
        self.jobs = jobs
        self.driver = driver
        self.store = store
        self.commerce = commerce

    async def trigger(
        self, mode: str, trigger: str = "manual", user_id: str = None, record_limit: int = None
    ) -> SyncJob:
        """Create a job and queue its first page. Returns without waiting for any work."""
        job = await self.jobs.create_job(mode, trigger=trigger, user_id=user_id, record_limit=record_limit)
        if job.status == JobStatus.SKIPPED:
            return job
        request = StepRequest(job_id=job.id, mode=job.mode, stage=PipelineStage.INGEST, page=1, attempt=job.attempt)
        return await self._enqueue(job, request)

    async def continue_job(self, job_id: str) -> SyncJob:
        """Re-issue a failed job from the page after its cursor, or from the start of its stage."""
        job = await self.jobs.resume(job_id)
        if job.stage == PipelineStage.INGEST:
            request = StepRequest(
                job_id=job.id, mode=job.mode, stage=job.stage, page=job.cursor_page + 1, attempt=job.attempt
            )
        else:
            request = StepRequest(job_id=job.id, mode=job.mode, stage=job.stage, attempt=job.attempt)
        return await self._enqueue(job, request)

    async def cancel(self, job_id: str) -> bool:
        return await self.jobs.cancel(job_id)

    async def stats(self) -> dict:
        total_imported = await self.store.count_contacts()
        total_available = await self.commerce.count_contacts()
        return {"totalImported": total_imported, "totalAvailable": total_available}

    async def _enqueue(self, job: SyncJob, request: StepRequest) -> SyncJob:
        try:
            self.driver.enqueue(request)
        except asyncio.QueueFull:
            logger.error(f"Worker queue full; failing job {job.id}")
            await self.jobs.fail(job.id, "Worker queue is full")
            return await self.jobs.get_job(job.id) or job
        return job


def build_sync_service(supabase) -> SyncService:
    """Wire the pipeline from process configuration."""
    store = RecordStore(supabase)
    commerce = CommerceClient()
    marketing = MarketingClient()
    jobs = JobStateMachine(supabase)
    pipeline = SyncPipeline(
        jobs=jobs,
        store=store,
        paginator=ContactPaginator(commerce),
        ingest=IngestStage(store, commerce),
        refresher=OrderRefresher(store, commerce),
        reconciler=DownstreamReconciler(store, marketing),
    )
    return SyncService(jobs, ContinuationDriver(pipeline), store=store, commerce=commerce)


async def start_schedule_loop(service: SyncService, interval_seconds: int) -> asyncio.Task:
    """
    Trigger an incremental sync every `interval_seconds`.
    A tick that finds another job active records a skipped job and waits for the next tick.
    """
    global _schedule_task
    stop_schedule_loop()

    async def _loop():
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                job = await service.trigger(SyncMode.INCREMENTAL, trigger="schedule")
                if job.status == JobStatus.SKIPPED:
                    logger.info("Scheduled sync skipped: another job is active")
            except asyncio.CancelledError:
                logger.info("Sync schedule loop cancelled")
                break
            except Exception as e:
                logger.error(f"Scheduled sync trigger failed: {e}")

    _schedule_task = asyncio.create_task(_loop())
    logger.info(f"Started sync schedule loop (interval={interval_seconds}s)")
    return _schedule_task


def stop_schedule_loop() -> None:
    global _schedule_task
    if _schedule_task is not None:
        _schedule_task.cancel()
        _schedule_task = None
        logger.info("Stopped sync schedule loop")
