"""Commerce → Marketing contact sync - Main Server"""
from fastapi import FastAPI, APIRouter, HTTPException, Depends, Header, Query
from starlette.middleware.cors import CORSMiddleware
import logging
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone

import config
from auth_service import verify_token, verify_cron_secret, bearer_token, TokenData
from commerce_client import CommerceAPIError
from db import get_supabase
from job_state import JobConflictError, JobNotFoundError
from job_status import JobStatus, SyncMode
from worker import SyncService, build_sync_service, start_schedule_loop, stop_schedule_loop

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="StoreSync - Commerce to Marketing contact sync")
api_router = APIRouter(prefix="/api")
sync_router = APIRouter(prefix="/api/sync")

_sync_service: Optional[SyncService] = None


# ============ Pydantic Models ============

class TriggerRequest(BaseModel):
    mode: str = SyncMode.INCREMENTAL
    job_id: Optional[str] = Field(None, alias="jobId")
    record_limit: Optional[int] = Field(None, alias="recordLimit", gt=0)


class TriggerResponse(BaseModel):
    jobId: str
    status: str


# ============ Dependencies ============

def get_sync_service() -> SyncService:
    """Process-wide SyncService, built on first use."""
    global _sync_service
    if _sync_service is None:
        _sync_service = build_sync_service(get_supabase())
    return _sync_service


async def get_current_user(authorization: Optional[str] = Header(None)) -> TokenData:
    """Verify JWT token and return current user data"""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    token = bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    token_data = verify_token(token)
    if not token_data:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return token_data


async def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    if not verify_cron_secret(bearer_token(authorization)):
        raise HTTPException(status_code=401, detail="Invalid cron secret")


# ============ Sync Endpoints ============

@sync_router.post("/trigger", response_model=TriggerResponse)
async def trigger_sync(
    request: TriggerRequest,
    current_user: TokenData = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
):
    """Start a sync run, or continue a failed one when jobId is given. Returns immediately."""
    if request.job_id:
        try:
            job = await service.continue_job(request.job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Sync job not found")
        except JobConflictError as e:
            raise HTTPException(status_code=409, detail=str(e))
        logger.info(f"User {current_user.user_id} continued sync job {job.id}")
        return TriggerResponse(jobId=job.id, status=job.status)

    if not SyncMode.is_valid(request.mode):
        raise HTTPException(status_code=400, detail=f"mode must be one of {sorted(SyncMode.ALL)}")

    job = await service.trigger(
        request.mode, trigger="manual", user_id=current_user.user_id, record_limit=request.record_limit
    )
    logger.info(f"User {current_user.user_id} triggered {request.mode} sync: job {job.id} is {job.status}")
    return TriggerResponse(jobId=job.id, status=job.status)


@sync_router.post("/cron", response_model=TriggerResponse)
async def cron_sync(
    _: None = Depends(require_cron_secret),
    service: SyncService = Depends(get_sync_service),
):
    """Scheduled incremental sync. Records a skipped job when another run is active."""
    job = await service.trigger(SyncMode.INCREMENTAL, trigger="schedule")
    if job.status == JobStatus.SKIPPED:
        logger.info(f"Cron sync skipped: job {job.id}")
    return TriggerResponse(jobId=job.id, status=job.status)


@sync_router.get("/jobs")
async def list_jobs(
    limit: int = Query(20, ge=1, le=100),
    current_user: TokenData = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
):
    jobs = await service.jobs.list_jobs(limit=limit)
    return {"jobs": [j.to_dict() for j in jobs]}


@sync_router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    current_user: TokenData = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
):
    job = await service.jobs.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return job.to_dict()


@sync_router.get("/jobs/{job_id}/logs")
async def get_job_logs(
    job_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(200, ge=1, le=1000),
    current_user: TokenData = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
):
    job = await service.jobs.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found")
    logs = await service.jobs.get_logs(job_id, offset=offset, limit=limit)
    return {"jobId": job_id, "offset": offset, "logs": logs}


@sync_router.post("/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    current_user: TokenData = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
):
    job = await service.jobs.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found")
    if not await service.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Sync job is already {job.status}")
    logger.info(f"User {current_user.user_id} cancelled sync job {job_id}")
    return {"jobId": job_id, "status": JobStatus.CANCELLED}


@sync_router.get("/stats")
async def sync_stats(
    current_user: TokenData = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
):
    try:
        return await service.stats()
    except CommerceAPIError as e:
        logger.error(f"Stats lookup failed: {e}")
        raise HTTPException(status_code=502, detail="Commerce API unavailable")


# ============ Health Check ============

@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Include routers and add middleware
app.include_router(api_router)
app.include_router(sync_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    if not (config.SUPABASE_URL and config.SUPABASE_SERVICE_KEY):
        logger.warning("Supabase is not configured; sync worker not started")
        return
    service = get_sync_service()
    # No worker owns active rows from a previous process
    await service.jobs.fail_interrupted_jobs()
    service.driver.start()
    if config.SYNC_INTERVAL_MINUTES > 0:
        await start_schedule_loop(service, config.SYNC_INTERVAL_MINUTES * 60)


@app.on_event("shutdown")
async def shutdown():
    stop_schedule_loop()
    if _sync_service is not None:
        await _sync_service.driver.stop()
