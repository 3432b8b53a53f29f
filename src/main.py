"""
SERP Sentinel - Main Application Entry Point

Brand monitoring engine: scans fan out into keyword x source jobs on a
database-backed queue, workers fetch/extract/analyse each job, and
maintenance agents keep the accumulated analysis clean.

Drivers exposed here:
- POST /scans/trigger        creates a scan and starts a background runner
- POST /scans/{id}/run       budgeted loop in the request
- POST /worker/process-one   single step for client-side polling
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

from fastapi import FastAPI, HTTPException, Depends, Security, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .agents import (
    add_to_blacklist,
    delete_results_by_ids,
    list_blacklist,
    purge_off_topic_results,
    regenerate_briefing,
    remove_from_blacklist,
    reset_context_filter,
    run_context_filter_batch,
    run_tag_normalizer,
)
from .archivist import get_db, close_db, init_db, Project, Scan, ScanStatus, TriggerType
from .archivist.database import get_pool_status
from .archivist.storage import get_project_by_slug
from .common.dataforseo_client import close_dataforseo_client
from .scheduler import setup_scheduler, shutdown_scheduler, start_stale_monitor, stop_stale_monitor
from .scheduler import jobs as scheduler_module
from .scheduler.orchestrator import (
    ScanActionResult,
    ScanOutcome,
    delete_scan,
    get_scan_status,
    list_scans,
    reset_stuck_scan,
    start_scan,
    stop_scan,
)
from .scheduler.stale_monitor import is_stale_monitor_running
from .worker import process_one_job, run_until_budget


# ----- API Key Security -----

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)):
    """Verify API key for protected endpoints."""
    if not api_key:
        raise HTTPException(status_code=401, detail="API key required")

    # Validate against configured API keys
    if api_key not in settings.valid_api_keys:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    print("Starting SERP Sentinel...")

    # Create tables if migrations have not been run (local/dev)
    try:
        await init_db()
        print("Database schema ready")
    except Exception as e:
        print(f"Warning: Could not initialize database: {e}")

    try:
        setup_scheduler()
        print("Scheduler started - scheduled scans, queue drain and agents enabled")
    except Exception as e:
        print(f"Warning: Could not start scheduler: {e}")

    try:
        await start_stale_monitor()
        print("StaleJobMonitor started - reclaiming abandoned jobs")
    except Exception as e:
        print(f"Warning: Could not start StaleJobMonitor: {e}")

    yield

    # Graceful shutdown - close all resources
    print("Shutting down...")
    shutdown_scheduler()

    try:
        await stop_stale_monitor()
        print("StaleJobMonitor stopped")
    except Exception as e:
        print(f"Warning: Error stopping StaleJobMonitor: {e}")

    try:
        await close_db()
        print("Database connections closed")
    except Exception as e:
        print(f"Warning: Error closing database: {e}")

    try:
        await close_dataforseo_client()
        print("DataForSEO client closed")
    except Exception as e:
        print(f"Warning: Error closing DataForSEO client: {e}")


app = FastAPI(
    title="SERP Sentinel",
    description="Brand monitoring over web and news search results",
    version="1.0.0",
    lifespan=lifespan,
)

# GZip compression for responses > 500 bytes
app.add_middleware(GZipMiddleware, minimum_size=500)

# CORS middleware for the dashboard
_allowed_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
if settings.frontend_url:
    _allowed_origins.append(settings.frontend_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----- Helpers -----

OUTCOME_STATUS_CODES = {
    ScanOutcome.NOT_FOUND: 404,
    ScanOutcome.INVALID: 400,
    ScanOutcome.CONFLICT: 409,
}


def raise_for_outcome(result: ScanActionResult) -> None:
    """Map a non-ok orchestrator outcome to an HTTP error."""
    if not result.ok:
        raise HTTPException(status_code=OUTCOME_STATUS_CODES[result.outcome], detail=result.message)


async def get_project_or_404(db: AsyncSession, slug: str) -> Project:
    project = await get_project_by_slug(db, slug)
    if project is None:
        raise HTTPException(status_code=404, detail=f"Project '{slug}' not found")
    return project


# ----- Response Models -----

class PoolStatus(BaseModel):
    """Database connection pool status for monitoring."""
    pool_size: int
    checked_in: int
    checked_out: int
    overflow: int


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    scheduler_running: bool
    stale_monitor_running: bool
    pool_status: Optional[PoolStatus] = None


class ScanTriggerRequest(BaseModel):
    project_slug: str = Field(..., min_length=1)
    scan_date: Optional[datetime] = None

    @field_validator("scan_date")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Stored timestamps are naive UTC."""
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class ScanTriggerResponse(BaseModel):
    scan_id: int
    total_tasks: int
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    message: str


class ScanResponse(BaseModel):
    id: int
    project_id: int
    trigger_type: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_tasks: int
    completed_tasks: int
    progress: int
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    ai_briefing: Optional[str] = None
    results_count: Optional[int] = None


class ScanStatusResponse(ScanResponse):
    failed_tasks: int
    pending_tasks: int
    processing_tasks: int


class ScanListResponse(BaseModel):
    project: str
    scans: List[ScanResponse]


class ActionResponse(BaseModel):
    """Generic response for scan actions (stop, reset, delete)."""
    success: bool
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


class DriverReportResponse(BaseModel):
    scan_id: Optional[int] = None
    processed: int = 0
    errors: int = 0
    steps: int = 0
    results_saved: int = 0
    pending_count: int = 0
    elapsed_seconds: float = 0.0
    stop_reason: str = "not_running"
    message: Optional[str] = None


class WorkerStepResponse(BaseModel):
    status: str
    pending_count: int
    job_id: Optional[int] = None
    keyword: Optional[str] = None
    source: Optional[str] = None
    results_saved: int = 0
    error: Optional[str] = None


class FilterRequest(BaseModel):
    scan_id: Optional[int] = None


class ContextFilterResponse(BaseModel):
    evaluated: int
    off_topic: int
    on_topic: int
    remaining: int
    errors: List[str]


class FilterResetResponse(BaseModel):
    reset: int


class DeleteResultsRequest(BaseModel):
    result_ids: List[int] = Field(..., min_length=1)


class PurgeResponse(BaseModel):
    deleted: int


class TagNormalizerResponse(BaseModel):
    total_tags: int
    groups_found: int
    tags_merged: int
    tags_remaining: int
    errors: List[str]


class BriefingResponse(BaseModel):
    briefing: Optional[str] = None
    message: str


class BlacklistRequest(BaseModel):
    tag: str = Field(..., min_length=1)

    @field_validator("tag")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Tag name required")
        return v


class BlacklistEntry(BaseModel):
    id: int
    tag_name: str
    created_at: datetime


class BlacklistResponse(BaseModel):
    blacklist: List[BlacklistEntry]


class BlacklistAddResponse(BaseModel):
    tag: str
    blacklisted: bool
    deleted: int


class BlacklistRemoveResponse(BaseModel):
    tag: str
    removed: bool


class SchedulerJobStatus(BaseModel):
    id: str
    name: str
    next_run: Optional[str] = None
    last_run: Optional[str] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    last_duration_seconds: Optional[float] = None


class SchedulerStatusResponse(BaseModel):
    status: str
    timezone: str
    jobs: List[SchedulerJobStatus]


# ----- Health -----

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint with pool monitoring."""
    try:
        pool_status = PoolStatus(**get_pool_status())
    except Exception as e:
        logger.warning(f"Failed to get pool status: {e}")
        pool_status = None

    sched = scheduler_module.scheduler
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        scheduler_running=bool(sched and sched.running),
        stale_monitor_running=is_stale_monitor_running(),
        pool_status=pool_status,
    )


# ----- Scans -----

@app.post("/scans/trigger", response_model=ScanTriggerResponse, status_code=201)
async def trigger_scan(
    request: ScanTriggerRequest,
    background_tasks: BackgroundTasks,
    api_key: str = Depends(verify_api_key),
):
    """
    Create a scan for a project and start processing it in the background.

    The background runner is one budgeted driver loop; anything left after
    the budget is picked up by the queue_drain job or client polling.
    """
    result = await start_scan(request.project_slug, TriggerType.API, request.scan_date)
    raise_for_outcome(result)

    scan_id = result.payload["scan_id"]
    background_tasks.add_task(run_until_budget, label=f"scan {scan_id}")

    return ScanTriggerResponse(
        scan_id=scan_id,
        total_tasks=result.payload["total_tasks"],
        date_from=result.payload["date_from"],
        date_to=result.payload["date_to"],
        message=result.message,
    )


@app.post("/scans/{scan_id}/run", response_model=DriverReportResponse)
async def run_scan(
    scan_id: int,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Process queued jobs until the queue drains or the time budget is spent."""
    scan = await db.get(Scan, scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    if scan.status != ScanStatus.RUNNING.value:
        return DriverReportResponse(scan_id=scan_id, message=f"Scan is not running ({scan.status})")

    report = await run_until_budget(label=f"scan {scan_id}")
    return DriverReportResponse(scan_id=scan_id, **report.to_dict())


@app.post("/scans/{scan_id}/stop", response_model=ActionResponse)
async def stop_scan_endpoint(scan_id: int, api_key: str = Depends(verify_api_key)):
    result = await stop_scan(scan_id)
    raise_for_outcome(result)
    return ActionResponse(success=True, message=result.message, data=result.payload)


@app.post("/scans/{scan_id}/reset-stuck", response_model=ActionResponse)
async def reset_stuck_scan_endpoint(scan_id: int, api_key: str = Depends(verify_api_key)):
    """Return the scan's processing jobs to pending, regardless of age."""
    result = await reset_stuck_scan(scan_id)
    raise_for_outcome(result)
    return ActionResponse(success=True, message=result.message, data=result.payload)


@app.get("/scans/{scan_id}/status", response_model=ScanStatusResponse)
async def scan_status(scan_id: int, api_key: str = Depends(verify_api_key)):
    """Scan progress. Runs the completion check before reading."""
    result = await get_scan_status(scan_id)
    raise_for_outcome(result)
    return ScanStatusResponse(**result.payload)


@app.delete("/scans/{scan_id}", response_model=ActionResponse)
async def delete_scan_endpoint(scan_id: int, api_key: str = Depends(verify_api_key)):
    result = await delete_scan(scan_id)
    raise_for_outcome(result)
    return ActionResponse(success=True, message=result.message, data=result.payload)


@app.get("/projects/{slug}/scans", response_model=ScanListResponse)
async def project_scans(slug: str, api_key: str = Depends(verify_api_key)):
    result = await list_scans(slug)
    raise_for_outcome(result)
    return ScanListResponse(**result.payload)


# ----- Worker -----

@app.post("/worker/process-one", response_model=WorkerStepResponse)
async def worker_process_one(api_key: str = Depends(verify_api_key)):
    """Run a single worker step (client-side polling driver)."""
    result = await process_one_job()
    return WorkerStepResponse(**result.to_dict())


# ----- Context Filter -----

@app.post("/projects/{slug}/filter/batch", response_model=ContextFilterResponse)
async def filter_batch(
    slug: str,
    request: Optional[FilterRequest] = None,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Evaluate one batch; call again while remaining > 0."""
    project = await get_project_or_404(db, slug)
    scan_id = request.scan_id if request else None
    result = await run_context_filter_batch(project, scan_id)
    return ContextFilterResponse(**result.to_dict())


@app.post("/projects/{slug}/filter/reset", response_model=FilterResetResponse)
async def filter_reset(
    slug: str,
    request: Optional[FilterRequest] = None,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    project = await get_project_or_404(db, slug)
    reset = await reset_context_filter(project, request.scan_id if request else None)
    return FilterResetResponse(reset=reset)


@app.post("/projects/{slug}/filter/purge", response_model=PurgeResponse)
async def filter_purge(
    slug: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Delete results the context filter marked off-topic."""
    project = await get_project_or_404(db, slug)
    deleted = await purge_off_topic_results(project)
    return PurgeResponse(deleted=deleted)


@app.post("/projects/{slug}/results/delete", response_model=PurgeResponse)
async def delete_results_endpoint(
    slug: str,
    request: DeleteResultsRequest,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Delete specific results. Ids from other projects are skipped."""
    project = await get_project_or_404(db, slug)
    deleted = await delete_results_by_ids(project.id, request.result_ids)
    return PurgeResponse(deleted=deleted)


# ----- Tags & Briefing -----

@app.post("/projects/{slug}/normalize-tags", response_model=TagNormalizerResponse)
async def normalize_tags(
    slug: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    project = await get_project_or_404(db, slug)
    result = await run_tag_normalizer(project)
    return TagNormalizerResponse(**result.to_dict())


@app.post("/projects/{slug}/regenerate-briefing", response_model=BriefingResponse)
async def regenerate_briefing_endpoint(
    slug: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    project = await get_project_or_404(db, slug)
    briefing = await regenerate_briefing(project)
    if briefing is None:
        return BriefingResponse(
            briefing=None,
            message="Briefing not generated: needs two completed scans and a working AI service",
        )
    return BriefingResponse(briefing=briefing, message="Briefing regenerated")


@app.get("/projects/{slug}/tag-blacklist", response_model=BlacklistResponse)
async def get_tag_blacklist(
    slug: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    project = await get_project_or_404(db, slug)
    return BlacklistResponse(blacklist=await list_blacklist(project))


@app.post("/projects/{slug}/tag-blacklist", response_model=BlacklistAddResponse)
async def add_tag_blacklist(
    slug: str,
    request: BlacklistRequest,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Blacklist a tag and delete every result carrying it."""
    project = await get_project_or_404(db, slug)
    return BlacklistAddResponse(**await add_to_blacklist(project, request.tag))


@app.delete("/projects/{slug}/tag-blacklist", response_model=BlacklistRemoveResponse)
async def remove_tag_blacklist(
    slug: str,
    request: BlacklistRequest,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Remove a tag from the blacklist. Deleted results are not restored."""
    project = await get_project_or_404(db, slug)
    removed = await remove_from_blacklist(project, request.tag)
    return BlacklistRemoveResponse(tag=request.tag.strip().lower(), removed=removed)


# ----- Scheduler Status -----

@app.get("/scheduler/status", response_model=SchedulerStatusResponse)
async def get_scheduler_status(api_key: str = Depends(verify_api_key)):
    """Get scheduler status, next run times and last run per job."""
    sched = scheduler_module.scheduler
    if not sched:
        return SchedulerStatusResponse(
            status="not_initialized",
            timezone=settings.scheduler_timezone,
            jobs=[],
        )

    runs = scheduler_module.get_job_runs()
    jobs = []
    for job in sched.get_jobs():
        run = runs.get(job.id, {})
        last_run = run.get("last_run")
        jobs.append(SchedulerJobStatus(
            id=job.id,
            name=job.name,
            next_run=job.next_run_time.isoformat() if job.next_run_time else None,
            last_run=last_run.isoformat() if last_run else None,
            last_status=run.get("last_status"),
            last_error=run.get("last_error"),
            last_duration_seconds=run.get("last_duration_seconds"),
        ))

    return SchedulerStatusResponse(
        status="running" if sched.running else "stopped",
        timezone=settings.scheduler_timezone,
        jobs=jobs,
    )
