"""
Job Store - the job_queue table used as a work queue.

There is no broker. Every state transition is a single conditional UPDATE
scoped by the row's current status, and the affected rowcount decides who won:

    pending    -> processing   claim (one winner per job)
    processing -> completed    complete_job
    processing -> pending      retry_job / stale reclaim
    processing -> failed       fail_job
    pending|processing -> failed   stop (scheduler.orchestrator.stop_scan)

Terminal rows (completed, failed) never match any of these WHERE clauses, so
they can never be re-claimed.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update, func, or_

from .database import get_session
from .models import Job, JobStatus, Scan, utc_now_naive
from ..config.settings import settings

logger = logging.getLogger(__name__)

STALE_JOB_MESSAGE = "Reclaimed after {minutes} min in processing (worker presumed dead)"


async def reclaim_stale_jobs(stale_minutes: Optional[int] = None) -> int:
    """Put jobs abandoned in 'processing' back to 'pending'.

    A job is stale when it has been processing longer than stale_minutes.
    retry_count is left alone: a dead worker is not a task failure.

    Returns the number of jobs reclaimed.
    """
    minutes = stale_minutes if stale_minutes is not None else settings.stale_job_minutes
    cutoff = utc_now_naive() - timedelta(minutes=minutes)

    async with get_session() as session:
        result = await session.execute(
            update(Job)
            .where(
                Job.status == JobStatus.PROCESSING.value,
                or_(Job.started_at < cutoff, Job.started_at.is_(None)),
            )
            .values(
                status=JobStatus.PENDING.value,
                started_at=None,
                error_message=STALE_JOB_MESSAGE.format(minutes=minutes),
            )
        )
        reclaimed = result.rowcount or 0

    if reclaimed:
        logger.warning(f"STALE_JOB_RECLAIMED: {reclaimed} job(s) stuck >{minutes}min reset to pending")
    return reclaimed


async def try_claim_job(job_id: int) -> bool:
    """Compare-and-swap pending -> processing for one job.

    Returns True only for the single caller whose UPDATE hit the row.
    """
    async with get_session() as session:
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PENDING.value)
            .values(status=JobStatus.PROCESSING.value, started_at=utc_now_naive())
        )
        return (result.rowcount or 0) == 1


async def claim_next_job() -> Optional[Job]:
    """Claim the oldest pending job (FIFO by created_at).

    Returns None when the queue is empty or another worker won the race for
    the selected row. Losing the race is not retried here; the caller reports
    no_jobs and its driver loop simply calls again.
    """
    async with get_session() as session:
        result = await session.execute(
            select(Job.id)
            .where(Job.status == JobStatus.PENDING.value)
            .order_by(Job.created_at, Job.id)
            .limit(1)
        )
        job_id = result.scalar_one_or_none()

    if job_id is None:
        return None

    if not await try_claim_job(job_id):
        logger.info(f"Job {job_id} claimed by another worker")
        return None

    async with get_session() as session:
        return await session.get(Job, job_id)


async def complete_job(job_id: int) -> bool:
    """processing -> completed. False if the job was stopped meanwhile."""
    async with get_session() as session:
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
            .values(status=JobStatus.COMPLETED.value, completed_at=utc_now_naive())
        )
        return (result.rowcount or 0) == 1


async def retry_job(job_id: int, error_message: str) -> bool:
    """processing -> pending with retry_count + 1."""
    async with get_session() as session:
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
            .values(
                status=JobStatus.PENDING.value,
                retry_count=Job.retry_count + 1,
                error_message=error_message,
                started_at=None,
            )
        )
        return (result.rowcount or 0) == 1


async def fail_job(job_id: int, error_message: str) -> bool:
    """processing -> failed (terminal)."""
    async with get_session() as session:
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
            .values(
                status=JobStatus.FAILED.value,
                error_message=error_message,
                completed_at=utc_now_naive(),
            )
        )
        return (result.rowcount or 0) == 1


async def increment_scan_progress(scan_id: int) -> bool:
    """Atomically bump completed_tasks, capped at total_tasks.

    Done as `completed_tasks = completed_tasks + 1` in SQL so concurrent
    workers finishing jobs of the same scan never lose an increment.
    """
    async with get_session() as session:
        result = await session.execute(
            update(Scan)
            .where(Scan.id == scan_id, Scan.completed_tasks < Scan.total_tasks)
            .values(completed_tasks=Scan.completed_tasks + 1)
        )
        incremented = (result.rowcount or 0) == 1

    if not incremented:
        logger.warning(f"Scan {scan_id} progress not incremented (already at total_tasks or missing)")
    return incremented


async def count_pending_jobs(scan_id: Optional[int] = None) -> int:
    """Pending jobs across the queue, or for one scan."""
    async with get_session() as session:
        query = select(func.count()).select_from(Job).where(Job.status == JobStatus.PENDING.value)
        if scan_id is not None:
            query = query.where(Job.scan_id == scan_id)
        result = await session.execute(query)
        return result.scalar() or 0


async def count_jobs_by_status(scan_id: int) -> dict[str, int]:
    """{status: count} for one scan, every status present with 0 default."""
    counts = {status.value: 0 for status in JobStatus}
    async with get_session() as session:
        result = await session.execute(
            select(Job.status, func.count())
            .where(Job.scan_id == scan_id)
            .group_by(Job.status)
        )
        for status, count in result.all():
            counts[status] = count
    return counts
