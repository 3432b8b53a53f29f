"""
Tests for the database-backed job queue: claim, transitions, stale reclaim
and scan progress.

Races are exercised deterministically: two sequential compare-and-swap calls
on the same row stand in for two workers.
"""

from datetime import timedelta

import pytest

from src.archivist.job_queue import (
    claim_next_job,
    complete_job,
    count_jobs_by_status,
    count_pending_jobs,
    fail_job,
    increment_scan_progress,
    reclaim_stale_jobs,
    retry_job,
    try_claim_job,
)
from src.archivist.models import Job, JobStatus, Scan, utc_now_naive
from tests.test_helpers import create_job, create_scan, get_row


class TestClaim:
    """pending -> processing has exactly one winner."""

    @pytest.mark.asyncio
    async def test_second_claim_loses(self, project):
        scan = await create_scan(project, total_tasks=1)
        job = await create_job(scan)

        assert await try_claim_job(job.id) is True
        assert await try_claim_job(job.id) is False

        stored = await get_row(Job, job.id)
        assert stored.status == JobStatus.PROCESSING.value
        assert stored.started_at is not None

    @pytest.mark.asyncio
    async def test_claim_next_is_fifo(self, project):
        scan = await create_scan(project, total_tasks=2)
        older = await create_job(scan, keyword="first", created_at=utc_now_naive() - timedelta(minutes=5))
        await create_job(scan, keyword="second")

        claimed = await claim_next_job()
        assert claimed.id == older.id
        assert claimed.status == JobStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_claim_next_empty_queue(self, db):
        assert await claim_next_job() is None

    @pytest.mark.asyncio
    async def test_terminal_jobs_never_claimed(self, project):
        scan = await create_scan(project, total_tasks=2)
        await create_job(scan, status=JobStatus.COMPLETED.value)
        await create_job(scan, status=JobStatus.FAILED.value)

        assert await claim_next_job() is None


class TestTransitions:
    """processing -> completed | pending | failed, all conditional on processing."""

    @pytest.mark.asyncio
    async def test_complete_only_from_processing(self, project):
        scan = await create_scan(project, total_tasks=1)
        job = await create_job(scan)

        assert await complete_job(job.id) is False  # still pending
        await try_claim_job(job.id)
        assert await complete_job(job.id) is True
        assert await complete_job(job.id) is False

        stored = await get_row(Job, job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_retry_increments_retry_count(self, project):
        scan = await create_scan(project, total_tasks=1)
        job = await create_job(scan)
        await try_claim_job(job.id)

        assert await retry_job(job.id, "TimeoutError: boom") is True

        stored = await get_row(Job, job.id)
        assert stored.status == JobStatus.PENDING.value
        assert stored.retry_count == 1
        assert stored.error_message == "TimeoutError: boom"
        assert stored.started_at is None

    @pytest.mark.asyncio
    async def test_fail_is_terminal(self, project):
        scan = await create_scan(project, total_tasks=1)
        job = await create_job(scan)
        await try_claim_job(job.id)

        assert await fail_job(job.id, "gave up") is True
        assert await try_claim_job(job.id) is False
        assert await retry_job(job.id, "again") is False

        stored = await get_row(Job, job.id)
        assert stored.status == JobStatus.FAILED.value


class TestStaleReclaim:
    """Jobs stuck in processing past the threshold go back to pending."""

    @pytest.mark.asyncio
    async def test_reclaims_old_processing_job(self, project):
        scan = await create_scan(project, total_tasks=2)
        stale = await create_job(
            scan,
            status=JobStatus.PROCESSING.value,
            started_at=utc_now_naive() - timedelta(minutes=10),
            retry_count=2,
        )
        fresh = await create_job(
            scan,
            keyword="fresh",
            status=JobStatus.PROCESSING.value,
            started_at=utc_now_naive(),
        )

        assert await reclaim_stale_jobs(stale_minutes=5) == 1

        stale_row = await get_row(Job, stale.id)
        assert stale_row.status == JobStatus.PENDING.value
        assert stale_row.retry_count == 2  # a dead worker is not a task failure
        assert "Reclaimed" in stale_row.error_message

        fresh_row = await get_row(Job, fresh.id)
        assert fresh_row.status == JobStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_nothing_to_reclaim(self, project):
        scan = await create_scan(project, total_tasks=1)
        await create_job(scan)
        assert await reclaim_stale_jobs(stale_minutes=5) == 0


class TestProgress:
    """completed_tasks is incremented atomically and capped at total_tasks."""

    @pytest.mark.asyncio
    async def test_increment_capped(self, project):
        scan = await create_scan(project, total_tasks=2)

        assert await increment_scan_progress(scan.id) is True
        assert await increment_scan_progress(scan.id) is True
        assert await increment_scan_progress(scan.id) is False

        stored = await get_row(Scan, scan.id)
        assert stored.completed_tasks == 2

    @pytest.mark.asyncio
    async def test_counts(self, project):
        scan = await create_scan(project, total_tasks=3)
        await create_job(scan)
        await create_job(scan, keyword="b", status=JobStatus.PROCESSING.value, started_at=utc_now_naive())
        await create_job(scan, keyword="c", status=JobStatus.FAILED.value)

        assert await count_pending_jobs() == 1
        assert await count_pending_jobs(scan.id) == 1

        counts = await count_jobs_by_status(scan.id)
        assert counts == {"pending": 1, "processing": 1, "completed": 0, "failed": 1}
