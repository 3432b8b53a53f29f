"""
Tests for scan orchestration: start, stop, reset, status, list, delete.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.archivist.database import get_session
from src.archivist.models import (
    Analysis,
    Job,
    JobStatus,
    Scan,
    ScanStatus,
    SerpResult,
    TagScan,
    TriggerType,
    utc_now_naive,
)
from src.archivist.job_queue import try_claim_job
from src.archivist.storage import update_tags
from src.scheduler.orchestrator import (
    STOP_MESSAGE,
    ScanOutcome,
    delete_scan,
    get_scan_status,
    list_scans,
    reset_stuck_scan,
    start_scan,
    stop_scan,
)
from tests.test_helpers import add_result, count_rows, create_job, create_project, create_scan, get_row, tag_counts


async def _jobs(scan_id):
    async with get_session() as session:
        result = await session.execute(select(Job).where(Job.scan_id == scan_id).order_by(Job.id))
        return result.scalars().all()


class TestStartScan:
    """A scan is created with one pending job per keyword x source."""

    @pytest.mark.asyncio
    async def test_creates_task_list(self, project):
        result = await start_scan(project.slug, TriggerType.API)

        assert result.ok
        scan_id = result.payload["scan_id"]
        assert result.payload["total_tasks"] == 4
        assert result.payload["date_from"] is None

        scan = await get_row(Scan, scan_id)
        assert scan.status == ScanStatus.RUNNING.value
        assert scan.trigger_type == "api"
        assert scan.completed_tasks == 0

        jobs = await _jobs(scan_id)
        assert {(j.keyword, j.source) for j in jobs} == {
            ("acme", "google_organic"),
            ("acme", "google_news"),
            ("acme sostenibile", "google_organic"),
            ("acme sostenibile", "google_news"),
        }
        assert all(j.status == JobStatus.PENDING.value and j.retry_count == 0 for j in jobs)

    @pytest.mark.asyncio
    async def test_unknown_project(self, db):
        result = await start_scan("missing")
        assert result.outcome == ScanOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_no_keywords(self, db):
        await create_project(slug="empty", keywords=["  "])
        result = await start_scan("empty")
        assert result.outcome == ScanOutcome.INVALID
        assert await count_rows(Scan) == 0

    @pytest.mark.asyncio
    async def test_no_sources(self, db):
        await create_project(slug="nosrc", sources=[])
        result = await start_scan("nosrc")
        assert result.outcome == ScanOutcome.INVALID

    @pytest.mark.asyncio
    async def test_incremental_window(self, project):
        previous_end = datetime(2026, 9, 1, 6, 0)
        await create_scan(
            project,
            status=ScanStatus.COMPLETED.value,
            completed_at_offset_days=3,
            date_to=previous_end,
        )
        scan_date = datetime(2026, 10, 1, 6, 0)

        result = await start_scan(project.slug, scan_date=scan_date)

        assert result.payload["date_from"] == previous_end
        assert result.payload["date_to"] == scan_date

    @pytest.mark.asyncio
    async def test_running_scans_do_not_set_window(self, project):
        await create_scan(project, status=ScanStatus.RUNNING.value, date_to=datetime(2026, 9, 1))
        result = await start_scan(project.slug)
        assert result.payload["date_from"] is None


class TestStopScan:
    """Stopping fails every non-terminal job and the scan itself."""

    @pytest.mark.asyncio
    async def test_stop(self, project):
        scan_id = (await start_scan(project.slug)).payload["scan_id"]
        jobs = await _jobs(scan_id)
        await try_claim_job(jobs[0].id)

        result = await stop_scan(scan_id)

        assert result.ok
        assert result.payload["jobs_cancelled"] == 4
        for job in await _jobs(scan_id):
            assert job.status == JobStatus.FAILED.value
            assert job.error_message == STOP_MESSAGE

        scan = await get_row(Scan, scan_id)
        assert scan.status == ScanStatus.FAILED.value
        assert scan.completed_at is not None

    @pytest.mark.asyncio
    async def test_stop_twice_conflicts(self, project):
        scan_id = (await start_scan(project.slug)).payload["scan_id"]
        await stop_scan(scan_id)
        assert (await stop_scan(scan_id)).outcome == ScanOutcome.CONFLICT

    @pytest.mark.asyncio
    async def test_completion_after_read_is_kept(self, project):
        scan = await create_scan(project, status=ScanStatus.COMPLETED.value, total_tasks=1, completed_tasks=1)
        job = await create_job(scan, status=JobStatus.COMPLETED.value)
        # The status read still sees the scan running
        stale = Scan(id=scan.id, project_id=project.id, status=ScanStatus.RUNNING.value)

        with patch.object(AsyncSession, "get", new=AsyncMock(return_value=stale)):
            result = await stop_scan(scan.id)

        assert result.outcome == ScanOutcome.CONFLICT
        assert (await get_row(Scan, scan.id)).status == ScanStatus.COMPLETED.value
        assert (await get_row(Job, job.id)).status == JobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_stop_missing(self, db):
        assert (await stop_scan(999)).outcome == ScanOutcome.NOT_FOUND


class TestResetStuckScan:

    @pytest.mark.asyncio
    async def test_processing_jobs_return_to_pending(self, project):
        scan = await create_scan(project, total_tasks=2)
        stuck = await create_job(scan, status=JobStatus.PROCESSING.value, started_at=utc_now_naive(), retry_count=1)
        done = await create_job(scan, keyword="done", status=JobStatus.COMPLETED.value)

        result = await reset_stuck_scan(scan.id)

        assert result.payload["jobs_reset"] == 1
        assert result.payload["completed"] is False
        stuck_row = await get_row(Job, stuck.id)
        assert stuck_row.status == JobStatus.PENDING.value
        assert stuck_row.retry_count == 1
        assert (await get_row(Job, done.id)).status == JobStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_finished_scan_is_completed(self, project):
        scan = await create_scan(project, total_tasks=1, completed_tasks=1)
        result = await reset_stuck_scan(scan.id)
        assert result.payload["completed"] is True
        assert (await get_row(Scan, scan.id)).status == ScanStatus.COMPLETED.value


class TestScanStatus:

    @pytest.mark.asyncio
    async def test_counts_and_progress(self, project):
        scan = await create_scan(project, total_tasks=4, completed_tasks=1)
        await create_job(scan, status=JobStatus.FAILED.value)
        await create_job(scan, keyword="b")
        await create_job(scan, keyword="c")
        await create_job(scan, keyword="d", status=JobStatus.PROCESSING.value, started_at=utc_now_naive())

        result = await get_scan_status(scan.id)

        assert result.ok
        assert result.payload["progress"] == 25
        assert result.payload["failed_tasks"] == 1
        assert result.payload["pending_tasks"] == 2
        assert result.payload["processing_tasks"] == 1
        assert result.payload["status"] == ScanStatus.RUNNING.value

    @pytest.mark.asyncio
    async def test_status_runs_completion_check(self, project):
        scan = await create_scan(project, total_tasks=2, completed_tasks=2)
        result = await get_scan_status(scan.id)
        assert result.payload["status"] == ScanStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_list_scans_newest_first(self, project):
        first = await create_scan(project, status=ScanStatus.COMPLETED.value, created_at=utc_now_naive() - timedelta(days=1))
        second = await create_scan(project)
        await add_result(first, "https://news.it/a")

        result = await list_scans(project.slug)

        scans = result.payload["scans"]
        assert [s["id"] for s in scans] == [second.id, first.id]
        assert scans[1]["results_count"] == 1
        assert (await list_scans("missing")).outcome == ScanOutcome.NOT_FOUND


class TestDeleteScan:

    @pytest.mark.asyncio
    async def test_running_scan_cannot_be_deleted(self, project):
        scan = await create_scan(project, total_tasks=1)
        assert (await delete_scan(scan.id)).outcome == ScanOutcome.CONFLICT

    @pytest.mark.asyncio
    async def test_cascade_and_tag_rebuild(self, project):
        keep = await create_scan(project, status=ScanStatus.COMPLETED.value)
        drop = await create_scan(project, status=ScanStatus.COMPLETED.value)
        await add_result(keep, "https://news.it/a", themes=["prezzi"])
        await add_result(drop, "https://news.it/b", themes=["prezzi", "qualità"])
        await create_job(drop, status=JobStatus.COMPLETED.value)
        async with get_session() as session:
            await update_tags(session, project.id, keep.id, {"prezzi": 1})
            await update_tags(session, project.id, drop.id, {"prezzi": 1, "qualità": 1})

        result = await delete_scan(drop.id)

        assert result.ok
        assert result.payload["results_deleted"] == 1
        assert await get_row(Scan, drop.id) is None
        assert await count_rows(Job, Job.scan_id == drop.id) == 0
        assert await count_rows(SerpResult) == 1
        assert await count_rows(Analysis) == 1
        assert await count_rows(TagScan, TagScan.scan_id == drop.id) == 0
        assert await tag_counts(project.id) == {"prezzi": 1}
