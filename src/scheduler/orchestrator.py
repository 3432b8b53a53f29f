"""
Scan orchestrator - create, stop, reset, inspect and delete scans.

start_scan() only writes rows: one Scan plus its keyword x source Job rows,
in a single transaction. Processing is left to the drivers.

Every operation returns a ScanActionResult instead of raising, so HTTP
handlers and scheduler jobs map outcomes without try/except.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, select, update

from ..archivist.database import get_session
from ..archivist.models import (
    Job,
    JobStatus,
    Project,
    Scan,
    ScanStatus,
    SerpResult,
    TagScan,
    TriggerType,
    TERMINAL_JOB_STATUSES,
    utc_now_naive,
)
from ..archivist.storage import delete_results, get_project_by_slug, rebuild_project_tags
from ..archivist.job_queue import count_jobs_by_status
from .completion import check_and_complete_scan

logger = logging.getLogger(__name__)

STOP_MESSAGE = "Scan stopped manually"
RESET_STUCK_MESSAGE = "Reset manually from processing"


class ScanOutcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    CONFLICT = "conflict"


@dataclass
class ScanActionResult:
    outcome: ScanOutcome
    message: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome == ScanOutcome.OK


def serialize_scan(scan: Scan) -> Dict[str, Any]:
    progress = round(scan.completed_tasks / scan.total_tasks * 100) if scan.total_tasks > 0 else 0
    return {
        "id": scan.id,
        "project_id": scan.project_id,
        "trigger_type": scan.trigger_type,
        "status": scan.status,
        "started_at": scan.started_at,
        "completed_at": scan.completed_at,
        "total_tasks": scan.total_tasks,
        "completed_tasks": scan.completed_tasks,
        "progress": progress,
        "date_from": scan.date_from,
        "date_to": scan.date_to,
        "ai_briefing": scan.ai_briefing,
    }


async def _previous_window_end(session, project_id: int) -> Optional[datetime]:
    """date_to of the last completed scan, else its completed_at, else None."""
    result = await session.execute(
        select(Scan.date_to, Scan.completed_at)
        .where(Scan.project_id == project_id, Scan.status == ScanStatus.COMPLETED.value)
        .order_by(Scan.completed_at.desc(), Scan.id.desc())
        .limit(1)
    )
    row = result.first()
    if row is None:
        return None
    return row.date_to or row.completed_at


async def start_scan(
    project_slug: str,
    trigger_type: TriggerType = TriggerType.MANUAL,
    scan_date: Optional[datetime] = None,
) -> ScanActionResult:
    """
    Create a scan and its full task list.

    Args:
        project_slug: Project to scan
        trigger_type: scheduled | manual | api
        scan_date: End of the search window (default now)

    Returns:
        ScanActionResult; payload has scan_id, total_tasks, date_from, date_to
    """
    trigger_type = TriggerType(trigger_type)
    async with get_session() as session:
        project = await get_project_by_slug(session, project_slug)
        if project is None:
            return ScanActionResult(ScanOutcome.NOT_FOUND, f"Project '{project_slug}' not found")

        keywords = [k.strip() for k in (project.keywords or []) if k and k.strip()]
        sources = [s for s in (project.sources or []) if s]
        if not keywords:
            return ScanActionResult(ScanOutcome.INVALID, "No keywords configured")
        if not sources:
            return ScanActionResult(ScanOutcome.INVALID, "No sources configured")

        date_to = scan_date or utc_now_naive()
        date_from = await _previous_window_end(session, project.id)

        scan = Scan(
            project_id=project.id,
            trigger_type=trigger_type.value,
            status=ScanStatus.RUNNING.value,
            started_at=utc_now_naive(),
            total_tasks=len(keywords) * len(sources),
            completed_tasks=0,
            date_from=date_from,
            date_to=date_to,
        )
        session.add(scan)
        await session.flush()

        session.add_all(
            [
                Job(scan_id=scan.id, keyword=keyword, source=source, status=JobStatus.PENDING.value)
                for keyword in keywords
                for source in sources
            ]
        )
        await session.flush()
        scan_id = scan.id
        total_tasks = scan.total_tasks

    window = (
        f"incremental {date_from:%Y-%m-%d} -> {date_to:%Y-%m-%d}"
        if date_from else f"first scan up to {date_to:%Y-%m-%d}"
    )
    logger.info(
        f"Scan {scan_id} created for '{project_slug}' ({trigger_type.value}): "
        f"{len(keywords)} keywords x {len(sources)} sources = {total_tasks} tasks, {window}"
    )
    return ScanActionResult(
        ScanOutcome.OK,
        f"Scan created: {window}",
        {"scan_id": scan_id, "total_tasks": total_tasks, "date_from": date_from, "date_to": date_to},
    )


async def stop_scan(scan_id: int) -> ScanActionResult:
    """Fail every non-terminal job and mark the scan failed.

    Stopped jobs are terminal, so neither the stale reclaimer nor the retry
    path can bring them back.
    """
    now = utc_now_naive()
    async with get_session() as session:
        scan = await session.get(Scan, scan_id)
        if scan is None:
            return ScanActionResult(ScanOutcome.NOT_FOUND, "Scan not found")

        if scan.status != ScanStatus.RUNNING.value:
            return ScanActionResult(ScanOutcome.CONFLICT, "Scan is not running")

        # Conditional on running: a completion flip since the read wins
        scan_result = await session.execute(
            update(Scan)
            .where(Scan.id == scan_id, Scan.status == ScanStatus.RUNNING.value)
            .values(status=ScanStatus.FAILED.value, completed_at=now)
        )
        if (scan_result.rowcount or 0) == 0:
            return ScanActionResult(ScanOutcome.CONFLICT, "Scan is not running")

        jobs_result = await session.execute(
            update(Job)
            .where(Job.scan_id == scan_id, Job.status.notin_(TERMINAL_JOB_STATUSES))
            .values(status=JobStatus.FAILED.value, error_message=STOP_MESSAGE, completed_at=now)
        )

        stopped = jobs_result.rowcount or 0

    logger.info(f"Scan {scan_id} stopped manually ({stopped} job(s) cancelled)")
    return ScanActionResult(ScanOutcome.OK, "Scan stopped", {"scan_id": scan_id, "jobs_cancelled": stopped})


async def reset_stuck_scan(scan_id: int) -> ScanActionResult:
    """Return a running scan's processing jobs to pending, regardless of age.

    Unlike the stale reclaimer this ignores the staleness window; it is an
    operator action for a scan known to be stuck. The completion check runs
    afterwards in case the scan was only waiting on its final flip.
    """
    async with get_session() as session:
        scan = await session.get(Scan, scan_id)
        if scan is None:
            return ScanActionResult(ScanOutcome.NOT_FOUND, "Scan not found")
        if scan.status != ScanStatus.RUNNING.value:
            return ScanActionResult(ScanOutcome.CONFLICT, "Scan is not running")

        result = await session.execute(
            update(Job)
            .where(Job.scan_id == scan_id, Job.status == JobStatus.PROCESSING.value)
            .values(status=JobStatus.PENDING.value, started_at=None, error_message=RESET_STUCK_MESSAGE)
        )
        reset = result.rowcount or 0

    completed = await check_and_complete_scan(scan_id)
    logger.info(f"Scan {scan_id} reset: {reset} job(s) back to pending, completed={completed}")
    return ScanActionResult(
        ScanOutcome.OK,
        f"{reset} job(s) reset",
        {"scan_id": scan_id, "jobs_reset": reset, "completed": completed},
    )


async def get_scan_status(scan_id: int) -> ScanActionResult:
    """Scan progress with per-status job counts. Runs the completion check first."""
    await check_and_complete_scan(scan_id)

    async with get_session() as session:
        scan = await session.get(Scan, scan_id)
        if scan is None:
            return ScanActionResult(ScanOutcome.NOT_FOUND, "Scan not found")
        payload = serialize_scan(scan)

    counts = await count_jobs_by_status(scan_id)
    payload.update(
        {
            "failed_tasks": counts[JobStatus.FAILED.value],
            "pending_tasks": counts[JobStatus.PENDING.value],
            "processing_tasks": counts[JobStatus.PROCESSING.value],
        }
    )
    return ScanActionResult(ScanOutcome.OK, payload=payload)


async def list_scans(project_slug: str, limit: int = 50) -> ScanActionResult:
    async with get_session() as session:
        project = await get_project_by_slug(session, project_slug)
        if project is None:
            return ScanActionResult(ScanOutcome.NOT_FOUND, f"Project '{project_slug}' not found")

        result = await session.execute(
            select(Scan)
            .where(Scan.project_id == project.id)
            .order_by(Scan.created_at.desc(), Scan.id.desc())
            .limit(limit)
        )
        scans = [serialize_scan(scan) for scan in result.scalars().all()]

        counts_result = await session.execute(
            select(SerpResult.scan_id, func.count())
            .where(SerpResult.scan_id.in_([s["id"] for s in scans]))
            .group_by(SerpResult.scan_id)
        )
        result_counts = dict(counts_result.all())

    for scan in scans:
        scan["results_count"] = result_counts.get(scan["id"], 0)
    return ScanActionResult(ScanOutcome.OK, payload={"project": project_slug, "scans": scans})


async def delete_scan(scan_id: int) -> ScanActionResult:
    """
    Delete a finished scan and everything hanging off it.

    Order: analysis -> results -> jobs -> tag_scans -> scan. The project's
    tag aggregate is then rebuilt from the remaining analyses.
    """
    async with get_session() as session:
        scan = await session.get(Scan, scan_id)
        if scan is None:
            return ScanActionResult(ScanOutcome.NOT_FOUND, "Scan not found")
        if scan.status == ScanStatus.RUNNING.value:
            return ScanActionResult(ScanOutcome.CONFLICT, "Cannot delete a running scan")

        project_id = scan.project_id
        ids_result = await session.execute(select(SerpResult.id).where(SerpResult.scan_id == scan_id))
        deleted_results = await delete_results(session, list(ids_result.scalars().all()))

        await session.execute(delete(Job).where(Job.scan_id == scan_id))
        await session.execute(delete(TagScan).where(TagScan.scan_id == scan_id))
        await session.execute(delete(Scan).where(Scan.id == scan_id))

        tags_rebuilt = await rebuild_project_tags(session, project_id)

    logger.info(f"Scan {scan_id} deleted ({deleted_results} results), {tags_rebuilt} tags rebuilt")
    return ScanActionResult(
        ScanOutcome.OK,
        "Scan deleted",
        {"scan_id": scan_id, "results_deleted": deleted_results, "tags_rebuilt": tags_rebuilt},
    )


async def get_active_projects() -> list[Project]:
    async with get_session() as session:
        result = await session.execute(select(Project).where(Project.is_active == True))  # noqa: E712
        return list(result.scalars().all())
