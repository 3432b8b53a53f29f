"""
APScheduler job definitions.

Jobs:
- scheduled_scans: daily at scan_schedule_hour, starts scans for projects
  whose weekly/monthly schedule matches today, then drains the queue
- queue_drain:     every queue_drain_interval_minutes, the scheduled driver
- context_filter:  daily, filters projects not filtered in the last 24h
- tag_normalizer:  weekly, normalizes projects not normalized in the last 7d

Each job records its last run (time, status, error, duration) for
/scheduler/status.
"""

import logging
import time
from datetime import date, datetime, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..archivist.models import Project, TriggerType
from ..config.settings import settings

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None

# Job execution tracking (for observability), keyed by job id
_job_runs: Dict[str, dict] = {}


def _record_run(job_id: str, status: str, started: float, error: Optional[str] = None) -> None:
    _job_runs[job_id] = {
        "last_run": datetime.now(timezone.utc),
        "last_status": status,
        "last_error": error,
        "last_duration_seconds": round(time.monotonic() - started, 1),
    }


def get_job_runs() -> Dict[str, dict]:
    return dict(_job_runs)


def should_run_today(project: Project, today: date) -> bool:
    """
    Whether a project's schedule fires on `today`.

    weekly:  schedule_day is the weekday, 0=Sunday .. 6=Saturday
    monthly: schedule_day is the day of month
    manual:  never
    """
    if project.schedule == "weekly":
        # date.weekday() is 0=Monday; shift to 0=Sunday
        return project.schedule_day == (today.weekday() + 1) % 7
    if project.schedule == "monthly":
        return project.schedule_day == today.day
    return False


async def scheduled_scans_job() -> List[str]:
    """Start scans for every active project scheduled today, then drain the queue.

    Returns slugs of the projects a scan was started for.
    """
    from ..worker.drivers import run_until_budget
    from .orchestrator import get_active_projects, start_scan

    started = time.monotonic()
    today = datetime.now(ZoneInfo(settings.scheduler_timezone)).date()
    triggered = []

    try:
        for project in await get_active_projects():
            if not should_run_today(project, today):
                continue
            result = await start_scan(project.slug, TriggerType.SCHEDULED)
            if result.ok:
                triggered.append(project.slug)
            else:
                logger.warning(f"Scheduled scan skipped for {project.slug}: {result.message}")

        logger.info(f"Scheduled scans: triggered {len(triggered)} project(s) {triggered}")
        if triggered:
            await run_until_budget(label="scheduled_scans")
    except Exception as e:
        logger.error(f"Scheduled scans job failed: {e}", exc_info=True)
        _record_run("scheduled_scans", "failed", started, str(e))
        return triggered

    _record_run("scheduled_scans", "success", started)
    return triggered


async def queue_drain_job():
    """The scheduled driver: process pending jobs until drained or out of budget."""
    from ..worker.drivers import run_until_budget

    started = time.monotonic()
    try:
        report = await run_until_budget(label="queue_drain")
    except Exception as e:
        logger.error(f"Queue drain job failed: {e}", exc_info=True)
        _record_run("queue_drain", "failed", started, str(e))
        return None

    _record_run("queue_drain", "success", started)
    return report


async def context_filter_job():
    from ..agents.context_filter import run_context_filter_all

    started = time.monotonic()
    try:
        summaries = await run_context_filter_all()
    except Exception as e:
        logger.error(f"Context filter job failed: {e}", exc_info=True)
        _record_run("context_filter", "failed", started, str(e))
        return None

    logger.info(
        f"Context filter job: {len(summaries)} project(s), "
        f"{sum(s['evaluated'] for s in summaries)} evaluated, "
        f"{sum(s['off_topic'] for s in summaries)} off-topic"
    )
    _record_run("context_filter", "success", started)
    return summaries


async def tag_normalizer_job():
    from ..agents.tag_normalizer import run_tag_normalizer_all

    started = time.monotonic()
    try:
        summaries = await run_tag_normalizer_all()
    except Exception as e:
        logger.error(f"Tag normalizer job failed: {e}", exc_info=True)
        _record_run("tag_normalizer", "failed", started, str(e))
        return None

    logger.info(
        f"Tag normalizer job: {len(summaries)} project(s), "
        f"{sum(s['tags_merged'] for s in summaries)} tags merged"
    )
    _record_run("tag_normalizer", "success", started)
    return summaries


def get_scan_schedule() -> tuple[CronTrigger, str]:
    """
    Cron trigger for the daily scheduled-scans check.

    Returns:
        tuple: (CronTrigger, description string)
    """
    hour = settings.scan_schedule_hour
    if not 0 <= hour <= 23:
        logger.warning(f"Invalid SCAN_SCHEDULE_HOUR {hour}, defaulting to 6")
        hour = 6
    return (
        CronTrigger(hour=hour, minute=0, timezone=settings.scheduler_timezone),
        f"daily at {hour:02d}:00 {settings.scheduler_timezone}",
    )


def setup_scheduler() -> AsyncIOScheduler:
    """
    Initialize and start the APScheduler.

    Job store in memory (stateless): the queue itself lives in the database.
    """
    global scheduler

    scheduler = AsyncIOScheduler(
        timezone=settings.scheduler_timezone,
        job_defaults={
            "coalesce": True,  # Collapse missed runs into one
            "max_instances": 1,  # Only one instance at a time
            "misfire_grace_time": 600,  # 10 min grace for misfires
        },
    )

    trigger, schedule_desc = get_scan_schedule()
    scheduler.add_job(
        scheduled_scans_job,
        trigger=trigger,
        id="scheduled_scans",
        name=f"Scheduled scans ({schedule_desc})",
        replace_existing=True,
    )
    scheduler.add_job(
        queue_drain_job,
        trigger=IntervalTrigger(minutes=settings.queue_drain_interval_minutes),
        id="queue_drain",
        name=f"Queue drain (every {settings.queue_drain_interval_minutes} min)",
        replace_existing=True,
    )
    scheduler.add_job(
        context_filter_job,
        trigger=CronTrigger(hour=3, minute=0, timezone=settings.scheduler_timezone),
        id="context_filter",
        name="Context filter (daily 03:00)",
        replace_existing=True,
    )
    scheduler.add_job(
        tag_normalizer_job,
        trigger=CronTrigger(day_of_week="sun", hour=4, minute=0, timezone=settings.scheduler_timezone),
        id="tag_normalizer",
        name="Tag normalizer (weekly Sun 04:00)",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started, scheduled scans {schedule_desc}")

    for job in scheduler.get_jobs():
        logger.info(f"Scheduled job: {job.id} - next run: {job.next_run_time}")

    return scheduler


def shutdown_scheduler():
    """Shutdown the scheduler without waiting for running jobs.

    In-flight jobs left in 'processing' are returned to the queue by the
    stale reclaimer after restart.
    """
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown complete")
        scheduler = None
