"""
StaleJobMonitor - background task returning abandoned jobs to the queue.

Workers also reclaim stale jobs at the start of every step, but when no
driver is running (quiet period, every driver crashed) nothing would. The
monitor covers that gap: every stale_monitor_interval_seconds it resets jobs
stuck in 'processing' past stale_job_minutes back to 'pending'.

Catches failure modes where the worker never reaches its error handler:
- OOM kills (SIGKILL) mid-job
- Container restarts during a driver run
- Request timeouts cutting off a fire-and-forget runner
"""

import asyncio
import logging
from typing import Optional

from ..archivist.job_queue import reclaim_stale_jobs
from ..config.settings import settings

logger = logging.getLogger(__name__)

# Back-off after an unexpected monitor error (seconds)
ERROR_BACKOFF_SECONDS = 60

# Background task reference
_monitor_task: Optional[asyncio.Task] = None


async def _monitor_loop():
    """Main monitor loop - runs every stale_monitor_interval_seconds."""
    interval = settings.stale_monitor_interval_seconds
    logger.info(
        f"StaleJobMonitor started (interval={interval}s, threshold={settings.stale_job_minutes}min)"
    )

    while True:
        try:
            await asyncio.sleep(interval)
            await check_stale_jobs_now()
        except asyncio.CancelledError:
            logger.info("StaleJobMonitor received cancellation")
            break
        except Exception as e:
            # Log but continue - monitor should be resilient
            logger.error(f"StaleJobMonitor error: {e}", exc_info=True)
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)


async def check_stale_jobs_now() -> int:
    """Run one reclaim pass. Returns the number of jobs reset to pending."""
    reclaimed = await reclaim_stale_jobs()
    if not reclaimed:
        logger.debug("StaleJobMonitor: No stale jobs found")
    return reclaimed


async def start_stale_monitor():
    """Start the monitor background task.

    Called from application lifespan startup.
    """
    global _monitor_task

    if _monitor_task is not None and not _monitor_task.done():
        logger.warning("StaleJobMonitor already running")
        return

    _monitor_task = asyncio.create_task(_monitor_loop(), name="stale_job_monitor")
    logger.info("StaleJobMonitor task created")


async def stop_stale_monitor():
    """Stop the monitor.

    Called from application lifespan shutdown.
    """
    global _monitor_task

    if _monitor_task is not None:
        _monitor_task.cancel()
        try:
            await _monitor_task
        except asyncio.CancelledError:
            pass
        _monitor_task = None
        logger.info("StaleJobMonitor task stopped")


def is_stale_monitor_running() -> bool:
    return _monitor_task is not None and not _monitor_task.done()
