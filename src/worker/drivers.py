"""
Budgeted driver loop around process_one_job().

Every invocation path (scheduled drain, "run now" endpoint, background runner
after a trigger, CLI) uses run_until_budget(). The loop:
- checks elapsed wall-clock time before each step and stops once the
  budget (settings.driver_budget_seconds) is spent
- sleeps settings.ai_call_delay_seconds between steps (LLM rate limit)
- stops as soon as the queue is empty
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from typing import Optional

from ..config.settings import settings
from .process import WorkerStatus, process_one_job

logger = logging.getLogger(__name__)

# Pause after an unexpected loop error before the next step
ERROR_PAUSE_SECONDS = 2.0


@dataclass
class DriverReport:
    """Summary of one driver run."""
    processed: int = 0
    errors: int = 0
    steps: int = 0
    results_saved: int = 0
    pending_count: int = 0
    elapsed_seconds: float = 0.0
    stop_reason: str = "budget"  # budget | drained | max_steps

    def to_dict(self) -> dict:
        return asdict(self)


async def run_until_budget(
    budget_seconds: Optional[float] = None,
    delay_seconds: Optional[float] = None,
    max_steps: Optional[int] = None,
    label: str = "driver",
) -> DriverReport:
    """
    Call process_one_job() repeatedly until the queue drains or time runs out.

    Args:
        budget_seconds: Wall-clock budget (default settings.driver_budget_seconds)
        delay_seconds: Pause between steps (default settings.ai_call_delay_seconds)
        max_steps: Optional hard cap on steps (single-step endpoint uses 1)
        label: Name used in logs (e.g. "queue_drain", "scan 12")

    Returns:
        DriverReport
    """
    budget = settings.driver_budget_seconds if budget_seconds is None else budget_seconds
    delay = settings.ai_call_delay_seconds if delay_seconds is None else delay_seconds

    report = DriverReport()
    start = time.monotonic()

    while time.monotonic() - start < budget:
        if max_steps is not None and report.steps >= max_steps:
            report.stop_reason = "max_steps"
            break

        report.steps += 1
        try:
            result = await process_one_job()
        except Exception as e:
            # process_one_job() reports job errors itself; this is infrastructure
            report.errors += 1
            logger.error(f"[{label}] Unexpected error in processing loop: {e}", exc_info=True)
            await asyncio.sleep(ERROR_PAUSE_SECONDS)
            continue

        report.pending_count = result.pending_count

        if result.status == WorkerStatus.NO_JOBS:
            report.stop_reason = "drained"
            break
        if result.status == WorkerStatus.PROCESSED:
            report.processed += 1
            report.results_saved += result.results_saved
            logger.info(
                f"[{label}] Processed job {result.job_id} ({result.keyword}/{result.source}), "
                f"{report.processed} done, {result.pending_count} pending"
            )
        elif result.status == WorkerStatus.ERROR:
            report.errors += 1
            logger.warning(f"[{label}] Job {result.job_id} error: {result.error}")

        if result.pending_count == 0:
            report.stop_reason = "drained"
            break

        await asyncio.sleep(delay)

    report.elapsed_seconds = round(time.monotonic() - start, 1)
    logger.info(
        f"[{label}] Finished in {report.elapsed_seconds}s ({report.stop_reason}): "
        f"processed={report.processed}, errors={report.errors}, pending={report.pending_count}"
    )
    return report
