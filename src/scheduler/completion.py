"""
Scan completion detector.

A running scan becomes completed once every one of its jobs has reached a
terminal state, i.e. completed_tasks >= total_tasks (failed jobs count too).
The flip is one conditional UPDATE, so when several workers finish the last
jobs at the same time exactly one of them wins and generates the briefing.
"""

import logging
from typing import List

from sqlalchemy import select, update

from ..agents.briefing import generate_briefing_for_scan
from ..archivist.database import get_session
from ..archivist.models import Scan, ScanStatus, utc_now_naive
from ..config.settings import settings

logger = logging.getLogger(__name__)


def _is_finished():
    return (Scan.total_tasks > 0) & (Scan.completed_tasks >= Scan.total_tasks)


async def check_and_complete_scan(scan_id: int, after_ai_call: bool = False) -> bool:
    """
    Flip one scan to completed if all its tasks are done.

    after_ai_call: the caller has just used the AI service, so the briefing
    waits ai_call_delay_seconds before its own call.

    Returns True only for the caller whose update won.
    """
    async with get_session() as session:
        result = await session.execute(
            update(Scan)
            .where(
                Scan.id == scan_id,
                Scan.status == ScanStatus.RUNNING.value,
                _is_finished(),
            )
            .values(status=ScanStatus.COMPLETED.value, completed_at=utc_now_naive())
        )
        won = (result.rowcount or 0) == 1

    if won:
        logger.info(f"Scan {scan_id} completed")
        # Best-effort: never raises
        pause = settings.ai_call_delay_seconds if after_ai_call else 0
        await generate_briefing_for_scan(scan_id, pause_before_call=pause)
    return won


async def check_and_complete_scans() -> List[int]:
    """Run the completion check over every running scan that looks finished.

    Returns ids of the scans this call completed.
    """
    async with get_session() as session:
        result = await session.execute(
            select(Scan.id).where(Scan.status == ScanStatus.RUNNING.value, _is_finished())
        )
        candidates = list(result.scalars().all())

    completed = []
    for scan_id in candidates:
        if await check_and_complete_scan(scan_id):
            completed.append(scan_id)
    return completed
