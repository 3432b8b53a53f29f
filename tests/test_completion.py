"""
Tests for the scan completion detector.
"""

from unittest.mock import AsyncMock, patch

import pytest

from src.archivist.models import Scan, ScanStatus
from src.config import settings
from src.scheduler.completion import check_and_complete_scan, check_and_complete_scans
from tests.test_helpers import create_scan, get_row


class TestCheckAndCompleteScan:
    """A running scan flips to completed once, when every task is done."""

    @pytest.mark.asyncio
    async def test_single_winner_generates_briefing(self, project):
        scan = await create_scan(project, total_tasks=2, completed_tasks=2)

        with patch("src.scheduler.completion.generate_briefing_for_scan", new=AsyncMock()) as briefing:
            first = await check_and_complete_scan(scan.id)
            second = await check_and_complete_scan(scan.id)

        assert first is True
        assert second is False
        briefing.assert_awaited_once_with(scan.id, pause_before_call=0)

        stored = await get_row(Scan, scan.id)
        assert stored.status == ScanStatus.COMPLETED.value
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_briefing_waits_after_ai_call(self, project, monkeypatch):
        monkeypatch.setattr(settings, "ai_call_delay_seconds", 4)
        scan = await create_scan(project, total_tasks=1, completed_tasks=1)

        with patch("src.scheduler.completion.generate_briefing_for_scan", new=AsyncMock()) as briefing:
            assert await check_and_complete_scan(scan.id, after_ai_call=True) is True

        briefing.assert_awaited_once_with(scan.id, pause_before_call=4)

    @pytest.mark.asyncio
    async def test_unfinished_scan_stays_running(self, project):
        scan = await create_scan(project, total_tasks=3, completed_tasks=2)

        assert await check_and_complete_scan(scan.id) is False
        assert (await get_row(Scan, scan.id)).status == ScanStatus.RUNNING.value

    @pytest.mark.asyncio
    async def test_empty_scan_never_completes(self, project):
        scan = await create_scan(project, total_tasks=0, completed_tasks=0)
        assert await check_and_complete_scan(scan.id) is False

    @pytest.mark.asyncio
    async def test_stopped_scan_not_revived(self, project):
        scan = await create_scan(project, status=ScanStatus.FAILED.value, total_tasks=1, completed_tasks=1)
        assert await check_and_complete_scan(scan.id) is False
        assert (await get_row(Scan, scan.id)).status == ScanStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_briefing_failure_does_not_block_completion(self, project):
        scan = await create_scan(project, total_tasks=1, completed_tasks=1)

        # The real generator swallows its own errors; the blocked LLM makes it return None
        assert await check_and_complete_scan(scan.id) is True
        assert (await get_row(Scan, scan.id)).status == ScanStatus.COMPLETED.value


class TestCheckAndCompleteScans:

    @pytest.mark.asyncio
    async def test_sweeps_finished_running_scans(self, project):
        done = await create_scan(project, total_tasks=1, completed_tasks=1)
        await create_scan(project, total_tasks=2, completed_tasks=1)

        with patch("src.scheduler.completion.generate_briefing_for_scan", new=AsyncMock()):
            completed = await check_and_complete_scans()

        assert completed == [done.id]
