#!/usr/bin/env python3
"""
Drain the job queue from the command line.

Runs the same budgeted driver loop as the queue_drain scheduler job,
useful from cron or a one-off shell when the API process is not running.

Usage:
    DATABASE_URL=postgresql://... python3 scripts/drain_queue.py
    python3 scripts/drain_queue.py --budget 600 --max-steps 20
    python3 scripts/drain_queue.py --filter acme   # then run the context filter
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.archivist import close_db, init_db
from src.archivist.database import get_session
from src.archivist.storage import get_project_by_slug
from src.agents import run_context_filter
from src.common.dataforseo_client import close_dataforseo_client
from src.worker import run_until_budget


async def main(budget: int, delay: float, max_steps: int, filter_slug: str) -> int:
    await init_db()
    try:
        report = await run_until_budget(
            budget_seconds=budget,
            delay_seconds=delay,
            max_steps=max_steps,
            label="cli",
        )
        print(
            f"Processed {report.processed} job(s), {report.errors} error(s), "
            f"{report.results_saved} result(s) saved in {report.elapsed_seconds}s "
            f"({report.stop_reason}, {report.pending_count} pending)"
        )

        if filter_slug:
            async with get_session() as session:
                project = await get_project_by_slug(session, filter_slug)
            if project is None:
                print(f"ERROR: project '{filter_slug}' not found")
                return 1
            result = await run_context_filter(project, budget_seconds=budget)
            print(
                f"Context filter: {result.evaluated} evaluated, {result.off_topic} off-topic, "
                f"{result.remaining} remaining"
            )
        return 0
    finally:
        await close_dataforseo_client()
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Process queued scan jobs until drained or out of budget")
    parser.add_argument("--budget", type=int, default=None, help="Wall-clock budget in seconds")
    parser.add_argument("--delay", type=float, default=None, help="Pause between steps in seconds")
    parser.add_argument("--max-steps", type=int, default=None, help="Stop after this many steps")
    parser.add_argument("--filter", dest="filter_slug", default=None, help="Run the context filter for a project afterwards")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(main(args.budget, args.delay, args.max_steps, args.filter_slug)))
