"""
Worker step - claim one job and run it end to end.

process_one_job() is the only unit of work in the engine. It is stateless
and safe to call from any number of drivers at once: the conditional claim
in archivist.job_queue guarantees a job is run by one caller at a time.

Pipeline for a claimed (keyword, source) job:
    fetch -> dedup -> extract -> analyse
    -> persist results, analyses and tags (one transaction, blacklist applied)
    -> complete + progress -> completion check

Provider and pipeline exceptions are absorbed here and turned into a retry
(retry_count < max_job_retries) or a terminal failure.
"""

import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import List, Optional

from ..agents.blacklist import apply_blacklist_to_results
from ..analyst.analyzer import analyze_serp_results
from ..archivist.database import get_session
from ..archivist.job_queue import (
    claim_next_job,
    complete_job,
    count_pending_jobs,
    fail_job,
    increment_scan_progress,
    reclaim_stale_jobs,
    retry_job,
)
from ..archivist.models import Job, Project, Scan
from ..archivist.storage import (
    collect_theme_counts,
    dedupe_serp_items,
    get_existing_urls,
    save_analyses,
    save_serp_results,
    update_tags,
)
from ..common.dataforseo_client import get_dataforseo_client
from ..config.settings import settings
from ..enrichment.content_extractor import extract_contents
from ..scheduler.completion import check_and_complete_scan, check_and_complete_scans

logger = logging.getLogger(__name__)

# error_message column is Text, but keep stored errors readable
MAX_ERROR_LENGTH = 1000


class WorkerStatus(str, Enum):
    PROCESSED = "processed"
    NO_JOBS = "no_jobs"
    ERROR = "error"


@dataclass
class WorkerResult:
    """Outcome of one process_one_job() call."""
    status: WorkerStatus
    pending_count: int = 0
    job_id: Optional[int] = None
    keyword: Optional[str] = None
    source: Optional[str] = None
    results_saved: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class JobContextError(Exception):
    """The job's scan or project could not be loaded."""
    pass


async def _load_context(job: Job) -> tuple[Scan, Project]:
    async with get_session() as session:
        scan = await session.get(Scan, job.scan_id)
        if scan is None:
            raise JobContextError(f"Scan {job.scan_id} not found for job {job.id}")
        project = await session.get(Project, scan.project_id)
        if project is None:
            raise JobContextError(f"Project {scan.project_id} not found for scan {scan.id}")
        return scan, project


@dataclass
class StepTrace:
    """What a job run got through before it returned or raised."""
    ai_called: bool = False


async def _finish_job(job: Job, after_ai_call: bool = False) -> None:
    """Mark completed, bump scan progress, then run the completion check.

    A job stopped while running (complete_job affects no row) does not
    count again: stop_scan already accounted for it.
    """
    if await complete_job(job.id):
        await increment_scan_progress(job.scan_id)
    else:
        logger.info(f"Job {job.id} was no longer processing (stopped?), progress not incremented")
    await check_and_complete_scan(job.scan_id, after_ai_call=after_ai_call)


async def _run_job(job: Job, trace: StepTrace) -> int:
    """Run the pipeline for one claimed job. Returns SerpResults kept.

    Results, analyses and tags are written in a single transaction after the
    analysis call, so a failure anywhere leaves nothing behind for the retry
    to mistake for an already stored URL.
    """
    scan, project = await _load_context(job)

    client = get_dataforseo_client()
    items = await client.fetch_serp(
        keyword=job.keyword,
        source=job.source,
        language=project.language,
        location_code=project.location_code,
        depth=settings.serp_depth,
        date_from=scan.date_from,
        date_to=scan.date_to,
    )

    async with get_session() as session:
        existing = await get_existing_urls(session, project.id, [item.url for item in items])
    unique_items = dedupe_serp_items(items, existing)

    if not unique_items:
        logger.info(
            f"Job {job.id} '{job.keyword}' ({job.source}): all {len(items)} results already stored"
        )
        await _finish_job(job)
        return 0

    # Page text for the top results only; the rest keep their snippet
    top_urls = [item.url for item in unique_items[:settings.top_extract_count]]
    excerpts: List[Optional[str]] = await extract_contents(top_urls)
    excerpts = excerpts + [None] * (len(unique_items) - len(excerpts))
    extracted = sum(1 for text in excerpts if text)
    if top_urls and extracted < len(top_urls):
        logger.warning(
            f"Job {job.id}: content extracted for {extracted}/{len(top_urls)} pages, "
            f"falling back to snippets"
        )

    analysis_items = [
        {
            "position": item.position,
            "title": item.title,
            "url": item.url,
            "snippet": item.snippet,
            "excerpt": excerpts[index] or item.snippet,
        }
        for index, item in enumerate(unique_items)
    ]
    trace.ai_called = True
    analysis = await analyze_serp_results(
        keyword=job.keyword,
        industry=project.industry,
        alert_keywords=project.alert_keywords or [],
        competitors=project.competitors or [],
        items=analysis_items,
    )
    if analysis is None:
        logger.warning(f"Job {job.id}: analysis failed, storing default analyses")

    async with get_session() as session:
        results = await save_serp_results(
            session,
            scan_id=scan.id,
            keyword=job.keyword,
            source=job.source,
            items=unique_items,
            excerpts=excerpts,
            competitors=project.competitors or [],
        )
        analyses = await save_analyses(session, results, analysis)

        removed_ids = await apply_blacklist_to_results(session, project.id, analyses)
        kept = [a for a in analyses if a.serp_result_id not in removed_ids]
        await update_tags(session, project.id, scan.id, collect_theme_counts(kept))

    saved = len(results) - len(removed_ids)
    logger.info(
        f"Job {job.id} '{job.keyword}' ({job.source}): {saved} new results saved "
        f"({len(items) - len(unique_items)} duplicates, {len(removed_ids)} blacklisted)"
    )
    await _finish_job(job, after_ai_call=True)
    return saved


async def _handle_job_failure(job: Job, error: Exception, after_ai_call: bool = False) -> None:
    """Retry the job or fail it for good once retries are exhausted."""
    message = f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]

    if job.retry_count < settings.max_job_retries:
        if await retry_job(job.id, message):
            logger.warning(
                f"Job {job.id} failed (attempt {job.retry_count + 1}), "
                f"retry scheduled: {message}"
            )
        return

    if await fail_job(job.id, message):
        logger.error(f"Job {job.id} failed permanently after {job.retry_count} retries: {message}")
        # Failed jobs still count towards scan completion
        await increment_scan_progress(job.scan_id)
    await check_and_complete_scan(job.scan_id, after_ai_call=after_ai_call)


async def process_one_job() -> WorkerResult:
    """
    Claim and process a single pending job.

    Returns:
        WorkerResult with status processed | no_jobs | error
    """
    await reclaim_stale_jobs()

    job = await claim_next_job()
    if job is None:
        await check_and_complete_scans()
        return WorkerResult(status=WorkerStatus.NO_JOBS, pending_count=await count_pending_jobs())

    logger.info(f"Processing job {job.id}: '{job.keyword}' ({job.source}), scan {job.scan_id}")

    trace = StepTrace()
    try:
        saved = await _run_job(job, trace)
    except Exception as e:
        logger.error(f"Job {job.id} error: {type(e).__name__}: {e}", exc_info=True)
        try:
            await _handle_job_failure(job, e, after_ai_call=trace.ai_called)
        except Exception as handler_error:
            # Job stays in processing; the stale reclaimer will return it to pending
            logger.error(
                f"Could not record failure for job {job.id}: {handler_error}", exc_info=True
            )
        return WorkerResult(
            status=WorkerStatus.ERROR,
            pending_count=await count_pending_jobs(),
            job_id=job.id,
            keyword=job.keyword,
            source=job.source,
            error=str(e)[:MAX_ERROR_LENGTH],
        )

    return WorkerResult(
        status=WorkerStatus.PROCESSED,
        pending_count=await count_pending_jobs(),
        job_id=job.id,
        keyword=job.keyword,
        source=job.source,
        results_saved=saved,
    )
