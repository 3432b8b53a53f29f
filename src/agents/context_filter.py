"""
Context Filter agent - marks analysed results that are off-topic for a project.

An Analysis with off_topic_reason IS NULL has never been evaluated. Each
batch picks up to context_filter_batch_size of those, asks the relevance
service for verdicts and writes them back with a conditional update scoped
to off_topic_reason IS NULL, so a batch re-entered concurrently (or after a
crash) never overwrites a verdict and the remaining count only goes down.

Entry points:
- run_context_filter_batch: one batch (dashboard "filter" button, polled)
- run_context_filter:       batches until done or the time budget is spent
- run_context_filter_all:   cron, every active project not filtered recently
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..analyst.analyzer import evaluate_relevance
from ..archivist.database import get_session
from ..archivist.models import Analysis, Project, Scan, SerpResult, utc_now_naive
from ..archivist.storage import delete_results, rebuild_project_tags
from ..config.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_OFF_TOPIC_REASON = "Off-topic"
DEFAULT_ON_TOPIC_REASON = "Relevant"
# Items the service skipped are closed as on-topic so the batch always shrinks the backlog
NO_VERDICT_REASON = "No verdict returned"


@dataclass
class ContextFilterBatchResult:
    evaluated: int = 0
    off_topic: int = 0
    on_topic: int = 0
    remaining: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def build_project_context(project: Project) -> dict:
    """Project fields every agent prompt is grounded on."""
    return {
        "name": project.name,
        "industry": project.industry or "",
        "keywords": list(project.keywords or []),
        "competitors": list(project.competitors or []),
        "description": project.description,
    }


def _project_result_ids(project_id: int, scan_id: Optional[int] = None):
    query = (
        select(SerpResult.id)
        .join(Scan, Scan.id == SerpResult.scan_id)
        .where(Scan.project_id == project_id)
    )
    if scan_id is not None:
        query = query.where(SerpResult.scan_id == scan_id)
    return query


async def count_unfiltered(project_id: int, scan_id: Optional[int] = None) -> int:
    """Analyses of the project (or scan) still waiting for a verdict."""
    async with get_session() as session:
        result = await session.execute(
            select(func.count())
            .select_from(Analysis)
            .where(
                Analysis.off_topic_reason.is_(None),
                Analysis.serp_result_id.in_(_project_result_ids(project_id, scan_id)),
            )
        )
        return result.scalar() or 0


async def _stamp_last_filter(project_id: int) -> None:
    async with get_session() as session:
        await session.execute(
            update(Project).where(Project.id == project_id).values(last_filter_at=utc_now_naive())
        )


async def run_context_filter_batch(
    project: Project,
    scan_id: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> ContextFilterBatchResult:
    """
    Evaluate one batch of unfiltered analyses.

    Args:
        project: Project whose results are evaluated
        scan_id: Limit to one scan
        batch_size: Defaults to settings.context_filter_batch_size

    Returns:
        ContextFilterBatchResult with remaining recounted from the database
    """
    limit = batch_size or settings.context_filter_batch_size
    result = ContextFilterBatchResult()

    query = (
        select(
            Analysis.id,
            Analysis.summary,
            Analysis.themes,
            SerpResult.title,
            SerpResult.url,
            SerpResult.snippet,
        )
        .join(SerpResult, SerpResult.id == Analysis.serp_result_id)
        .join(Scan, Scan.id == SerpResult.scan_id)
        .where(Scan.project_id == project.id, Analysis.off_topic_reason.is_(None))
    )
    if scan_id is not None:
        query = query.where(SerpResult.scan_id == scan_id)
    query = query.order_by(Analysis.id).limit(limit)

    async with get_session() as session:
        rows = await session.execute(query)
        items = [
            {
                "id": analysis_id,
                "title": title or "",
                "url": url,
                "snippet": snippet or "",
                "summary": summary or "",
                "themes": [t.get("name") for t in (themes or []) if isinstance(t, dict)],
            }
            for analysis_id, summary, themes, title, url, snippet in rows.all()
        ]

    if not items:
        logger.info(f"[context-filter] No unfiltered results for project {project.slug}")
        await _stamp_last_filter(project.id)
        return result

    logger.info(f"[context-filter] Evaluating {len(items)} results for project {project.slug}")
    verdicts = await evaluate_relevance(build_project_context(project), items)

    if verdicts is None:
        message = f"Relevance service failed for batch of {len(items)}"
        logger.warning(f"[context-filter] {project.slug}: {message}")
        result.errors.append(message)
        result.remaining = await count_unfiltered(project.id, scan_id)
        return result

    by_id = {}
    for verdict in verdicts:
        by_id.setdefault(verdict.id, verdict)

    async with get_session() as session:
        for item in items:
            verdict = by_id.get(item["id"])
            if verdict is None:
                is_off_topic, reason = False, NO_VERDICT_REASON
            else:
                is_off_topic = verdict.is_off_topic
                reason = (verdict.reason or "").strip() or (
                    DEFAULT_OFF_TOPIC_REASON if is_off_topic else DEFAULT_ON_TOPIC_REASON
                )

            try:
                async with session.begin_nested():
                    updated = await session.execute(
                        update(Analysis)
                        .where(Analysis.id == item["id"], Analysis.off_topic_reason.is_(None))
                        .values(is_off_topic=is_off_topic, off_topic_reason=reason)
                    )
            except SQLAlchemyError as e:
                logger.error(f"[context-filter] Update failed for analysis {item['id']}: {e}")
                result.errors.append(f"Update failed for {item['id']}: {e}")
                continue

            # Zero rows: a concurrent run already wrote this verdict
            if (updated.rowcount or 0) == 0:
                continue
            result.evaluated += 1
            if is_off_topic:
                result.off_topic += 1
            else:
                result.on_topic += 1

    missing = sum(1 for item in items if item["id"] not in by_id)
    if missing:
        logger.warning(f"[context-filter] {missing} result(s) got no verdict, kept as on-topic")

    await _stamp_last_filter(project.id)
    result.remaining = await count_unfiltered(project.id, scan_id)
    logger.info(
        f"[context-filter] {project.slug}: {result.evaluated} evaluated, "
        f"{result.off_topic} off-topic, {result.on_topic} on-topic, {result.remaining} remaining"
    )
    return result


async def run_context_filter(
    project: Project,
    scan_id: Optional[int] = None,
    budget_seconds: Optional[float] = None,
) -> ContextFilterBatchResult:
    """Run batches until nothing is left, a batch makes no progress, or time runs out."""
    budget = settings.driver_budget_seconds if budget_seconds is None else budget_seconds
    total = ContextFilterBatchResult()
    start = time.monotonic()

    while time.monotonic() - start < budget:
        batch = await run_context_filter_batch(project, scan_id)
        total.evaluated += batch.evaluated
        total.off_topic += batch.off_topic
        total.on_topic += batch.on_topic
        total.remaining = batch.remaining
        total.errors.extend(batch.errors)

        if batch.remaining == 0 or batch.evaluated == 0:
            break
        await asyncio.sleep(settings.ai_call_delay_seconds)

    return total


async def run_context_filter_all(max_age_hours: Optional[int] = None) -> List[dict]:
    """Filter every active project not filtered within max_age_hours."""
    hours = settings.context_filter_max_age_hours if max_age_hours is None else max_age_hours
    cutoff = utc_now_naive() - timedelta(hours=hours)

    async with get_session() as session:
        result = await session.execute(
            select(Project).where(
                Project.is_active == True,  # noqa: E712
                or_(Project.last_filter_at.is_(None), Project.last_filter_at < cutoff),
            )
        )
        projects = list(result.scalars().all())

    if not projects:
        logger.info("[context-filter] No projects need filtering")
        return []

    logger.info(f"[context-filter] Running for {len(projects)} projects")
    summaries = []
    for project in projects:
        try:
            outcome = await run_context_filter(project)
        except Exception as e:
            logger.error(f"[context-filter] Failed for project {project.slug}: {e}", exc_info=True)
            outcome = ContextFilterBatchResult(errors=[str(e)])
        summaries.append({"project": project.slug, **outcome.to_dict()})
    return summaries


async def reset_context_filter(project: Project, scan_id: Optional[int] = None) -> int:
    """Clear verdicts so results get evaluated again. Returns rows reset."""
    async with get_session() as session:
        result = await session.execute(
            update(Analysis)
            .where(
                Analysis.off_topic_reason.is_not(None),
                Analysis.serp_result_id.in_(_project_result_ids(project.id, scan_id)),
            )
            .values(is_off_topic=False, off_topic_reason=None)
        )
        reset = result.rowcount or 0

    logger.info(f"[context-filter] Reset {reset} verdict(s) for project {project.slug}")
    return reset


async def purge_off_topic_results(project: Project) -> int:
    """Delete results marked off-topic, then rebuild the project's tags."""
    async with get_session() as session:
        ids = await session.execute(
            select(SerpResult.id)
            .join(Analysis, Analysis.serp_result_id == SerpResult.id)
            .join(Scan, Scan.id == SerpResult.scan_id)
            .where(Scan.project_id == project.id, Analysis.is_off_topic == True)  # noqa: E712
        )
        deleted = await delete_results(session, list(ids.scalars().all()))
        if deleted:
            await rebuild_project_tags(session, project.id)

    logger.info(f"[context-filter] Purged {deleted} off-topic results for project {project.slug}")
    return deleted
