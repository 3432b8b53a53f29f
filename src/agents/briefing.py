"""
Briefing Generator - comparative narrative between the two latest scans.

Stats exclude results the context filter marked off-topic.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from sqlalchemy import select, update

from ..analyst.analyzer import summarize_scans
from ..analyst.schemas import Sentiment
from ..archivist.database import get_session
from ..archivist.models import Analysis, Project, Scan, ScanStatus, SerpResult
from ..common.url_utils import normalize_tag_name
from .context_filter import build_project_context

logger = logging.getLogger(__name__)

TOP_THEMES_LIMIT = 15


@dataclass
class ScanStats:
    total_results: int = 0
    unique_domains: int = 0
    competitor_mentions: int = 0
    avg_sentiment: float = 0.0
    sentiment_distribution: Dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in Sentiment}
    )
    top_themes: List[dict] = field(default_factory=list)
    competitor_domains: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


async def compute_scan_stats(scan_id: int) -> ScanStats:
    """Aggregate one scan's on-topic results."""
    async with get_session() as session:
        rows = await session.execute(
            select(
                SerpResult.domain,
                SerpResult.is_competitor,
                Analysis.sentiment,
                Analysis.sentiment_score,
                Analysis.themes,
            )
            .outerjoin(Analysis, Analysis.serp_result_id == SerpResult.id)
            .where(SerpResult.scan_id == scan_id, Analysis.is_off_topic.is_not(True))
        )
        records = rows.all()

    stats = ScanStats(total_results=len(records))
    domains = set()
    competitor_domains = set()
    theme_counts: Counter = Counter()
    scores = []

    for domain, is_competitor, sentiment, score, themes in records:
        if domain:
            domains.add(domain)
        if is_competitor:
            stats.competitor_mentions += 1
            if domain:
                competitor_domains.add(domain)
        if sentiment in stats.sentiment_distribution:
            stats.sentiment_distribution[sentiment] += 1
        if score is not None:
            scores.append(score)
        for theme in themes or []:
            name = normalize_tag_name(theme.get("name")) if isinstance(theme, dict) else ""
            if name:
                theme_counts[name] += 1

    stats.unique_domains = len(domains)
    stats.avg_sentiment = round(sum(scores) / len(scores), 2) if scores else 0.0
    stats.top_themes = [
        {"name": name, "count": count} for name, count in theme_counts.most_common(TOP_THEMES_LIMIT)
    ]
    stats.competitor_domains = sorted(competitor_domains)
    return stats


async def regenerate_briefing(project: Project, pause_before_call: float = 0) -> Optional[str]:
    """
    Generate the briefing for the latest completed scan of a project.

    Args:
        pause_before_call: seconds to wait before the narrative call, used when
            the caller has just made another AI call

    Returns:
        Briefing text, or None with fewer than 2 completed scans or when the
        narrative service fails
    """
    async with get_session() as session:
        rows = await session.execute(
            select(Scan.id)
            .where(Scan.project_id == project.id, Scan.status == ScanStatus.COMPLETED.value)
            .order_by(Scan.completed_at.desc(), Scan.id.desc())
            .limit(2)
        )
        scan_ids = list(rows.scalars().all())

    if len(scan_ids) < 2:
        logger.info(f"[briefing] Not enough scans for comparison in project {project.slug}")
        return None

    current_id, previous_id = scan_ids
    current = await compute_scan_stats(current_id)
    previous = await compute_scan_stats(previous_id)

    if pause_before_call > 0:
        await asyncio.sleep(pause_before_call)
    text = await summarize_scans(current.to_dict(), previous.to_dict(), build_project_context(project))
    if text is None:
        logger.warning(f"[briefing] Narrative service failed for project {project.slug}")
        return None

    async with get_session() as session:
        await session.execute(update(Scan).where(Scan.id == current_id).values(ai_briefing=text))

    logger.info(f"[briefing] Briefing regenerated for {project.slug} (scan {current_id} vs {previous_id})")
    return text


async def generate_briefing_for_scan(scan_id: int, pause_before_call: float = 0) -> Optional[str]:
    """Best-effort briefing after a scan completes. Never raises."""
    try:
        async with get_session() as session:
            scan = await session.get(Scan, scan_id)
            project = await session.get(Project, scan.project_id) if scan else None
        if project is None:
            logger.error(f"[briefing] Scan {scan_id} or its project not found")
            return None
        return await regenerate_briefing(project, pause_before_call=pause_before_call)
    except Exception as e:
        logger.error(f"[briefing] Failed for scan {scan_id}: {e}", exc_info=True)
        return None
