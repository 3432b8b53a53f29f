"""
Storage pipeline for persisting SERP results, analyses and tag aggregates.

All helpers take the caller's session and never commit: the caller's
get_session() block is the transaction boundary.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Analysis,
    Project,
    Scan,
    SerpResult,
    Tag,
    TagScan,
    utc_now_naive,
)
from ..analyst.schemas import SerpAnalysis, ResultAnalysis
from ..common.dataforseo_client import SerpItem
from ..common.url_utils import extract_domain, normalize_domain, normalize_domain_set, normalize_tag_name, slugify_tag

logger = logging.getLogger(__name__)

# Deletes go through IN (...) lists; keep them well under driver parameter limits
DELETE_BATCH_SIZE = 200


async def get_project_by_slug(session: AsyncSession, slug: str) -> Optional[Project]:
    result = await session.execute(select(Project).where(Project.slug == slug))
    return result.scalar_one_or_none()


async def get_existing_urls(session: AsyncSession, project_id: int, urls: Sequence[str]) -> Set[str]:
    """URLs among `urls` already stored for any scan of the project."""
    if not urls:
        return set()
    result = await session.execute(
        select(SerpResult.url)
        .join(Scan, Scan.id == SerpResult.scan_id)
        .where(Scan.project_id == project_id, SerpResult.url.in_(list(set(urls))))
    )
    return set(result.scalars().all())


def dedupe_serp_items(items: Iterable[SerpItem], existing_urls: Set[str]) -> List[SerpItem]:
    """Drop items whose URL is already stored or repeated within the batch.

    The first occurrence (best position) of a repeated URL wins.
    """
    seen = set(existing_urls)
    unique = []
    for item in items:
        if not item.url or item.url in seen:
            continue
        seen.add(item.url)
        unique.append(item)
    return unique


async def save_serp_results(
    session: AsyncSession,
    scan_id: int,
    keyword: str,
    source: str,
    items: Sequence[SerpItem],
    excerpts: Sequence[Optional[str]],
    competitors: Iterable[str],
) -> List[SerpResult]:
    """
    Persist provider items as SerpResult rows.

    Args:
        excerpts: Extracted page text aligned with items (None where missing,
            the snippet is stored instead)
        competitors: Project competitor domains (normalized here)

    Returns:
        Flushed rows (ids assigned), in the same order as items
    """
    competitor_domains = normalize_domain_set(competitors)
    now = utc_now_naive()
    rows = []

    for index, item in enumerate(items):
        domain = normalize_domain(item.domain) or extract_domain(item.url)
        # Snippet stands in where page text could not be extracted
        excerpt = (excerpts[index] if index < len(excerpts) else None) or item.snippet or None
        row = SerpResult(
            scan_id=scan_id,
            keyword=keyword,
            source=source,
            position=item.position,
            url=item.url,
            title=item.title or "",
            snippet=item.snippet or "",
            domain=domain,
            is_competitor=bool(domain) and domain in competitor_domains,
            excerpt=excerpt,
            fetched_at=item.published_at or now,
        )
        session.add(row)
        rows.append(row)

    await session.flush()
    return rows


def _default_analysis(result: SerpResult) -> Analysis:
    return Analysis(
        serp_result_id=result.id,
        themes=[],
        sentiment="neutral",
        sentiment_score=0.0,
        entities=[],
        summary="",
    )


def _analysis_from_result(result: SerpResult, parsed: ResultAnalysis) -> Analysis:
    return Analysis(
        serp_result_id=result.id,
        themes=[{"name": t.name, "confidence": t.confidence} for t in parsed.themes],
        sentiment=parsed.sentiment.value,
        sentiment_score=parsed.sentiment_score,
        entities=[{"name": e.name, "type": e.type.value} for e in parsed.entities if e.name],
        summary=parsed.summary,
        is_hi_priority=parsed.is_hi_priority,
        priority_reason=parsed.priority_reason if parsed.is_hi_priority else None,
    )


async def save_analyses(
    session: AsyncSession,
    results: Sequence[SerpResult],
    analysis: Optional[SerpAnalysis],
) -> List[Analysis]:
    """
    Persist one Analysis per SerpResult and apply competitor auto-discovery.

    analysis=None (service failure) and positions the service omitted both
    get a default neutral Analysis with no themes.

    A result is flipped to is_competitor when the service flagged it, or when
    its domain is among analysis.discovered_competitors.
    """
    by_position = analysis.by_position() if analysis is not None else {}
    discovered = set(analysis.discovered_competitors) if analysis is not None else set()

    rows = []
    flipped = 0
    for result in results:
        parsed = by_position.get(result.position)
        row = _analysis_from_result(result, parsed) if parsed else _default_analysis(result)
        session.add(row)
        rows.append(row)

        if not result.is_competitor and (
            (parsed is not None and parsed.is_competitor) or result.domain in discovered
        ):
            result.is_competitor = True
            flipped += 1

    if analysis is not None and len(by_position) < len(results):
        logger.warning(
            f"Analysis covered {len(by_position)}/{len(results)} results, "
            f"defaults used for the rest"
        )
    if flipped:
        logger.info(f"Competitor auto-discovery flagged {flipped} result(s)")

    await session.flush()
    return rows


def collect_theme_counts(analyses: Iterable[Analysis]) -> Dict[str, int]:
    """Number of analyses carrying each (normalized) theme name."""
    counts: Counter = Counter()
    for analysis in analyses:
        names = {normalize_tag_name(t.get("name")) for t in (analysis.themes or [])}
        counts.update(name for name in names if name)
    return dict(counts)


async def _upsert_tag(session: AsyncSession, project_id: int, name: str, count: int, now: datetime) -> Optional[int]:
    """Create-or-increment one tag by slug. Returns the tag id."""
    slug = slugify_tag(name)
    if not slug:
        return None

    for _ in range(2):
        result = await session.execute(
            select(Tag.id).where(Tag.project_id == project_id, Tag.slug == slug)
        )
        tag_id = result.scalar_one_or_none()
        if tag_id is not None:
            await session.execute(
                update(Tag)
                .where(Tag.id == tag_id)
                .values(count=Tag.count + count, last_seen_at=now)
            )
            return tag_id

        # Another worker may insert the same slug between our SELECT and INSERT
        try:
            async with session.begin_nested():
                tag = Tag(project_id=project_id, name=name, slug=slug, count=count, last_seen_at=now)
                session.add(tag)
            return tag.id
        except IntegrityError:
            logger.info(f"Tag '{slug}' created concurrently, incrementing instead")

    return None


async def _upsert_tag_scan(session: AsyncSession, tag_id: int, scan_id: int, count: int) -> None:
    for _ in range(2):
        result = await session.execute(
            update(TagScan)
            .where(TagScan.tag_id == tag_id, TagScan.scan_id == scan_id)
            .values(count=TagScan.count + count)
        )
        if (result.rowcount or 0) > 0:
            return
        try:
            async with session.begin_nested():
                session.add(TagScan(tag_id=tag_id, scan_id=scan_id, count=count))
            return
        except IntegrityError:
            logger.info(f"TagScan ({tag_id}, {scan_id}) created concurrently, incrementing instead")


async def update_tags(
    session: AsyncSession,
    project_id: int,
    scan_id: int,
    theme_counts: Dict[str, int],
) -> int:
    """
    Fold theme occurrences into Tag and TagScan.

    Counts are applied as SQL increments (count = count + n) so concurrent
    workers on the same project never lose updates.

    Returns the number of tags touched.
    """
    if not theme_counts:
        return 0

    now = utc_now_naive()
    touched = 0
    for name, count in theme_counts.items():
        tag_id = await _upsert_tag(session, project_id, name, count, now)
        if tag_id is None:
            continue
        await _upsert_tag_scan(session, tag_id, scan_id, count)
        touched += 1

    logger.debug(f"Updated {touched} tag(s) for project {project_id}, scan {scan_id}")
    return touched


async def delete_results(session: AsyncSession, result_ids: Sequence[int]) -> int:
    """Delete SerpResults and their Analysis rows (analysis first, FK order)."""
    ids = list(dict.fromkeys(result_ids))
    deleted = 0
    for start in range(0, len(ids), DELETE_BATCH_SIZE):
        batch = ids[start:start + DELETE_BATCH_SIZE]
        await session.execute(delete(Analysis).where(Analysis.serp_result_id.in_(batch)))
        result = await session.execute(delete(SerpResult).where(SerpResult.id.in_(batch)))
        deleted += result.rowcount or 0
    return deleted


async def delete_tag(session: AsyncSession, tag_id: int) -> None:
    """Delete a tag and its per-scan counts."""
    await session.execute(delete(TagScan).where(TagScan.tag_id == tag_id))
    await session.execute(delete(Tag).where(Tag.id == tag_id))


async def clear_project_tags(session: AsyncSession, project_id: int) -> int:
    """Delete every Tag (and TagScan) of a project. Returns tags deleted."""
    tag_ids = select(Tag.id).where(Tag.project_id == project_id)
    await session.execute(delete(TagScan).where(TagScan.tag_id.in_(tag_ids)))
    result = await session.execute(delete(Tag).where(Tag.project_id == project_id))
    return result.rowcount or 0


async def rebuild_project_tags(session: AsyncSession, project_id: int) -> int:
    """
    Recompute a project's tag aggregate from its stored analyses.

    Used after destructive operations (scan delete) that leave Tag counts
    out of sync with the remaining results.

    Returns the number of tags created.
    """
    await clear_project_tags(session, project_id)

    result = await session.execute(
        select(SerpResult.scan_id, Analysis)
        .join(Analysis, Analysis.serp_result_id == SerpResult.id)
        .join(Scan, Scan.id == SerpResult.scan_id)
        .where(Scan.project_id == project_id)
    )

    per_scan: Dict[int, List[Analysis]] = {}
    for scan_id, analysis in result.all():
        per_scan.setdefault(scan_id, []).append(analysis)

    tag_ids: Set[int] = set()
    for scan_id, analyses in per_scan.items():
        theme_counts = collect_theme_counts(analyses)
        now = utc_now_naive()
        for name, count in theme_counts.items():
            tag_id = await _upsert_tag(session, project_id, name, count, now)
            if tag_id is None:
                continue
            await _upsert_tag_scan(session, tag_id, scan_id, count)
            tag_ids.add(tag_id)

    logger.info(f"Rebuilt {len(tag_ids)} tag(s) for project {project_id}")
    return len(tag_ids)
