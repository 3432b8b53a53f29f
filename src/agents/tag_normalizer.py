"""
Tag Normalizer agent - merges semantically duplicate tags.

The grouping service proposes {canonical, duplicates[]} groups. Each
duplicate is merged in its own transaction:
1. its TagScan rows move to the canonical tag (counts summed on collision)
2. analysis themes naming it are renamed to the canonical (or dropped when
   the canonical is already present)
3. its count is added to the canonical and the duplicate row is deleted

A duplicate that no longer exists is skipped, so re-running after a crash,
or on already-normalized data, merges nothing new.
"""

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import delete, or_, select, update

from ..analyst.analyzer import group_duplicate_tags
from ..analyst.schemas import TagGroup
from ..archivist.database import get_session
from ..archivist.models import Analysis, Project, Scan, SerpResult, Tag, TagScan, utc_now_naive
from ..common.url_utils import normalize_tag_name, slugify_tag
from ..config.settings import settings
from .context_filter import build_project_context

logger = logging.getLogger(__name__)


@dataclass
class TagNormalizerResult:
    total_tags: int = 0
    groups_found: int = 0
    tags_merged: int = 0
    tags_remaining: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def rewrite_themes(themes: List[dict], duplicate: str, canonical: str) -> Optional[List[dict]]:
    """
    Rename `duplicate` to `canonical` in a themes array.

    Themes match by tag slug, so spelling variants folded into one tag
    ("e commerce", "e-commerce") are all rewritten. The duplicate is dropped
    instead when the canonical is already present.
    Returns a new list, or None when the array does not mention the duplicate.
    """
    slugs = [slugify_tag(t.get("name")) for t in themes]
    duplicate_slug = slugify_tag(duplicate)
    if duplicate_slug not in slugs:
        return None

    has_canonical = slugify_tag(canonical) in slugs
    rewritten = []
    for theme, slug in zip(themes, slugs):
        if slug == duplicate_slug:
            if has_canonical:
                continue
            rewritten.append({**theme, "name": canonical})
            has_canonical = True
        else:
            rewritten.append(dict(theme))
    return rewritten


async def _find_tag(session, project_id: int, name: str) -> Optional[Tag]:
    """Resolve a tag by normalized name or slug."""
    normalized = normalize_tag_name(name)
    result = await session.execute(
        select(Tag)
        .where(
            Tag.project_id == project_id,
            or_(Tag.name == normalized, Tag.slug == slugify_tag(normalized)),
        )
        .order_by(Tag.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _merge_duplicate(project_id: int, canonical_name: str, duplicate_name: str) -> bool:
    """Merge one duplicate into the canonical tag. Returns True if a merge happened."""
    async with get_session() as session:
        canonical = await _find_tag(session, project_id, canonical_name)
        duplicate = await _find_tag(session, project_id, duplicate_name)
        if canonical is None or duplicate is None or duplicate.id == canonical.id:
            return False

        # 1. TagScan rows
        dup_scans = await session.execute(select(TagScan).where(TagScan.tag_id == duplicate.id))
        for dup_scan in dup_scans.scalars().all():
            merged = await session.execute(
                update(TagScan)
                .where(TagScan.tag_id == canonical.id, TagScan.scan_id == dup_scan.scan_id)
                .values(count=TagScan.count + dup_scan.count)
            )
            if (merged.rowcount or 0) > 0:
                await session.delete(dup_scan)
            else:
                dup_scan.tag_id = canonical.id
        await session.flush()

        # 2. Analysis themes
        analyses = await session.execute(
            select(Analysis)
            .join(SerpResult, SerpResult.id == Analysis.serp_result_id)
            .join(Scan, Scan.id == SerpResult.scan_id)
            .where(Scan.project_id == project_id)
        )
        rewritten_count = 0
        for analysis in analyses.scalars().all():
            rewritten = rewrite_themes(analysis.themes or [], duplicate.name, canonical.name)
            if rewritten is not None:
                # Reassign: JSON columns do not track in-place mutation
                analysis.themes = rewritten
                rewritten_count += 1

        # 3. Counts, then drop the duplicate
        await session.execute(
            update(Tag)
            .where(Tag.id == canonical.id)
            .values(count=Tag.count + duplicate.count, last_seen_at=utc_now_naive())
        )
        await session.execute(delete(Tag).where(Tag.id == duplicate.id))

    logger.info(
        f"[tag-normalizer] Merged '{duplicate.name}' -> '{canonical.name}' "
        f"({rewritten_count} analyses rewritten)"
    )
    return True


async def _merge_group(project_id: int, group: TagGroup, result: TagNormalizerResult) -> None:
    async with get_session() as session:
        canonical = await _find_tag(session, project_id, group.canonical)
    if canonical is None:
        result.errors.append(f'Canonical tag "{group.canonical}" not found, skipping group')
        return

    for duplicate_name in group.duplicates:
        try:
            if await _merge_duplicate(project_id, canonical.name, duplicate_name):
                result.tags_merged += 1
        except Exception as e:
            logger.error(
                f"[tag-normalizer] Merge error '{duplicate_name}' -> '{canonical.name}': {e}",
                exc_info=True,
            )
            result.errors.append(f'Merge "{duplicate_name}" -> "{canonical.name}": {e}')


async def run_tag_normalizer(project: Project, batch_size: Optional[int] = None) -> TagNormalizerResult:
    """
    Find and merge duplicate tags for one project.

    Returns:
        TagNormalizerResult (tags_remaining = total_tags - tags_merged)
    """
    size = batch_size or settings.tag_normalizer_batch_size
    result = TagNormalizerResult()

    async with get_session() as session:
        rows = await session.execute(
            select(Tag.name, Tag.count)
            .where(Tag.project_id == project.id)
            .order_by(Tag.count.desc(), Tag.id)
        )
        tags = [{"name": name, "count": count} for name, count in rows.all()]

    result.total_tags = len(tags)
    if len(tags) < 2:
        logger.info(f"[tag-normalizer] Not enough tags to normalize for project {project.slug}")
        result.tags_remaining = result.total_tags
        return result

    logger.info(f"[tag-normalizer] Analyzing {len(tags)} tags for project {project.slug}")
    context = build_project_context(project)

    for offset in range(0, len(tags), size):
        if offset > 0:
            await asyncio.sleep(settings.ai_call_delay_seconds)

        groups = await group_duplicate_tags(context, tags[offset:offset + size])
        if groups is None:
            result.errors.append(f"Batch {offset}-{offset + size}: grouping service failed")
            continue

        result.groups_found += len(groups)
        for group in groups:
            await _merge_group(project.id, group, result)

    async with get_session() as session:
        await session.execute(
            update(Project).where(Project.id == project.id).values(last_normalize_at=utc_now_naive())
        )

    result.tags_remaining = result.total_tags - result.tags_merged
    logger.info(
        f"[tag-normalizer] Done for {project.slug}: {result.groups_found} groups, "
        f"{result.tags_merged} merged, {result.tags_remaining} remaining"
    )
    return result


async def run_tag_normalizer_all(max_age_hours: Optional[int] = None) -> List[dict]:
    """Normalize every active project not normalized within max_age_hours."""
    hours = settings.tag_normalizer_max_age_hours if max_age_hours is None else max_age_hours
    cutoff = utc_now_naive() - timedelta(hours=hours)

    async with get_session() as session:
        rows = await session.execute(
            select(Project).where(
                Project.is_active == True,  # noqa: E712
                or_(Project.last_normalize_at.is_(None), Project.last_normalize_at < cutoff),
            )
        )
        projects = list(rows.scalars().all())

    if not projects:
        logger.info("[tag-normalizer] No projects need normalization")
        return []

    logger.info(f"[tag-normalizer] Running for {len(projects)} projects")
    summaries = []
    for project in projects:
        try:
            outcome = await run_tag_normalizer(project)
        except Exception as e:
            logger.error(f"[tag-normalizer] Failed for project {project.slug}: {e}", exc_info=True)
            outcome = TagNormalizerResult(errors=[str(e)])
        summaries.append({"project": project.slug, **outcome.to_dict()})
    return summaries
