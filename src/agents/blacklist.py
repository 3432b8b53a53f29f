"""
Tag blacklist and cascade deletes.

A blacklisted tag name removes every result whose analysis carries it:
existing results at the time the tag is added, and new results as soon as
the worker analyses them (apply_blacklist_to_results). Removing a name from
the blacklist does not restore anything.
"""

import logging
from typing import Iterable, List, Sequence, Set

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..archivist.database import get_session
from ..archivist.models import Analysis, Project, Scan, SerpResult, Tag, TagBlacklist
from ..archivist.storage import delete_results, delete_tag, rebuild_project_tags
from ..common.url_utils import normalize_tag_name, slugify_tag

logger = logging.getLogger(__name__)


def _theme_names(themes: Iterable[dict]) -> Set[str]:
    return {normalize_tag_name(t.get("name")) for t in (themes or []) if isinstance(t, dict)}


async def get_blacklisted_names(session: AsyncSession, project_id: int) -> Set[str]:
    result = await session.execute(
        select(TagBlacklist.tag_name).where(TagBlacklist.project_id == project_id)
    )
    return {normalize_tag_name(name) for name in result.scalars().all()}


async def list_blacklist(project: Project) -> List[dict]:
    """Blacklisted names for a project, newest first."""
    async with get_session() as session:
        result = await session.execute(
            select(TagBlacklist)
            .where(TagBlacklist.project_id == project.id)
            .order_by(TagBlacklist.created_at.desc(), TagBlacklist.id.desc())
        )
        return [
            {"id": entry.id, "tag_name": entry.tag_name, "created_at": entry.created_at}
            for entry in result.scalars().all()
        ]


async def delete_results_by_tag(project_id: int, tag_name: str) -> int:
    """
    Delete every result of the project whose analysis carries tag_name.

    The Tag row (and its TagScan counts) is deleted too; the aggregate is
    rebuilt from new results as they arrive.

    Returns:
        Number of SerpResults deleted
    """
    name = normalize_tag_name(tag_name)
    if not name:
        return 0

    async with get_session() as session:
        result = await session.execute(
            select(SerpResult.id, Analysis.themes)
            .join(Analysis, Analysis.serp_result_id == SerpResult.id)
            .join(Scan, Scan.id == SerpResult.scan_id)
            .where(Scan.project_id == project_id)
        )
        matching = [result_id for result_id, themes in result.all() if name in _theme_names(themes)]
        deleted = await delete_results(session, matching)

        tag_result = await session.execute(
            select(Tag.id).where(Tag.project_id == project_id, Tag.slug == slugify_tag(name))
        )
        tag_id = tag_result.scalar_one_or_none()
        if tag_id is not None:
            await delete_tag(session, tag_id)

    logger.info(f"[blacklist] Deleted {deleted} results tagged '{name}' for project {project_id}")
    return deleted


async def delete_results_by_ids(project_id: int, result_ids: Sequence[int]) -> int:
    """Delete specific results, ignoring ids that belong to another project."""
    if not result_ids:
        return 0

    async with get_session() as session:
        verified = await session.execute(
            select(SerpResult.id)
            .join(Scan, Scan.id == SerpResult.scan_id)
            .where(Scan.project_id == project_id, SerpResult.id.in_(list(result_ids)))
        )
        valid_ids = list(verified.scalars().all())
        if len(valid_ids) < len(set(result_ids)):
            logger.warning(
                f"[blacklist] {len(set(result_ids)) - len(valid_ids)} result id(s) not in project {project_id}, skipped"
            )
        deleted = await delete_results(session, valid_ids)
        if deleted:
            await rebuild_project_tags(session, project_id)

    return deleted


async def add_to_blacklist(project: Project, tag_name: str) -> dict:
    """
    Blacklist a tag name and delete every result carrying it.

    Returns:
        {"tag": str, "blacklisted": bool, "deleted": int}
    """
    name = normalize_tag_name(tag_name)
    if not name:
        return {"tag": name, "blacklisted": False, "deleted": 0}

    async with get_session() as session:
        existing = await session.execute(
            select(TagBlacklist.id).where(
                TagBlacklist.project_id == project.id, TagBlacklist.tag_name == name
            )
        )
        if existing.scalar_one_or_none() is None:
            try:
                async with session.begin_nested():
                    session.add(TagBlacklist(project_id=project.id, tag_name=name))
            except IntegrityError:
                logger.info(f"[blacklist] '{name}' added concurrently for project {project.slug}")

    deleted = await delete_results_by_tag(project.id, name)
    logger.info(f"[blacklist] '{name}' blacklisted for {project.slug}, {deleted} results deleted")
    return {"tag": name, "blacklisted": True, "deleted": deleted}


async def remove_from_blacklist(project: Project, tag_name: str) -> bool:
    """Remove a name from the blacklist. Deleted results are not restored."""
    name = normalize_tag_name(tag_name)
    async with get_session() as session:
        result = await session.execute(
            delete(TagBlacklist).where(
                TagBlacklist.project_id == project.id, TagBlacklist.tag_name == name
            )
        )
        removed = (result.rowcount or 0) > 0

    if removed:
        logger.info(f"[blacklist] '{name}' removed from blacklist for {project.slug}")
    return removed


async def apply_blacklist_to_results(
    session: AsyncSession,
    project_id: int,
    analyses: Sequence[Analysis],
) -> Set[int]:
    """
    Delete freshly analysed results whose themes hit the project blacklist.

    Runs inside the worker's session, before tags are folded.

    Returns:
        serp_result_ids deleted
    """
    if not analyses:
        return set()

    blacklisted = await get_blacklisted_names(session, project_id)
    if not blacklisted:
        return set()

    to_delete = {a.serp_result_id for a in analyses if _theme_names(a.themes) & blacklisted}
    if not to_delete:
        return set()

    await delete_results(session, list(to_delete))
    logger.info(
        f"[blacklist] Deleted {len(to_delete)} new results matching blacklisted tags for project {project_id}"
    )
    return to_delete
