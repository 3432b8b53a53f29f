"""
Shared test helpers: database builders and skip markers.

This module can be explicitly imported by test files.
For pytest fixtures, see conftest.py.

Usage:
    from tests.test_helpers import create_project, create_scan, add_result
"""

from datetime import timedelta
from typing import List, Optional

import pytest


# =============================================================================
# Dependency checks
# =============================================================================
def has_postgres():
    """Check if asyncpg is installed (PostgreSQL driver)."""
    try:
        import asyncpg  # noqa: F401
        return True
    except ImportError:
        return False


skip_no_postgres = pytest.mark.skipif(
    not has_postgres(),
    reason="PostgreSQL driver (asyncpg) not available"
)


# =============================================================================
# Builders
# =============================================================================
async def create_project(
    slug: str = "acme",
    keywords: Optional[List[str]] = None,
    sources: Optional[List[str]] = None,
    competitors: Optional[List[str]] = None,
    **fields,
):
    from src.archivist.database import get_session
    from src.archivist.models import Project

    project = Project(
        slug=slug,
        name=fields.pop("name", slug.title()),
        industry=fields.pop("industry", "consumer goods"),
        keywords=["acme", "acme sostenibile"] if keywords is None else keywords,
        sources=["google_organic", "google_news"] if sources is None else sources,
        competitors=["rival.com"] if competitors is None else competitors,
        **fields,
    )
    async with get_session() as session:
        session.add(project)
        await session.flush()
    return project


async def create_scan(
    project,
    status: str = "running",
    total_tasks: int = 0,
    completed_tasks: int = 0,
    completed_at_offset_days: Optional[int] = None,
    **fields,
):
    """A bare Scan row (no jobs). completed_at_offset_days sets completed_at in the past."""
    from src.archivist.database import get_session
    from src.archivist.models import Scan, utc_now_naive

    if completed_at_offset_days is not None:
        fields["completed_at"] = utc_now_naive() - timedelta(days=completed_at_offset_days)

    scan = Scan(
        project_id=project.id,
        status=status,
        total_tasks=total_tasks,
        completed_tasks=completed_tasks,
        **fields,
    )
    async with get_session() as session:
        session.add(scan)
        await session.flush()
    return scan


async def create_job(scan, keyword: str = "acme", source: str = "google_organic", **fields):
    from src.archivist.database import get_session
    from src.archivist.models import Job

    job = Job(scan_id=scan.id, keyword=keyword, source=source, **fields)
    async with get_session() as session:
        session.add(job)
        await session.flush()
    return job


async def add_result(
    scan,
    url: str,
    themes: Optional[List[str]] = None,
    sentiment: str = "neutral",
    sentiment_score: float = 0.0,
    domain: str = "news.it",
    is_competitor: bool = False,
    is_off_topic: bool = False,
    off_topic_reason: Optional[str] = None,
    position: int = 1,
):
    """A SerpResult with its Analysis. Returns (result_id, analysis_id)."""
    from src.archivist.database import get_session
    from src.archivist.models import Analysis, SerpResult

    async with get_session() as session:
        result = SerpResult(
            scan_id=scan.id,
            keyword="acme",
            source="google_organic",
            position=position,
            url=url,
            title=f"Title for {url}",
            snippet="snippet",
            domain=domain,
            is_competitor=is_competitor,
        )
        session.add(result)
        await session.flush()

        analysis = Analysis(
            serp_result_id=result.id,
            themes=[{"name": name, "confidence": 0.8} for name in (themes or [])],
            sentiment=sentiment,
            sentiment_score=sentiment_score,
            entities=[],
            summary=f"Summary of {url}",
            is_off_topic=is_off_topic,
            off_topic_reason=off_topic_reason,
        )
        session.add(analysis)
        await session.flush()
        return result.id, analysis.id


async def get_row(model, row_id):
    from src.archivist.database import get_session

    async with get_session() as session:
        return await session.get(model, row_id)


async def count_rows(model, *where) -> int:
    from sqlalchemy import func, select
    from src.archivist.database import get_session

    async with get_session() as session:
        query = select(func.count()).select_from(model)
        if where:
            query = query.where(*where)
        result = await session.execute(query)
        return result.scalar() or 0


async def tag_counts(project_id: int) -> dict:
    """{tag name: count} for a project."""
    from sqlalchemy import select
    from src.archivist.database import get_session
    from src.archivist.models import Tag

    async with get_session() as session:
        result = await session.execute(select(Tag.name, Tag.count).where(Tag.project_id == project_id))
        return dict(result.all())
