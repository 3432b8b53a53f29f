"""
Tests for the storage helpers.
"""

import pytest
from sqlalchemy import select

from src.analyst.schemas import ResultAnalysis, SerpAnalysis
from src.archivist.database import get_session
from src.archivist.models import Analysis, SerpResult, Tag, TagScan
from src.archivist.storage import (
    collect_theme_counts,
    dedupe_serp_items,
    delete_results,
    get_existing_urls,
    rebuild_project_tags,
    save_analyses,
    save_serp_results,
    update_tags,
)
from src.common.dataforseo_client import SerpItem
from tests.test_helpers import add_result, count_rows, create_project, create_scan, tag_counts


def _item(position, url, domain=""):
    return SerpItem(position=position, url=url, title=f"T{position}", snippet="s", domain=domain)


class TestDedupe:
    """Known URLs and in-batch repeats are dropped; first occurrence wins."""

    def test_dedupe(self):
        items = [_item(1, "https://a.it"), _item(2, "https://b.it"), _item(3, "https://a.it"), _item(4, "")]
        unique = dedupe_serp_items(items, {"https://b.it"})
        assert [i.position for i in unique] == [1]

    @pytest.mark.asyncio
    async def test_existing_urls_scoped_to_project(self, project):
        other = await create_project(slug="other")
        await add_result(await create_scan(project), "https://a.it")
        await add_result(await create_scan(other), "https://b.it")

        async with get_session() as session:
            existing = await get_existing_urls(session, project.id, ["https://a.it", "https://b.it"])
        assert existing == {"https://a.it"}


class TestSaveResultsAndAnalyses:

    @pytest.mark.asyncio
    async def test_competitor_flags_and_defaults(self, project):
        scan = await create_scan(project)
        items = [
            _item(1, "https://www.rival.com/x"),
            _item(2, "https://b.it/y", domain="b.it"),
            _item(3, "https://c.it/z", domain="c.it"),
        ]
        analysis = SerpAnalysis(
            results=[
                ResultAnalysis(position=1, themes=[{"name": "Prezzi"}]),
                ResultAnalysis(position=2, is_competitor=True, is_hi_priority=False, priority_reason="ignored"),
            ],
        )

        async with get_session() as session:
            results = await save_serp_results(session, scan.id, "acme", "google_organic", items, ["page"], ["Rival.com"])
            assert [r.domain for r in results] == ["rival.com", "b.it", "c.it"]
            assert [r.excerpt for r in results] == ["page", "s", "s"]
            analyses = await save_analyses(session, results, analysis)

        assert [r.is_competitor for r in results] == [True, True, False]
        assert analyses[0].themes == [{"name": "prezzi", "confidence": 0.5}]
        assert analyses[1].priority_reason is None
        assert analyses[2].themes == [] and analyses[2].sentiment == "neutral"
        assert await count_rows(Analysis) == 3


class TestTags:

    def test_collect_theme_counts_once_per_analysis(self):
        analyses = [
            Analysis(serp_result_id=1, themes=[{"name": "Prezzi"}, {"name": "prezzi"}]),
            Analysis(serp_result_id=2, themes=[{"name": "prezzi"}, {"name": "qualità"}]),
        ]
        assert collect_theme_counts(analyses) == {"prezzi": 2, "qualità": 1}

    @pytest.mark.asyncio
    async def test_update_tags_increments(self, project):
        scan = await create_scan(project)

        async with get_session() as session:
            await update_tags(session, project.id, scan.id, {"prezzi": 2})
        async with get_session() as session:
            await update_tags(session, project.id, scan.id, {"prezzi": 1, "qualità": 1})

        assert await tag_counts(project.id) == {"prezzi": 3, "qualità": 1}
        async with get_session() as session:
            rows = await session.execute(
                select(TagScan.count).join(Tag, Tag.id == TagScan.tag_id).where(Tag.name == "prezzi")
            )
            assert rows.scalars().all() == [3]

    @pytest.mark.asyncio
    async def test_rebuild(self, project):
        first = await create_scan(project)
        second = await create_scan(project)
        await add_result(first, "https://a.it", themes=["prezzi"])
        await add_result(second, "https://b.it", themes=["prezzi", "qualità"])
        async with get_session() as session:
            await update_tags(session, project.id, first.id, {"stale": 9})

        async with get_session() as session:
            assert await rebuild_project_tags(session, project.id) == 2

        assert await tag_counts(project.id) == {"prezzi": 2, "qualità": 1}
        assert await count_rows(TagScan) == 3


class TestDeleteResults:

    @pytest.mark.asyncio
    async def test_deletes_analysis_too(self, project):
        scan = await create_scan(project)
        first, _ = await add_result(scan, "https://a.it")
        await add_result(scan, "https://b.it")

        async with get_session() as session:
            assert await delete_results(session, [first, first]) == 1

        assert await count_rows(SerpResult) == 1
        assert await count_rows(Analysis) == 1
