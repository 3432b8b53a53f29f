"""
Tests for the tag blacklist and cascade deletes.
"""

import pytest
from sqlalchemy import select

from src.agents.blacklist import (
    add_to_blacklist,
    apply_blacklist_to_results,
    delete_results_by_ids,
    list_blacklist,
    remove_from_blacklist,
)
from src.archivist.database import get_session
from src.archivist.models import Analysis, SerpResult, TagBlacklist
from src.archivist.storage import update_tags
from tests.test_helpers import add_result, count_rows, create_project, create_scan, tag_counts


class TestAddToBlacklist:
    """Blacklisting deletes every result carrying the tag."""

    @pytest.mark.asyncio
    async def test_deletes_tagged_results(self, project):
        scan = await create_scan(project)
        await add_result(scan, "https://news.it/a", themes=["gossip", "prezzi"])
        await add_result(scan, "https://news.it/b", themes=["prezzi"], position=2)
        async with get_session() as session:
            await update_tags(session, project.id, scan.id, {"gossip": 1, "prezzi": 2})

        outcome = await add_to_blacklist(project, "  Gossip ")

        assert outcome == {"tag": "gossip", "blacklisted": True, "deleted": 1}
        assert await count_rows(SerpResult) == 1
        assert await count_rows(Analysis) == 1
        assert await tag_counts(project.id) == {"prezzi": 2}

        entries = await list_blacklist(project)
        assert [e["tag_name"] for e in entries] == ["gossip"]

    @pytest.mark.asyncio
    async def test_adding_twice_keeps_one_entry(self, project):
        await add_to_blacklist(project, "gossip")
        await add_to_blacklist(project, "GOSSIP")
        assert await count_rows(TagBlacklist) == 1

    @pytest.mark.asyncio
    async def test_blank_name_ignored(self, project):
        outcome = await add_to_blacklist(project, "   ")
        assert outcome["blacklisted"] is False
        assert await count_rows(TagBlacklist) == 0

    @pytest.mark.asyncio
    async def test_other_projects_untouched(self, project):
        other = await create_project(slug="other")
        other_scan = await create_scan(other)
        await add_result(other_scan, "https://news.it/x", themes=["gossip"])

        outcome = await add_to_blacklist(project, "gossip")

        assert outcome["deleted"] == 0
        assert await count_rows(SerpResult) == 1


class TestRemoveFromBlacklist:

    @pytest.mark.asyncio
    async def test_remove(self, project):
        await add_to_blacklist(project, "gossip")
        assert await remove_from_blacklist(project, "Gossip") is True
        assert await remove_from_blacklist(project, "gossip") is False
        assert await list_blacklist(project) == []


class TestApplyBlacklistToResults:

    @pytest.mark.asyncio
    async def test_deletes_matching_new_results(self, project):
        scan = await create_scan(project)
        bad_id, _ = await add_result(scan, "https://news.it/a", themes=["gossip"])
        good_id, _ = await add_result(scan, "https://news.it/b", themes=["prezzi"], position=2)

        async with get_session() as session:
            session.add(TagBlacklist(project_id=project.id, tag_name="gossip"))
            await session.flush()
            analyses = (await session.execute(select(Analysis))).scalars().all()
            removed = await apply_blacklist_to_results(session, project.id, analyses)

        assert removed == {bad_id}
        async with get_session() as session:
            remaining = (await session.execute(select(SerpResult.id))).scalars().all()
        assert remaining == [good_id]

    @pytest.mark.asyncio
    async def test_no_blacklist(self, project):
        scan = await create_scan(project)
        await add_result(scan, "https://news.it/a", themes=["gossip"])

        async with get_session() as session:
            analyses = (await session.execute(select(Analysis))).scalars().all()
            assert await apply_blacklist_to_results(session, project.id, analyses) == set()


class TestDeleteResultsByIds:

    @pytest.mark.asyncio
    async def test_ignores_foreign_ids(self, project):
        other = await create_project(slug="other")
        scan = await create_scan(project)
        other_scan = await create_scan(other)
        mine, _ = await add_result(scan, "https://news.it/a", themes=["prezzi"])
        theirs, _ = await add_result(other_scan, "https://news.it/b")

        assert await delete_results_by_ids(project.id, [mine, theirs]) == 1
        assert await count_rows(SerpResult) == 1
        assert await tag_counts(project.id) == {}
