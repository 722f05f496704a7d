"""Tests for the MCP server tools.

Tool functions are called directly with a temporary store injected into the
server globals.
"""

import json

import pytest

import lessonbase.server as server_module
from lessonbase.ingestion import IngestionPipeline
from lessonbase.models import LessonRelationship, Namespace
from lessonbase.persistence import LessonStore
from lessonbase.search import SearchEngine
from lessonbase.server import (
    find_related_lessons,
    get_category_statistics,
    get_lesson_tags,
    get_lessons_by_category,
    get_lessons_overview,
    get_project_details_by_category,
    get_project_details_overview,
    get_project_details_resource,
    get_search_guide,
    get_top_lessons,
    lessons_by_category,
    lessons_learned_overview,
    mark_lesson_helpful,
    project_details_by_category,
    search_lessons,
    search_project_details,
    spider_lessons,
    suggest_search_queries,
    when_to_use_project_details,
)
from lessonbase.tracking import RetrievalTracker


@pytest.fixture
async def server_store(tmp_path):
    """Set up server with a temp store injected into globals."""
    store = LessonStore(db_path=tmp_path / "server.db")
    await store.initialize()
    tracker = RetrievalTracker(store, mode="overwrite")

    server_module._store = store
    server_module._tracker = tracker
    server_module._search = SearchEngine(store, tracker=tracker, track_usage=True)
    server_module._initialized = True

    yield store

    server_module._initialized = False
    server_module._store = None
    server_module._search = None
    server_module._tracker = None
    await store.close_pool()


@pytest.fixture
async def seeded(server_store):
    """Push a small generic batch and one project's details."""
    pipeline = IngestionPipeline(server_store)
    await pipeline.process_lessons(
        [
            {"type": "manual", "content": "Mock the mailer in unit tests.", "category": "testing", "tags": ["php", "pest"]},
            {"type": "manual", "content": "Seed test data with factories.", "category": "testing", "tags": ["php", "pest", "laravel"]},
            {"type": "manual", "content": "Escape output in templates.", "category": "security", "tags": ["xss"]},
        ],
        "alpha",
    )
    await pipeline.process_lessons(
        [{"type": "project-detail", "content": "Orders are stored in the shop schema.", "category": "database"}],
        "alpha",
        Namespace.project_detail("alpha"),
    )
    return server_store


async def _lesson_id(content_fragment: str) -> str:
    data = json.loads(await search_lessons(query=content_fragment))
    return data["results"][0]["id"]


class TestLessonTools:
    """Test generic lesson tools."""

    @pytest.mark.asyncio
    async def test_search_lessons(self, seeded):
        data = json.loads(await search_lessons(query="mailer"))
        assert data["count"] == 1
        assert data["match_mode"] == "fulltext"
        assert data["results"][0]["subcategory"] == "unit-testing"

    @pytest.mark.asyncio
    async def test_search_never_returns_project_details(self, seeded):
        data = json.loads(await search_lessons(query="orders schema"))
        assert data["count"] == 0

    @pytest.mark.asyncio
    async def test_search_limit_clamped(self, seeded):
        data = json.loads(await search_lessons(limit=0))
        assert data["count"] == 1

    @pytest.mark.asyncio
    async def test_get_lessons_by_category(self, seeded):
        data = json.loads(await get_lessons_by_category("testing"))
        assert data["category"] == "testing"
        assert data["count"] == 2

    @pytest.mark.asyncio
    async def test_get_lessons_by_category_requires_category(self, seeded):
        data = json.loads(await get_lessons_by_category(""))
        assert data == {"error": "Category is required"}

    @pytest.mark.asyncio
    async def test_get_lesson_tags(self, seeded):
        data = json.loads(await get_lesson_tags())
        assert data["tags"] == ["laravel", "pest", "php", "xss"]
        assert data["count"] == 4

    @pytest.mark.asyncio
    async def test_find_related_lessons(self, seeded):
        """The second testing lesson was linked to the first at ingestion."""
        lesson_id = await _lesson_id("factories")
        data = json.loads(await find_related_lessons(lesson_id))
        assert data["count"] == 1
        assert data["related_lessons"][0]["relationship_type"] == "related"

    @pytest.mark.asyncio
    async def test_find_related_invalid_type(self, seeded):
        data = json.loads(await find_related_lessons("anything", relationship_type="cousin"))
        assert data["error"].startswith("Invalid relationship type 'cousin'")

    @pytest.mark.asyncio
    async def test_find_related_unknown_lesson(self, seeded):
        data = json.loads(await find_related_lessons("missing"))
        assert data == {"error": "Lesson not found: missing"}

    @pytest.mark.asyncio
    async def test_get_top_lessons(self, seeded):
        data = json.loads(await get_top_lessons(category="security"))
        assert data["count"] == 1
        assert data["ordered_by"] == "relevance_score"

    @pytest.mark.asyncio
    async def test_get_category_statistics(self, seeded):
        data = json.loads(await get_category_statistics())
        assert data["total_categories"] == 2

        data = json.loads(await get_category_statistics(category="unit-testing"))
        assert data["is_subcategory"] is True

        data = json.loads(await get_category_statistics(category="networking"))
        assert data == {"error": "Category 'networking' not found or has no lessons"}

    @pytest.mark.asyncio
    async def test_mark_lesson_helpful(self, seeded):
        lesson_id = await _lesson_id("templates")
        data = json.loads(await mark_lesson_helpful(lesson_id))
        assert data["success"] is True

        usages = await seeded.get_usages(lesson_id)
        # The search exposure row received the rating
        assert len(usages) == 1
        assert usages[0].was_helpful is True

    @pytest.mark.asyncio
    async def test_mark_unknown_lesson(self, seeded):
        data = json.loads(await mark_lesson_helpful("missing"))
        assert data == {"error": "Lesson not found: missing"}

    @pytest.mark.asyncio
    async def test_suggest_search_queries(self, seeded):
        data = json.loads(await suggest_search_queries("testing"))
        assert data["original_topic"] == "testing"

        data = json.loads(await suggest_search_queries(""))
        assert data == {"error": "Topic or query is required"}

    @pytest.mark.asyncio
    async def test_spider_lessons(self, seeded):
        lesson_id = await _lesson_id("mailer")
        data = json.loads(await spider_lessons(lesson_id, depth=9))
        assert data["depth"] == 5
        assert data["count"] == 1
        assert "content" not in data["connected_lessons"][0]

    @pytest.mark.asyncio
    async def test_spider_unknown_lesson(self, seeded):
        data = json.loads(await spider_lessons("missing"))
        assert data == {"error": "Lesson not found: missing"}


class TestProjectDetailTools:
    """Test project-scoped tools."""

    @pytest.mark.asyncio
    async def test_search_project_details(self, seeded):
        data = json.loads(await search_project_details("alpha", query="orders"))
        assert data["project"] == "alpha"
        assert data["count"] == 1

        data = json.loads(await search_project_details("beta", query="orders"))
        assert data["count"] == 0

    @pytest.mark.asyncio
    async def test_invalid_project(self, seeded):
        data = json.loads(await search_project_details("../etc"))
        assert "error" in data

        data = json.loads(await get_project_details_overview(""))
        assert data == {"error": "Project is required"}

    @pytest.mark.asyncio
    async def test_get_project_details_by_category(self, seeded):
        data = json.loads(await get_project_details_by_category("alpha", "database"))
        assert data["count"] == 1
        assert data["category"] == "database"

    @pytest.mark.asyncio
    async def test_get_project_details_overview(self, seeded):
        data = json.loads(await get_project_details_overview("alpha"))
        assert data == {"project": "alpha", "total_entries": 1, "by_category": {"database": 1}}

    @pytest.mark.asyncio
    async def test_deprecated_details_hidden_unless_requested(self, seeded):
        data = json.loads(await search_project_details("alpha"))
        lesson_id = data["results"][0]["id"]
        await seeded.deprecate(lesson_id)

        assert json.loads(await search_project_details("alpha"))["count"] == 0
        assert json.loads(await search_project_details("alpha", include_deprecated=True))["count"] == 1


class TestRelationshipsThroughTools:
    @pytest.mark.asyncio
    async def test_prerequisite_filter(self, seeded):
        first = await _lesson_id("mailer")
        second = await _lesson_id("templates")
        await seeded.add_relationship(
            LessonRelationship(lesson_id=first, related_lesson_id=second, relationship_type="prerequisite")
        )

        data = json.loads(await find_related_lessons(first, relationship_type="prerequisite"))
        assert [r["id"] for r in data["related_lessons"]] == [second]


class TestResources:
    """Test MCP resources."""

    @pytest.mark.asyncio
    async def test_search_guide(self):
        guide = await get_search_guide()
        assert guide.startswith("# Lessons Learned Search Guide")
        assert "Usage frequency (40%)" in guide
        assert "project-details://{project}/overview" in guide

    @pytest.mark.asyncio
    async def test_lessons_overview(self, seeded):
        overview = await get_lessons_overview()
        assert "- **Total Lessons:** 3" in overview
        assert "- **Categories:** 2" in overview
        assert "- **security** (1 lessons)" in overview
        assert "- **testing** (2 lessons)" in overview
        assert "laravel, pest, php, xss" in overview
        # Project details stay out of the generic overview
        assert "Orders are stored" not in overview

    @pytest.mark.asyncio
    async def test_lessons_overview_empty(self, server_store):
        overview = await get_lessons_overview()
        assert "- **Total Lessons:** 0" in overview
        assert "## Recent Lessons" not in overview

    @pytest.mark.asyncio
    async def test_project_details_overview(self, seeded):
        overview = await get_project_details_resource("alpha")
        assert "Project: **alpha**" in overview
        assert "- **Total Details:** 1" in overview
        assert "- **database** (1 details)" in overview

        overview = await get_project_details_resource("beta")
        assert "No project details have been pushed for beta yet." in overview

    @pytest.mark.asyncio
    async def test_project_details_overview_invalid_project(self, seeded):
        overview = await get_project_details_resource("../etc")
        assert overview.startswith("Error:")


class TestPrompts:
    """Test MCP prompts."""

    @pytest.mark.asyncio
    async def test_lessons_learned_overview(self, seeded):
        text = await lessons_learned_overview()
        assert "Total generic lessons available: 3" in text
        assert "- testing (2 lessons)" in text

    @pytest.mark.asyncio
    async def test_lessons_by_category(self, seeded):
        text = await lessons_by_category("testing")
        assert text.startswith("## Lessons in Category: testing")
        assert "Total lessons: 2" in text
        assert "Mock the mailer" in text
        assert "Orders are stored" not in text

    @pytest.mark.asyncio
    async def test_lessons_by_category_missing(self, seeded):
        assert "No lessons found in category 'networking'" in await lessons_by_category("networking")
        assert await lessons_by_category("  ") == (
            "Please provide a category to see lessons for that category."
        )

    @pytest.mark.asyncio
    async def test_project_details_by_category(self, seeded):
        text = await project_details_by_category("alpha", "database")
        assert "Project: **alpha**" in text
        assert "Total details: 1" in text
        assert "Orders are stored in the shop schema." in text

        text = await project_details_by_category("beta", "database")
        assert text.startswith("No project details found in category 'database'")

    @pytest.mark.asyncio
    async def test_when_to_use_project_details(self, seeded):
        text = await when_to_use_project_details("alpha")
        assert "project: **alpha**" in text
        assert "This project has **1** project detail(s) available." in text

        assert (await when_to_use_project_details("")).startswith("Error:")
