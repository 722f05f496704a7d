"""lessonbase MCP server.

Exposes lesson search, browsing and feedback to AI coding agents over the
Model Context Protocol. Uses FastMCP from the official Python SDK.
https://github.com/modelcontextprotocol/python-sdk

Project-detail tools take the project explicitly on every call; there is no
"current project" state held by the server.
"""

import asyncio
import json
import re

from mcp.server.fastmcp import FastMCP

from . import __version__
from .errors import CategoryRequiredError, LessonNotFoundError
from .graph import load_graph
from .logging_config import configure_logging, get_logger
from .models import RELATIONSHIP_TYPES, Lesson, Namespace
from .persistence import LessonFilter, LessonStore
from .scoring import HELPFULNESS_WEIGHT, RECENCY_WEIGHT, USAGE_WEIGHT
from .search import SearchEngine
from .tracking import RetrievalTracker

# Configure logging with rotation (CRITICAL: logs to file, not stdout which breaks MCP STDIO)
configure_logging(console_output=False)
logger = get_logger("server")

# Initialize FastMCP server
mcp = FastMCP("lessonbase")

# Global state (initialized on first tool call)
_store: LessonStore | None = None
_search: SearchEngine | None = None
_tracker: RetrievalTracker | None = None
_initialized = False
_init_lock = asyncio.Lock()

PROJECT_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,255}$")
MAX_LIMIT = 100
MAX_SPIDER_DEPTH = 5


def _json(data: dict) -> str:
    return json.dumps(data, indent=2, default=str)


def _error(message: str) -> str:
    return _json({"error": message})


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_LIMIT))


def _validate_project(project: str) -> str | None:
    """Validate a project identifier. Returns error message or None if valid."""
    if not project:
        return "Project is required"
    if not PROJECT_PATTERN.match(project):
        return "Project must be 1-255 characters of letters, digits, '_' or '-'"
    return None


async def _ensure_initialized() -> tuple[LessonStore, SearchEngine, RetrievalTracker]:
    """Lazy initialization of components with thread-safe locking."""
    global _store, _search, _tracker, _initialized

    # Fast path: already initialized
    if _initialized:
        return _store, _search, _tracker

    async with _init_lock:
        # Double-check after acquiring lock
        if _initialized:
            return _store, _search, _tracker

        logger.info("Initializing lessonbase server...")
        try:
            _store = LessonStore()
            capabilities = await _store.initialize()
            _tracker = RetrievalTracker(_store)
            _search = SearchEngine(_store, tracker=_tracker)
            _initialized = True
            logger.info(f"Server initialized successfully ({capabilities})")
        except Exception as e:
            logger.error(f"Failed to initialize lessonbase server: {e}")
            raise

        return _store, _search, _tracker


# ============================================================================
# LESSON TOOLS
# ============================================================================


@mcp.tool()
async def search_lessons(
    query: str | None = None,
    category: str | None = None,
    tags: list[str] | None = None,
    include_related: bool = False,
    limit: int = 10,
) -> str:
    """Search the shared lessons-learned knowledge base.

    Call this before starting a coding task to find relevant best practices.

    Args:
        query: Keywords to find in lesson content (omit to browse)
        category: Filter by category or subcategory (e.g. 'testing', 'error-handling')
        tags: Only return lessons with any of these tags
        include_related: Attach up to 5 related lessons to each result
        limit: Maximum number of results (default 10)
    """
    store, search, tracker = await _ensure_initialized()
    response = await search.search(
        query=query,
        category=category,
        tags=tags,
        include_related=include_related,
        limit=_clamp_limit(limit),
    )
    return _json(response.to_result_dict())


@mcp.tool()
async def get_lessons_by_category(category: str, limit: int = 10) -> str:
    """Browse lessons in one category or subcategory, best first.

    Args:
        category: Category or subcategory name
        limit: Maximum number of lessons (default 10)
    """
    store, search, tracker = await _ensure_initialized()
    try:
        response = await search.by_category(category, limit=_clamp_limit(limit))
    except CategoryRequiredError as e:
        return _error(e.message)

    data = response.to_result_dict()
    data["category"] = category
    return _json(data)


@mcp.tool()
async def get_lesson_tags() -> str:
    """List every tag used in the shared knowledge base."""
    store, search, tracker = await _ensure_initialized()
    tags = await search.list_tags()
    return _json({"tags": tags, "count": len(tags)})


@mcp.tool()
async def find_related_lessons(
    lesson_id: str, relationship_type: str | None = None, limit: int = 10
) -> str:
    """Find lessons linked to a known lesson.

    Args:
        lesson_id: The lesson to start from
        relationship_type: Optional filter: prerequisite, related, alternative or supersedes
        limit: Maximum number of related lessons (default 10)
    """
    store, search, tracker = await _ensure_initialized()
    if not lesson_id:
        return _error("lesson_id is required")
    if relationship_type and relationship_type not in RELATIONSHIP_TYPES:
        valid = ", ".join(RELATIONSHIP_TYPES)
        return _error(f"Invalid relationship type '{relationship_type}'. Valid types: {valid}")

    try:
        related = await search.related_to(lesson_id, relationship_type, limit=_clamp_limit(limit))
    except LessonNotFoundError as e:
        return _error(e.message)

    return _json({
        "lesson_id": lesson_id,
        "relationship_type": relationship_type,
        "related_lessons": [r.to_result_dict() for r in related],
        "count": len(related),
    })


@mcp.tool()
async def get_top_lessons(category: str | None = None, limit: int = 10) -> str:
    """Get the highest-scoring active lessons, optionally within a category.

    Args:
        category: Optional category or subcategory filter
        limit: Maximum number of lessons (default 10)
    """
    store, search, tracker = await _ensure_initialized()
    response = await search.top_by_score(category=category, limit=_clamp_limit(limit))
    return _json({
        "category": category,
        "lessons": [r.to_result_dict() for r in response.results],
        "count": response.count,
        "ordered_by": response.ordered_by,
    })


@mcp.tool()
async def get_category_statistics(
    category: str | None = None,
    include_top_lessons: bool = True,
    top_lessons_limit: int = 5,
) -> str:
    """Get lesson counts, relevance and usage statistics per category.

    Args:
        category: A single category or subcategory (omit for all categories)
        include_top_lessons: Include the best lessons for each category
        top_lessons_limit: How many top lessons for a single category (default 5)
    """
    store, search, tracker = await _ensure_initialized()
    stats = await search.category_statistics(
        category=category,
        include_top_lessons=include_top_lessons,
        top_lessons_limit=_clamp_limit(top_lessons_limit),
    )
    if stats is None:
        return _error(f"Category '{category}' not found or has no lessons")
    return _json(stats)


@mcp.tool()
async def mark_lesson_helpful(
    lesson_id: str, was_helpful: bool = True, session_id: str | None = None
) -> str:
    """Tell the knowledge base whether a lesson helped. Feeds relevance scoring.

    Args:
        lesson_id: The lesson to rate
        was_helpful: Whether the lesson was helpful (default true)
        session_id: Optional client session identifier
    """
    store, search, tracker = await _ensure_initialized()
    if not lesson_id:
        return _error("Lesson ID is required")
    if not store.capabilities.usage_tracking:
        return _error("Usage tracking is not available. Please run migrations first.")

    result = await tracker.record_feedback(lesson_id, was_helpful, session_id)
    if not result.success:
        return _error(result.message)
    return _json({"success": True, "message": result.message, "lesson_id": lesson_id})


@mcp.tool()
async def suggest_search_queries(topic: str) -> str:
    """Suggest search queries, categories and tags for a topic.

    Args:
        topic: The subject you want to find lessons about (e.g. 'validation')
    """
    store, search, tracker = await _ensure_initialized()
    try:
        suggestions = await search.suggest_queries(topic)
    except ValueError as e:
        return _error(str(e))
    return _json(suggestions)


@mcp.tool()
async def spider_lessons(lesson_id: str, depth: int = 2) -> str:
    """Explore the relationship graph outward from a known lesson.

    Args:
        lesson_id: Starting lesson ID to traverse from
        depth: How many levels deep to traverse (default 2, max 5)
    """
    store, search, tracker = await _ensure_initialized()
    depth = max(1, min(depth, MAX_SPIDER_DEPTH))

    graph = await load_graph(store)
    if lesson_id not in graph.graph:
        return _error(f"Lesson not found: {lesson_id}")

    visited_ids, paths = graph.spider(lesson_id, depth=depth)
    connected = [vid for vid in visited_ids if vid != lesson_id]
    lessons = await store.get_lessons(connected)
    return _json({
        "lesson_id": lesson_id,
        "depth": depth,
        "connected_lessons": [
            lessons[vid].to_result_dict(include_content=False) for vid in connected if vid in lessons
        ],
        "paths": paths,
        "count": len(connected),
    })


# ============================================================================
# PROJECT DETAIL TOOLS
# ============================================================================


@mcp.tool()
async def search_project_details(
    project: str,
    query: str | None = None,
    category: str | None = None,
    tags: list[str] | None = None,
    include_deprecated: bool = False,
    limit: int = 10,
) -> str:
    """Search implementation notes recorded for one project.

    Args:
        project: Project identifier (letters, digits, '_' and '-')
        query: Keywords to find in the notes (omit to browse)
        category: Filter by category or subcategory
        tags: Only return notes with any of these tags
        include_deprecated: Also return deprecated notes
        limit: Maximum number of results (default 10)
    """
    if error := _validate_project(project):
        return _error(error)
    store, search, tracker = await _ensure_initialized()
    response = await search.search(
        query=query,
        category=category,
        tags=tags,
        limit=_clamp_limit(limit),
        namespace=Namespace.project_detail(project),
        active_only=not include_deprecated,
    )
    data = response.to_result_dict()
    data["project"] = project
    return _json(data)


@mcp.tool()
async def get_project_details_by_category(project: str, category: str, limit: int = 10) -> str:
    """Browse one project's implementation notes in a category.

    Args:
        project: Project identifier
        category: Category or subcategory name
        limit: Maximum number of results (default 10)
    """
    if error := _validate_project(project):
        return _error(error)
    store, search, tracker = await _ensure_initialized()
    try:
        response = await search.by_category(
            category,
            limit=_clamp_limit(limit),
            namespace=Namespace.project_detail(project),
        )
    except CategoryRequiredError as e:
        return _error(e.message)

    data = response.to_result_dict()
    data["project"] = project
    data["category"] = category
    return _json(data)


@mcp.tool()
async def get_project_details_overview(project: str) -> str:
    """Summarise how many implementation notes a project has, by category.

    Args:
        project: Project identifier
    """
    if error := _validate_project(project):
        return _error(error)
    store, search, tracker = await _ensure_initialized()
    return _json(await search.project_overview(project))


# ============================================================================
# RESOURCES
# ============================================================================

SEARCH_GUIDE = f"""# Lessons Learned Search Guide

Lessons are ranked by a relevance score recomputed on a schedule:

- **Usage frequency ({USAGE_WEIGHT:.0%})** - how often the lesson is retrieved
- **Helpfulness ({HELPFULNESS_WEIGHT:.0%})** - share of positive feedback
- **Recency ({RECENCY_WEIGHT:.0%})** - newer lessons get a small boost

## Search Strategies

1. **Keyword search** (`search_lessons` with `query`) for a specific topic,
   pattern or technology. Words shorter than three characters are ignored;
   when nothing matches the full-text index a substring match is used.
2. **Category browse** (`get_lessons_by_category`) when you know the topic
   area, e.g. `testing` or a subcategory such as `unit-testing`.
3. **Tag filter** (`search_lessons` with `tags`) to narrow results to one
   technology; any listed tag matches. `get_lesson_tags` lists them all.
4. **Related lessons** (`find_related_lessons`, `spider_lessons`) after a
   useful hit, to follow prerequisite, alternative and superseding lessons.

## When to Query

- At the start of a task: read `lessons://overview`, then search for the task
- Before implementing a new pattern or making an architectural decision
- When an error or unexpected behavior shows up

Call `mark_lesson_helpful` when a lesson helped (or did not); it feeds the
helpfulness part of the score. `suggest_search_queries` proposes follow-up
terms for a topic.

## Project Details

Project-specific notes (file paths, conventions, env vars) live in a
separate namespace. Use `search_project_details`,
`get_project_details_by_category` and `get_project_details_overview`, or
read `project-details://{{project}}/overview`.
"""

PREVIEW_LENGTH = 300
MAX_LISTED_TAGS = 20


def _preview(text: str | None, length: int = PREVIEW_LENGTH) -> str:
    text = text or ""
    return text[:length] + "..." if len(text) > length else text


def _tag_line(tags: list[str], limit: int = MAX_LISTED_TAGS) -> str:
    line = ", ".join(tags[:limit])
    return line + ", ..." if len(tags) > limit else line


def _heading(lesson: Lesson) -> str:
    heading = lesson.title or f"{lesson.type.capitalize()} lesson"
    return f"{heading} ({lesson.category})" if lesson.category else heading


@mcp.resource("lessons://search-guide")
async def get_search_guide() -> str:
    """How to search lessons effectively: strategies, scoring and examples."""
    return SEARCH_GUIDE


@mcp.resource("lessons://overview")
async def get_lessons_overview() -> str:
    """Overview of the shared knowledge base, loaded at session start.

    Categories with counts, tags and the most recent lessons.
    """
    store, search, tracker = await _ensure_initialized()

    total = await store.count(LessonFilter())
    statistics = await search.category_statistics(include_top_lessons=False)
    categories = statistics["categories"] if statistics else []
    tags = await search.list_tags()
    recent = await search.recent(limit=5)

    lines = [
        "# Lessons Learned Overview\n",
        "Use search_lessons, get_lessons_by_category and get_lesson_tags to query lessons.\n",
        "## Summary\n",
        f"- **Total Lessons:** {total}",
        f"- **Categories:** {len(categories)}",
        f"- **Tags:** {len(tags)}",
        "",
    ]
    if categories:
        lines.append("## Available Categories\n")
        for entry in sorted(categories, key=lambda c: c["category"]):
            lines.append(f"- **{entry['category']}** ({entry['total_lessons']} lessons)")
        lines.append("")
    if tags:
        lines.extend(["## Tags\n", _tag_line(tags), ""])
    if recent:
        lines.append("## Recent Lessons\n")
        for lesson in recent:
            lines.append(f"### {_heading(lesson)}\n")
            if lesson.tags:
                lines.append(f"**Tags:** {_tag_line(lesson.tags, 5)}\n")
            lines.extend([_preview(lesson.content), "", "---", ""])
    return "\n".join(lines)


@mcp.resource("project-details://{project}/overview")
async def get_project_details_resource(project: str) -> str:
    """Overview of one project's implementation notes by category and recency."""
    if error := _validate_project(project):
        return f"Error: {error}"
    store, search, tracker = await _ensure_initialized()

    overview = await search.project_overview(project)
    recent = await search.recent(limit=5, namespace=Namespace.project_detail(project))

    lines = [
        "# Project Details Overview\n",
        f"Project: **{project}**\n",
        f"- **Total Details:** {overview['total_entries']}",
        f"- **Categories:** {len(overview['by_category'])}",
        "",
    ]
    if overview["by_category"]:
        lines.append("## Available Categories\n")
        for category, count in overview["by_category"].items():
            lines.append(f"- **{category}** ({count} details)")
        lines.append("")
    if recent:
        lines.append("## Recent Project Details\n")
        for detail in recent:
            lines.extend([f"### {_heading(detail)}\n", _preview(detail.summary or detail.content), ""])
    if not overview["total_entries"]:
        lines.append(f"No project details have been pushed for {project} yet.")
    return "\n".join(lines)


# ============================================================================
# PROMPTS
# ============================================================================


@mcp.prompt()
async def lessons_learned_overview() -> str:
    """Summarise what generic lessons are available, by category."""
    store, search, tracker = await _ensure_initialized()
    total = await store.count(LessonFilter())
    statistics = await search.category_statistics(include_top_lessons=False)

    lines = ["## Lessons Learned Overview\n", f"Total generic lessons available: {total}\n"]
    if statistics and statistics["categories"]:
        lines.append("### Available Categories\n")
        for entry in sorted(statistics["categories"], key=lambda c: c["category"]):
            lines.append(f"- {entry['category']} ({entry['total_lessons']} lessons)")
        lines.append("")
    lines.append(
        "Use search_lessons to find specific lessons, or get_lessons_by_category to browse."
    )
    return "\n".join(lines)


@mcp.prompt()
async def lessons_by_category(category: str) -> str:
    """Summarise the lessons available in one category.

    Args:
        category: Category or subcategory name
    """
    if not category or not category.strip():
        return "Please provide a category to see lessons for that category."
    store, search, tracker = await _ensure_initialized()

    category = category.strip()
    total = await search.category_total(category)
    if not total:
        return f"No lessons found in category '{category}'. Use get_lesson_tags to explore what exists."
    response = await search.by_category(category, limit=10)

    lines = [f"## Lessons in Category: {category}\n", f"Total lessons: {total}\n"]
    for index, result in enumerate(response.results, start=1):
        lesson = result.lesson
        entry = f"{index}. **{lesson.title or lesson.type}**"
        if lesson.tags:
            entry += f" - Tags: {', '.join(lesson.tags[:3])}"
        lines.extend([entry, f"   {_preview(lesson.content, 200)}", ""])
    if total > response.count:
        lines.append(
            f"_Showing {response.count} of {total} lessons. "
            "Use get_lessons_by_category to see more._"
        )
    return "\n".join(lines)


@mcp.prompt()
async def project_details_by_category(project: str, category: str) -> str:
    """Summarise everything a project has documented for one topic.

    Args:
        project: Project identifier
        category: Category or subcategory name
    """
    if error := _validate_project(project):
        return f"Error: {error}"
    if not category or not category.strip():
        return "Please provide a category to see project details for that category."
    store, search, tracker = await _ensure_initialized()

    category = category.strip()
    namespace = Namespace.project_detail(project)
    total = await search.category_total(category, namespace=namespace)
    if not total:
        return (
            f"No project details found in category '{category}'. "
            "Use get_project_details_overview to see the categories this project has."
        )
    response = await search.by_category(category, limit=10, namespace=namespace)

    lines = [
        f"## Project Details in Category: {category}\n",
        f"Project: **{project}**\n",
        f"Total details: {total}\n",
    ]
    for index, result in enumerate(response.results, start=1):
        detail = result.lesson
        entry = f"{index}. **{detail.title or detail.type}**"
        if detail.tags:
            entry += f" - Tags: {', '.join(detail.tags[:3])}"
        lines.extend([entry, f"   {_preview(detail.summary or detail.content, 200)}", ""])
    if total > response.count:
        lines.append(
            f"_Showing {response.count} of {total} details. "
            "Use get_project_details_by_category to see more._"
        )
    return "\n".join(lines)


@mcp.prompt()
async def when_to_use_project_details(project: str) -> str:
    """Explain when to reach for project details instead of generic lessons.

    Args:
        project: Project identifier
    """
    if error := _validate_project(project):
        return f"Error: {error}"
    store, search, tracker = await _ensure_initialized()
    overview = await search.project_overview(project)

    return "\n".join([
        "## When to Use Project Details vs Lessons Learned\n",
        f"**Use project details** (project: **{project}**) for:",
        '- "How is X done in this project?" or "Where is Y in this codebase?"',
        "- File paths, environment variables and project conventions",
        "- Implementation details specific to this repository\n",
        "**Use lessons learned** (the shared pool) for:",
        "- General framework and testing patterns",
        "- Best practices not tied to one repository\n",
        "**Project detail tools:**",
        "- search_project_details - keyword, category or tag search within the project",
        "- get_project_details_by_category - every detail in one category",
        "- get_project_details_overview - counts by category\n",
        f"This project has **{overview['total_entries']}** project detail(s) available.",
    ])


def main():
    """Run the MCP server over stdio."""
    import sys

    if len(sys.argv) > 1 and sys.argv[1] in ("--version", "-V"):
        print(f"lessonbase {__version__}")
        return

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
