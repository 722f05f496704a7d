"""Ranked search and browse over stored lessons.

Free-text queries go through the full-text index first and are ranked by a
blend of full-text relevance and the stored relevance score. When the index
yields nothing (small or cold datasets) a plain substring match takes over.
"""

import logging

from .config import get_settings
from .errors import CategoryRequiredError, LessonNotFoundError
from .models import FilterTarget, Lesson, LessonResult, Namespace, RelatedLesson, SearchResponse
from .persistence import LessonFilter, LessonStore
from .tracking import RetrievalTracker

logger = logging.getLogger("lessonbase.search")

FULLTEXT_WEIGHT = 0.7
STORED_RELEVANCE_WEIGHT = 0.3
RELATED_PER_RESULT = 5
MIN_FULLTEXT_CANDIDATES = 50
UMBRELLA_CATEGORY = "lessons-learned"

# Topic -> related search terms for query suggestions
QUERY_EXPANSIONS: dict[str, list[str]] = {
    "validation": ["form request", "validation rules", "error handling", "form validation"],
    "testing": ["test", "tests", "pest", "phpunit", "mocking", "assertions"],
    "mocking": ["mock", "stub", "spy", "fake", "test doubles"],
    "migration": ["migrations", "database", "schema", "table", "column"],
    "route": ["routing", "routes", "controller", "endpoint"],
    "controller": ["action", "handler", "request", "response"],
    "model": ["eloquent", "database", "relationships", "factory"],
    "form": ["forms", "validation", "form request", "input"],
    "api": ["endpoint", "resource", "controller", "response"],
    "error": ["errors", "exception", "handling", "failure"],
    "auth": ["authentication", "authorization", "login", "user"],
    "middleware": ["middlewares", "request", "filter", "guard"],
    "database": ["query", "eloquent", "model", "migration"],
    "cache": ["caching", "redis", "performance"],
    "queue": ["jobs", "background", "async", "worker"],
}
MAX_EXPANSIONS = 5


def normalize_bm25(ranks: list[float]) -> list[float]:
    """Map raw BM25 ranks onto [0.1, 1.0], best match scoring 1.0.

    SQLite's bm25() is negative and lower is better.
    """
    if not ranks:
        return []
    best, worst = min(ranks), max(ranks)
    if best == worst:
        return [1.0] * len(ranks)
    return [0.1 + 0.9 * (worst - r) / (worst - best) for r in ranks]


def expand_topic(topic: str) -> list[str]:
    """Related search terms for a topic, at most MAX_EXPANSIONS."""
    topic = topic.lower()
    suggestions: dict[str, None] = {}
    for key, values in QUERY_EXPANSIONS.items():
        if key in topic or topic in key:
            suggestions.update(dict.fromkeys(values))
    return list(suggestions)[:MAX_EXPANSIONS]


class SearchEngine:
    """Query-time ranking and browsing for both namespaces."""

    def __init__(
        self,
        store: LessonStore,
        tracker: RetrievalTracker | None = None,
        track_usage: bool | None = None,
    ):
        self.store = store
        self.tracker = tracker or RetrievalTracker(store)
        self.track_usage = get_settings().track_search_usage if track_usage is None else track_usage

    async def resolve_filter_target(
        self, candidate: str, namespace: Namespace | None = None
    ) -> FilterTarget:
        """Decide whether one filter string names a category or a subcategory.

        It is a subcategory when it contains a hyphen, is not the umbrella
        category itself, and at least one lesson in the namespace actually has
        it as subcategory. Everything else is treated as a category.
        """
        namespace = namespace or Namespace.generic()
        if (
            "-" in candidate
            and candidate != UMBRELLA_CATEGORY
            and await self.store.subcategory_exists(namespace, candidate)
        ):
            return FilterTarget(field="subcategory", value=candidate)
        return FilterTarget(field="category", value=candidate)

    async def _filter(
        self,
        namespace: Namespace | None,
        category: str | None,
        tags: list[str] | None,
        active_only: bool,
    ) -> LessonFilter:
        namespace = namespace or Namespace.generic()
        target = await self.resolve_filter_target(category, namespace) if category else None
        return LessonFilter(namespace=namespace, target=target, tags=tags or None, active_only=active_only)

    async def search(
        self,
        query: str | None = None,
        category: str | None = None,
        tags: list[str] | None = None,
        include_related: bool = False,
        limit: int | None = None,
        namespace: Namespace | None = None,
        active_only: bool = True,
        session_id: str | None = None,
    ) -> SearchResponse:
        """Search or browse lessons.

        Args:
            query: Free text matched against content; None or blank browses
            category: Category or subcategory filter (see resolve_filter_target)
            tags: Match lessons carrying any of these tags
            include_related: Attach up to five related lessons per result
            limit: Maximum results (default from settings)
            namespace: Generic pool (default) or one project's details
            active_only: Exclude deprecated lessons
            session_id: Recorded on implicit usage rows
        """
        if limit is None:
            limit = get_settings().search_limit
        lesson_filter = await self._filter(namespace, category, tags, active_only)
        query = query.strip() if query else None

        if query:
            response = await self._keyword_search(lesson_filter, query, limit)
            if self.track_usage and response.results:
                await self.tracker.record_exposure(
                    [r.lesson.id for r in response.results], query, session_id
                )
        else:
            response = await self._browse(lesson_filter, limit)

        if include_related:
            for result in response.results:
                result.related = await self.related_to(result.lesson.id, limit=RELATED_PER_RESULT)

        return response

    async def _keyword_search(
        self, lesson_filter: LessonFilter, query: str, limit: int
    ) -> SearchResponse:
        hits = await self.store.fulltext_search(
            lesson_filter, query, max(limit * 5, MIN_FULLTEXT_CANDIDATES)
        )
        if not hits:
            logger.debug(f"No full-text matches for {query!r}, falling back to substring search")
            lessons = await self.store.substring_search(lesson_filter, query, limit)
            return SearchResponse(
                results=[LessonResult(lesson=lesson) for lesson in lessons],
                match_mode="substring",
                ordered_by="created_at",
            )

        use_stored = self.store.capabilities.relevance_score
        normalized = normalize_bm25([rank for _, rank in hits])
        results = []
        for (lesson, _), fulltext in zip(hits, normalized):
            if use_stored:
                rank_score = FULLTEXT_WEIGHT * fulltext + STORED_RELEVANCE_WEIGHT * lesson.relevance_score
            else:
                rank_score = fulltext
            results.append(LessonResult(lesson=lesson, fulltext_relevance=fulltext, rank_score=rank_score))

        results.sort(key=lambda r: (r.rank_score, r.lesson.created_at), reverse=True)
        return SearchResponse(
            results=results[:limit],
            match_mode="fulltext",
            ordered_by="fulltext_relevance,relevance_score" if use_stored else "fulltext_relevance",
        )

    async def _browse(self, lesson_filter: LessonFilter, limit: int) -> SearchResponse:
        lessons = await self.store.browse(lesson_filter, limit)
        return SearchResponse(
            results=[LessonResult(lesson=lesson) for lesson in lessons],
            match_mode="browse",
            ordered_by=self._browse_ordered_by(),
        )

    def _browse_ordered_by(self) -> str:
        return "relevance_score" if self.store.capabilities.relevance_score else "created_at"

    async def by_category(
        self,
        category: str | None,
        limit: int | None = None,
        namespace: Namespace | None = None,
        include_related: bool = False,
        active_only: bool = True,
    ) -> SearchResponse:
        """Browse one category or subcategory.

        Raises:
            CategoryRequiredError: category is missing or blank.
        """
        if not category or not category.strip():
            raise CategoryRequiredError()
        return await self.search(
            category=category.strip(),
            include_related=include_related,
            limit=limit,
            namespace=namespace,
            active_only=active_only,
        )

    async def by_tags(
        self,
        tags: list[str],
        limit: int | None = None,
        namespace: Namespace | None = None,
        active_only: bool = True,
    ) -> SearchResponse:
        """Browse lessons carrying any of the given tags."""
        if not tags:
            return SearchResponse(ordered_by=self._browse_ordered_by())
        return await self.search(tags=tags, limit=limit, namespace=namespace, active_only=active_only)

    async def top_by_score(
        self,
        category: str | None = None,
        limit: int | None = None,
        namespace: Namespace | None = None,
    ) -> SearchResponse:
        """Active lessons ordered by relevance score, then recency."""
        return await self.search(category=category, limit=limit, namespace=namespace)

    async def related_to(
        self,
        lesson_id: str,
        relationship_type: str | None = None,
        limit: int = 10,
    ) -> list[RelatedLesson]:
        """Lessons linked to ``lesson_id`` in either direction, strongest first.

        Raises:
            LessonNotFoundError: lesson_id does not exist.
        """
        if await self.store.get_lesson(lesson_id) is None:
            raise LessonNotFoundError(lesson_id)

        edges = await self.store.get_relationships(lesson_id, relationship_type)
        others: dict[str, tuple[str, float | None]] = {}
        for edge in edges:
            other = edge.related_lesson_id if edge.lesson_id == lesson_id else edge.lesson_id
            if other != lesson_id and other not in others:
                others[other] = (edge.relationship_type, edge.relevance_score)
            if len(others) >= limit:
                break

        lessons = await self.store.get_lessons(list(others))
        return [
            RelatedLesson(lesson=lessons[other], relationship_type=rel_type, relevance_score=score)
            for other, (rel_type, score) in others.items()
            if other in lessons
        ]

    async def category_statistics(
        self,
        category: str | None = None,
        include_top_lessons: bool = True,
        top_lessons_limit: int = 5,
    ) -> dict | None:
        """Statistics for one category (or subcategory), or for all categories.

        Returns None when a specific category has no active lessons.
        """
        if category:
            return await self._single_category_statistics(
                category, include_top_lessons, top_lessons_limit
            )

        base = LessonFilter()
        categories = []
        for name, total in await self.store.category_counts(base):
            lesson_filter = LessonFilter(target=FilterTarget(field="category", value=name))
            entry: dict = {"category": name, "total_lessons": total}

            relevance = await self.store.relevance_stats(lesson_filter)
            if relevance is not None:
                entry["avg_relevance_score"] = relevance["average"]
                entry["max_relevance_score"] = relevance["maximum"]

            usage = await self.store.usage_summary(lesson_filter)
            if usage is not None:
                entry["total_usages"] = usage["total_usages"]
                entry["helpfulness_rate"] = _helpfulness_rate(usage)

            if include_top_lessons:
                top = await self.store.browse(lesson_filter, 1)
                if top:
                    entry["top_lesson"] = {
                        "id": top[0].id,
                        "title": top[0].title,
                        "relevance_score": top[0].relevance_score,
                    }
            categories.append(entry)

        if self.store.capabilities.relevance_score:
            categories.sort(key=lambda c: c.get("avg_relevance_score", 0.0), reverse=True)
            ordered_by = "avg_relevance_score"
        else:
            ordered_by = "total_lessons"

        return {
            "categories": categories,
            "total_categories": len(categories),
            "ordered_by": ordered_by,
        }

    async def _single_category_statistics(
        self, category: str, include_top_lessons: bool, top_lessons_limit: int
    ) -> dict | None:
        target = await self.resolve_filter_target(category)
        lesson_filter = LessonFilter(target=target)
        total = await self.store.count(lesson_filter)
        if total == 0:
            return None

        stats: dict = {
            "category": category,
            "is_subcategory": target.field == "subcategory",
            "total_lessons": total,
        }

        relevance = await self.store.relevance_stats(lesson_filter)
        if relevance is not None:
            stats["relevance_score"] = relevance

        usage = await self.store.usage_summary(lesson_filter)
        if usage is not None:
            stats["usage"] = {
                "total_usages": usage["total_usages"],
                "lessons_with_usage": usage["lessons_with_usage"],
                "helpfulness_rate": _helpfulness_rate(usage),
                "helpful_count": usage["helpful_count"],
                "not_helpful_count": usage["not_helpful_count"],
            }

        if include_top_lessons:
            top = await self.store.browse(lesson_filter, top_lessons_limit)
            stats["top_lessons"] = [
                {
                    "id": lesson.id,
                    "title": lesson.title,
                    "category": lesson.category,
                    "subcategory": lesson.subcategory,
                    "relevance_score": lesson.relevance_score,
                }
                for lesson in top
            ]

        return stats

    async def list_tags(self, namespace: Namespace | None = None) -> list[str]:
        """Sorted unique tags across the namespace, deprecated lessons included."""
        return await self.store.distinct_tags(
            LessonFilter(namespace=namespace or Namespace.generic(), active_only=False)
        )

    async def suggest_queries(self, topic: str) -> dict:
        """Suggest follow-up queries, categories and tags for a topic."""
        if not topic or not topic.strip():
            raise ValueError("Topic or query is required")
        topic = topic.strip()

        samples = await self.store.text_match_any_field(
            LessonFilter(active_only=False), topic, limit=10
        )
        related_categories = list(dict.fromkeys(l.category for l in samples if l.category))
        related_tags = list(dict.fromkeys(t for l in samples for t in l.tags if t))[:10]

        queries: list[dict] = [
            {"query": topic, "type": "exact", "description": "Exact match for your search term"}
        ]
        for term in expand_topic(topic):
            queries.append({
                "query": term,
                "type": "related",
                "description": "Related term that might help discover additional lessons",
            })
        for name in related_categories[:3]:
            queries.append({
                "query": None,
                "category": name,
                "type": "category",
                "description": f"Browse lessons in category: {name}",
            })
        for tag in related_tags[:3]:
            queries.append({
                "query": None,
                "tags": [tag],
                "type": "tag",
                "description": f"Filter lessons by tag: {tag}",
            })

        return {
            "original_topic": topic,
            "suggested_queries": queries,
            "related_categories": related_categories,
            "related_tags": related_tags,
            "count": len(queries),
        }

    async def category_total(self, category: str, namespace: Namespace | None = None) -> int:
        """Active lessons in one category or subcategory."""
        lesson_filter = await self._filter(namespace, category, None, active_only=True)
        return await self.store.count(lesson_filter)

    async def recent(self, limit: int = 5, namespace: Namespace | None = None) -> list[Lesson]:
        """Newest active lessons in a namespace."""
        lesson_filter = LessonFilter(namespace=namespace or Namespace.generic())
        return await self.store.browse(lesson_filter, limit, by_relevance=False)

    async def project_overview(self, project: str) -> dict:
        """Active project-detail entry counts for one project, by category."""
        lesson_filter = LessonFilter(namespace=Namespace.project_detail(project))
        return {
            "project": project,
            "total_entries": await self.store.count(lesson_filter),
            "by_category": dict(await self.store.category_counts(lesson_filter)),
        }


def _helpfulness_rate(usage: dict[str, int]) -> float:
    """Percentage of usages marked helpful, two decimals."""
    total = usage["total_usages"]
    return round(usage["helpful_count"] / total * 100, 2) if total else 0.0
