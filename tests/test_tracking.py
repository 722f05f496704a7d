"""Tests for usage and feedback tracking."""

import pytest

from lessonbase.models import LessonUsage
from lessonbase.tracking import EXPLICIT_FEEDBACK_CONTEXT, RetrievalTracker


class TestFeedbackOverwrite:
    """Test the default overwrite policy."""

    @pytest.mark.asyncio
    async def test_first_feedback_inserts_row(self, store, make_lesson):
        lesson = make_lesson("Rated lesson")
        await store.add_lesson(lesson)

        result = await RetrievalTracker(store, mode="overwrite").record_feedback(lesson.id, True, "s1")

        assert result.success
        assert result.message == "Lesson marked as helpful. Thank you for your feedback!"
        usages = await store.get_usages(lesson.id)
        assert len(usages) == 1
        assert usages[0].query_context == EXPLICIT_FEEDBACK_CONTEXT
        assert usages[0].was_helpful is True
        assert usages[0].session_id == "s1"

    @pytest.mark.asyncio
    async def test_repeated_feedback_converges(self, store, make_lesson):
        lesson = make_lesson("Rated twice")
        await store.add_lesson(lesson)
        tracker = RetrievalTracker(store, mode="overwrite")

        await tracker.record_feedback(lesson.id, True)
        result = await tracker.record_feedback(lesson.id, False)

        assert result.message == "Lesson marked as not helpful. Thank you for your feedback!"
        usages = await store.get_usages(lesson.id)
        assert len(usages) == 1
        assert usages[0].was_helpful is False

    @pytest.mark.asyncio
    async def test_feedback_rates_latest_exposure(self, store, make_lesson):
        lesson = make_lesson("Surfaced lesson")
        await store.add_lesson(lesson)
        await store.add_usage(LessonUsage(lesson_id=lesson.id, query_context="eager loading"))

        await RetrievalTracker(store, mode="overwrite").record_feedback(lesson.id, True)

        usages = await store.get_usages(lesson.id)
        assert len(usages) == 1
        assert usages[0].query_context == "eager loading"
        assert usages[0].was_helpful is True

    @pytest.mark.asyncio
    async def test_unknown_lesson(self, store):
        result = await RetrievalTracker(store, mode="overwrite").record_feedback("missing", True)
        assert result.status == "not_found"
        assert result.message == "Lesson not found: missing"


class TestFeedbackAppend:
    """Test the append policy, which keeps full history."""

    @pytest.mark.asyncio
    async def test_each_call_adds_row(self, store, make_lesson):
        lesson = make_lesson("History lesson")
        await store.add_lesson(lesson)
        tracker = RetrievalTracker(store, mode="append")

        await tracker.record_feedback(lesson.id, True)
        await tracker.record_feedback(lesson.id, False)

        usages = await store.get_usages(lesson.id)
        assert [u.was_helpful for u in usages] == [True, False]
        assert await store.usage_counts([lesson.id]) == {lesson.id: (2, 1)}

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            RetrievalTracker(None, mode="merge")


class TestExposure:
    @pytest.mark.asyncio
    async def test_records_unrated_rows(self, store, make_lesson):
        a, b = make_lesson("A"), make_lesson("B")
        await store.add_lesson(a)
        await store.add_lesson(b)

        recorded = await RetrievalTracker(store).record_exposure([a.id, b.id], "query", "s2")

        assert recorded == 2
        usages = await store.get_usages(a.id)
        assert usages[0].was_helpful is None
        assert usages[0].query_context == "query"

    @pytest.mark.asyncio
    async def test_nothing_to_record(self, store):
        assert await RetrievalTracker(store).record_exposure([], "query") == 0
