"""Usage and feedback events that feed relevance scoring."""

import logging

from .config import FeedbackMode, get_settings
from .models import FeedbackResult, LessonUsage
from .persistence import LessonStore

logger = logging.getLogger("lessonbase.tracking")

EXPLICIT_FEEDBACK_CONTEXT = "Explicit feedback"


class RetrievalTracker:
    """Records lesson exposures and helpfulness feedback.

    In ``overwrite`` mode, explicit feedback rewrites ``was_helpful`` on the
    most recent usage row for the lesson, so repeated ratings converge on a
    single row and only the latest rating survives. ``append`` mode inserts a
    new row per call and keeps the full feedback history.
    """

    def __init__(self, store: LessonStore, mode: FeedbackMode | None = None):
        if mode is None:
            mode = get_settings().feedback_mode
        if mode not in ("overwrite", "append"):
            raise ValueError(f"Unknown feedback mode: {mode!r}")
        self.store = store
        self.mode = mode

    async def record_feedback(
        self, lesson_id: str, was_helpful: bool, session_id: str | None = None
    ) -> FeedbackResult:
        lesson = await self.store.get_lesson(lesson_id)
        if lesson is None:
            return FeedbackResult(
                status="not_found", lesson_id=lesson_id, message=f"Lesson not found: {lesson_id}"
            )

        latest = await self.store.get_latest_usage(lesson_id) if self.mode == "overwrite" else None
        if latest is not None:
            await self.store.set_usage_feedback(latest.id, was_helpful)
        else:
            await self.store.add_usage(
                LessonUsage(
                    lesson_id=lesson_id,
                    query_context=EXPLICIT_FEEDBACK_CONTEXT,
                    was_helpful=was_helpful,
                    session_id=session_id,
                )
            )

        verdict = "helpful" if was_helpful else "not helpful"
        logger.info(f"Lesson {lesson_id} marked as {verdict}")
        return FeedbackResult(
            status="success",
            lesson_id=lesson_id,
            message=f"Lesson marked as {verdict}. Thank you for your feedback!",
        )

    async def record_exposure(
        self, lesson_ids: list[str], query_context: str | None, session_id: str | None = None
    ) -> int:
        """Record an implicit usage row (was_helpful unknown) per surfaced lesson."""
        if not lesson_ids or not self.store.capabilities.usage_tracking:
            return 0
        usages = [
            LessonUsage(lesson_id=lesson_id, query_context=query_context, session_id=session_id)
            for lesson_id in lesson_ids
        ]
        await self.store.add_usages(usages)
        logger.debug(f"Recorded {len(usages)} implicit usages for query {query_context!r}")
        return len(usages)
