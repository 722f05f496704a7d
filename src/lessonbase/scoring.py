"""Relevance scoring from usage, helpfulness and recency signals.

score = 0.4 * normalized_usage + 0.4 * helpfulness_rate + 0.2 * recency_weight

Usage is log-scaled so that 1000 uses saturate at 1.0 and a single very
popular lesson cannot dominate. Recency decays linearly to zero over a year.
"""

import logging
import math
from datetime import UTC, datetime

from .config import get_settings
from .errors import CapabilityUnavailableError
from .models import ScoreChange, ScoringResult
from .persistence import LessonStore

logger = logging.getLogger("lessonbase.scoring")

USAGE_WEIGHT = 0.4
HELPFULNESS_WEIGHT = 0.4
RECENCY_WEIGHT = 0.2
MAX_USAGE_FOR_NORMALIZATION = 1000
MAX_AGE_DAYS = 365
DRY_RUN_THRESHOLD = 0.001


def compute_score(
    usage_count: int,
    helpful_count: int,
    created_at: datetime,
    now: datetime | None = None,
) -> float:
    """Compute the relevance score of one lesson, clamped to [0, 1]."""
    if now is None:
        now = datetime.now(UTC)

    helpfulness_rate = helpful_count / usage_count if usage_count > 0 else 0.0

    days_since_creation = max(0, (now - created_at).days)
    recency_weight = max(0.0, 1 - days_since_creation / MAX_AGE_DAYS)

    normalized_usage = min(
        1.0, math.log(usage_count + 1) / math.log(MAX_USAGE_FOR_NORMALIZATION + 1)
    )

    score = (
        USAGE_WEIGHT * normalized_usage
        + HELPFULNESS_WEIGHT * helpfulness_rate
        + RECENCY_WEIGHT * recency_weight
    )
    return max(0.0, min(1.0, score))


class RelevanceScorer:
    """Batch job that recomputes every lesson's relevance score.

    Safe to re-run and to interrupt: each page is written independently and a
    later run simply overwrites whatever was processed before.
    """

    def __init__(self, store: LessonStore):
        self.store = store

    async def check_capabilities(self) -> None:
        """Raise CapabilityUnavailableError if the schema cannot hold scores."""
        capabilities = await self.store.initialize()
        if not capabilities.usage_tracking:
            raise CapabilityUnavailableError("lesson_usages table")
        if not capabilities.relevance_score:
            raise CapabilityUnavailableError("relevance_score column")

    async def recompute_all(
        self, batch_size: int | None = None, dry_run: bool = False
    ) -> ScoringResult:
        """Recompute scores for all lessons in both namespaces.

        In dry-run mode nothing is written and only lessons whose score would
        move by more than 0.001 are reported. In live mode every visited
        lesson is written, changed or not.
        """
        if batch_size is None:
            batch_size = get_settings().score_batch_size
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        await self.check_capabilities()

        result = ScoringResult(dry_run=dry_run)
        now = datetime.now(UTC)
        logger.info(f"Recomputing relevance scores (batch_size={batch_size}, dry_run={dry_run})")

        async for page in self.store.iter_lesson_pages(batch_size):
            counts = await self.store.usage_counts([lesson.id for lesson in page])
            updates = []
            for lesson in page:
                usage_count, helpful_count = counts.get(lesson.id, (0, 0))
                score = compute_score(usage_count, helpful_count, lesson.created_at, now)
                result.processed += 1

                if dry_run:
                    if abs(lesson.relevance_score - score) > DRY_RUN_THRESHOLD:
                        result.updated += 1
                        result.changes.append(
                            ScoreChange(
                                lesson_id=lesson.id,
                                title=lesson.title,
                                old_score=lesson.relevance_score,
                                new_score=score,
                            )
                        )
                        logger.debug(
                            f"Lesson {lesson.id} ({lesson.title}): "
                            f"{lesson.relevance_score:.4f} -> {score:.4f}"
                        )
                else:
                    updates.append((lesson.id, score))

            if updates:
                await self.store.update_relevance_scores(updates)
                result.updated += len(updates)

        verb = "would be updated" if dry_run else "updated"
        logger.info(
            f"Relevance scoring complete: {result.processed} lessons processed, "
            f"{result.updated} {verb}"
        )
        return result
