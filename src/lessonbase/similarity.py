"""Tag-overlap similarity linking for newly created generic lessons."""

import logging

from .models import Lesson, LessonRelationship
from .persistence import LessonStore

logger = logging.getLogger("lessonbase.similarity")

MAX_CANDIDATES = 10
SIMILARITY_THRESHOLD = 0.3


def jaccard(a: list[str], b: list[str]) -> float:
    """|A ∩ B| / |A ∪ B| over exact-match tag sets; 0.0 when both are empty."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


class SimilarityLinker:
    """Creates "related" edges from a new lesson to similar existing ones."""

    def __init__(
        self,
        store: LessonStore,
        threshold: float = SIMILARITY_THRESHOLD,
        max_candidates: int = MAX_CANDIDATES,
    ):
        self.store = store
        self.threshold = threshold
        self.max_candidates = max_candidates

    async def link_similar(self, lesson: Lesson) -> list[LessonRelationship]:
        """Link a freshly created lesson to up to ``max_candidates`` neighbours.

        Runs once per lesson; existing lessons are not re-scanned when their
        tags change later. Returns the edges that were created.
        """
        if not lesson.category or not lesson.tags:
            return []

        candidates = await self.store.find_similarity_candidates(lesson, limit=self.max_candidates)
        created = []
        for candidate in candidates:
            score = jaccard(lesson.tags, candidate.tags)
            if score < self.threshold:
                continue
            if await self.store.relationship_exists(lesson.id, candidate.id, "related"):
                continue

            relationship = LessonRelationship(
                lesson_id=lesson.id,
                related_lesson_id=candidate.id,
                relationship_type="related",
                relevance_score=score,
            )
            if await self.store.add_relationship(relationship):
                created.append(relationship)
                logger.debug(f"Linked {lesson.id} -> {candidate.id} (jaccard={score:.3f})")

        return created
