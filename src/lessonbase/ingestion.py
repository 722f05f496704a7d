"""Batch ingestion: validate, deduplicate by content hash, merge or create."""

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Literal

from pydantic import ValidationError

from .classifier import SubcategoryClassifier
from .errors import DuplicateLessonError
from .extraction import extract_summary, extract_title
from .hashing import content_hash
from .models import LESSON_TYPES, ImportResult, Lesson, Namespace, RawLesson
from .persistence import LessonStore
from .similarity import SimilarityLinker
from .validation import validate_is_generic

logger = logging.getLogger("lessonbase.ingestion")

Outcome = Literal["created", "updated", "skipped"]


class EntryRejected(Exception):
    """A single batch entry failed validation; never escapes the batch."""


def _explicit(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class IngestionPipeline:
    """The single writer path for lessons.

    Every entry of a batch is processed independently: a failing entry is
    recorded as an error string tagged with its index and the batch moves on.
    """

    def __init__(
        self,
        store: LessonStore,
        classifier: SubcategoryClassifier | None = None,
        linker: SimilarityLinker | None = None,
    ):
        self.store = store
        self.classifier = classifier or SubcategoryClassifier()
        self.linker = linker or SimilarityLinker(store)

    async def process_lessons(
        self,
        raw_lessons: Iterable[RawLesson | Mapping[str, Any]],
        source_project: str,
        namespace: Namespace | None = None,
    ) -> ImportResult:
        """Ingest a batch pushed by one source project.

        Args:
            raw_lessons: Incoming records, as RawLesson or plain dicts
            source_project: Trusted project identifier of the pushing project
            namespace: Target partition (default: generic pool). A
                project_detail namespace must be bound to ``source_project``.
        """
        if namespace is None:
            namespace = Namespace.generic()
        if not namespace.is_generic and namespace.project != source_project:
            raise ValueError(
                f"Project-detail namespace {namespace.project!r} does not match "
                f"source project {source_project!r}"
            )

        result = ImportResult()
        for index, raw in enumerate(raw_lessons):
            try:
                outcome = await self._process_entry(raw, source_project, namespace)
            except EntryRejected as e:
                result.errors.append(f"Lesson at index {index}: {e}")
                logger.warning(f"Rejected lesson at index {index} from {source_project}: {e}")
                continue
            except Exception as e:
                result.errors.append(f"Lesson at index {index}: {e}")
                logger.exception(f"Failed to ingest lesson at index {index} from {source_project}")
                continue

            if outcome == "created":
                result.created += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.skipped += 1

        logger.info(
            f"Ingested batch from {source_project} ({namespace.kind}): "
            f"created={result.created}, updated={result.updated}, "
            f"skipped={result.skipped}, errors={len(result.errors)}"
        )
        return result

    async def _process_entry(
        self,
        raw: RawLesson | Mapping[str, Any],
        source_project: str,
        namespace: Namespace,
    ) -> Outcome:
        if not isinstance(raw, RawLesson):
            try:
                raw = RawLesson.model_validate(raw)
            except ValidationError as e:
                raise EntryRejected(f"Invalid lesson structure ({e.error_count()} errors)") from e

        if not raw.content or not raw.type:
            raise EntryRejected("Missing required fields (content or type)")
        if raw.type not in LESSON_TYPES:
            raise EntryRejected(f"Unknown lesson type: {raw.type}")

        if namespace.is_generic:
            validation = validate_is_generic(raw.content)
            if not validation.is_valid:
                raise EntryRejected(", ".join(validation.errors))

        digest = content_hash(raw.content)
        existing = await self.store.find_canonical(digest, namespace)
        if existing is not None:
            return await self._merge(existing, raw, source_project)

        try:
            lesson = await self._create(raw, digest, source_project, namespace)
        except DuplicateLessonError:
            # A concurrent writer created the canonical row after our lookup
            existing = await self.store.find_canonical(digest, namespace)
            if existing is None:
                raise
            logger.debug(f"Lost create race for {digest[:12]}, merging instead")
            return await self._merge(existing, raw, source_project)

        if namespace.is_generic:
            await self.linker.link_similar(lesson)
        return "created"

    async def _create(
        self,
        raw: RawLesson,
        digest: str,
        source_project: str,
        namespace: Namespace,
    ) -> Lesson:
        title = extract_title(raw)
        summary = extract_summary(raw)
        category = _explicit(raw.category)
        subcategory = None
        if category:
            subcategory = _explicit(raw.subcategory) or self.classifier.classify_lesson(
                category, summary, raw.content
            )

        lesson = Lesson(
            source_project=source_project,
            source_projects=[source_project],
            is_generic=namespace.is_generic,
            type=raw.type,
            category=category,
            subcategory=subcategory,
            title=title,
            summary=summary,
            tags=raw.tags or [],
            metadata=raw.metadata or {},
            content=raw.content,
            content_hash=digest,
        )
        await self.store.add_lesson(lesson)
        logger.debug(f"Created lesson {lesson.id} ({lesson.category}/{lesson.subcategory})")
        return lesson

    async def _merge(self, existing: Lesson, raw: RawLesson, source_project: str) -> Outcome:
        """Fold an incoming duplicate into the canonical lesson."""
        before = self._snapshot(existing)

        existing.tags = list(dict.fromkeys([*existing.tags, *(raw.tags or [])]))
        existing.metadata = {**existing.metadata, **(raw.metadata or {})}
        if source_project not in existing.source_projects:
            existing.source_projects = [*existing.source_projects, source_project]

        category_changed = False
        incoming_category = _explicit(raw.category)
        if incoming_category and incoming_category != existing.category:
            existing.category = incoming_category
            category_changed = True

        incoming_title = _explicit(raw.title)
        if existing.title is None:
            existing.title = extract_title(raw)
        elif incoming_title and incoming_title != existing.title:
            existing.title = incoming_title

        incoming_summary = _explicit(raw.summary)
        if existing.summary is None:
            existing.summary = extract_summary(raw)
        elif incoming_summary and incoming_summary != existing.summary:
            existing.summary = incoming_summary

        incoming_subcategory = _explicit(raw.subcategory)
        if existing.category is None:
            existing.subcategory = None
        elif incoming_subcategory:
            existing.subcategory = incoming_subcategory
        elif category_changed or existing.subcategory is None:
            existing.subcategory = self.classifier.classify_lesson(
                existing.category, existing.summary, existing.content
            )

        if self._snapshot(existing) == before:
            return "skipped"

        await self.store.update_lesson(existing)
        logger.debug(f"Merged incoming lesson from {source_project} into {existing.id}")
        return "updated"

    @staticmethod
    def _snapshot(lesson: Lesson) -> tuple:
        """Order-independent view of the fields a merge may change."""
        return (
            frozenset(lesson.tags),
            lesson.metadata.copy(),
            frozenset(lesson.source_projects),
            lesson.category,
            lesson.subcategory,
            lesson.title,
            lesson.summary,
        )
