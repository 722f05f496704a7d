"""Data models for lessonbase."""

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from .hashing import content_hash

LessonType = Literal[
    "cursor-rule",
    "ai-generated-output",
    "manual",
    "markdown",
    "project-detail",
]

# Relationship types for typed edges between lessons
RelationshipType = Literal[
    "prerequisite",  # Must know/do this first
    "related",       # General relationship (created by the similarity linker)
    "alternative",   # Different approach to same problem
    "supersedes",    # Newer guidance replacing the target
]

LESSON_TYPES: tuple[str, ...] = LessonType.__args__
RELATIONSHIP_TYPES: tuple[str, ...] = RelationshipType.__args__


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _unique(values: list[str]) -> list[str]:
    """Drop exact duplicates, keeping first occurrence."""
    seen: set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class Lesson(BaseModel):
    """A stored lesson, generic or project-scoped."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Opaque unique identifier")
    source_project: str = Field(..., description="Originating project (legacy single value)")
    source_projects: list[str] = Field(default_factory=list, description="Every project that contributed this content")
    is_generic: bool = Field(default=True, description="Shared pool (True) or project detail (False)")
    type: LessonType
    category: str | None = None
    subcategory: str | None = None
    title: str | None = None
    summary: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    content: str
    content_hash: str = ""
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    deprecated_at: datetime | None = None
    superseded_by_lesson_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("tags", "source_projects")
    @classmethod
    def _dedupe(cls, values: list[str]) -> list[str]:
        return _unique(values)

    @model_validator(mode="after")
    def _enforce_invariants(self) -> "Lesson":
        if not self.content_hash:
            self.content_hash = content_hash(self.content)
        if self.source_project not in self.source_projects:
            self.source_projects = [*self.source_projects, self.source_project]
        if self.category is None:
            self.subcategory = None
        return self

    @property
    def is_active(self) -> bool:
        return self.deprecated_at is None

    def to_result_dict(self, include_content: bool = True) -> dict[str, Any]:
        """Serialise for tool and API responses."""
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "category": self.category,
            "subcategory": self.subcategory,
            "title": self.title,
            "summary": self.summary,
            "tags": self.tags,
            "source_project": self.source_project,
            "source_projects": self.source_projects,
            "relevance_score": round(self.relevance_score, 4),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_content:
            data["content"] = self.content
        if self.deprecated_at:
            data["deprecated_at"] = self.deprecated_at.isoformat()
            data["superseded_by_lesson_id"] = self.superseded_by_lesson_id
        return data


class RawLesson(BaseModel):
    """An incoming lesson record as pushed by a source project.

    Every field is optional here; the ingestion pipeline decides what is
    missing and reports it per entry instead of failing the whole batch.
    """

    type: str | None = None
    content: str | None = None
    category: str | None = None
    subcategory: str | None = None
    title: str | None = None
    summary: str | None = None
    tags: list[str] | None = None
    metadata: dict[str, Any] | None = None


class LessonRelationship(BaseModel):
    """A directed, typed edge between two lessons."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    lesson_id: str
    related_lesson_id: str
    relationship_type: RelationshipType = "related"
    relevance_score: float | None = Field(None, description="Similarity strength that produced the edge")
    created_at: datetime = Field(default_factory=_utcnow)


class LessonUsage(BaseModel):
    """An append-only record of a lesson being surfaced or rated."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    lesson_id: str
    query_context: str | None = None
    was_helpful: bool | None = Field(None, description="None means viewed without explicit feedback")
    session_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class ValidationResult(BaseModel):
    """Outcome of a genericity check."""

    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ImportResult(BaseModel):
    """Per-batch ingestion counters."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def has_successes(self) -> bool:
        return self.created > 0 or self.updated > 0


class Namespace(BaseModel):
    """Which partition of the lesson universe an operation runs against."""

    kind: Literal["generic", "project_detail"] = "generic"
    project: str | None = None

    @model_validator(mode="after")
    def _require_project(self) -> "Namespace":
        if self.kind == "project_detail" and not self.project:
            raise ValueError("project_detail namespace requires a project")
        if self.kind == "generic":
            self.project = None
        return self

    @classmethod
    def generic(cls) -> "Namespace":
        return cls(kind="generic")

    @classmethod
    def project_detail(cls, project: str) -> "Namespace":
        return cls(kind="project_detail", project=project)

    @property
    def is_generic(self) -> bool:
        return self.kind == "generic"


class FilterTarget(BaseModel):
    """A resolved category-or-subcategory filter."""

    field: Literal["category", "subcategory"]
    value: str


class RelatedLesson(BaseModel):
    """A lesson reached through a relationship edge."""

    lesson: Lesson
    relationship_type: RelationshipType
    relevance_score: float | None = None

    def to_result_dict(self) -> dict[str, Any]:
        data = self.lesson.to_result_dict(include_content=False)
        data["relationship_type"] = self.relationship_type
        data["relationship_score"] = self.relevance_score
        return data


class LessonResult(BaseModel):
    """One ranked search hit."""

    lesson: Lesson
    fulltext_relevance: float | None = None
    rank_score: float | None = None
    related: list[RelatedLesson] = Field(default_factory=list)

    def to_result_dict(self) -> dict[str, Any]:
        data = self.lesson.to_result_dict()
        if self.rank_score is not None:
            data["rank_score"] = round(self.rank_score, 4)
        if self.related:
            data["related_lessons"] = [r.to_result_dict() for r in self.related]
        return data


class SearchResponse(BaseModel):
    """Ranked results plus how they were produced."""

    results: list[LessonResult] = Field(default_factory=list)
    match_mode: Literal["fulltext", "substring", "browse"] = "browse"
    ordered_by: str = "created_at"

    @property
    def count(self) -> int:
        return len(self.results)

    def to_result_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_result_dict() for r in self.results],
            "count": self.count,
            "match_mode": self.match_mode,
            "ordered_by": self.ordered_by,
        }


class ScoreChange(BaseModel):
    """A lesson whose relevance score moved during a scoring run."""

    lesson_id: str
    title: str | None = None
    old_score: float
    new_score: float


class ScoringResult(BaseModel):
    """Summary of a relevance scoring run."""

    processed: int = 0
    updated: int = 0
    dry_run: bool = False
    changes: list[ScoreChange] = Field(default_factory=list)


class DuplicateGroup(BaseModel):
    """Lessons sharing one dedup key, folded into the oldest of them."""

    content_hash: str
    source_project: str | None = None  # None for the generic pool
    canonical_id: str
    duplicate_ids: list[str]
    source_projects: list[str]
    tags: list[str]


class DeduplicationResult(BaseModel):
    """Summary of a duplicate-merge run."""

    dry_run: bool = False
    groups: list[DuplicateGroup] = Field(default_factory=list)

    @property
    def deleted(self) -> int:
        return sum(len(group.duplicate_ids) for group in self.groups)


class FeedbackResult(BaseModel):
    """Outcome of an explicit helpfulness call."""

    status: Literal["success", "not_found"]
    lesson_id: str
    message: str

    @property
    def success(self) -> bool:
        return self.status == "success"
