"""Exceptions raised by lessonbase operations.

Per-entry ingestion problems are never raised; they are collected into the
batch result. These exceptions cover operation-level failures that a caller
has to handle explicitly.
"""


class LessonbaseError(Exception):
    """Base error for lessonbase."""

    error_code = "LESSONBASE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class LessonNotFoundError(LessonbaseError):
    """A lesson id did not resolve to a stored lesson."""

    error_code = "NOT_FOUND"

    def __init__(self, lesson_id: str):
        self.lesson_id = lesson_id
        super().__init__(f"Lesson not found: {lesson_id}")


class CategoryRequiredError(LessonbaseError, ValueError):
    """A category lookup was attempted with an empty category."""

    error_code = "CATEGORY_REQUIRED"

    def __init__(self, message: str = "Category is required"):
        super().__init__(message)


class DuplicateLessonError(LessonbaseError):
    """Another writer already created the canonical lesson for this key."""

    error_code = "DUPLICATE"

    def __init__(self, content_hash: str, source_project: str | None = None):
        self.content_hash = content_hash
        self.source_project = source_project
        scope = f" in project {source_project}" if source_project else ""
        super().__init__(f"Lesson with content hash {content_hash[:12]}... already exists{scope}")


class CapabilityUnavailableError(LessonbaseError):
    """The storage schema lacks a feature the operation depends on."""

    error_code = "CAPABILITY_UNAVAILABLE"

    def __init__(self, capability: str):
        self.capability = capability
        super().__init__(f"{capability} is not available. Please run migrations first.")
