"""Pytest configuration for lessonbase tests.

Points the data directory at a throwaway location before any lessonbase
module reads its settings, so logs and default databases never touch the
real home directory.
"""

import os
import tempfile

os.environ.setdefault("LESSONBASE_DATA_DIR", tempfile.mkdtemp(prefix="lessonbase-tests-"))

import pytest  # noqa: E402

from lessonbase.models import Lesson, RawLesson  # noqa: E402
from lessonbase.persistence import LessonStore  # noqa: E402


@pytest.fixture
async def store(tmp_path):
    """A fresh store on a temporary database."""
    lesson_store = LessonStore(db_path=tmp_path / "test.db")
    await lesson_store.initialize()
    yield lesson_store
    await lesson_store.close_pool()


@pytest.fixture
def make_lesson():
    """Factory for stored-lesson models with sensible defaults."""

    def _make(content: str, **overrides) -> Lesson:
        fields = {
            "source_project": "alpha",
            "type": "manual",
            "content": content,
        }
        fields.update(overrides)
        return Lesson(**fields)

    return _make


@pytest.fixture
def make_raw():
    """Factory for incoming raw lessons."""

    def _make(content: str = "Always validate input with form requests.", **fields) -> RawLesson:
        fields.setdefault("type", "manual")
        return RawLesson(content=content, **fields)

    return _make
