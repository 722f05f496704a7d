"""Tests for title and summary extraction chains."""

import json

from lessonbase.extraction import extract_summary, extract_title, first_sentences
from lessonbase.models import RawLesson


def raw(**fields) -> RawLesson:
    fields.setdefault("type", "manual")
    fields.setdefault("content", "Plain content.")
    return RawLesson(**fields)


class TestExtractTitle:
    """Test the title strategy chain."""

    def test_explicit_field_wins(self):
        lesson = raw(title="Explicit", metadata={"title": "Meta"})
        assert extract_title(lesson) == "Explicit"

    def test_metadata_title(self):
        assert extract_title(raw(metadata={"title": "From metadata"})) == "From metadata"

    def test_json_content_title(self):
        content = json.dumps({"title": "From JSON", "description": "d"})
        assert extract_title(raw(content=content)) == "From JSON"

    def test_malformed_json_is_ignored(self):
        """Broken JSON never raises, it just yields no title."""
        assert extract_title(raw(content='{"title": "oops"')) is None

    def test_blank_values_fall_through(self):
        lesson = raw(title="   ", metadata={"title": "Next"})
        assert extract_title(lesson) == "Next"

    def test_truncated_to_255(self):
        assert len(extract_title(raw(title="t" * 400))) == 255


class TestExtractSummary:
    """Test the summary strategy chain."""

    def test_explicit_field_wins(self):
        assert extract_summary(raw(summary="Given", metadata={"summary": "Meta"})) == "Given"

    def test_metadata_summary_then_description(self):
        assert extract_summary(raw(metadata={"summary": "S"})) == "S"
        assert extract_summary(raw(metadata={"description": "D"})) == "D"

    def test_json_content_description(self):
        content = json.dumps({"description": "JSON description"})
        assert extract_summary(raw(content=content)) == "JSON description"

    def test_first_two_sentences_fallback(self):
        content = "# Heading\n\nFirst sentence here. Second **one** too! Third is dropped."
        assert extract_summary(raw(content=content)) == "Heading First sentence here. Second one too!"

    def test_malformed_json_falls_back_to_sentences(self):
        assert extract_summary(raw(content="{not json. still text.")) == "{not json. still text."


class TestFirstSentences:
    def test_empty_content(self):
        assert first_sentences("  ** ") is None

    def test_long_summary_is_capped(self):
        summary = first_sentences("word " * 200)
        assert len(summary) == 500
        assert summary.endswith("...")
