"""Title and summary extraction for newly created lessons.

Each field is resolved by an ordered chain of strategies; the first one that
returns a non-empty string wins. Strategies never raise on malformed JSON
content, they simply yield nothing and let the next strategy try.
"""

import json
import re
from collections.abc import Callable
from typing import Any

from .models import RawLesson

MAX_TITLE_LENGTH = 255
SUMMARY_SENTENCES = 2
MAX_SUMMARY_LENGTH = 500

Strategy = Callable[[RawLesson], str | None]

_MARKDOWN_NOISE = re.compile(r"[#*_`>\[\]]+")
_WHITESPACE = re.compile(r"\s+")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _parsed_content(raw: RawLesson) -> dict[str, Any] | None:
    """Parse content as a JSON object, or None if it is not one."""
    if not raw.content:
        return None
    try:
        decoded = json.loads(raw.content)
    except (json.JSONDecodeError, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


def strip_content(content: str) -> str:
    """Flatten markdown-ish content into plain single-spaced text."""
    text = _MARKDOWN_NOISE.sub(" ", content)
    return _WHITESPACE.sub(" ", text).strip()


def first_sentences(content: str, count: int = SUMMARY_SENTENCES) -> str | None:
    text = strip_content(content)
    if not text:
        return None
    sentences = _SENTENCE_END.split(text)
    summary = " ".join(sentences[:count]).strip()
    if len(summary) > MAX_SUMMARY_LENGTH:
        summary = summary[: MAX_SUMMARY_LENGTH - 3].rstrip() + "..."
    return summary or None


# ---------------------------------------------------------------------------
# Title strategies
# ---------------------------------------------------------------------------


def title_from_field(raw: RawLesson) -> str | None:
    return _clean(raw.title)


def title_from_metadata(raw: RawLesson) -> str | None:
    return _clean((raw.metadata or {}).get("title"))


def title_from_json_content(raw: RawLesson) -> str | None:
    decoded = _parsed_content(raw)
    return _clean(decoded.get("title")) if decoded else None


# ---------------------------------------------------------------------------
# Summary strategies
# ---------------------------------------------------------------------------


def summary_from_field(raw: RawLesson) -> str | None:
    return _clean(raw.summary)


def summary_from_metadata(raw: RawLesson) -> str | None:
    metadata = raw.metadata or {}
    return _clean(metadata.get("summary")) or _clean(metadata.get("description"))


def summary_from_json_content(raw: RawLesson) -> str | None:
    decoded = _parsed_content(raw)
    if not decoded:
        return None
    return _clean(decoded.get("description")) or _clean(decoded.get("summary"))


def summary_from_first_sentences(raw: RawLesson) -> str | None:
    return first_sentences(raw.content) if raw.content else None


TITLE_STRATEGIES: tuple[Strategy, ...] = (
    title_from_field,
    title_from_metadata,
    title_from_json_content,
)

SUMMARY_STRATEGIES: tuple[Strategy, ...] = (
    summary_from_field,
    summary_from_metadata,
    summary_from_json_content,
    summary_from_first_sentences,
)


def run_chain(strategies: tuple[Strategy, ...], raw: RawLesson) -> str | None:
    """Return the first non-empty value produced by the strategies."""
    for strategy in strategies:
        value = strategy(raw)
        if value:
            return value
    return None


def extract_title(raw: RawLesson) -> str | None:
    title = run_chain(TITLE_STRATEGIES, raw)
    return title[:MAX_TITLE_LENGTH] if title else None


def extract_summary(raw: RawLesson) -> str | None:
    return run_chain(SUMMARY_STRATEGIES, raw)
