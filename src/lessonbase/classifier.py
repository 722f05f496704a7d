"""Keyword-scoring subcategory classifier.

The taxonomy lives in ``taxonomy_data/subcategories.yaml``:

    categories:
      lessons-learned:
        testing-patterns:
          - phpunit
          - test pattern

Every subcategory of the lesson's category is scored by summing the length of
each keyword found (case-insensitive substring) in the first
``CLASSIFY_TEXT_LIMIT`` characters of the text, so a specific phrase outweighs
a generic word. The best nonzero score wins; earlier subcategories win ties.
"""

from pathlib import Path

import yaml

TAXONOMY_PATH = Path(__file__).parent / "taxonomy_data" / "subcategories.yaml"
CLASSIFY_TEXT_LIMIT = 1000

Taxonomy = dict[str, dict[str, list[str]]]


def load_taxonomy(path: Path = TAXONOMY_PATH) -> Taxonomy:
    """Load the category -> subcategory -> keywords table from YAML."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    taxonomy: Taxonomy = {}
    for category, subcategories in (data.get("categories") or {}).items():
        taxonomy[category] = {
            name: [str(k).lower() for k in (keywords or [])]
            for name, keywords in (subcategories or {}).items()
        }
    return taxonomy


class SubcategoryClassifier:
    """Maps (category, text) to the best-matching subcategory."""

    def __init__(self, taxonomy: Taxonomy | None = None):
        self.taxonomy = taxonomy if taxonomy is not None else load_taxonomy()

    def score(self, category: str, text: str) -> dict[str, int]:
        """Score every candidate subcategory of a category."""
        candidates = self.taxonomy.get(category)
        if not candidates or not text:
            return {}

        sample = text[:CLASSIFY_TEXT_LIMIT].lower()
        return {
            name: sum(len(k) for k in keywords if k and k in sample)
            for name, keywords in candidates.items()
        }

    def classify(self, category: str | None, text: str | None) -> str | None:
        """Return the best subcategory, or None when nothing matches."""
        if not category or not text:
            return None

        best_name = None
        best_score = 0
        for name, value in self.score(category, text).items():
            if value > best_score:
                best_name, best_score = name, value
        return best_name

    def classify_lesson(
        self, category: str | None, summary: str | None, content: str | None
    ) -> str | None:
        """Classify using the summary when present, else the content."""
        return self.classify(category, summary or content)

    def subcategories(self, category: str) -> list[str]:
        return list(self.taxonomy.get(category, {}))
