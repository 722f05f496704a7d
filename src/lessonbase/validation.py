"""Genericity checks for lessons entering the shared pool.

These are narrow heuristics for catching project-specific paths and names,
not a secret or PII scanner. Project-detail submissions skip them entirely.
"""

import re

from .models import ValidationResult

WEB_ROOT_PATH = re.compile(r"/var/www/[^/]+")
HOME_DIR_PATH = re.compile(r"/home/[^/]+/[^/]+")
DEV_DOMAIN_URL = re.compile(r"https?://[a-zA-Z0-9-]+\.(local|test|dev)")
PROJECT_NAME_LITERAL = re.compile(
    r"[\"']([^\"']*project[^\"']*|my-app|my-project)[^\"']*[\"']",
    re.IGNORECASE,
)
ANY_DOMAIN_URL = re.compile(r"https?://[a-zA-Z0-9-]+\.[a-z]+")

GENERIC_PATH_PLACEHOLDER = "/path/to/project"


def validate_is_generic(content: str) -> ValidationResult:
    """Check that content carries no project-specific details.

    Errors block ingestion into the generic namespace; warnings are advisory.
    """
    errors = []
    warnings = []

    if WEB_ROOT_PATH.search(content):
        errors.append("Content contains project-specific path (/var/www/...)")

    if HOME_DIR_PATH.search(content):
        errors.append("Content contains user-specific path (/home/username/...)")

    if DEV_DOMAIN_URL.search(content):
        warnings.append("Content may contain development domain reference")

    if PROJECT_NAME_LITERAL.search(content):
        warnings.append("Content may contain project-specific name references")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def suggest_generic_improvements(content: str) -> list[str]:
    """Suggest how to rewrite content so it passes the genericity check."""
    suggestions = []

    if WEB_ROOT_PATH.search(content):
        suggestions.append(
            "Replace project-specific paths (/var/www/...) with generic placeholders "
            f'like "{GENERIC_PATH_PLACEHOLDER}"'
        )

    if HOME_DIR_PATH.search(content):
        suggestions.append(
            "Replace user-specific paths (/home/username/...) with generic placeholders "
            f'like "{GENERIC_PATH_PLACEHOLDER}"'
        )

    if ANY_DOMAIN_URL.search(content):
        suggestions.append(
            'Replace specific domain names with placeholders like "example.com" '
            "or remove them entirely"
        )

    return suggestions
