"""lessonbase - a shared lessons-learned knowledge base for AI coding agents."""

__version__ = "1.0.0"
