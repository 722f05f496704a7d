"""Environment-driven settings for lessonbase."""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Literal

FeedbackMode = Literal["overwrite", "append"]

DEFAULT_DATA_DIR = "~/.lessonbase"
DEFAULT_DB_FILE = "lessons.db"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime configuration, normally built by ``get_settings()``."""

    data_dir: Path = field(default_factory=lambda: Path(os.path.expanduser(DEFAULT_DATA_DIR)))
    db_path: Path | None = None
    log_level: str = "INFO"
    score_batch_size: int = 100
    search_limit: int = 10
    track_search_usage: bool = True
    feedback_mode: FeedbackMode = "overwrite"

    def __post_init__(self):
        if self.db_path is None:
            self.db_path = self.data_dir / DEFAULT_DB_FILE
        if self.feedback_mode not in ("overwrite", "append"):
            raise ValueError(f"Unknown feedback mode: {self.feedback_mode!r}")

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir = Path(os.path.expanduser(os.environ.get("LESSONBASE_DATA_DIR") or DEFAULT_DATA_DIR))
        db_path = os.environ.get("LESSONBASE_DB_PATH")
        return cls(
            data_dir=data_dir,
            db_path=Path(os.path.expanduser(db_path)) if db_path else None,
            log_level=os.environ.get("LESSONBASE_LOG_LEVEL", "INFO").upper(),
            score_batch_size=_env_int("LESSONBASE_SCORE_BATCH_SIZE", 100),
            search_limit=_env_int("LESSONBASE_SEARCH_LIMIT", 10),
            track_search_usage=_env_bool("LESSONBASE_TRACK_SEARCH_USAGE", True),
            feedback_mode=os.environ.get("LESSONBASE_FEEDBACK_MODE", "overwrite").lower(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment once per process."""
    return Settings.from_env()
