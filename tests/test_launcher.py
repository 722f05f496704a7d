"""Tests for the command-line launcher."""

import sqlite3

import pytest

from lessonbase.config import get_settings
from lessonbase.launcher import build_parser, main


@pytest.fixture
def isolated_db(tmp_path, monkeypatch):
    """Point the default database at a temp file for commands that open it."""
    monkeypatch.setenv("LESSONBASE_DB_PATH", str(tmp_path / "cli.db"))
    get_settings.cache_clear()
    yield tmp_path / "cli.db"
    get_settings.cache_clear()


class TestParser:
    def test_score_options(self):
        args = build_parser().parse_args(["score", "--chunk", "50", "--dry-run"])
        assert args.command == "score"
        assert args.chunk == 50
        assert args.dry_run is True

    def test_web_defaults(self):
        args = build_parser().parse_args(["web"])
        assert (args.host, args.port) == ("127.0.0.1", 8765)


class TestCommands:
    """Test maintenance commands end to end against a temp database."""

    def test_projects_empty(self, isolated_db, capsys):
        assert main(["projects"]) == 0
        assert "No projects found." in capsys.readouterr().out

    def test_status(self, isolated_db, capsys):
        assert main(["status"]) == 0
        out = capsys.readouterr().out
        assert str(isolated_db) in out
        assert "Full-text index: yes" in out

    def test_score(self, isolated_db, capsys):
        assert main(["score", "--chunk", "10"]) == 0
        assert "Completed: 0 lessons processed" in capsys.readouterr().out

    def test_score_dry_run(self, isolated_db, capsys):
        assert main(["score", "--dry-run"]) == 0
        assert "Dry run complete" in capsys.readouterr().out

    def test_score_rejects_zero_chunk(self, isolated_db):
        with pytest.raises(SystemExit) as exc_info:
            main(["score", "--chunk", "0"])
        assert exc_info.value.code == 2

    def test_dedupe_clean_database(self, isolated_db, capsys):
        assert main(["dedupe"]) == 0
        assert "No duplicate lessons found." in capsys.readouterr().out


class TestDedupeCommand:
    """Test the duplicate-merge command against an old schema."""

    @pytest.fixture
    def legacy_db(self, isolated_db):
        conn = sqlite3.connect(isolated_db)
        conn.execute("""
            CREATE TABLE lessons (
                id TEXT PRIMARY KEY,
                source_project TEXT NOT NULL,
                is_generic INTEGER NOT NULL DEFAULT 1,
                type TEXT NOT NULL,
                content TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.executemany(
            "INSERT INTO lessons VALUES (?, ?, 1, 'manual', 'Shared lesson', 'h1', ?, ?)",
            [
                ("gen-a", "alpha", "2024-01-01T00:00:00+00:00", "2024-01-01T00:00:00+00:00"),
                ("gen-b", "beta", "2024-02-01T00:00:00+00:00", "2024-02-01T00:00:00+00:00"),
            ],
        )
        conn.commit()
        conn.close()
        return isolated_db

    def _count(self, db_path) -> int:
        conn = sqlite3.connect(db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM lessons").fetchone()[0]
        finally:
            conn.close()

    def test_dry_run_leaves_rows(self, legacy_db, capsys):
        assert main(["dedupe", "--dry-run"]) == 0
        out = capsys.readouterr().out
        assert "Duplicate groups found: 1" in out
        assert "keep gen-a" in out
        assert "would delete 1 duplicate lessons" in out
        assert self._count(legacy_db) == 2

    def test_merge(self, legacy_db, capsys):
        assert main(["dedupe"]) == 0
        assert "deleted 1 duplicate lessons" in capsys.readouterr().out
        assert self._count(legacy_db) == 1

    def test_status_after_legacy_duplicates(self, legacy_db, capsys):
        assert main(["status"]) == 0
        assert "Lessons:         1" in capsys.readouterr().out
