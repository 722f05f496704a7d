"""SQLite persistence layer for lessonbase lessons, relationships and usage."""

import asyncio
import json
import logging
import re
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from .config import get_settings
from .errors import DuplicateLessonError
from .models import (
    DeduplicationResult,
    DuplicateGroup,
    FilterTarget,
    Lesson,
    LessonRelationship,
    LessonUsage,
    Namespace,
)

logger = logging.getLogger("lessonbase.persistence")

TABLES_SCHEMA = """
CREATE TABLE IF NOT EXISTS lessons (
    pk INTEGER PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    source_project TEXT NOT NULL,
    source_projects JSON NOT NULL DEFAULT '[]',
    is_generic INTEGER NOT NULL DEFAULT 1,
    type TEXT NOT NULL,
    category TEXT,
    subcategory TEXT,
    title TEXT,
    summary TEXT,
    tags JSON NOT NULL DEFAULT '[]',
    metadata JSON NOT NULL DEFAULT '{}',
    content TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    relevance_score REAL NOT NULL DEFAULT 0.0,
    deprecated_at TEXT,
    superseded_by_lesson_id TEXT REFERENCES lessons(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS lesson_relationships (
    id TEXT PRIMARY KEY,
    lesson_id TEXT NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
    related_lesson_id TEXT NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
    relationship_type TEXT NOT NULL DEFAULT 'related',
    relevance_score REAL,
    created_at TEXT NOT NULL,
    UNIQUE (lesson_id, related_lesson_id, relationship_type)
);

CREATE TABLE IF NOT EXISTS lesson_usages (
    id TEXT PRIMARY KEY,
    lesson_id TEXT NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
    query_context TEXT,
    was_helpful INTEGER,
    session_id TEXT,
    created_at TEXT NOT NULL
);
"""

INDEX_SCHEMA = """
CREATE INDEX IF NOT EXISTS idx_lessons_category ON lessons(category, subcategory, is_generic);
CREATE INDEX IF NOT EXISTS idx_lessons_source_project ON lessons(source_project);
CREATE INDEX IF NOT EXISTS idx_lessons_created ON lessons(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_lessons_relevance ON lessons(relevance_score DESC);

-- One canonical lesson per hash in the generic pool, per (hash, project) otherwise
CREATE UNIQUE INDEX IF NOT EXISTS idx_lessons_generic_hash
    ON lessons(content_hash) WHERE is_generic = 1;
CREATE UNIQUE INDEX IF NOT EXISTS idx_lessons_project_hash
    ON lessons(content_hash, source_project) WHERE is_generic = 0;

CREATE INDEX IF NOT EXISTS idx_relationships_lesson ON lesson_relationships(lesson_id, relationship_type);
CREATE INDEX IF NOT EXISTS idx_relationships_related ON lesson_relationships(related_lesson_id);
CREATE INDEX IF NOT EXISTS idx_usages_lesson ON lesson_usages(lesson_id, created_at DESC);
"""

FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS lessons_fts
    USING fts5(content, content='lessons', content_rowid='pk');

CREATE TRIGGER IF NOT EXISTS lessons_fts_ai AFTER INSERT ON lessons BEGIN
    INSERT INTO lessons_fts(rowid, content) VALUES (new.pk, new.content);
END;

CREATE TRIGGER IF NOT EXISTS lessons_fts_ad AFTER DELETE ON lessons BEGIN
    INSERT INTO lessons_fts(lessons_fts, rowid, content) VALUES ('delete', old.pk, old.content);
END;

CREATE TRIGGER IF NOT EXISTS lessons_fts_au AFTER UPDATE OF content ON lessons BEGIN
    INSERT INTO lessons_fts(lessons_fts, rowid, content) VALUES ('delete', old.pk, old.content);
    INSERT INTO lessons_fts(rowid, content) VALUES (new.pk, new.content);
END;
"""

# Columns added after the first release, with their DDL for ALTER TABLE
LESSON_COLUMN_MIGRATIONS = {
    "category": "TEXT",
    "tags": "JSON NOT NULL DEFAULT '[]'",
    "source_projects": "JSON NOT NULL DEFAULT '[]'",
    "subcategory": "TEXT",
    "title": "TEXT",
    "summary": "TEXT",
    "metadata": "JSON NOT NULL DEFAULT '{}'",
    "relevance_score": "REAL NOT NULL DEFAULT 0.0",
    "deprecated_at": "TEXT",
    "superseded_by_lesson_id": "TEXT",
}

_FTS_WORD = re.compile(r"\w+")
MIN_FTS_WORD_LENGTH = 3


@dataclass
class StoreCapabilities:
    """Optional schema features detected on the live database."""

    fulltext: bool = False
    relevance_score: bool = False
    usage_tracking: bool = False
    deprecation: bool = False
    relationships: bool = False


@dataclass
class LessonFilter:
    """AND-combined filters shared by every lesson query."""

    namespace: Namespace = field(default_factory=Namespace.generic)
    target: FilterTarget | None = None
    tags: list[str] | None = None
    active_only: bool = True


def build_fulltext_query(text: str) -> str | None:
    """Turn free text into an FTS5 OR-query of quoted words.

    Words shorter than three characters are dropped, mirroring natural-language
    full-text matching. Returns None when nothing indexable remains.
    """
    words = [w for w in _FTS_WORD.findall(text.lower()) if len(w) >= MIN_FTS_WORD_LENGTH]
    if not words:
        return None
    return " OR ".join(f'"{w}"' for w in dict.fromkeys(words))


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class LessonStore:
    """Async SQLite storage for lessons with connection pooling and transaction safety."""

    def __init__(self, db_path: str | Path | None = None, migrate: bool = True):
        if db_path is None:
            db_path = get_settings().db_path
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.migrate = migrate
        self.capabilities = StoreCapabilities()
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._pool: list[aiosqlite.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._max_pool_size = 5

    # =========================================================================
    # Connection management
    # =========================================================================

    @asynccontextmanager
    async def _connection(self, *, commit: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        """Get a database connection with automatic cleanup and optional commit.

        Args:
            commit: If True, commit on success, rollback on error.
        """
        conn = await self._acquire_conn()
        try:
            yield conn
            if commit:
                await conn.commit()
                logger.debug("Transaction committed")
        except Exception as e:
            if commit:
                await conn.rollback()
                logger.warning(f"Transaction rolled back due to error: {e}")
            raise
        finally:
            await self._release_conn(conn)

    async def _acquire_conn(self) -> aiosqlite.Connection:
        """Acquire a connection from pool or create new one."""
        async with self._pool_lock:
            if self._pool:
                return self._pool.pop()

        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")

        async with self._init_lock:
            if not self._initialized:
                try:
                    await self._initialize(conn)
                except Exception:
                    await conn.close()
                    raise
                self._initialized = True

        return conn

    async def _release_conn(self, conn: aiosqlite.Connection) -> None:
        """Return connection to pool or close if pool is full."""
        async with self._pool_lock:
            if len(self._pool) < self._max_pool_size:
                self._pool.append(conn)
                return

        await conn.close()

    async def close_pool(self) -> None:
        """Close all pooled connections. Call on shutdown."""
        async with self._pool_lock:
            for conn in self._pool:
                await conn.close()
            count = len(self._pool)
            self._pool.clear()
            logger.info(f"Closed {count} pooled connections")

    async def initialize(self) -> StoreCapabilities:
        """Open the database eagerly and return the detected capabilities."""
        async with self._connection():
            pass
        return self.capabilities

    # =========================================================================
    # Schema and migrations
    # =========================================================================

    async def _initialize(self, conn: aiosqlite.Connection) -> None:
        existed = await self._table_exists(conn, "lessons")
        if not existed or self.migrate:
            logger.info(f"Initializing database at {self.db_path}")
            await conn.executescript(TABLES_SCHEMA)
            await self._run_migrations(conn)
            # The unique hash indexes cannot be built over duplicate rows
            merged = await self._merge_duplicates(conn, dry_run=False)
            if merged.groups:
                logger.warning(
                    f"Merged {len(merged.groups)} duplicate lesson groups "
                    f"({merged.deleted} rows removed) before indexing"
                )
            await conn.executescript(INDEX_SCHEMA)
            await self._setup_fulltext(conn)
            await conn.commit()
        self.capabilities = await self._detect_capabilities(conn)
        logger.info(f"Database ready: {self.capabilities}")

    async def _table_exists(self, conn: aiosqlite.Connection, name: str) -> bool:
        cursor = await conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?", (name,)
        )
        return await cursor.fetchone() is not None

    async def _columns(self, conn: aiosqlite.Connection, table: str) -> set[str]:
        cursor = await conn.execute(f"PRAGMA table_info({table})")
        return {row[1] for row in await cursor.fetchall()}

    async def _run_migrations(self, conn: aiosqlite.Connection) -> None:
        """Add columns that older databases are missing."""
        columns = await self._columns(conn, "lessons")
        for column, ddl in LESSON_COLUMN_MIGRATIONS.items():
            if column not in columns:
                await conn.execute(f"ALTER TABLE lessons ADD COLUMN {column} {ddl}")
                logger.info(f"Migrated lessons table: added {column}")

        if "source_projects" not in columns:
            await conn.execute(
                "UPDATE lessons SET source_projects = json_array(source_project) "
                "WHERE source_projects = '[]'"
            )

    async def _setup_fulltext(self, conn: aiosqlite.Connection) -> None:
        """Create the FTS5 index and sync triggers if SQLite supports them."""
        if "pk" not in await self._columns(conn, "lessons"):
            logger.warning("Lessons table predates the integer row key, full-text index disabled")
            return

        had_index = await self._table_exists(conn, "lessons_fts")
        try:
            await conn.executescript(FTS_SCHEMA)
        except sqlite3.OperationalError as e:
            logger.warning(f"FTS5 not available, search falls back to substring matching: {e}")
            return

        if not had_index:
            await conn.execute("INSERT INTO lessons_fts(lessons_fts) VALUES ('rebuild')")
            logger.info("Built full-text index for existing lessons")

    async def _detect_capabilities(self, conn: aiosqlite.Connection) -> StoreCapabilities:
        columns = await self._columns(conn, "lessons")
        return StoreCapabilities(
            fulltext=await self._table_exists(conn, "lessons_fts"),
            relevance_score="relevance_score" in columns,
            usage_tracking=await self._table_exists(conn, "lesson_usages"),
            deprecation="deprecated_at" in columns,
            relationships=await self._table_exists(conn, "lesson_relationships"),
        )

    async def deduplicate(self, dry_run: bool = False) -> DeduplicationResult:
        """Merge lessons that share a dedup key into the oldest of each group.

        Generic lessons are grouped by content hash, project details by
        (content hash, source project). The canonical row collects every
        contributing project, tag and metadata key; the rest are deleted and
        their usage history and relationships move to the canonical row.

        A real run brings older schemas up to date first, so it works on a
        store opened with ``migrate=False``. A dry run only reads.
        """
        async with self._connection(commit=not dry_run) as conn:
            if not dry_run:
                await self._run_migrations(conn)
            result = await self._merge_duplicates(conn, dry_run=dry_run)
        if not dry_run and result.groups:
            logger.info(f"Merged {len(result.groups)} duplicate groups, deleted {result.deleted} lessons")
        return result

    async def _merge_duplicates(
        self, conn: aiosqlite.Connection, dry_run: bool
    ) -> DeduplicationResult:
        result = DeduplicationResult(dry_run=dry_run)
        cursor = await conn.execute(
            """
            SELECT content_hash, is_generic,
                   CASE WHEN is_generic = 1 THEN NULL ELSE source_project END AS scope
            FROM lessons
            GROUP BY content_hash, is_generic, scope
            HAVING COUNT(*) > 1
            ORDER BY MIN(created_at)
            """
        )
        keys = await cursor.fetchall()
        if not keys:
            return result

        has_usages = await self._table_exists(conn, "lesson_usages")
        has_relationships = await self._table_exists(conn, "lesson_relationships")

        for key in keys:
            if key["is_generic"]:
                where, params = "content_hash = ? AND is_generic = 1", [key["content_hash"]]
            else:
                where = "content_hash = ? AND is_generic = 0 AND source_project = ?"
                params = [key["content_hash"], key["scope"]]
            cursor = await conn.execute(
                f"SELECT * FROM lessons WHERE {where} ORDER BY created_at, rowid", params
            )
            lessons = [self._row_to_lesson(row) for row in await cursor.fetchall()]
            canonical, duplicates = lessons[0], lessons[1:]

            metadata: dict[str, Any] = {}
            for lesson in lessons:
                metadata.update(lesson.metadata)
            group = DuplicateGroup(
                content_hash=key["content_hash"],
                source_project=key["scope"],
                canonical_id=canonical.id,
                duplicate_ids=[lesson.id for lesson in duplicates],
                source_projects=list(
                    dict.fromkeys(p for lesson in lessons for p in lesson.source_projects)
                ),
                tags=list(dict.fromkeys(t for lesson in lessons for t in lesson.tags)),
            )
            result.groups.append(group)
            if dry_run:
                continue

            await conn.execute(
                """
                UPDATE lessons SET source_projects = ?, tags = ?, metadata = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    json.dumps(group.source_projects),
                    json.dumps(group.tags),
                    json.dumps(metadata),
                    datetime.now(UTC).isoformat(),
                    canonical.id,
                ),
            )
            for duplicate_id in group.duplicate_ids:
                await self._repoint_references(
                    conn, duplicate_id, canonical.id, has_usages, has_relationships
                )
            placeholders = ", ".join("?" for _ in group.duplicate_ids)
            await conn.execute(
                f"DELETE FROM lessons WHERE id IN ({placeholders})", group.duplicate_ids
            )
            logger.info(
                f"Merged {len(group.duplicate_ids)} duplicates of {key['content_hash']} "
                f"into {canonical.id}"
            )

        return result

    async def _repoint_references(
        self,
        conn: aiosqlite.Connection,
        old_id: str,
        new_id: str,
        has_usages: bool,
        has_relationships: bool,
    ) -> None:
        """Move usages, edges and supersession links from one lesson to another."""
        if has_usages:
            await conn.execute(
                "UPDATE lesson_usages SET lesson_id = ? WHERE lesson_id = ?", (new_id, old_id)
            )
        if has_relationships:
            # Edges the canonical lesson already has are left behind and dropped
            for column in ("lesson_id", "related_lesson_id"):
                await conn.execute(
                    f"UPDATE OR IGNORE lesson_relationships SET {column} = ? WHERE {column} = ?",
                    (new_id, old_id),
                )
            await conn.execute(
                """
                DELETE FROM lesson_relationships
                WHERE lesson_id = ? OR related_lesson_id = ? OR lesson_id = related_lesson_id
                """,
                (old_id, old_id),
            )
        if "superseded_by_lesson_id" in await self._columns(conn, "lessons"):
            await conn.execute(
                "UPDATE lessons SET superseded_by_lesson_id = ? WHERE superseded_by_lesson_id = ?",
                (new_id, old_id),
            )

    # =========================================================================
    # Lesson CRUD
    # =========================================================================

    async def add_lesson(self, lesson: Lesson) -> str:
        """Insert a new lesson, return its ID.

        Raises:
            DuplicateLessonError: A canonical lesson for the same dedup key
                already exists (for example, created by a concurrent batch).
        """
        try:
            async with self._connection(commit=True) as conn:
                await conn.execute(
                    """
                    INSERT INTO lessons (
                        id, source_project, source_projects, is_generic, type,
                        category, subcategory, title, summary, tags, metadata,
                        content, content_hash, relevance_score, deprecated_at,
                        superseded_by_lesson_id, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        lesson.id,
                        lesson.source_project,
                        json.dumps(lesson.source_projects),
                        int(lesson.is_generic),
                        lesson.type,
                        lesson.category,
                        lesson.subcategory,
                        lesson.title,
                        lesson.summary,
                        json.dumps(lesson.tags),
                        json.dumps(lesson.metadata),
                        lesson.content,
                        lesson.content_hash,
                        lesson.relevance_score,
                        lesson.deprecated_at.isoformat() if lesson.deprecated_at else None,
                        lesson.superseded_by_lesson_id,
                        lesson.created_at.isoformat(),
                        lesson.updated_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "content_hash" in str(e):
                raise DuplicateLessonError(
                    lesson.content_hash, None if lesson.is_generic else lesson.source_project
                ) from e
            raise
        logger.debug(f"Added lesson: {lesson.id}")
        return lesson.id

    async def update_lesson(self, lesson: Lesson) -> None:
        """Persist merged fields of an existing lesson and bump updated_at."""
        lesson.updated_at = datetime.now(UTC)
        async with self._connection(commit=True) as conn:
            await conn.execute(
                """
                UPDATE lessons SET
                    source_projects = ?, category = ?, subcategory = ?, title = ?,
                    summary = ?, tags = ?, metadata = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    json.dumps(lesson.source_projects),
                    lesson.category,
                    lesson.subcategory,
                    lesson.title,
                    lesson.summary,
                    json.dumps(lesson.tags),
                    json.dumps(lesson.metadata),
                    lesson.updated_at.isoformat(),
                    lesson.id,
                ),
            )
            logger.debug(f"Updated lesson: {lesson.id}")

    async def get_lesson(self, lesson_id: str) -> Lesson | None:
        """Get a lesson by ID."""
        async with self._connection() as conn:
            cursor = await conn.execute("SELECT * FROM lessons WHERE id = ?", (lesson_id,))
            row = await cursor.fetchone()
            return self._row_to_lesson(row) if row else None

    async def get_lessons(self, lesson_ids: list[str]) -> dict[str, Lesson]:
        """Get several lessons by ID, keyed by ID."""
        if not lesson_ids:
            return {}
        placeholders = ", ".join("?" for _ in lesson_ids)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT * FROM lessons WHERE id IN ({placeholders})", lesson_ids
            )
            rows = await cursor.fetchall()
            return {row["id"]: self._row_to_lesson(row) for row in rows}

    async def delete_lesson(self, lesson_id: str) -> bool:
        """Delete a lesson and, by cascade, its relationships and usages."""
        async with self._connection(commit=True) as conn:
            cursor = await conn.execute("DELETE FROM lessons WHERE id = ?", (lesson_id,))
            deleted = cursor.rowcount > 0
            if deleted:
                logger.info(f"Deleted lesson: {lesson_id}")
            return deleted

    async def deprecate(self, lesson_id: str, superseded_by: str | None = None) -> bool:
        """Mark a lesson deprecated, optionally pointing at its replacement."""
        now = datetime.now(UTC).isoformat()
        async with self._connection(commit=True) as conn:
            cursor = await conn.execute(
                """
                UPDATE lessons SET deprecated_at = ?, superseded_by_lesson_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (now, superseded_by, now, lesson_id),
            )
            return cursor.rowcount > 0

    async def find_by_content_hash(self, content_hash: str, source_project: str) -> Lesson | None:
        """Find the project-detail lesson for a hash within one project."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM lessons
                WHERE content_hash = ? AND source_project = ? AND is_generic = 0
                ORDER BY created_at ASC LIMIT 1
                """,
                (content_hash, source_project),
            )
            row = await cursor.fetchone()
            return self._row_to_lesson(row) if row else None

    async def find_by_content_hash_across_projects(self, content_hash: str) -> Lesson | None:
        """Find the generic lesson for a hash, whichever project created it."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM lessons
                WHERE content_hash = ? AND is_generic = 1
                ORDER BY created_at ASC LIMIT 1
                """,
                (content_hash,),
            )
            row = await cursor.fetchone()
            return self._row_to_lesson(row) if row else None

    async def find_canonical(self, content_hash: str, namespace: Namespace) -> Lesson | None:
        """Look up the canonical lesson for a dedup key in a namespace."""
        if namespace.is_generic:
            return await self.find_by_content_hash_across_projects(content_hash)
        return await self.find_by_content_hash(content_hash, namespace.project)

    async def count_by_content_hash(self, content_hash: str) -> int:
        async with self._connection() as conn:
            cursor = await conn.execute(
                "SELECT COUNT(*) FROM lessons WHERE content_hash = ?", (content_hash,)
            )
            row = await cursor.fetchone()
            return row[0]

    async def iter_lesson_pages(self, batch_size: int) -> AsyncIterator[list[Lesson]]:
        """Yield every lesson in fixed-size pages, keyed on insertion order."""
        last_key = 0
        while True:
            async with self._connection() as conn:
                cursor = await conn.execute(
                    "SELECT rowid AS page_key, * FROM lessons WHERE rowid > ? ORDER BY rowid LIMIT ?",
                    (last_key, batch_size),
                )
                rows = await cursor.fetchall()
            if not rows:
                return
            last_key = rows[-1]["page_key"]
            yield [self._row_to_lesson(row) for row in rows]

    async def update_relevance_scores(self, scores: list[tuple[str, float]]) -> None:
        """Overwrite relevance_score for each (lesson_id, score) pair."""
        if not scores:
            return
        async with self._connection(commit=True) as conn:
            await conn.executemany(
                "UPDATE lessons SET relevance_score = ? WHERE id = ?",
                [(score, lesson_id) for lesson_id, score in scores],
            )

    async def list_source_projects(self) -> list[tuple[str, int]]:
        """Distinct source projects with their lesson counts."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT source_project, COUNT(*) AS lesson_count FROM lessons
                GROUP BY source_project ORDER BY source_project
                """
            )
            rows = await cursor.fetchall()
            return [(row["source_project"], row["lesson_count"]) for row in rows]

    async def count_lessons(self) -> int:
        async with self._connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM lessons")
            row = await cursor.fetchone()
            return row[0]

    # =========================================================================
    # Filtered queries
    # =========================================================================

    def _filter_clause(self, lesson_filter: LessonFilter) -> tuple[str, list[Any]]:
        """Build the WHERE clause (over alias ``l``) for a LessonFilter."""
        clauses = []
        params: list[Any] = []

        namespace = lesson_filter.namespace
        if namespace.is_generic:
            clauses.append("l.is_generic = 1")
        else:
            clauses.append("l.is_generic = 0 AND l.source_project = ?")
            params.append(namespace.project)

        if lesson_filter.active_only and self.capabilities.deprecation:
            clauses.append("l.deprecated_at IS NULL")

        if lesson_filter.target is not None:
            clauses.append(f"l.{lesson_filter.target.field} = ?")
            params.append(lesson_filter.target.value)

        if lesson_filter.tags:
            tag_checks = " OR ".join(
                "EXISTS (SELECT 1 FROM json_each(l.tags) WHERE value = ?)" for _ in lesson_filter.tags
            )
            clauses.append(f"({tag_checks})")
            params.extend(lesson_filter.tags)

        return " AND ".join(clauses), params

    def _browse_order(self) -> str:
        if self.capabilities.relevance_score:
            return "l.relevance_score DESC, l.created_at DESC"
        return "l.created_at DESC"

    async def browse(
        self, lesson_filter: LessonFilter, limit: int, by_relevance: bool = True
    ) -> list[Lesson]:
        """Filtered lessons ordered by relevance (if available) then recency."""
        where, params = self._filter_clause(lesson_filter)
        order = self._browse_order() if by_relevance else "l.created_at DESC"
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT l.* FROM lessons l WHERE {where} ORDER BY {order} LIMIT ?",
                [*params, limit],
            )
            rows = await cursor.fetchall()
            return [self._row_to_lesson(row) for row in rows]

    async def fulltext_search(
        self, lesson_filter: LessonFilter, text: str, limit: int
    ) -> list[tuple[Lesson, float]]:
        """Full-text match against content.

        Returns (lesson, bm25_rank) pairs, best first. BM25 ranks are negative;
        more negative is a better match. Empty when the index is unavailable
        or the text has no indexable words.
        """
        fts_query = build_fulltext_query(text)
        if not self.capabilities.fulltext or fts_query is None:
            return []

        where, params = self._filter_clause(lesson_filter)
        async with self._connection() as conn:
            try:
                cursor = await conn.execute(
                    f"""
                    SELECT l.*, bm25(lessons_fts) AS ft_rank
                    FROM lessons_fts
                    JOIN lessons l ON l.pk = lessons_fts.rowid
                    WHERE lessons_fts MATCH ? AND {where}
                    ORDER BY ft_rank LIMIT ?
                    """,
                    [fts_query, *params, limit],
                )
            except sqlite3.OperationalError as e:
                logger.warning(f"Full-text search failed for {fts_query!r}: {e}")
                return []
            rows = await cursor.fetchall()
            return [(self._row_to_lesson(row), row["ft_rank"]) for row in rows]

    async def substring_search(
        self, lesson_filter: LessonFilter, text: str, limit: int
    ) -> list[Lesson]:
        """Case-insensitive substring match against content, newest first."""
        where, params = self._filter_clause(lesson_filter)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT l.* FROM lessons l
                WHERE {where} AND l.content LIKE ? ESCAPE '\\'
                ORDER BY l.created_at DESC LIMIT ?
                """,
                [*params, f"%{_escape_like(text)}%", limit],
            )
            rows = await cursor.fetchall()
            return [self._row_to_lesson(row) for row in rows]

    async def text_match_any_field(
        self, lesson_filter: LessonFilter, text: str, limit: int
    ) -> list[Lesson]:
        """Substring match against content, title or summary."""
        where, params = self._filter_clause(lesson_filter)
        pattern = f"%{_escape_like(text)}%"
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT l.* FROM lessons l
                WHERE {where} AND (
                    l.content LIKE ? ESCAPE '\\'
                    OR l.title LIKE ? ESCAPE '\\'
                    OR l.summary LIKE ? ESCAPE '\\'
                )
                LIMIT ?
                """,
                [*params, pattern, pattern, pattern, limit],
            )
            rows = await cursor.fetchall()
            return [self._row_to_lesson(row) for row in rows]

    async def subcategory_exists(self, namespace: Namespace, subcategory: str) -> bool:
        where, params = self._filter_clause(LessonFilter(namespace=namespace, active_only=False))
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT 1 FROM lessons l WHERE {where} AND l.subcategory = ? LIMIT 1",
                [*params, subcategory],
            )
            return await cursor.fetchone() is not None

    async def count(self, lesson_filter: LessonFilter) -> int:
        where, params = self._filter_clause(lesson_filter)
        async with self._connection() as conn:
            cursor = await conn.execute(f"SELECT COUNT(*) FROM lessons l WHERE {where}", params)
            row = await cursor.fetchone()
            return row[0]

    async def relevance_stats(self, lesson_filter: LessonFilter) -> dict[str, float] | None:
        """Average, max and min relevance over the filtered lessons."""
        if not self.capabilities.relevance_score:
            return None
        where, params = self._filter_clause(lesson_filter)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT AVG(l.relevance_score) AS avg_score,
                       MAX(l.relevance_score) AS max_score,
                       MIN(l.relevance_score) AS min_score
                FROM lessons l WHERE {where}
                """,
                params,
            )
            row = await cursor.fetchone()
            return {
                "average": round(float(row["avg_score"] or 0.0), 4),
                "maximum": round(float(row["max_score"] or 0.0), 4),
                "minimum": round(float(row["min_score"] or 0.0), 4),
            }

    async def usage_summary(self, lesson_filter: LessonFilter) -> dict[str, int] | None:
        """Usage and feedback totals over the filtered lessons."""
        if not self.capabilities.usage_tracking:
            return None
        where, params = self._filter_clause(lesson_filter)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT COUNT(u.id) AS total_usages,
                       COUNT(DISTINCT u.lesson_id) AS lessons_with_usage,
                       SUM(CASE WHEN u.was_helpful = 1 THEN 1 ELSE 0 END) AS helpful_count,
                       SUM(CASE WHEN u.was_helpful = 0 THEN 1 ELSE 0 END) AS not_helpful_count
                FROM lesson_usages u
                JOIN lessons l ON l.id = u.lesson_id
                WHERE {where}
                """,
                params,
            )
            row = await cursor.fetchone()
            return {
                "total_usages": int(row["total_usages"] or 0),
                "lessons_with_usage": int(row["lessons_with_usage"] or 0),
                "helpful_count": int(row["helpful_count"] or 0),
                "not_helpful_count": int(row["not_helpful_count"] or 0),
            }

    async def category_counts(self, lesson_filter: LessonFilter) -> list[tuple[str, int]]:
        """(category, count) over the filtered lessons, largest first."""
        where, params = self._filter_clause(lesson_filter)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT l.category AS category, COUNT(*) AS lesson_count
                FROM lessons l WHERE {where} AND l.category IS NOT NULL
                GROUP BY l.category ORDER BY lesson_count DESC, l.category
                """,
                params,
            )
            rows = await cursor.fetchall()
            return [(row["category"], row["lesson_count"]) for row in rows]

    async def distinct_tags(self, lesson_filter: LessonFilter) -> list[str]:
        where, params = self._filter_clause(lesson_filter)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT DISTINCT t.value AS tag
                FROM lessons l, json_each(l.tags) t
                WHERE {where}
                ORDER BY tag
                """,
                params,
            )
            rows = await cursor.fetchall()
            return [row["tag"] for row in rows]

    # =========================================================================
    # Relationships
    # =========================================================================

    async def find_similarity_candidates(self, lesson: Lesson, limit: int = 10) -> list[Lesson]:
        """Other generic lessons in the same category sharing at least one tag."""
        if not lesson.category or not lesson.tags:
            return []
        tag_checks = " OR ".join(
            "EXISTS (SELECT 1 FROM json_each(tags) WHERE value = ?)" for _ in lesson.tags
        )
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT * FROM lessons
                WHERE is_generic = 1 AND category = ? AND id != ? AND ({tag_checks})
                ORDER BY created_at DESC LIMIT ?
                """,
                [lesson.category, lesson.id, *lesson.tags, limit],
            )
            rows = await cursor.fetchall()
            return [self._row_to_lesson(row) for row in rows]

    async def relationship_exists(
        self, lesson_id: str, related_lesson_id: str, relationship_type: str
    ) -> bool:
        """Check for an edge of this type between the pair, in either direction."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT 1 FROM lesson_relationships
                WHERE relationship_type = ? AND (
                    (lesson_id = ? AND related_lesson_id = ?)
                    OR (lesson_id = ? AND related_lesson_id = ?)
                )
                LIMIT 1
                """,
                (relationship_type, lesson_id, related_lesson_id, related_lesson_id, lesson_id),
            )
            return await cursor.fetchone() is not None

    async def add_relationship(self, relationship: LessonRelationship) -> bool:
        """Insert an edge. Returns False if the typed edge already existed."""
        async with self._connection(commit=True) as conn:
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO lesson_relationships (
                    id, lesson_id, related_lesson_id, relationship_type,
                    relevance_score, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    relationship.id,
                    relationship.lesson_id,
                    relationship.related_lesson_id,
                    relationship.relationship_type,
                    relationship.relevance_score,
                    relationship.created_at.isoformat(),
                ),
            )
            return cursor.rowcount > 0

    async def get_relationships(
        self, lesson_id: str | None = None, relationship_type: str | None = None
    ) -> list[LessonRelationship]:
        """Edges touching a lesson (either end), or all edges when lesson_id is None."""
        clauses = []
        params: list[Any] = []
        if lesson_id is not None:
            clauses.append("(lesson_id = ? OR related_lesson_id = ?)")
            params.extend([lesson_id, lesson_id])
        if relationship_type is not None:
            clauses.append("relationship_type = ?")
            params.append(relationship_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT * FROM lesson_relationships {where}
                ORDER BY relevance_score IS NULL, relevance_score DESC, created_at DESC
                """,
                params,
            )
            rows = await cursor.fetchall()
            return [self._row_to_relationship(row) for row in rows]

    # =========================================================================
    # Usage events
    # =========================================================================

    async def add_usage(self, usage: LessonUsage) -> str:
        async with self._connection(commit=True) as conn:
            await conn.execute(
                """
                INSERT INTO lesson_usages (
                    id, lesson_id, query_context, was_helpful, session_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    usage.id,
                    usage.lesson_id,
                    usage.query_context,
                    None if usage.was_helpful is None else int(usage.was_helpful),
                    usage.session_id,
                    usage.created_at.isoformat(),
                ),
            )
            return usage.id

    async def add_usages(self, usages: list[LessonUsage]) -> None:
        if not usages:
            return
        async with self._connection(commit=True) as conn:
            await conn.executemany(
                """
                INSERT INTO lesson_usages (
                    id, lesson_id, query_context, was_helpful, session_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        u.id,
                        u.lesson_id,
                        u.query_context,
                        None if u.was_helpful is None else int(u.was_helpful),
                        u.session_id,
                        u.created_at.isoformat(),
                    )
                    for u in usages
                ],
            )

    async def get_latest_usage(self, lesson_id: str) -> LessonUsage | None:
        """The most recently created usage row for a lesson."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM lesson_usages WHERE lesson_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (lesson_id,),
            )
            row = await cursor.fetchone()
            return self._row_to_usage(row) if row else None

    async def get_usages(self, lesson_id: str) -> list[LessonUsage]:
        async with self._connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM lesson_usages WHERE lesson_id = ? ORDER BY created_at, rowid",
                (lesson_id,),
            )
            rows = await cursor.fetchall()
            return [self._row_to_usage(row) for row in rows]

    async def set_usage_feedback(self, usage_id: str, was_helpful: bool) -> None:
        async with self._connection(commit=True) as conn:
            await conn.execute(
                "UPDATE lesson_usages SET was_helpful = ? WHERE id = ?",
                (int(was_helpful), usage_id),
            )

    async def usage_counts(self, lesson_ids: list[str]) -> dict[str, tuple[int, int]]:
        """Map lesson_id -> (usage_count, helpful_count)."""
        if not lesson_ids:
            return {}
        placeholders = ", ".join("?" for _ in lesson_ids)
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"""
                SELECT lesson_id,
                       COUNT(*) AS usage_count,
                       SUM(CASE WHEN was_helpful = 1 THEN 1 ELSE 0 END) AS helpful_count
                FROM lesson_usages
                WHERE lesson_id IN ({placeholders})
                GROUP BY lesson_id
                """,
                lesson_ids,
            )
            rows = await cursor.fetchall()
            return {
                row["lesson_id"]: (int(row["usage_count"]), int(row["helpful_count"] or 0))
                for row in rows
            }

    # =========================================================================
    # Row conversion
    # =========================================================================

    def _row_to_lesson(self, row: aiosqlite.Row) -> Lesson:
        """Convert database row to Lesson model, tolerating pre-migration schemas."""
        keys = set(row.keys())

        def col(name: str, default: Any = None) -> Any:
            return row[name] if name in keys and row[name] is not None else default

        return Lesson(
            id=row["id"],
            source_project=row["source_project"],
            source_projects=json.loads(col("source_projects", "[]")),
            is_generic=bool(row["is_generic"]),
            type=row["type"],
            category=col("category"),
            subcategory=col("subcategory"),
            title=col("title"),
            summary=col("summary"),
            tags=json.loads(col("tags", "[]")),
            metadata=json.loads(col("metadata", "{}")),
            content=row["content"],
            content_hash=row["content_hash"],
            relevance_score=float(col("relevance_score", 0.0)),
            deprecated_at=_parse_dt(col("deprecated_at")),
            superseded_by_lesson_id=col("superseded_by_lesson_id"),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    def _row_to_relationship(self, row: aiosqlite.Row) -> LessonRelationship:
        return LessonRelationship(
            id=row["id"],
            lesson_id=row["lesson_id"],
            related_lesson_id=row["related_lesson_id"],
            relationship_type=row["relationship_type"],
            relevance_score=row["relevance_score"],
            created_at=_parse_dt(row["created_at"]),
        )

    def _row_to_usage(self, row: aiosqlite.Row) -> LessonUsage:
        return LessonUsage(
            id=row["id"],
            lesson_id=row["lesson_id"],
            query_context=row["query_context"],
            was_helpful=None if row["was_helpful"] is None else bool(row["was_helpful"]),
            session_id=row["session_id"],
            created_at=_parse_dt(row["created_at"]),
        )
