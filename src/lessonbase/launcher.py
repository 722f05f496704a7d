"""Unified launcher for lessonbase services and maintenance jobs."""

import argparse
import asyncio
import sys

from .config import get_settings
from .errors import CapabilityUnavailableError
from .logging_config import configure_logging, get_logger

logger = get_logger("launcher")


def run_web_server(host: str, port: int):
    """Run the ingestion and browse API."""
    import uvicorn
    from .web_server import app

    uvicorn.run(app, host=host, port=port, log_level="warning")


def run_mcp_server():
    """Run the MCP server (stdio transport)."""
    from .server import main as mcp_main
    mcp_main()


async def score_lessons(batch_size: int, dry_run: bool) -> int:
    """Recompute relevance scores. Returns a process exit code."""
    from .persistence import LessonStore
    from .scoring import RelevanceScorer

    store = LessonStore()
    try:
        scorer = RelevanceScorer(store)
        try:
            result = await scorer.recompute_all(batch_size=batch_size, dry_run=dry_run)
        except CapabilityUnavailableError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1

        if dry_run:
            for change in result.changes:
                print(
                    f"Lesson {change.lesson_id} ({change.title}): "
                    f"{change.old_score:.4f} -> {change.new_score:.4f}"
                )
            print(
                f"Dry run complete: {result.processed} lessons processed, "
                f"{result.updated} would be updated."
            )
        else:
            print(
                f"Completed: {result.processed} lessons processed, "
                f"{result.updated} relevance scores updated."
            )
        return 0
    finally:
        await store.close_pool()


async def deduplicate_lessons(dry_run: bool) -> int:
    """Merge duplicate lessons left behind by older releases. Returns an exit code."""
    from .persistence import LessonStore

    store = LessonStore(migrate=False)
    try:
        result = await store.deduplicate(dry_run=dry_run)
    finally:
        await store.close_pool()

    if not result.groups:
        print("No duplicate lessons found.")
        return 0

    print(f"Duplicate groups found: {len(result.groups)}")
    for group in result.groups:
        scope = group.source_project or "generic"
        print(
            f"  {group.content_hash[:12]} ({scope}): keep {group.canonical_id}, "
            f"remove {len(group.duplicate_ids)}, projects: {', '.join(group.source_projects)}"
        )

    if dry_run:
        print(f"Dry run complete: would delete {result.deleted} duplicate lessons.")
    else:
        print(f"Merged {len(result.groups)} groups, deleted {result.deleted} duplicate lessons.")
    return 0


async def list_projects() -> int:
    """Print every source project with its lesson count."""
    from .persistence import LessonStore

    store = LessonStore()
    try:
        projects = await store.list_source_projects()
    finally:
        await store.close_pool()

    if not projects:
        print("No projects found.")
        return 0
    for name, count in projects:
        print(f"  {name}: {count} lessons")
    return 0


async def show_status() -> int:
    """Show current system status."""
    from .persistence import LessonStore

    settings = get_settings()
    store = LessonStore()
    try:
        capabilities = await store.initialize()
        total = await store.count_lessons()
        projects = await store.list_source_projects()
    finally:
        await store.close_pool()

    print("lessonbase status")
    print(f"  Database:        {store.db_path}")
    print(f"  Logs:            {settings.log_dir}")
    print(f"  Lessons:         {total}")
    print(f"  Source projects: {len(projects)}")
    print(f"  Full-text index: {'yes' if capabilities.fulltext else 'no'}")
    print(f"  Relevance score: {'yes' if capabilities.relevance_score else 'no'}")
    print(f"  Usage tracking:  {'yes' if capabilities.usage_tracking else 'no'}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lessonbase",
        description="lessonbase - shared lessons-learned knowledge base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  web        Start the ingestion/browse API (default)
  mcp        Start the MCP server (stdio transport)
  score      Recompute relevance scores (run on a schedule)
  dedupe     Merge duplicate lessons from older databases
  projects   List source projects
  status     Show system status

Examples:
  lessonbase web --port 8765
  lessonbase score --chunk 200 --dry-run
  lessonbase dedupe --dry-run
        """,
    )
    parser.add_argument("--log-level", default=None, help="Override LESSONBASE_LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    web_parser = subparsers.add_parser("web", help="Start the REST API")
    web_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    web_parser.add_argument("--port", type=int, default=8765, help="Port to bind to")

    subparsers.add_parser("mcp", help="Start MCP server")

    score_parser = subparsers.add_parser("score", help="Recompute relevance scores")
    score_parser.add_argument(
        "--chunk",
        type=int,
        default=None,
        help="Number of lessons to process at a time (default: LESSONBASE_SCORE_BATCH_SIZE)",
    )
    score_parser.add_argument(
        "--dry-run", action="store_true", help="Show what would be updated without making changes"
    )

    dedupe_parser = subparsers.add_parser("dedupe", help="Merge duplicate lessons")
    dedupe_parser.add_argument(
        "--dry-run", action="store_true", help="Report duplicate groups without changing anything"
    )

    subparsers.add_parser("projects", help="List source projects")
    subparsers.add_parser("status", help="Show system status")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the launcher."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        args.command = "web"
        args.host = "127.0.0.1"
        args.port = 8765

    if args.command == "mcp":
        # The MCP server configures file-only logging itself
        run_mcp_server()
        return 0

    configure_logging(log_level=args.log_level, console_output=args.command == "web")

    if args.command == "web":
        logger.info(f"Starting web server on http://{args.host}:{args.port}")
        run_web_server(args.host, args.port)
        return 0

    if args.command == "score":
        batch_size = args.chunk if args.chunk is not None else get_settings().score_batch_size
        if batch_size <= 0:
            parser.error("--chunk must be positive")
        return asyncio.run(score_lessons(batch_size, args.dry_run))

    if args.command == "dedupe":
        return asyncio.run(deduplicate_lessons(args.dry_run))

    if args.command == "projects":
        return asyncio.run(list_projects())

    return asyncio.run(show_status())


if __name__ == "__main__":
    sys.exit(main())
