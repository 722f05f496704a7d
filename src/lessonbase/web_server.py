"""lessonbase web server: ingestion and browse REST API."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .errors import CapabilityUnavailableError
from .graph import load_graph
from .ingestion import IngestionPipeline
from .logging_config import get_logger
from .models import ImportResult, LessonType, Namespace
from .persistence import LessonStore
from .search import SearchEngine
from .tracking import RetrievalTracker

logger = get_logger("web_server")

MAX_CONTENT_LENGTH = 65535
MAX_BATCH_SIZE = 1000
PROJECT_PATTERN = r"^[a-zA-Z0-9_-]{1,255}$"

# Global instances
store: LessonStore | None = None
pipeline: IngestionPipeline | None = None
search: SearchEngine | None = None
tracker: RetrievalTracker | None = None


class LessonIn(BaseModel):
    """One lesson in a pushed batch."""

    type: LessonType
    content: str = Field(..., min_length=1, max_length=MAX_CONTENT_LENGTH)
    category: str | None = Field(None, max_length=255)
    subcategory: str | None = Field(None, max_length=255)
    title: str | None = Field(None, max_length=255)
    summary: str | None = None
    tags: list[str] | None = Field(None)
    metadata: dict[str, Any] | None = None


class LessonBatchIn(BaseModel):
    """Request body for POST /api/lessons and /api/project-details."""

    source_project: str = Field(..., pattern=PROJECT_PATTERN)
    lessons: list[LessonIn] = Field(..., min_length=1, max_length=MAX_BATCH_SIZE)


class FeedbackIn(BaseModel):
    was_helpful: bool = True
    session_id: str | None = Field(None, max_length=255)


def use_store(new_store: LessonStore) -> None:
    """Bind the API to a store and build the components around it."""
    global store, pipeline, search, tracker
    store = new_store
    tracker = RetrievalTracker(store)
    pipeline = IngestionPipeline(store)
    search = SearchEngine(store, tracker=tracker)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize stores on startup."""
    await ensure_initialized()
    total = await store.count_lessons()
    logger.info(f"Web server initialized with {total} lessons")
    yield

    logger.info("Shutting down web server")
    await store.close_pool()


app = FastAPI(
    title="lessonbase API",
    description="Push and browse shared lessons learned",
    version=__version__,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def ensure_initialized():
    """Ensure stores are initialized (for TestClient compatibility)."""
    if store is None:
        use_store(LessonStore())
    await store.initialize()


def build_import_response(result: ImportResult, noun: str = "Lessons") -> JSONResponse:
    """Map a batch result to 422 (all failed), 207 (partial) or 201 (success)."""
    has_errors = bool(result.errors)
    data = result.model_dump()

    if has_errors and not result.has_successes:
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "message": f"All {noun.lower()} failed validation or processing",
                "data": data,
            },
        )
    if has_errors:
        return JSONResponse(
            status_code=207,
            content={"success": True, "message": f"{noun} processed with some errors", "data": data},
        )
    return JSONResponse(
        status_code=201,
        content={"success": True, "message": f"{noun} processed successfully", "data": data},
    )


async def _ingest(batch: LessonBatchIn, namespace: Namespace, noun: str) -> JSONResponse:
    await ensure_initialized()
    raw = [lesson.model_dump(exclude_none=True) for lesson in batch.lessons]
    try:
        result = await pipeline.process_lessons(raw, batch.source_project, namespace)
    except Exception:
        logger.exception(f"Unexpected error processing {noun.lower()} from {batch.source_project}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": f"An unexpected error occurred while processing {noun.lower()}",
                "error": "Internal server error",
            },
        )

    logger.info(
        f"Push from {batch.source_project}: created={result.created}, "
        f"updated={result.updated}, skipped={result.skipped}, errors={len(result.errors)}"
    )
    return build_import_response(result, noun)


# ============================================================================
# Ingestion
# ============================================================================


@app.post("/api/lessons")
async def push_lessons(batch: LessonBatchIn) -> JSONResponse:
    """Push generic lessons into the shared pool."""
    return await _ingest(batch, Namespace.generic(), "Lessons")


@app.post("/api/project-details")
async def push_project_details(batch: LessonBatchIn) -> JSONResponse:
    """Push implementation notes scoped to the source project."""
    return await _ingest(batch, Namespace.project_detail(batch.source_project), "Project details")


# ============================================================================
# Browse
# ============================================================================


@app.get("/api/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint with storage capabilities."""
    await ensure_initialized()
    capabilities = store.capabilities
    return {
        "status": "healthy",
        "version": __version__,
        "lessons_count": await store.count_lessons(),
        "capabilities": {
            "fulltext": capabilities.fulltext,
            "relevance_score": capabilities.relevance_score,
            "usage_tracking": capabilities.usage_tracking,
        },
    }


@app.get("/api/lessons")
async def list_lessons(
    q: str | None = None,
    category: str | None = None,
    tags: list[str] | None = Query(None),
    project: str | None = Query(None, pattern=PROJECT_PATTERN),
    include_deprecated: bool = False,
    include_related: bool = False,
    limit: int = Query(15, ge=1, le=100),
) -> dict[str, Any]:
    """Search or browse lessons. Passing ``project`` switches to that project's details."""
    await ensure_initialized()
    namespace = Namespace.project_detail(project) if project else Namespace.generic()
    response = await search.search(
        query=q,
        category=category,
        tags=tags,
        include_related=include_related,
        limit=limit,
        namespace=namespace,
        active_only=not include_deprecated,
    )
    return response.to_result_dict()


@app.get("/api/lessons/{lesson_id}")
async def get_single_lesson(lesson_id: str) -> dict[str, Any]:
    """Get a specific lesson with full details."""
    await ensure_initialized()
    lesson = await store.get_lesson(lesson_id)
    if lesson is None:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return lesson.to_result_dict()


@app.post("/api/lessons/{lesson_id}/feedback")
async def lesson_feedback(lesson_id: str, feedback: FeedbackIn):
    """Record whether a lesson was helpful."""
    await ensure_initialized()
    if not store.capabilities.usage_tracking:
        error = CapabilityUnavailableError("Usage tracking")
        return JSONResponse(
            status_code=503,
            content={"success": False, "message": error.message, "error": error.error_code},
        )
    result = await tracker.record_feedback(lesson_id, feedback.was_helpful, feedback.session_id)
    if not result.success:
        raise HTTPException(status_code=404, detail=result.message)
    return result.model_dump()


@app.get("/api/graph")
async def get_graph_data() -> dict[str, Any]:
    """Get the relationship graph for visualization."""
    await ensure_initialized()
    graph = await load_graph(store)
    data = graph.to_dict()
    data["statistics"] = graph.get_statistics()
    return data


def run_server(host: str = "127.0.0.1", port: int = 8765):
    """Run the web server."""
    import uvicorn
    uvicorn.run(app, host=host, port=port, log_level="info")


def main():
    """Entry point for web server."""
    run_server()


if __name__ == "__main__":
    main()
