"""
FastAPI server exposing the search engine over HTTP.

Services are created lazily per storage directory and kept in
``app.state.registry`` for the life of the process.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Literal

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import EngineConfig
from .errors import EngineNotReadyError, LocalGrepError, ValidationError
from .fs import collect_source_files
from .models import FileChange, SearchOptions, SourceFile
from .search.searcher import FIND_SIMILAR_MIN_SCORE
from .service import SearchService, ServiceRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await asyncio.to_thread(app.state.registry.dispose_all)


app = FastAPI(
    title="localgrep",
    description="Local semantic code search",
    lifespan=lifespan,
)
app.state.registry = ServiceRegistry()


class IndexRequest(BaseModel):
    """Request model for indexing a folder or an explicit file list."""

    folder: str | None = None
    files: list[SourceFile] | None = None
    storage_dir: str | None = None
    force: bool = False


class FileChangeRequest(FileChange):
    """A single file change notification."""

    storage_dir: str | None = None


class SearchRequest(BaseModel):
    """Request model for search queries."""

    query: str
    storage_dir: str | None = None
    mode: Literal["hybrid", "vector", "similar"] = "hybrid"
    top_k: int = Field(default=10, ge=1)
    min_score: float | None = None
    return_context: bool = False


def _error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, ValidationError):
        return JSONResponse({"error": str(exc)}, status_code=400)
    if isinstance(exc, EngineNotReadyError):
        return JSONResponse({"error": str(exc), "reason": exc.reason}, status_code=503)
    if isinstance(exc, LocalGrepError):
        logger.warning("Request failed: %s", exc)
        return JSONResponse({"error": str(exc)}, status_code=500)
    logger.exception("Unexpected server error")
    return JSONResponse({"error": str(exc)}, status_code=500)


def _service_for(storage_dir: str | None) -> SearchService:
    config = EngineConfig.from_env(storage_dir=storage_dir)
    service = app.state.registry.get_or_create(config)
    service.initialize()
    return service


@app.post("/api/index")
async def build_index(request: IndexRequest):
    """Index a folder on disk, or files supplied in the request body."""
    try:
        if request.folder is not None:
            folder_path = Path(request.folder).resolve()
            if not folder_path.exists() or not folder_path.is_dir():
                return JSONResponse(
                    {"error": f"Invalid folder: {request.folder}"}, status_code=400
                )
            files = await asyncio.to_thread(collect_source_files, str(folder_path))
        else:
            files = request.files or []
        if not files:
            return JSONResponse({"error": "No files to index"}, status_code=400)

        service = await asyncio.to_thread(_service_for, request.storage_dir)
        result = await asyncio.to_thread(service.index_files, files, force=request.force)
        return result.model_dump(mode="json")
    except Exception as exc:
        return _error_response(exc)


@app.post("/api/files")
async def file_changed(request: FileChangeRequest):
    """Apply an added, modified or deleted notification for one file."""
    try:
        service = await asyncio.to_thread(_service_for, request.storage_dir)
        change = FileChange(
            file_path=request.file_path,
            event_type=request.event_type,
            content=request.content,
            timestamp=request.timestamp,
        )
        chunks = await asyncio.to_thread(service.on_file_change, change)
        return {"file_path": change.file_path, "event_type": change.event_type, "chunks": chunks}
    except Exception as exc:
        return _error_response(exc)


@app.post("/api/search")
async def search_index(request: SearchRequest):
    """Run a hybrid, vector-only, or similar-code search."""
    try:
        service = await asyncio.to_thread(_service_for, request.storage_dir)
        min_score = request.min_score
        if min_score is None:
            min_score = FIND_SIMILAR_MIN_SCORE if request.mode == "similar" else 0.0
        options = SearchOptions(
            top_k=request.top_k,
            min_score=min_score,
            return_context=request.return_context,
        )

        if request.mode == "vector":
            results = await asyncio.to_thread(service.vector_search, request.query, options)
        elif request.mode == "similar":
            results = await asyncio.to_thread(service.find_similar, request.query, options)
        else:
            results = await asyncio.to_thread(service.hybrid_search, request.query, options)
        return {
            "query": request.query,
            "mode": request.mode,
            "results": [r.model_dump(mode="json") for r in results],
        }
    except Exception as exc:
        return _error_response(exc)


@app.get("/api/status")
async def index_status(storage_dir: str | None = None):
    """Report lifecycle state and index statistics."""
    try:
        service = await asyncio.to_thread(_service_for, storage_dir)
        status = await asyncio.to_thread(service.get_status)
        return status.model_dump(mode="json")
    except Exception as exc:
        return _error_response(exc)


@app.delete("/api/index")
async def clear_index(storage_dir: str | None = None, confirm: bool = False):
    """Delete every indexed chunk. Requires ``confirm=true``."""
    try:
        service = await asyncio.to_thread(_service_for, storage_dir)
        await asyncio.to_thread(service.clear, confirm=confirm)
        return {"cleared": True}
    except Exception as exc:
        return _error_response(exc)


def run_server(host: str = "127.0.0.1", port: int = 8000):
    """Run the FastAPI server."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
