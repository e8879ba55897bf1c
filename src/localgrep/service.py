"""
Service facade tying the store, embedder, indexer and searcher together.

A ``SearchService`` owns one project index. ``ServiceRegistry`` hands out
one service per storage directory.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Iterable

from .config import EngineConfig
from .embeddings.base import Embedder
from .embeddings.factory import create_embedder
from .errors import (
    DimensionMismatchError,
    EngineNotReadyError,
    InitializationError,
    ValidationError,
)
from .events import (
    ErrorEvent,
    EventBus,
    FileDeletedEvent,
    FileIndexedEvent,
    IndexingCompleteEvent,
    IndexingProgressEvent,
    IndexingStartEvent,
    Listener,
    ReadyEvent,
)
from .fs import read_source_file
from .indexing.chunker import Chunker
from .indexing.pipeline import Indexer
from .models import (
    BulkIndexResult,
    FileChange,
    IndexStats,
    SearchOptions,
    SearchResult,
    ServiceState,
    ServiceStatus,
    SourceFile,
)
from .search.searcher import Searcher
from .storage.sharded import ShardedVectorStore
from .workers.pool import WorkerPool

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]

_NOT_READY_REASONS: dict[str, str] = {
    "uninitialized": "service not initialized",
    "initializing": "model still loading",
    "disposed": "service disposed",
}


class SearchService:
    """Lifecycle, events and the public operations for one project index."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        embedder: Embedder | None = None,
        pool: WorkerPool | None = None,
    ) -> None:
        self.config = config
        self.events = EventBus()
        self._embedder = embedder
        self._owns_embedder = embedder is None
        self._pool = pool
        self._store: ShardedVectorStore | None = None
        self._indexer: Indexer | None = None
        self._searcher: Searcher | None = None
        self._state: ServiceState = "uninitialized"
        self._reason: str | None = None
        self._lock = threading.RLock()
        self._indexing = 0
        self._indexing_lock = threading.Lock()

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def storage_dir(self) -> str:
        return str(Path(self.config.storage_dir).expanduser().resolve())

    # -- lifecycle -----------------------------------------------------

    def initialize(self) -> ServiceStatus:
        """
        Open the store and load the embedder. Safe to call repeatedly.

        A store failure raises. An embedder that cannot load leaves the
        service ``unavailable`` with a reason instead of raising.
        """
        with self._lock:
            if self._state == "ready":
                return self.get_status()
            if self._state == "disposed":
                raise EngineNotReadyError(_NOT_READY_REASONS["disposed"])

            self._state = "initializing"
            self._reason = _NOT_READY_REASONS["initializing"]
            store = ShardedVectorStore(self.config.storage_dir, self.config.shard_count)
            try:
                store.initialize()
            except Exception:
                self._state = "uninitialized"
                self._reason = None
                raise
            self._store = store

            try:
                embedder = self._embedder or create_embedder(self.config.embedder)
                embedder.initialize()
                info = embedder.get_model_info()
                if store.dimensions is not None and store.dimensions != info.dimensions:
                    raise DimensionMismatchError(store.dimensions, info.dimensions)
            except (InitializationError, DimensionMismatchError) as exc:
                self._state = "unavailable"
                self._reason = str(exc)
                logger.warning("Search service unavailable: %s", exc)
                self.events.emit(ErrorEvent(message=str(exc)))
                return self.get_status()

            self._embedder = embedder
            pool = self._pool or self._build_pool(embedder)
            chunker = Chunker(
                self.config.chunk_size,
                self.config.chunk_overlap,
                shard_count=self.config.shard_count,
            )
            self._indexer = Indexer(
                store, embedder, chunker=chunker, pool=pool, batch_size=self.config.batch_size
            )
            self._searcher = Searcher(store, embedder, pool=pool)
            self._state = "ready"
            self._reason = None

        status = self.get_status()
        logger.info("Search service ready at %s", self.storage_dir)
        self.events.emit(ReadyEvent(status=status))
        return status

    def _build_pool(self, embedder: Embedder) -> WorkerPool | None:
        if self.config.executor == "inline":
            return None
        return WorkerPool(
            self.config.worker_count,
            executor=self.config.executor,
            task_timeout=self.config.task_timeout,
            embedder=embedder,
        )

    def dispose(self) -> None:
        """Release the embedder and listeners. Indexed data stays on disk."""
        with self._lock:
            if self._state == "disposed":
                return
            if self._owns_embedder and self._embedder is not None:
                self._embedder.dispose()
            self._indexer = None
            self._searcher = None
            self._store = None
            self._state = "disposed"
            self._reason = _NOT_READY_REASONS["disposed"]
        self.events.clear()
        logger.info("Search service at %s disposed", self.storage_dir)

    def _require_ready(self) -> tuple[Indexer, Searcher]:
        if self._state != "ready" or self._indexer is None or self._searcher is None:
            raise EngineNotReadyError(
                self._reason or _NOT_READY_REASONS.get(self._state, self._state)
            )
        return self._indexer, self._searcher

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.events.subscribe(listener)

    # -- status ----------------------------------------------------------

    def get_status(self) -> ServiceStatus:
        stats = None
        if self._state == "ready" and self._store is not None:
            stats = self._store.get_stats()
        backend = self._embedder.config.backend if self._embedder is not None else None
        return ServiceStatus(
            state=self._state,
            ready=self._state == "ready",
            indexing=self._indexing > 0,
            reason=self._reason,
            backend=backend,
            stats=stats,
        )

    def get_stats(self) -> IndexStats:
        indexer, _ = self._require_ready()
        return indexer.get_stats()

    # -- indexing --------------------------------------------------------

    def _begin_indexing(self) -> None:
        with self._indexing_lock:
            self._indexing += 1

    def _end_indexing(self) -> None:
        with self._indexing_lock:
            self._indexing -= 1

    def index_file(self, file_path: str, content: str, *, force: bool = False) -> int:
        indexer, _ = self._require_ready()
        try:
            chunks = indexer.index_file(file_path, content, force=force)
        except Exception as exc:
            self.events.emit(ErrorEvent(message=str(exc), file_path=file_path))
            raise
        if chunks > 0:
            self.events.emit(FileIndexedEvent(file_path=file_path, chunks=chunks))
        return chunks

    def index_files(
        self,
        files: Iterable[SourceFile | tuple[str, str]],
        *,
        on_progress: ProgressCallback | None = None,
        force: bool = False,
    ) -> BulkIndexResult:
        indexer, _ = self._require_ready()
        items = list(files)
        if not items:
            raise ValidationError("files must not be empty")

        def progress(current: int, total: int, current_file: str) -> None:
            self.events.emit(
                IndexingProgressEvent(current=current, total=total, current_file=current_file)
            )
            if on_progress is not None:
                on_progress(current, total, current_file)

        self._begin_indexing()
        self.events.emit(IndexingStartEvent(total_files=len(items)))
        try:
            result = indexer.index_files(items, on_progress=progress, force=force)
        except Exception as exc:
            self.events.emit(ErrorEvent(message=str(exc)))
            raise
        finally:
            self._end_indexing()

        for failure in result.failures:
            self.events.emit(ErrorEvent(message=failure.error, file_path=failure.file_path))
        self.events.emit(IndexingCompleteEvent(result=result))
        logger.info(
            "Indexed %d files (%d chunks, %d skipped, %d failed) in %.0f ms",
            result.files_processed,
            result.total_chunks,
            result.skipped_files,
            len(result.failures),
            result.duration_ms,
        )
        return result

    def delete_file(self, file_path: str) -> int:
        indexer, _ = self._require_ready()
        removed = indexer.delete_file(file_path)
        self.events.emit(FileDeletedEvent(file_path=file_path, chunks_removed=removed))
        return removed

    def on_file_change(self, change: FileChange) -> int:
        """Apply an add, modify or delete notification. Returns chunks written or removed."""
        self._require_ready()
        if change.event_type == "deleted":
            return self.delete_file(change.file_path)

        content = change.content
        if content is None:
            content = self._read_from_project(change.file_path)
        return self.index_file(change.file_path, content)

    def _read_from_project(self, file_path: str) -> str:
        root = self.config.project_root
        full_path = os.path.join(root, file_path) if root else file_path
        if not os.path.isfile(full_path):
            raise ValidationError(f"No such file: {full_path}")
        return read_source_file(full_path)

    def clear(self, *, confirm: bool = False) -> None:
        indexer, _ = self._require_ready()
        indexer.clear(confirm=confirm)

    # -- search ----------------------------------------------------------

    def search(self, query: str, options: SearchOptions | None = None) -> list[SearchResult]:
        """Default search entry point: hybrid ranking."""
        return self.hybrid_search(query, options)

    def vector_search(
        self, query: str, options: SearchOptions | None = None
    ) -> list[SearchResult]:
        _, searcher = self._require_ready()
        return searcher.search(query, options)

    def hybrid_search(
        self, query: str, options: SearchOptions | None = None
    ) -> list[SearchResult]:
        _, searcher = self._require_ready()
        return searcher.hybrid_search(query, options)

    def find_similar(
        self, code: str, options: SearchOptions | None = None
    ) -> list[SearchResult]:
        _, searcher = self._require_ready()
        return searcher.find_similar(code, options)


ServiceFactory = Callable[[EngineConfig], SearchService]


class ServiceRegistry:
    """One ``SearchService`` per resolved storage directory."""

    def __init__(self, factory: ServiceFactory = SearchService) -> None:
        self._factory = factory
        self._services: dict[str, SearchService] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(storage_dir: str) -> str:
        return str(Path(storage_dir).expanduser().resolve())

    def get_or_create(self, config: EngineConfig) -> SearchService:
        key = self._key(config.storage_dir)
        with self._lock:
            service = self._services.get(key)
            if service is None or service.state == "disposed":
                service = self._factory(config)
                self._services[key] = service
            return service

    def get(self, storage_dir: str) -> SearchService | None:
        with self._lock:
            return self._services.get(self._key(storage_dir))

    def remove(self, storage_dir: str) -> None:
        with self._lock:
            service = self._services.pop(self._key(storage_dir), None)
        if service is not None:
            service.dispose()

    def dispose_all(self) -> None:
        with self._lock:
            services = list(self._services.values())
            self._services.clear()
        for service in services:
            service.dispose()

    def __len__(self) -> int:
        with self._lock:
            return len(self._services)
