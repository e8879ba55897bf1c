"""
Indexing orchestration: chunk, embed, and persist source files.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import ExitStack
from typing import Callable, Iterable

from ..embeddings.base import Embedder
from ..errors import ValidationError
from ..models import BulkIndexResult, FileFailure, IndexStats, SourceFile
from ..storage.sharded import ShardedVectorStore
from ..workers.pool import WorkerPool
from .chunker import Chunker
from .records import content_hash, embed_chunks

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


class Indexer:
    """
    Build and update a sharded index incrementally.

    Work on one file is serialized by a per-file lock; writes to one shard
    are serialized by the store's shard lock. Distinct files proceed
    concurrently up to the point where they write the same shard.
    """

    def __init__(
        self,
        store: ShardedVectorStore,
        embedder: Embedder,
        *,
        chunker: Chunker | None = None,
        pool: WorkerPool | None = None,
        batch_size: int = 32,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.chunker = chunker or Chunker(shard_count=store.shard_count)
        if self.chunker.shard_count != store.shard_count:
            raise ValidationError(
                f"Chunker routes to {self.chunker.shard_count} shards, "
                f"store has {store.shard_count}"
            )
        self.pool = pool
        self.batch_size = batch_size
        self._file_locks: dict[str, threading.Lock] = {}
        self._file_locks_guard = threading.Lock()

    def _file_lock(self, file_path: str) -> threading.Lock:
        with self._file_locks_guard:
            lock = self._file_locks.get(file_path)
            if lock is None:
                lock = threading.Lock()
                self._file_locks[file_path] = lock
            return lock

    def _bind_model(self) -> None:
        info = self.embedder.get_model_info()
        self.store.bind_model(info.name, info.dimensions)

    def _index_one(self, file_path: str, content: str, *, force: bool) -> int | None:
        """Index a file; ``None`` means its content was unchanged and it was skipped."""
        shard_id = self.store.shard_id_for(file_path)
        with self._file_lock(file_path):
            digest = content_hash(content)
            if not force and self.store.get_file_hash(file_path) == digest:
                logger.debug("Skipping unchanged file %s", file_path)
                return None
            chunks = self.chunker.chunk(file_path, content)
            records = embed_chunks(
                self.embedder,
                chunks,
                batch_size=self.batch_size,
                dimensions=self.store.dimensions,
            )
            with self.store.lock(shard_id):
                self.store.shard(shard_id).replace_file(file_path, records, digest)
        logger.debug("Indexed %s: %d chunks in shard %d", file_path, len(records), shard_id)
        return len(records)

    def index_file(self, file_path: str, content: str, *, force: bool = False) -> int:
        """Index or re-index one file and return its chunk count (0 if unchanged)."""
        if not file_path:
            raise ValidationError("file_path must not be empty")
        self._bind_model()
        return self._index_one(file_path, content, force=force) or 0

    def index_files(
        self,
        files: Iterable[SourceFile | tuple[str, str]],
        *,
        on_progress: ProgressCallback | None = None,
        force: bool = False,
    ) -> BulkIndexResult:
        """
        Index many files. Per-file failures are collected, not raised.

        Duplicate paths collapse to the last occurrence.
        """
        latest: dict[str, str] = {}
        for item in files:
            if isinstance(item, SourceFile):
                latest[item.file_path] = item.content
            else:
                path, content = item
                latest[path] = content
        if not latest:
            raise ValidationError("files must not be empty")
        if "" in latest:
            raise ValidationError("file_path must not be empty")

        started = time.perf_counter()
        self._bind_model()
        if self.pool is not None:
            return self._index_pooled(latest, on_progress=on_progress, force=force, started=started)

        total = len(latest)
        chunks_written = 0
        processed = 0
        skipped = 0
        failures: list[FileFailure] = []
        for current, (file_path, content) in enumerate(latest.items(), start=1):
            try:
                written = self._index_one(file_path, content, force=force)
            except Exception as exc:
                logger.warning("Failed to index %s: %s", file_path, exc)
                failures.append(FileFailure(file_path=file_path, error=str(exc)))
            else:
                if written is None:
                    skipped += 1
                else:
                    chunks_written += written
                    processed += 1
            if on_progress is not None:
                on_progress(current, total, file_path)

        return BulkIndexResult(
            total_chunks=chunks_written,
            files_processed=processed,
            skipped_files=skipped,
            failures=failures,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    def _index_pooled(
        self,
        latest: dict[str, str],
        *,
        on_progress: ProgressCallback | None,
        force: bool,
        started: float,
    ) -> BulkIndexResult:
        files_by_shard: dict[int, list[tuple[str, str]]] = {}
        for file_path, content in latest.items():
            files_by_shard.setdefault(self.store.shard_id_for(file_path), []).append(
                (file_path, content)
            )

        # File locks first, then shard locks, both in sorted order, matching
        # the order index_file takes them.
        with ExitStack() as stack:
            for file_path in sorted(latest):
                stack.enter_context(self._file_lock(file_path))
            stack.enter_context(self.store.hold_shards(files_by_shard))
            result = self.pool.run_index(
                self.store.shard_paths(),
                files_by_shard,
                embedder_config=self.embedder.config,
                shard_count=self.store.shard_count,
                chunk_size=self.chunker.max_chunk_size,
                chunk_overlap=self.chunker.overlap,
                batch_size=self.batch_size,
                dimensions=self.store.dimensions,
                force=force,
                on_progress=on_progress,
            )

        return BulkIndexResult(
            total_chunks=result.total_chunks,
            files_processed=result.total_files,
            skipped_files=result.skipped_files,
            failures=result.failures,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    def delete_file(self, file_path: str) -> int:
        """Remove every chunk of *file_path*. Returns the number removed."""
        with self._file_lock(file_path):
            removed = self.store.delete_by_file(file_path)
        logger.debug("Deleted %d chunks for %s", removed, file_path)
        return removed

    def clear(self, *, confirm: bool = False) -> None:
        if not confirm:
            raise ValidationError("clear() deletes the whole index; pass confirm=True")
        self.store.clear()

    def get_stats(self) -> IndexStats:
        return self.store.get_stats()
