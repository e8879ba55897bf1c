"""
Task messages and the functions that run inside pool workers.

Everything here crosses a process boundary, so tasks and results are plain
picklable dataclasses and the runners are module-level functions. Workers
open their own shard connections and, in process mode, their own embedder.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..config import EmbedderConfig
from ..embeddings.base import Embedder
from ..embeddings.factory import build_embedder
from ..errors import StorageError
from ..indexing.chunker import Chunker
from ..indexing.records import content_hash, embed_chunks
from ..storage.base import ScoredRecord, merge_scored, shard_for_path
from ..storage.duckdb import DuckDBShardStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexTask:
    """Index a set of files into the shards one worker owns."""

    worker_id: int
    shard_paths: dict[int, str]
    shard_count: int
    files: list[tuple[str, str]]
    embedder_config: EmbedderConfig
    chunk_size: int = 1500
    chunk_overlap: int = 150
    batch_size: int = 32
    dimensions: int | None = None
    force: bool = False
    # threading.Event in thread mode, a manager Event proxy in process mode.
    cancel: Any = None


@dataclass(frozen=True)
class IndexTaskResult:
    worker_id: int
    total_chunks: int = 0
    total_files: int = 0
    skipped_files: int = 0
    duration_ms: float = 0.0
    failures: list[tuple[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class SearchTask:
    """Run a nearest-neighbour query against the shards one worker owns."""

    worker_id: int
    shard_paths: dict[int, str]
    query_vector: list[float]
    top_k: int
    min_score: float = 0.0
    read_only: bool = False


@dataclass(frozen=True)
class SearchTaskResult:
    worker_id: int
    records: list[ScoredRecord] = field(default_factory=list)
    failed_shards: list[tuple[int, str]] = field(default_factory=list)


def _send(channel: Any, message: dict[str, Any]) -> None:
    if channel is not None:
        channel.put(message)


def run_index_task(
    task: IndexTask,
    channel: Any = None,
    embedder: Embedder | None = None,
) -> IndexTaskResult:
    """
    Chunk, embed and store every file in *task*.

    A failing file is reported and skipped. A shard that cannot be opened
    fails only the files routed to it. Once ``task.cancel`` is set the
    remaining files are reported as cancelled and nothing more is written.
    When *embedder* is ``None`` one is built from ``task.embedder_config``
    and disposed afterwards.
    """
    started = time.perf_counter()
    owns_embedder = embedder is None
    if embedder is None:
        embedder = build_embedder(task.embedder_config)
        embedder.initialize()

    chunker = Chunker(task.chunk_size, task.chunk_overlap, shard_count=task.shard_count)
    stores: dict[int, DuckDBShardStore] = {}
    broken: dict[int, str] = {}
    total_chunks = 0
    total_files = 0
    skipped = 0
    failures: list[tuple[str, str]] = []

    try:
        for position, (file_path, content) in enumerate(task.files):
            if task.cancel is not None and task.cancel.is_set():
                logger.debug(
                    "Worker %d cancelled with %d files left",
                    task.worker_id,
                    len(task.files) - position,
                )
                failures.extend(
                    (path, "indexing cancelled after timeout")
                    for path, _ in task.files[position:]
                )
                break
            try:
                shard_id = shard_for_path(file_path, task.shard_count)
                if shard_id in broken:
                    raise StorageError(broken[shard_id])
                store = stores.get(shard_id)
                if store is None:
                    try:
                        store = DuckDBShardStore(task.shard_paths[shard_id], shard_id)
                    except StorageError as exc:
                        broken[shard_id] = str(exc)
                        raise
                    stores[shard_id] = store

                digest = content_hash(content)
                if not task.force and store.get_file_hash(file_path) == digest:
                    skipped += 1
                    _send(channel, {"type": "progress", "worker_id": task.worker_id,
                                    "file_path": file_path, "chunks": 0, "skipped": True})
                    continue

                chunks = chunker.chunk(file_path, content)
                records = embed_chunks(
                    embedder, chunks, batch_size=task.batch_size, dimensions=task.dimensions
                )
                store.replace_file(file_path, records, digest)
                total_chunks += len(records)
                total_files += 1
                _send(channel, {"type": "progress", "worker_id": task.worker_id,
                                "file_path": file_path, "chunks": len(records), "skipped": False})
            except Exception as exc:
                logger.debug("Worker %d failed on %s: %s", task.worker_id, file_path, exc)
                failures.append((file_path, str(exc)))
                _send(channel, {"type": "error", "worker_id": task.worker_id,
                                "file_path": file_path, "error": str(exc)})
    finally:
        if owns_embedder:
            embedder.dispose()

    return IndexTaskResult(
        worker_id=task.worker_id,
        total_chunks=total_chunks,
        total_files=total_files,
        skipped_files=skipped,
        duration_ms=(time.perf_counter() - started) * 1000,
        failures=failures,
    )


def run_search_task(task: SearchTask) -> SearchTaskResult:
    """
    Query each owned shard and keep the merged local top-K.

    A broken shard is reported in ``failed_shards``, not raised.
    """
    groups: list[list[ScoredRecord]] = []
    failed: list[tuple[int, str]] = []
    for shard_id, path in sorted(task.shard_paths.items()):
        try:
            store = DuckDBShardStore(path, shard_id, initialize=False, read_only=task.read_only)
            groups.append(store.nearest_neighbors(task.query_vector, task.top_k, task.min_score))
        except StorageError as exc:
            failed.append((shard_id, str(exc)))
    return SearchTaskResult(
        worker_id=task.worker_id,
        records=merge_scored(groups, limit=task.top_k),
        failed_shards=failed,
    )
