"""
Fixed-size worker pool for sharded indexing and search.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
import queue
import threading
import time
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from ..config import EmbedderConfig
from ..embeddings.base import Embedder
from ..errors import StorageError, ValidationError, WorkerPoolExhaustedError
from ..models import FileFailure
from ..storage.base import ScoredRecord, merge_scored
from .tasks import (
    IndexTask,
    IndexTaskResult,
    SearchTask,
    run_index_task,
    run_search_task,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]
_SENTINEL = None


def default_worker_count() -> int:
    return max(1, (os.cpu_count() or 2) - 1)


def assign_shards(shard_ids: list[int], worker_count: int) -> dict[int, list[int]]:
    """Round-robin: the i-th shard in ascending order goes to worker ``i % n``."""
    ordered = sorted(set(shard_ids))
    workers = max(1, min(worker_count, len(ordered)))
    assignment: dict[int, list[int]] = {worker_id: [] for worker_id in range(workers)}
    for i, shard_id in enumerate(ordered):
        assignment[i % workers].append(shard_id)
    return assignment


@dataclass(frozen=True)
class PoolIndexResult:
    """Merged outcome of a pooled indexing run."""

    total_chunks: int = 0
    total_files: int = 0
    skipped_files: int = 0
    duration_ms: float = 0.0
    failures: list[FileFailure] = field(default_factory=list)
    worker_results: list[IndexTaskResult] = field(default_factory=list)


class WorkerPool:
    """
    Run shard-partitioned work on isolated workers.

    ``executor="process"`` uses spawned processes that rebuild the embedder
    from its config. ``executor="thread"`` runs in the owning process and may
    share the owner's embedder. Each call builds a fresh executor sized to
    the shards in play, so a crashed worker never poisons later calls.
    """

    def __init__(
        self,
        worker_count: int | None = None,
        *,
        executor: Literal["process", "thread"] = "process",
        task_timeout: float = 300.0,
        embedder: Embedder | None = None,
    ) -> None:
        if worker_count is not None and worker_count < 1:
            raise ValidationError("worker_count must be >= 1")
        if executor not in ("process", "thread"):
            raise ValidationError(f"Unknown executor kind: {executor!r}")
        if task_timeout <= 0:
            raise ValidationError("task_timeout must be > 0")
        self.worker_count = worker_count or default_worker_count()
        self.executor_kind = executor
        self.task_timeout = task_timeout
        self._shared_embedder = embedder if executor == "thread" else None

    def workers_for(self, shard_total: int) -> int:
        return max(1, min(self.worker_count, shard_total))

    def _make_executor(self, workers: int) -> Executor:
        if self.executor_kind == "process":
            return ProcessPoolExecutor(
                max_workers=workers,
                mp_context=multiprocessing.get_context("spawn"),
            )
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="localgrep-worker")

    def _make_channel(self) -> tuple[Any, Any, Any]:
        """Progress queue, cancel event, and the manager backing them in process mode."""
        if self.executor_kind == "process":
            manager = multiprocessing.get_context("spawn").Manager()
            return manager.Queue(), manager.Event(), manager
        return queue.Queue(), threading.Event(), None

    def _collect(self, futures: dict[Any, Any], label: str) -> tuple[list[Any], list[tuple[Any, str]]]:
        """Wait for every future under one shared deadline."""
        deadline = time.monotonic() + self.task_timeout
        results: list[Any] = []
        failed: list[tuple[Any, str]] = []
        for future, task in futures.items():
            remaining = max(0.0, deadline - time.monotonic())
            try:
                results.append(future.result(timeout=remaining))
            except FuturesTimeoutError:
                future.cancel()
                reason = f"worker {task.worker_id} timed out after {self.task_timeout}s"
                logger.warning("%s %s", label, reason)
                failed.append((task, reason))
            except Exception as exc:
                reason = f"worker {task.worker_id} crashed: {exc}"
                logger.warning("%s %s", label, reason)
                failed.append((task, reason))
        return results, failed

    def run_index(
        self,
        shard_paths: dict[int, str],
        files_by_shard: dict[int, list[tuple[str, str]]],
        *,
        embedder_config: EmbedderConfig,
        shard_count: int,
        chunk_size: int = 1500,
        chunk_overlap: int = 150,
        batch_size: int = 32,
        dimensions: int | None = None,
        force: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> PoolIndexResult:
        started = time.perf_counter()
        shards_in_play = sorted(sid for sid, files in files_by_shard.items() if files)
        if not shards_in_play:
            return PoolIndexResult()

        channel, cancel, manager = self._make_channel()
        assignment = assign_shards(shards_in_play, self.workers_for(len(shards_in_play)))
        tasks = [
            IndexTask(
                worker_id=worker_id,
                shard_paths={sid: shard_paths[sid] for sid in shard_ids},
                shard_count=shard_count,
                files=[item for sid in shard_ids for item in files_by_shard[sid]],
                embedder_config=embedder_config,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                batch_size=batch_size,
                dimensions=dimensions,
                force=force,
                cancel=cancel,
            )
            for worker_id, shard_ids in assignment.items()
        ]
        total = sum(len(task.files) for task in tasks)
        logger.info(
            "Indexing %d files across %d shards with %d %s workers",
            total,
            len(shards_in_play),
            len(tasks),
            self.executor_kind,
        )

        drain = threading.Thread(
            target=self._drain_progress,
            args=(channel, total, on_progress),
            name="localgrep-progress",
            daemon=True,
        )
        drain.start()
        executor = self._make_executor(len(tasks))
        futures: dict[Any, IndexTask] = {}
        try:
            futures = {
                executor.submit(run_index_task, task, channel, self._shared_embedder): task
                for task in tasks
            }
            results, failed = self._collect(futures, "Index")
            results, failed = self._await_cancelled(futures, cancel, results, failed)
        finally:
            # Callers release shard locks when this returns, so no worker may
            # still be writing by then.
            if any(not future.done() for future in futures):
                cancel.set()
                wait(list(futures))
            executor.shutdown(wait=False, cancel_futures=True)
            channel.put(_SENTINEL)
            drain.join()
            if manager is not None:
                manager.shutdown()

        if not results:
            raise WorkerPoolExhaustedError(
                f"All {len(tasks)} index workers failed: " + "; ".join(r for _, r in failed)
            )

        failures = [
            FileFailure(file_path=path, error=error)
            for result in results
            for path, error in result.failures
        ]
        for task, reason in failed:
            failures.extend(FileFailure(file_path=path, error=reason) for path, _ in task.files)

        return PoolIndexResult(
            total_chunks=sum(r.total_chunks for r in results),
            total_files=sum(r.total_files for r in results),
            skipped_files=sum(r.skipped_files for r in results),
            duration_ms=(time.perf_counter() - started) * 1000,
            failures=failures,
            worker_results=sorted(results, key=lambda r: r.worker_id),
        )

    @staticmethod
    def _await_cancelled(
        futures: dict[Any, IndexTask],
        cancel: Any,
        results: list[IndexTaskResult],
        failed: list[tuple[IndexTask, str]],
    ) -> tuple[list[IndexTaskResult], list[tuple[IndexTask, str]]]:
        """
        Stop workers that outlived the deadline and wait for them to exit.

        A running thread or process cannot be interrupted, so the worker
        checks *cancel* between files. A late worker that still returns a
        result replaces its timeout entry; the files it never reached come
        back as cancelled failures.
        """
        failed_ids = {task.worker_id for task, _ in failed}
        unfinished = [future for future, task in futures.items() if task.worker_id in failed_ids]
        pending = [future for future in unfinished if not future.done()]
        if pending:
            cancel.set()
            logger.info("Waiting for %d timed-out index workers to stop", len(pending))
            wait(pending)
        late: dict[int, IndexTaskResult] = {}
        for future in unfinished:
            if future.cancelled() or future.exception() is not None:
                continue
            result = future.result()
            if isinstance(result, IndexTaskResult):
                late[futures[future].worker_id] = result
        if not late:
            return results, failed
        return (
            results + list(late.values()),
            [(task, reason) for task, reason in failed if task.worker_id not in late],
        )

    @staticmethod
    def _drain_progress(channel: Any, total: int, on_progress: ProgressCallback | None) -> None:
        current = 0
        while True:
            message = channel.get()
            if message is _SENTINEL:
                return
            current += 1
            if message.get("type") == "error":
                logger.debug("Failed to index %s: %s", message.get("file_path"), message.get("error"))
            if on_progress is not None:
                try:
                    on_progress(current, total, str(message.get("file_path", "")))
                except Exception:
                    logger.exception("Progress callback failed")

    def run_search(
        self,
        shard_paths: dict[int, str],
        query_vector: list[float],
        top_k: int,
        min_score: float = 0.0,
    ) -> list[ScoredRecord]:
        """Fan a query out to every shard and merge by score, path, chunk index."""
        if not shard_paths:
            return []
        assignment = assign_shards(list(shard_paths), self.workers_for(len(shard_paths)))
        tasks = [
            SearchTask(
                worker_id=worker_id,
                shard_paths={sid: shard_paths[sid] for sid in shard_ids},
                query_vector=query_vector,
                top_k=top_k,
                min_score=min_score,
                read_only=self.executor_kind == "process",
            )
            for worker_id, shard_ids in assignment.items()
        ]
        executor = self._make_executor(len(tasks))
        try:
            futures = {executor.submit(run_search_task, task): task for task in tasks}
            results, failed = self._collect(futures, "Search")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if not results:
            raise WorkerPoolExhaustedError(
                f"All {len(tasks)} search workers failed: " + "; ".join(r for _, r in failed)
            )
        groups: list[list[ScoredRecord]] = []
        shard_errors: list[str] = []
        for result in sorted(results, key=lambda r: r.worker_id):
            for shard_id, error in result.failed_shards:
                logger.warning("Shard %d skipped during search: %s", shard_id, error)
                shard_errors.append(f"shard {shard_id}: {error}")
            groups.append(result.records)
        unavailable = sum(len(task.shard_paths) for task, _ in failed) + len(shard_errors)
        if unavailable == len(shard_paths):
            raise StorageError(
                f"Search failed on all {len(shard_paths)} shards: " + "; ".join(shard_errors)
            )
        return merge_scored(groups, limit=top_k)
