"""Worker pool and task messages for sharded indexing and search."""

from .pool import PoolIndexResult, WorkerPool, assign_shards, default_worker_count
from .tasks import (
    IndexTask,
    IndexTaskResult,
    SearchTask,
    SearchTaskResult,
    run_index_task,
    run_search_task,
)

__all__ = [
    "WorkerPool",
    "PoolIndexResult",
    "assign_shards",
    "default_worker_count",
    "IndexTask",
    "IndexTaskResult",
    "SearchTask",
    "SearchTaskResult",
    "run_index_task",
    "run_search_task",
]
