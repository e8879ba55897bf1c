"""Storage backends for localgrep indexes."""

from .base import ScoredRecord, ShardStore, StoredRecord, merge_scored, shard_for_path
from .duckdb import DuckDBShardStore
from .sharded import ShardedVectorStore

__all__ = [
    "ScoredRecord",
    "ShardStore",
    "StoredRecord",
    "merge_scored",
    "shard_for_path",
    "DuckDBShardStore",
    "ShardedVectorStore",
]
