"""
Storage records, shard routing, and the shard store protocol.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Protocol

from ..models import ShardStats


def shard_for_path(file_path: str, shard_count: int) -> int:
    """Route a file to a shard: first 8 hex digits of md5(path), modulo count."""
    digest = hashlib.md5(file_path.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % shard_count


def normalize(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return [float(v) for v in vector]
    return [float(v) / norm for v in vector]


@dataclass(frozen=True)
class StoredRecord:
    """An embedded chunk persisted in a shard."""

    file_path: str
    chunk_index: int
    content: str
    embedding: list[float]
    shard_id: int
    start_line: int = 1
    end_line: int = 1
    language: str | None = None
    symbol: str | None = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.file_path, self.chunk_index)


@dataclass(frozen=True)
class ScoredRecord:
    """A stored chunk with its similarity to a query."""

    file_path: str
    chunk_index: int
    content: str
    shard_id: int
    score: float
    start_line: int = 1
    end_line: int = 1
    language: str | None = None
    symbol: str | None = None


def merge_scored(
    groups: list[list[ScoredRecord]], *, limit: int | None = None
) -> list[ScoredRecord]:
    """Merge per-shard results into one deterministic ordering."""
    merged = [record for group in groups for record in group]
    merged.sort(key=lambda r: (-r.score, r.file_path, r.chunk_index))
    if limit is not None:
        return merged[:limit]
    return merged


class ShardStore(Protocol):
    """Operations on a single shard. Nothing here crosses shard boundaries."""

    shard_id: int
    path: str

    def initialize(self) -> None:
        """Create tables if missing."""

    def upsert(self, records: list[StoredRecord]) -> int:
        """Replace records by (file_path, chunk_index) key."""

    def replace_file(
        self, file_path: str, records: list[StoredRecord], content_sha256: str
    ) -> int:
        """Atomically swap every chunk of *file_path* for *records*."""

    def delete_by_file(self, file_path: str) -> int:
        """Remove all chunks of a file. Return the number removed."""

    def nearest_neighbors(
        self, query_vector: list[float], top_k: int, min_score: float = 0.0
    ) -> list[ScoredRecord]:
        """Return at most *top_k* records scoring at least *min_score*."""

    def get_file_hash(self, file_path: str) -> str | None:
        """Return the content hash recorded at the last index of a file."""

    def stats(self) -> ShardStats:
        """Counts derived from current contents."""

    def clear(self) -> None:
        """Delete every record in the shard."""
