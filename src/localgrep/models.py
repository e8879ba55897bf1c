from datetime import datetime, timezone
from typing import Literal, TypeAlias

from pydantic import BaseModel, Field

ChangeType: TypeAlias = Literal["added", "modified", "deleted"]
ServiceState: TypeAlias = Literal[
    "uninitialized", "initializing", "ready", "unavailable", "disposed"
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceFile(BaseModel):
    """A file handed to the indexer"""

    file_path: str = Field(description="Project-relative or absolute path, used as the identity key")
    content: str = Field(description="Full text content of the file")


class SearchOptions(BaseModel):
    """Tuning knobs for a single search call"""

    top_k: int = Field(default=10, ge=1, description="Maximum number of results")
    min_score: float = Field(default=0.0, description="Minimum cosine similarity, applied per shard")
    lexical_weight: float = Field(default=0.15, ge=0.0, description="Weight of the keyword score in hybrid ranking")
    candidate_multiplier: int = Field(default=2, ge=1, description="Candidate pool size as a multiple of top_k")
    return_context: bool = Field(default=False, description="Attach a highlighted snippet to each result")
    context_lines: int = Field(default=3, ge=0, description="Lines of context around the highlighted line")


class SearchResult(BaseModel):
    """A ranked chunk returned to callers"""

    file_path: str
    chunk_index: int
    content: str
    score: float = Field(description="Final ranking score")
    vector_score: float = Field(description="Cosine similarity to the query")
    lexical_score: float = Field(default=0.0, description="Fraction of query keywords found in the chunk")
    start_line: int = 1
    end_line: int = 1
    language: str | None = None
    symbol: str | None = None
    highlight: str | None = None


class FileChange(BaseModel):
    """Notification that a file was added, modified or deleted"""

    file_path: str
    event_type: ChangeType
    content: str | None = Field(default=None, description="New content; read from disk when omitted")
    timestamp: datetime = Field(default_factory=_utcnow)


class FileFailure(BaseModel):
    """A file that could not be indexed during a bulk run"""

    file_path: str
    error: str


class BulkIndexResult(BaseModel):
    """Summary of a multi-file indexing run"""

    total_chunks: int = 0
    files_processed: int = 0
    skipped_files: int = 0
    failures: list[FileFailure] = Field(default_factory=list)
    duration_ms: float = 0.0


class ShardStats(BaseModel):
    """Counts for a single shard database"""

    shard_id: int
    chunk_count: int = 0
    file_count: int = 0
    size_bytes: int = 0
    last_indexed_at: datetime | None = None


class IndexStats(BaseModel):
    """Totals derived from shard contents at call time"""

    total_chunks: int = 0
    total_files: int = 0
    database_size: int = 0
    shard_count: int = 0
    last_indexed_at: datetime | None = None
    model: str | None = None
    dimensions: int | None = None
    shards: list[ShardStats] = Field(default_factory=list)


class ServiceStatus(BaseModel):
    """Snapshot of a service's lifecycle state"""

    state: ServiceState
    ready: bool
    indexing: bool = False
    reason: str | None = None
    backend: str | None = None
    stats: IndexStats | None = None
