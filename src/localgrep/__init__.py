"""
localgrep - local-first semantic code search.

This package chunks source files, embeds the chunks with a local or
remote embedding model, stores them in sharded DuckDB files, and answers
natural-language or code queries with a hybrid vector and keyword rank.

Example usage:
    >>> from localgrep import EngineConfig, SearchService
    >>> service = SearchService(EngineConfig.from_env(storage_dir="/tmp/index"))
    >>> service.initialize()
    >>> service.index_files([("auth.py", "def login(user): ...")])
    >>> service.search("user authentication")
"""

from .config import EmbedderConfig, EngineConfig
from .errors import (
    DimensionMismatchError,
    EmbeddingError,
    EngineNotReadyError,
    InitializationError,
    LocalGrepError,
    OperationCancelledError,
    StorageError,
    ValidationError,
    WorkerPoolExhaustedError,
)
from .models import (
    BulkIndexResult,
    FileChange,
    IndexStats,
    SearchOptions,
    SearchResult,
    ServiceStatus,
    SourceFile,
)
from .indexing import Chunk, Chunker, Indexer
from .workers import WorkerPool
from .search import Searcher
from .storage import ShardedVectorStore
from .embeddings import create_embedder
from .service import SearchService, ServiceRegistry

__all__ = [
    # Config
    "EngineConfig",
    "EmbedderConfig",
    # Service
    "SearchService",
    "ServiceRegistry",
    # Components
    "Chunk",
    "Chunker",
    "Indexer",
    "Searcher",
    "ShardedVectorStore",
    "WorkerPool",
    "create_embedder",
    # Models
    "BulkIndexResult",
    "FileChange",
    "IndexStats",
    "SearchOptions",
    "SearchResult",
    "ServiceStatus",
    "SourceFile",
    # Errors
    "LocalGrepError",
    "InitializationError",
    "EmbeddingError",
    "StorageError",
    "DimensionMismatchError",
    "ValidationError",
    "WorkerPoolExhaustedError",
    "EngineNotReadyError",
    "OperationCancelledError",
]
