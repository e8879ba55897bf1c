"""
Error taxonomy for the localgrep engine.

Per-file failures during bulk indexing are collected into results rather
than raised. Only store-initialization failures and pool exhaustion fail a
top-level call outright.
"""

from __future__ import annotations


class LocalGrepError(Exception):
    """Base class for all engine errors."""


class InitializationError(LocalGrepError):
    """An embedder or model could not be loaded."""


class EmbeddingError(LocalGrepError):
    """The embedding backend failed to produce vectors."""


class StorageError(LocalGrepError):
    """A shard database operation failed."""


class DimensionMismatchError(StorageError):
    """A vector does not match the dimensionality recorded for the index."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension {actual} does not match index dimension {expected}. "
            "Clear the index before switching models."
        )
        self.expected = expected
        self.actual = actual


class ValidationError(LocalGrepError, ValueError):
    """Caller supplied invalid input."""


class WorkerPoolExhaustedError(LocalGrepError):
    """Every worker in a pooled operation failed."""


class EngineNotReadyError(LocalGrepError):
    """The service cannot serve requests yet."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Engine not ready: {reason}")
        self.reason = reason


class OperationCancelledError(LocalGrepError):
    """A long-running operation observed its cancel token."""
