"""
Turn chunks into embedded storage records.

Shared by the in-process indexer and pooled index workers so both produce
identical records for identical input.
"""

from __future__ import annotations

import hashlib

from ..embeddings.base import Embedder
from ..errors import DimensionMismatchError
from ..storage.base import StoredRecord
from .chunker import Chunk


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def embed_chunks(
    embedder: Embedder,
    chunks: list[Chunk],
    *,
    batch_size: int = 32,
    dimensions: int | None = None,
) -> list[StoredRecord]:
    """Embed *chunks* in batches and pair each vector with its chunk."""
    vectors: list[list[float]] = []
    for start in range(0, len(chunks), batch_size):
        batch = chunks[start : start + batch_size]
        vectors.extend(embedder.embed_batch([chunk.content for chunk in batch]))

    records: list[StoredRecord] = []
    for chunk, vector in zip(chunks, vectors):
        if dimensions is not None and len(vector) != dimensions:
            raise DimensionMismatchError(dimensions, len(vector))
        records.append(
            StoredRecord(
                file_path=chunk.file_path,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                embedding=vector,
                shard_id=chunk.shard_id,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                language=chunk.language,
                symbol=chunk.symbol,
            )
        )
    return records
