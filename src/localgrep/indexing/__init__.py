"""Chunking and indexing for localgrep."""

from .chunker import Chunk, Chunker, detect_language
from .records import content_hash, embed_chunks
from .pipeline import Indexer

__all__ = [
    "Chunk",
    "Chunker",
    "detect_language",
    "content_hash",
    "embed_chunks",
    "Indexer",
]
