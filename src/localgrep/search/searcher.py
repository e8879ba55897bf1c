"""
Query-time search over a sharded index.
"""

from __future__ import annotations

import logging

from ..embeddings.base import Embedder
from ..errors import ValidationError
from ..models import SearchOptions, SearchResult
from ..storage.base import ScoredRecord
from ..storage.sharded import ShardedVectorStore
from ..workers.pool import WorkerPool
from .keywords import create_highlight, extract_keywords
from .ranker import rank_chunks

logger = logging.getLogger(__name__)

FIND_SIMILAR_MIN_SCORE = 0.5


class Searcher:
    """Vector and hybrid search across every shard of an index."""

    def __init__(
        self,
        store: ShardedVectorStore,
        embedder: Embedder,
        *,
        pool: WorkerPool | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.pool = pool

    @staticmethod
    def _validate(query: str) -> None:
        if not query or not query.strip():
            raise ValidationError("query must not be empty")

    def _fan_out(
        self, query_vector: list[float], top_k: int, min_score: float
    ) -> list[ScoredRecord]:
        self.store.check_dimensions(query_vector)
        if self.pool is not None:
            return self.pool.run_search(
                self.store.shard_paths(), query_vector, top_k, min_score
            )
        return self.store.search_all(query_vector, top_k, min_score)

    def search(self, query: str, options: SearchOptions | None = None) -> list[SearchResult]:
        """Pure vector search: top ``top_k`` chunks by cosine similarity."""
        self._validate(query)
        options = options or SearchOptions()
        vector = self.embedder.embed_query(query)
        records = self._fan_out(vector, options.top_k, options.min_score)
        keywords = extract_keywords(query) if options.return_context else []
        return [
            self._to_result(record, record.score, 0.0, record.score, keywords, options)
            for record in records
        ]

    def hybrid_search(
        self, query: str, options: SearchOptions | None = None
    ) -> list[SearchResult]:
        """
        Vector search re-ranked by keyword coverage.

        Fetches ``top_k * candidate_multiplier`` candidates, adds
        ``lexical_weight`` times the fraction of query keywords each contains,
        and keeps the best ``top_k``.
        """
        self._validate(query)
        options = options or SearchOptions()
        vector = self.embedder.embed_query(query)
        candidates = self._fan_out(
            vector, options.top_k * options.candidate_multiplier, options.min_score
        )
        keywords = extract_keywords(query)
        ranked = rank_chunks(
            candidates,
            keywords,
            lexical_weight=options.lexical_weight,
            limit=options.top_k,
        )
        logger.debug(
            "Hybrid search %r: %d candidates, %d returned", query, len(candidates), len(ranked)
        )
        return [
            self._to_result(
                chunk.record,
                chunk.vector_score,
                chunk.lexical_score,
                chunk.combined_score,
                keywords,
                options,
            )
            for chunk in ranked
        ]

    def find_similar(
        self, code: str, options: SearchOptions | None = None
    ) -> list[SearchResult]:
        """Find chunks similar to a code snippet, with a stricter default threshold."""
        options = options or SearchOptions(min_score=FIND_SIMILAR_MIN_SCORE)
        return self.search(code, options)

    @staticmethod
    def _to_result(
        record: ScoredRecord,
        vector_score: float,
        lexical: float,
        final: float,
        keywords: list[str],
        options: SearchOptions,
    ) -> SearchResult:
        highlight = None
        if options.return_context:
            highlight = create_highlight(record.content, keywords, options.context_lines)
        return SearchResult(
            file_path=record.file_path,
            chunk_index=record.chunk_index,
            content=record.content,
            score=final,
            vector_score=vector_score,
            lexical_score=lexical,
            start_line=record.start_line,
            end_line=record.end_line,
            language=record.language,
            symbol=record.symbol,
            highlight=highlight,
        )
