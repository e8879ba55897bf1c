"""
Ranking helpers for blending vector and keyword relevance.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..storage.base import ScoredRecord
from .keywords import lexical_score


@dataclass(frozen=True)
class RankedChunk:
    """A merged candidate with its vector and keyword scores."""

    record: ScoredRecord
    lexical_score: float
    lexical_weight: float

    @property
    def vector_score(self) -> float:
        return self.record.score

    @property
    def combined_score(self) -> float:
        # Additive blend: for a fixed vector score, more keyword coverage
        # never lowers the result.
        return self.record.score + self.lexical_weight * self.lexical_score


def rank_chunks(
    candidates: list[ScoredRecord],
    keywords: list[str],
    *,
    lexical_weight: float,
    limit: int,
) -> list[RankedChunk]:
    """Blend keyword coverage into vector scores, sort, and apply limit."""
    ranked = [
        RankedChunk(
            record=record,
            lexical_score=lexical_score(record.content, keywords),
            lexical_weight=lexical_weight,
        )
        for record in candidates
    ]
    ranked.sort(
        key=lambda chunk: (
            -chunk.combined_score,
            -chunk.lexical_score,
            chunk.record.file_path,
            chunk.record.chunk_index,
        )
    )
    return ranked[: max(limit, 1)]
