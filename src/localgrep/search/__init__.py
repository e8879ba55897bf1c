"""Search and ranking for localgrep."""

from .keywords import (
    count_keyword_matches,
    create_highlight,
    extract_keywords,
    lexical_score,
)
from .ranker import RankedChunk, rank_chunks
from .searcher import Searcher

__all__ = [
    "Searcher",
    "RankedChunk",
    "rank_chunks",
    "extract_keywords",
    "count_keyword_matches",
    "lexical_score",
    "create_highlight",
]
