"""
Keyword extraction and highlighting for hybrid ranking.
"""

from __future__ import annotations

import re

STOP_WORDS = frozenset(
    {
        "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
        "be", "have", "has", "had", "do", "does", "did", "will", "would",
        "could", "should", "may", "might", "must", "can", "this", "that",
        "these", "those", "it", "its", "my", "your", "his", "her", "our",
        "their", "what", "which", "who", "whom", "where", "when", "why", "how",
        "all", "each", "every", "both", "few", "more", "most", "other", "some",
        "such", "no", "not", "only", "same", "so", "than", "too", "very",
        "just", "also", "now", "here", "there", "then", "if", "else",
    }
)

_SPLIT_RE = re.compile(r"[\s\-_.,;:!?()\[\]{}'\"/\\<>=+*&|`]+")


def extract_keywords(query: str, max_terms: int = 16) -> list[str]:
    """Lowercased, de-duplicated query words minus stop words and 1-char tokens."""
    keywords: list[str] = []
    for word in _SPLIT_RE.split(query.lower()):
        if len(word) < 2 or word in STOP_WORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) >= max_terms:
            break
    return keywords


def count_keyword_matches(content: str, keywords: list[str]) -> int:
    lowered = content.lower()
    return sum(1 for keyword in keywords if keyword in lowered)


def lexical_score(content: str, keywords: list[str]) -> float:
    """Fraction of *keywords* found in *content*, in ``[0, 1]``."""
    if not keywords:
        return 0.0
    return count_keyword_matches(content, keywords) / len(keywords)


def create_highlight(content: str, keywords: list[str], context_lines: int = 3) -> str:
    """
    Snippet around the first line containing a keyword, keywords wrapped in ``**``.

    Falls back to the first ``2 * context_lines + 1`` lines when nothing matches.
    """
    lines = content.split("\n")
    first_match = None
    for i, line in enumerate(lines):
        lowered = line.lower()
        if any(keyword in lowered for keyword in keywords):
            first_match = i
            break

    if first_match is None:
        return "\n".join(lines[: context_lines * 2 + 1])

    start = max(0, first_match - context_lines)
    end = min(len(lines), first_match + context_lines + 1)
    snippet = "\n".join(lines[start:end])

    ordered = sorted(keywords, key=len, reverse=True)
    pattern = re.compile("|".join(re.escape(k) for k in ordered), re.IGNORECASE)
    return pattern.sub(lambda m: f"**{m.group(0)}**", snippet)
