"""
Code-aware chunking for indexing source files.
"""

from __future__ import annotations

import bisect
import os
import re
from dataclasses import dataclass

from ..errors import ValidationError
from ..storage.base import shard_for_path

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".pyw": "python",
    ".rb": "ruby",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".swift": "swift",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".php": "php",
    ".vue": "vue",
    ".svelte": "svelte",
    ".md": "markdown",
    ".mdx": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".sql": "sql",
    ".sh": "shell",
    ".bash": "shell",
    ".zsh": "shell",
    ".css": "css",
    ".scss": "scss",
    ".less": "less",
    ".html": "html",
    ".htm": "html",
}

# Each pattern matches the first line of a top-level or nested declaration.
# The ``name`` group, when present, is recorded as the chunk's symbol.
BOUNDARY_PATTERNS: dict[str, str] = {
    "typescript": r"^[ \t]*(?:export\s+)?(?:default\s+)?(?:async\s+)?(?:function\*?|class|interface|type|enum)\s+(?P<name>\w+)",
    "javascript": r"^[ \t]*(?:export\s+)?(?:default\s+)?(?:async\s+)?(?:function\*?|class)\s+(?P<name>\w+)",
    "python": r"^[ \t]*(?:async\s+)?(?:def|class)\s+(?P<name>\w+)",
    "ruby": r"^[ \t]*(?:def|class|module)\s+(?P<name>[\w.]+)",
    "go": r"^(?:func|type)\s+(?:\([^)]*\)\s*)?(?P<name>\w+)",
    "rust": r"^[ \t]*(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:fn|struct|enum|impl|trait|mod)\s+(?P<name>\w+)",
    "java": r"^[ \t]*(?:(?:public|private|protected|static|final|abstract)\s+)*(?:class|interface|enum|record)\s+(?P<name>\w+)",
    "kotlin": r"^[ \t]*(?:(?:private|public|internal|data|sealed|open)\s+)*(?:fun|class|interface|object)\s+(?P<name>\w+)",
    "swift": r"^[ \t]*(?:(?:public|private|internal|static)\s+)*(?:func|class|struct|enum|protocol)\s+(?P<name>\w+)",
    "c": r"^(?:static\s+)?(?:inline\s+)?(?:void|int|char|float|double|long|unsigned|struct\s+\w+\s*\*?)\s+\*?(?P<name>\w+)\s*\(",
    "cpp": r"^[ \t]*(?:class|struct|namespace)\s+(?P<name>\w+)|^(?:void|int|auto|bool|double)\s+(?P<fn>[\w:]+)\s*\(",
    "csharp": r"^[ \t]*(?:(?:public|private|protected|internal|static|sealed|abstract)\s+)*(?:class|interface|struct|enum|record)\s+(?P<name>\w+)",
    "php": r"^[ \t]*(?:(?:public|private|protected|static|abstract|final)\s+)*(?:function|class|interface|trait)\s+(?P<name>\w+)",
    "markdown": r"^#{1,6}\s+(?P<name>.+)$",
    "shell": r"^(?:function\s+)?(?P<name>\w+)\s*\(\)\s*\{",
}

_SHEBANG_LANGUAGES = (
    ("python", "python"),
    ("bash", "shell"),
    ("/sh", "shell"),
    ("node", "javascript"),
    ("ruby", "ruby"),
)


def detect_language(file_path: str, content: str = "") -> str:
    """Guess a language from the extension, then the shebang or content."""
    _, ext = os.path.splitext(file_path)
    language = EXTENSION_TO_LANGUAGE.get(ext.lower())
    if language is not None:
        return language
    if content.startswith("#!"):
        first_line = content.split("\n", 1)[0]
        for marker, shebang_language in _SHEBANG_LANGUAGES:
            if marker in first_line:
                return shebang_language
    if "package main" in content and "func " in content:
        return "go"
    if "fn main()" in content or "use std::" in content:
        return "rust"
    return "unknown"


@dataclass(frozen=True)
class Chunk:
    """A contiguous span of a source file, the unit of embedding."""

    file_path: str
    chunk_index: int
    content: str
    shard_id: int
    start_line: int
    end_line: int
    language: str
    symbol: str | None = None


class Chunker:
    """
    Structure-aware chunker with overlap.

    Windows are at most ``max_chunk_size`` characters. When a window must be
    cut, the cut point is searched in its second half, preferring a
    declaration line, then a blank line, then any newline. Each window after
    the first starts ``overlap`` characters before the previous one ended.
    """

    def __init__(
        self,
        max_chunk_size: int = 1500,
        overlap: int = 150,
        *,
        shard_count: int = 1,
        boundary_patterns: dict[str, str] | None = None,
    ) -> None:
        if max_chunk_size <= 0:
            raise ValidationError("max_chunk_size must be > 0")
        if overlap < 0:
            raise ValidationError("overlap must be >= 0")
        if overlap >= max_chunk_size:
            raise ValidationError("overlap must be smaller than max_chunk_size")
        if shard_count < 1:
            raise ValidationError("shard_count must be >= 1")

        self.max_chunk_size = max_chunk_size
        self.overlap = overlap
        self.shard_count = shard_count
        patterns = dict(BOUNDARY_PATTERNS)
        if boundary_patterns:
            patterns.update(boundary_patterns)
        self._patterns = {
            language: re.compile(pattern, re.MULTILINE)
            for language, pattern in patterns.items()
        }

    def chunk(self, file_path: str, content: str) -> list[Chunk]:
        """Split a file into chunks. Pure function of its inputs."""
        if not content.strip():
            return []

        language = detect_language(file_path, content)
        pattern = self._patterns.get(language)
        boundaries = (
            [m.start() for m in pattern.finditer(content)] if pattern is not None else []
        )
        shard_id = shard_for_path(file_path, self.shard_count)

        chunks: list[Chunk] = []
        total = len(content)
        start = 0
        while start < total:
            tentative_end = min(start + self.max_chunk_size, total)
            end = tentative_end
            if tentative_end < total:
                end = self._cut_point(content, start, tentative_end, boundaries)

            segment = content[start:end]
            text = segment.strip()
            if text:
                first = start + (len(segment) - len(segment.lstrip()))
                last = start + len(segment.rstrip()) - 1
                chunks.append(
                    Chunk(
                        file_path=file_path,
                        chunk_index=len(chunks),
                        content=text,
                        shard_id=shard_id,
                        start_line=content.count("\n", 0, first) + 1,
                        end_line=content.count("\n", 0, last) + 1,
                        language=language,
                        symbol=self._symbol(pattern, text),
                    )
                )

            if end >= total:
                break
            start = max(end - self.overlap, start + 1)

        return chunks

    def _cut_point(
        self, content: str, start: int, tentative_end: int, boundaries: list[int]
    ) -> int:
        half = start + (self.max_chunk_size // 2)
        position = bisect.bisect_left(boundaries, tentative_end) - 1
        if position >= 0 and boundaries[position] > half:
            return boundaries[position]
        blank = content.rfind("\n\n", half, tentative_end)
        if blank != -1:
            return blank + 2
        newline = content.rfind("\n", half, tentative_end)
        if newline != -1:
            return newline + 1
        return tentative_end

    @staticmethod
    def _symbol(pattern: re.Pattern[str] | None, text: str) -> str | None:
        if pattern is None:
            return None
        match = pattern.search(text)
        if match is None:
            return None
        for value in match.groupdict().values():
            if value:
                return value.strip()
        return None
