"""
Embedder interface shared by every backend.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Protocol

from ..config import EmbedderConfig
from ..errors import EmbeddingError

logger = logging.getLogger(__name__)

# Rough characters-per-token ratio used for deterministic truncation.
CHARS_PER_TOKEN = 4

ProgressCallback = Callable[[str, float, str | None], None]


@dataclass(frozen=True)
class ModelInfo:
    """Static description of the active embedding model."""

    name: str
    dimensions: int
    max_tokens: int


class Embedder(Protocol):
    """Protocol implemented by all embedding backends."""

    config: EmbedderConfig

    def initialize(self) -> None:
        """Load weights or validate credentials. Safe to call repeatedly."""

    def embed(self, text: str) -> list[float]:
        """Embed a single document text."""

    def embed_query(self, text: str) -> list[float]:
        """Embed a search query."""

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts, returning vectors in input order."""

    def get_model_info(self) -> ModelInfo:
        """Return model name, dimensionality and token limit."""

    def dispose(self) -> None:
        """Release model resources. Safe to call repeatedly."""


class BaseEmbedder:
    """
    Shared lifecycle for embedders.

    Subclasses implement ``_load`` and ``_embed_texts``. Initialization runs
    once even when several threads race to call it, and every text is cut to
    ``max_tokens * 4`` characters before it reaches the backend.
    """

    def __init__(
        self,
        config: EmbedderConfig,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.config = config
        self._on_progress = on_progress
        self._init_lock = threading.Lock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            self._load()
            self._initialized = True
            info = self.get_model_info()
            logger.info(
                "Embedder ready: %s (%d dims, backend=%s)",
                info.name,
                info.dimensions,
                self.config.backend,
            )

    def dispose(self) -> None:
        with self._init_lock:
            if not self._initialized:
                return
            self._initialized = False
            self._unload()

    def truncate(self, text: str) -> str:
        limit = self.get_model_info().max_tokens * CHARS_PER_TOKEN
        return text[:limit]

    def embed(self, text: str) -> list[float]:
        self.initialize()
        return self._embed_texts([self.truncate(text)], query=False)[0]

    def embed_query(self, text: str) -> list[float]:
        self.initialize()
        return self._embed_texts([self.truncate(text)], query=True)[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        self.initialize()
        vectors = self._embed_texts([self.truncate(t) for t in texts], query=False)
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Backend returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    def get_model_info(self) -> ModelInfo:
        raise NotImplementedError

    def _report(self, status: str, progress: float, file: str | None = None) -> None:
        if self._on_progress is not None:
            self._on_progress(status, progress, file)

    def _load(self) -> None:
        raise NotImplementedError

    def _unload(self) -> None:
        return None

    def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        raise NotImplementedError
