"""
Embedding backend for the Google GenAI embedding API.
"""

from __future__ import annotations

import os
import time
from typing import Any, Callable

from google.genai import Client as GenAIClient
from google.genai import errors as genai_errors

from ..cancellation import CancelToken
from ..config import EmbedderConfig
from ..errors import InitializationError
from .base import ModelInfo, ProgressCallback
from .remote import FailureKind, RemoteEmbedder, classify_failure


_DEFAULT_MODEL = "gemini-embedding-001"
_DEFAULT_DIM = 768
_MAX_TOKENS = 2048


class GenAIEmbedder(RemoteEmbedder):
    """Generate code embeddings via Google GenAI."""

    def __init__(
        self,
        config: EmbedderConfig,
        *,
        client: Any | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(config, on_progress=on_progress, cancel=cancel, sleep=sleep)
        self.model = config.model or _DEFAULT_MODEL
        self.dim = config.dimensions or _DEFAULT_DIM
        self._client = client

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(
            name=f"genai/{self.model}",
            dimensions=self.dim,
            max_tokens=self.config.max_tokens or _MAX_TOKENS,
        )

    def _connect(self) -> None:
        if self._client is not None:
            return
        resolved_key = self.config.api_key or os.getenv("GOOGLE_API_KEY")
        if resolved_key is None:
            raise InitializationError(
                "GOOGLE_API_KEY not found. "
                "Provide api_key or set the environment variable."
            )
        self._client = GenAIClient(api_key=resolved_key)

    def _request(self, texts: list[str], *, query: bool) -> list[list[float]]:
        result = self._client.models.embed_content(
            model=self.model,
            contents=texts,
            config={
                "task_type": "RETRIEVAL_QUERY" if query else "RETRIEVAL_DOCUMENT",
                "output_dimensionality": self.dim,
            },
        )
        return [list(emb.values) for emb in result.embeddings]

    def _classify(self, exc: BaseException) -> FailureKind:
        if isinstance(exc, genai_errors.APIError):
            if exc.code in (401, 403):
                return "auth"
            if exc.code == 429:
                return "rate_limit"
            return "transient"
        return classify_failure(exc)
