"""
Embedding backend for the OpenAI embeddings API.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable

import openai
from openai import OpenAI

from ..cancellation import CancelToken
from ..config import EmbedderConfig
from ..errors import InitializationError
from .base import ModelInfo, ProgressCallback
from .remote import FailureKind, RemoteEmbedder, classify_failure

logger = logging.getLogger(__name__)

_DEFAULT_MODEL = "text-embedding-3-small"
_MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
_MAX_TOKENS = 8191


class OpenAIEmbedder(RemoteEmbedder):
    """Generate code embeddings via the OpenAI API."""

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
        self.dimensions = config.dimensions
        if self.dimensions and not self.model.startswith("text-embedding-3"):
            logger.warning("%s does not support dimension reduction; ignoring", self.model)
            self.dimensions = None
        self._client = client

    def get_model_info(self) -> ModelInfo:
        dims = self.dimensions or _MODEL_DIMENSIONS.get(self.model, 1536)
        return ModelInfo(
            name=f"openai/{self.model}",
            dimensions=dims,
            max_tokens=self.config.max_tokens or _MAX_TOKENS,
        )

    def _connect(self) -> None:
        if self._client is not None:
            return
        api_key = self.config.api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise InitializationError(
                "OpenAI API key required. Set OPENAI_API_KEY or pass api_key."
            )
        # Retries are handled by RemoteEmbedder so the backoff policy is uniform.
        self._client = OpenAI(api_key=api_key, base_url=self.config.base_url, max_retries=0)

    def _request(self, texts: list[str], *, query: bool) -> list[list[float]]:
        kwargs: dict[str, Any] = {"model": self.model, "input": texts}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        response = self._client.embeddings.create(**kwargs)
        usage = getattr(response, "usage", None)
        self._record_usage(getattr(usage, "total_tokens", None))
        rows = sorted(response.data, key=lambda item: item.index)
        return [list(row.embedding) for row in rows]

    def _classify(self, exc: BaseException) -> FailureKind:
        if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return "auth"
        if isinstance(exc, openai.RateLimitError):
            return "rate_limit"
        if isinstance(exc, openai.APIStatusError):
            return "transient"
        return classify_failure(exc)
