"""
Local embedding backend built on sentence-transformers.

The same class serves both the GPU backend (CUDA or Apple MPS) and the CPU
fallback; only the device differs. ``sentence_transformers`` and ``torch``
are imported on first load so the rest of the package works without them.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any

from ..cancellation import CancelToken
from ..config import EmbedderConfig
from ..errors import EmbeddingError, InitializationError
from .base import BaseEmbedder, ModelInfo, ProgressCallback
from .download import download_model_archive

logger = logging.getLogger(__name__)

_DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
_DEFAULT_DIM = 384
_DEFAULT_MAX_TOKENS = 256
DEFAULT_CACHE_DIR = "~/.localgrep/models"


def detect_accelerator() -> str | None:
    """Return ``"cuda"`` or ``"mps"`` when torch sees an accelerator."""
    try:
        import torch
    except ImportError:
        return None
    if torch.cuda.is_available():
        return "cuda"
    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return "mps"
    return None


class SentenceTransformerEmbedder(BaseEmbedder):
    """Embed text with a locally loaded sentence-transformers model."""

    def __init__(
        self,
        config: EmbedderConfig,
        *,
        on_progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        super().__init__(config, on_progress=on_progress)
        self.model_name = config.model or _DEFAULT_MODEL
        self._cancel = cancel
        self._model: Any = None
        self._device: str | None = None
        self._dimensions = config.dimensions or _DEFAULT_DIM
        self._max_tokens = config.max_tokens or _DEFAULT_MAX_TOKENS

    @property
    def device(self) -> str | None:
        return self._device

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(
            name=f"local/{self.model_name}",
            dimensions=self._dimensions,
            max_tokens=self._max_tokens,
        )

    def _resolve_device(self) -> str:
        if self.config.backend == "cpu":
            return self.config.device or "cpu"
        if self.config.device:
            return self.config.device
        accelerator = detect_accelerator()
        if accelerator is None:
            raise InitializationError("No GPU accelerator available (checked CUDA and MPS)")
        return accelerator

    def _resolve_source(self) -> str:
        if not self.config.model_path:
            return self.model_name
        model_dir = Path(self.config.model_path).expanduser()
        if model_dir.exists():
            return str(model_dir)
        if not self.config.model_url:
            raise InitializationError(f"Model not found at {model_dir}")

        cache_dir = Path(self.config.cache_dir or DEFAULT_CACHE_DIR).expanduser()
        archive_name = self.config.model_url.rstrip("/").rsplit("/", 1)[-1]
        archive = cache_dir / archive_name

        def progress(received: int, total: int) -> None:
            percent = (received / total * 100.0) if total else 0.0
            self._report("downloading", percent, archive_name)

        download_model_archive(
            self.config.model_url,
            archive,
            cancel=self._cancel,
            on_progress=progress,
        )
        try:
            shutil.unpack_archive(str(archive), str(model_dir))
        except (shutil.ReadError, ValueError) as exc:
            shutil.rmtree(model_dir, ignore_errors=True)
            raise InitializationError(f"Corrupt model archive {archive}: {exc}") from exc
        finally:
            archive.unlink(missing_ok=True)
        return str(model_dir)

    def _load(self) -> None:
        device = self._resolve_device()
        source = self._resolve_source()
        self._report("loading", 0.0, source)
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise InitializationError(
                "sentence-transformers is not installed. "
                "Install it with: pip install 'localgrep[local]'"
            ) from exc

        cache_folder = self.config.cache_dir
        try:
            model = SentenceTransformer(
                source,
                device=device,
                cache_folder=str(Path(cache_folder).expanduser()) if cache_folder else None,
            )
        except Exception as exc:
            raise InitializationError(f"Failed to load model {source}: {exc}") from exc

        self._model = model
        self._device = device
        self._dimensions = int(model.get_sentence_embedding_dimension() or self._dimensions)
        if self.config.max_tokens is None and getattr(model, "max_seq_length", None):
            self._max_tokens = int(model.max_seq_length)
        self._report("ready", 100.0, source)

    def _unload(self) -> None:
        self._model = None

    def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        try:
            arr = self._model.encode(
                texts,
                batch_size=self.config.batch_size,
                normalize_embeddings=True,
                convert_to_numpy=True,
                show_progress_bar=False,
            )
        except Exception as exc:
            raise EmbeddingError(f"Local model failed to embed {len(texts)} texts: {exc}") from exc
        return [row.tolist() for row in arr]
