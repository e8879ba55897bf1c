"""
Select and construct an embedding backend.
"""

from __future__ import annotations

import logging

from ..cancellation import CancelToken
from ..config import EmbedderConfig
from ..errors import InitializationError, ValidationError
from .base import BaseEmbedder, ProgressCallback
from .genai import GenAIEmbedder
from .hashing import HashingEmbedder
from .local import SentenceTransformerEmbedder, detect_accelerator
from .openai_api import OpenAIEmbedder

logger = logging.getLogger(__name__)

# Fallback order for "auto". Remote backends are only used when chosen explicitly.
AUTO_ORDER = ("gpu", "cpu")


def build_embedder(
    config: EmbedderConfig,
    *,
    on_progress: ProgressCallback | None = None,
    cancel: CancelToken | None = None,
) -> BaseEmbedder:
    """Construct (without loading) the backend named by ``config.backend``."""
    backend = config.backend
    if backend == "genai":
        return GenAIEmbedder(config, on_progress=on_progress, cancel=cancel)
    if backend == "openai":
        return OpenAIEmbedder(config, on_progress=on_progress, cancel=cancel)
    if backend in ("gpu", "cpu"):
        return SentenceTransformerEmbedder(config, on_progress=on_progress, cancel=cancel)
    if backend == "hash":
        return HashingEmbedder(config, on_progress=on_progress)
    raise ValidationError(f"Unknown embedder backend: {backend!r}")


def create_embedder(
    config: EmbedderConfig | None = None,
    *,
    initialize: bool = True,
    on_progress: ProgressCallback | None = None,
    cancel: CancelToken | None = None,
) -> BaseEmbedder:
    """
    Create an embedder, falling back through local backends for ``"auto"``.

    With ``initialize=False`` the auto choice is made from hardware detection
    alone and no weights are loaded. The returned embedder's
    ``config.backend`` always names the concrete backend, so worker
    processes can rebuild the same one.
    """
    config = config or EmbedderConfig()
    if config.backend != "auto":
        embedder = build_embedder(config, on_progress=on_progress, cancel=cancel)
        if initialize:
            embedder.initialize()
        return embedder

    if not initialize:
        chosen = "gpu" if detect_accelerator() else "cpu"
        return build_embedder(
            config.model_copy(update={"backend": chosen}),
            on_progress=on_progress,
            cancel=cancel,
        )

    errors: list[str] = []
    for candidate in AUTO_ORDER:
        embedder = build_embedder(
            config.model_copy(update={"backend": candidate}),
            on_progress=on_progress,
            cancel=cancel,
        )
        try:
            embedder.initialize()
        except InitializationError as exc:
            logger.warning("Embedder backend %r unavailable, trying next: %s", candidate, exc)
            errors.append(f"{candidate}: {exc}")
            continue
        return embedder
    raise InitializationError("No embedding backend available. " + "; ".join(errors))
