"""
Deterministic feature-hashing embedder.

Needs no weights or network, so it backs tests and air-gapped setups.
Identifiers are split on underscores and camelCase so ``parseConfig`` and
``parse_config`` land on the same features.
"""

from __future__ import annotations

import hashlib
import math
import re

from ..config import EmbedderConfig
from .base import BaseEmbedder, ModelInfo, ProgressCallback

_DEFAULT_DIM = 256
_MAX_TOKENS = 8192

TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")
CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    for token in TOKEN_RE.findall(text):
        if token.isdigit():
            tokens.append(token)
            continue
        pieces = [p for p in token.split("_") if p]
        for piece in pieces:
            camel_parts = [p.lower() for p in CAMEL_BOUNDARY_RE.split(piece) if p]
            tokens.extend(camel_parts)
            if len(camel_parts) > 1:
                tokens.append("".join(camel_parts))
        if len(pieces) > 1:
            tokens.append(token.lower())
    return tokens


def hash_vector(text: str, dim: int) -> list[float]:
    counts: dict[str, int] = {}
    for token in tokenize(text):
        counts[token] = counts.get(token, 0) + 1

    vec = [0.0] * dim
    for token, count in counts.items():
        weight = 1.0 + math.log(count)
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        idx = int.from_bytes(digest[:4], "big") % dim
        sign = 1.0 if (digest[4] & 1) == 0 else -1.0
        vec[idx] += sign * weight

    norm = math.sqrt(sum(v * v for v in vec))
    if norm == 0:
        vec[0] = 1.0
        return vec
    return [v / norm for v in vec]


class HashingEmbedder(BaseEmbedder):
    """Embed text as a signed, L2-normalized bag of hashed tokens."""

    def __init__(
        self,
        config: EmbedderConfig | None = None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        super().__init__(config or EmbedderConfig(backend="hash"), on_progress=on_progress)
        self.dim = self.config.dimensions or _DEFAULT_DIM

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(
            name=f"hashing/blake2b-{self.dim}",
            dimensions=self.dim,
            max_tokens=self.config.max_tokens or _MAX_TOKENS,
        )

    def _load(self) -> None:
        self._report("ready", 100.0)

    def _embed_texts(self, texts: list[str], *, query: bool) -> list[list[float]]:
        return [hash_vector(text, self.dim) for text in texts]
