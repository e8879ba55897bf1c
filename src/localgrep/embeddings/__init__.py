"""Embedding backends for localgrep."""

from .base import BaseEmbedder, Embedder, ModelInfo
from .download import download_model_archive
from .factory import build_embedder, create_embedder
from .genai import GenAIEmbedder
from .hashing import HashingEmbedder
from .local import SentenceTransformerEmbedder
from .openai_api import OpenAIEmbedder
from .remote import RemoteEmbedder

__all__ = [
    "BaseEmbedder",
    "Embedder",
    "ModelInfo",
    "RemoteEmbedder",
    "GenAIEmbedder",
    "OpenAIEmbedder",
    "SentenceTransformerEmbedder",
    "HashingEmbedder",
    "build_embedder",
    "create_embedder",
    "download_model_archive",
]
