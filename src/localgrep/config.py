"""
Configuration for the engine and its embedding backends.

Every setting resolves in the same order: explicit value, then a
``LOCALGREP_*`` environment variable, then the built-in default.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError
from .storage.sharded import recorded_shard_count


DEFAULT_STORAGE_DIR = "~/.localgrep/index"
DEFAULT_SHARD_COUNT = 8
ENV_PREFIX = "LOCALGREP_"

BackendName = Literal["auto", "genai", "openai", "gpu", "cpu", "hash"]
ExecutorKind = Literal["process", "thread", "inline"]


class EmbedderConfig(BaseModel):
    """Settings for one embedding backend. Picklable so workers can rebuild it."""

    model_config = ConfigDict(frozen=True)

    backend: BackendName = "auto"
    model: str | None = None
    dimensions: int | None = Field(default=None, ge=1)
    max_tokens: int | None = Field(default=None, ge=1)
    batch_size: int = Field(default=100, ge=1)
    concurrency: int = Field(default=4, ge=1)
    retries: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=1.0, ge=0.0)
    api_key: str | None = Field(default=None, repr=False)
    base_url: str | None = None
    model_path: str | None = None
    model_url: str | None = None
    cache_dir: str | None = None
    device: str | None = None


class EngineConfig(BaseModel):
    """Top-level engine settings for one project index."""

    model_config = ConfigDict(frozen=True)

    storage_dir: str = DEFAULT_STORAGE_DIR
    shard_count: int = Field(default=DEFAULT_SHARD_COUNT, ge=1)
    worker_count: int | None = Field(default=None, ge=1)
    executor: ExecutorKind = "process"
    task_timeout: float = Field(default=300.0, gt=0)
    chunk_size: int = Field(default=1500, ge=1)
    chunk_overlap: int = Field(default=150, ge=0)
    batch_size: int = Field(default=32, ge=1)
    project_root: str | None = None
    embedder: EmbedderConfig = Field(default_factory=EmbedderConfig)

    @classmethod
    def from_env(
        cls,
        *,
        embedder: EmbedderConfig | None = None,
        **overrides: Any,
    ) -> EngineConfig:
        """Build a config from overrides, falling back to the environment."""
        env_fields = {
            "storage_dir": "STORAGE_DIR",
            "shard_count": "SHARDS",
            "worker_count": "WORKERS",
            "executor": "EXECUTOR",
            "task_timeout": "TASK_TIMEOUT",
            "chunk_size": "CHUNK_SIZE",
            "chunk_overlap": "CHUNK_OVERLAP",
            "batch_size": "INDEX_BATCH_SIZE",
            "project_root": "PROJECT_ROOT",
        }
        values: dict[str, Any] = {}
        for field_name, env_name in env_fields.items():
            value = overrides.get(field_name)
            if value is None:
                value = os.getenv(ENV_PREFIX + env_name)
            if value is not None and value != "":
                values[field_name] = value

        unknown = set(overrides) - set(env_fields)
        if unknown:
            raise ValidationError(f"Unknown config option(s): {', '.join(sorted(unknown))}")

        values["storage_dir"] = resolve_storage_dir(values.get("storage_dir"))
        if "shard_count" not in values:
            # An existing index keeps the shard count it was created with.
            recorded = recorded_shard_count(values["storage_dir"])
            if recorded is not None:
                values["shard_count"] = recorded
        values["embedder"] = embedder or embedder_config_from_env()
        try:
            return cls(**values)
        except pydantic.ValidationError as exc:
            raise ValidationError(str(exc)) from exc


def embedder_config_from_env(**overrides: Any) -> EmbedderConfig:
    """Resolve embedder settings from overrides and ``LOCALGREP_EMBEDDING_*`` vars."""
    env_fields = {
        "backend": "EMBEDDER",
        "model": "EMBEDDING_MODEL",
        "dimensions": "EMBEDDING_DIM",
        "batch_size": "EMBEDDING_BATCH_SIZE",
        "concurrency": "EMBEDDING_CONCURRENCY",
        "retries": "EMBEDDING_RETRIES",
        "base_url": "EMBEDDING_BASE_URL",
        "model_path": "MODEL_PATH",
        "model_url": "MODEL_URL",
        "cache_dir": "MODEL_CACHE",
        "device": "DEVICE",
    }
    values: dict[str, Any] = {}
    for field_name, env_name in env_fields.items():
        value = overrides.get(field_name)
        if value is None:
            value = os.getenv(ENV_PREFIX + env_name)
        if value is not None and value != "":
            values[field_name] = value
    if overrides.get("api_key") is not None:
        values["api_key"] = overrides["api_key"]
    try:
        return EmbedderConfig(**values)
    except pydantic.ValidationError as exc:
        raise ValidationError(str(exc)) from exc


def resolve_storage_dir(override_dir: str | None = None) -> str:
    """
    Resolve the index directory from an override, env var, or default.

    Precedence:
    1) explicit override_dir
    2) LOCALGREP_STORAGE_DIR
    3) default directory
    """
    raw_dir = override_dir or os.getenv(ENV_PREFIX + "STORAGE_DIR") or DEFAULT_STORAGE_DIR
    resolved = Path(raw_dir).expanduser().resolve()
    resolved.mkdir(parents=True, exist_ok=True)
    return str(resolved)
