"""Tests for environment-driven configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from localgrep.config import (
    EmbedderConfig,
    EngineConfig,
    embedder_config_from_env,
    resolve_storage_dir,
)
from localgrep.errors import ValidationError
from localgrep.storage.sharded import ShardedVectorStore


def test_defaults() -> None:
    config = EngineConfig()

    assert config.shard_count == 8
    assert config.executor == "process"
    assert config.chunk_size == 1500
    assert config.chunk_overlap == 150
    assert config.embedder.backend == "auto"


def test_from_env_reads_prefixed_variables(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("LOCALGREP_STORAGE_DIR", str(tmp_path / "env-index"))
    monkeypatch.setenv("LOCALGREP_SHARDS", "4")
    monkeypatch.setenv("LOCALGREP_EXECUTOR", "thread")
    monkeypatch.setenv("LOCALGREP_CHUNK_SIZE", "800")
    monkeypatch.setenv("LOCALGREP_TASK_TIMEOUT", "12.5")

    config = EngineConfig.from_env()

    assert config.storage_dir == str((tmp_path / "env-index").resolve())
    assert config.shard_count == 4
    assert config.executor == "thread"
    assert config.chunk_size == 800
    assert config.task_timeout == 12.5
    assert Path(config.storage_dir).is_dir()


def test_explicit_override_beats_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("LOCALGREP_SHARDS", "4")

    config = EngineConfig.from_env(storage_dir=str(tmp_path / "x"), shard_count=2)

    assert config.shard_count == 2


def test_none_override_falls_through_to_environment(monkeypatch) -> None:
    monkeypatch.setenv("LOCALGREP_WORKERS", "3")

    config = EngineConfig.from_env(worker_count=None)

    assert config.worker_count == 3


def test_unknown_override_rejected() -> None:
    with pytest.raises(ValidationError, match="shard_cnt"):
        EngineConfig.from_env(shard_cnt=3)


def test_invalid_value_raises_validation_error(monkeypatch) -> None:
    monkeypatch.setenv("LOCALGREP_EXECUTOR", "fibers")

    with pytest.raises(ValidationError):
        EngineConfig.from_env()


def test_existing_index_keeps_recorded_shard_count(tmp_path: Path) -> None:
    storage_dir = str(tmp_path / "index")
    ShardedVectorStore(storage_dir, 3).initialize()

    config = EngineConfig.from_env(storage_dir=storage_dir)

    assert config.shard_count == 3


def test_embedder_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("LOCALGREP_EMBEDDER", "hash")
    monkeypatch.setenv("LOCALGREP_EMBEDDING_DIM", "32")
    monkeypatch.setenv("LOCALGREP_EMBEDDING_CONCURRENCY", "2")

    config = embedder_config_from_env()

    assert config.backend == "hash"
    assert config.dimensions == 32
    assert config.concurrency == 2
    assert config.api_key is None


def test_embedder_config_api_key_is_hidden_from_repr() -> None:
    config = embedder_config_from_env(backend="openai", api_key="sk-secret")

    assert config.api_key == "sk-secret"
    assert "sk-secret" not in repr(config)


def test_embedder_config_rejects_unknown_backend() -> None:
    with pytest.raises(ValidationError):
        embedder_config_from_env(backend="word2vec")


def test_from_env_uses_given_embedder_config(tmp_path: Path) -> None:
    embedder = EmbedderConfig(backend="hash", dimensions=16)

    config = EngineConfig.from_env(storage_dir=str(tmp_path / "x"), embedder=embedder)

    assert config.embedder == embedder


def test_resolve_storage_dir_creates_directory(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("LOCALGREP_STORAGE_DIR", raising=False)
    target = tmp_path / "nested" / "index"

    resolved = resolve_storage_dir(str(target))

    assert resolved == str(target.resolve())
    assert target.is_dir()
