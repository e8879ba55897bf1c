from __future__ import annotations

import os
from pathlib import Path

import pytest

from localgrep.config import EmbedderConfig, EngineConfig
from localgrep.embeddings.hashing import HashingEmbedder
from localgrep.storage.sharded import ShardedVectorStore

HASH_DIM = 256

SAMPLE_FILES = {
    "auth.py": (
        "def authenticate(user, password):\n"
        "    record = lookup_user(user)\n"
        "    return check_password(record, password)\n"
    ),
    "chart.py": (
        "def render_chart(data):\n"
        "    figure = plot(data)\n"
        "    return figure.save()\n"
    ),
    "README.md": "# Project\n\nA tiny sample project used by the tests.\n",
}


@pytest.fixture(autouse=True)
def _isolate_env(tmp_path: Path, monkeypatch) -> None:
    """Keep every test away from the user's environment and home directory."""
    for name in list(os.environ):
        if name.startswith("LOCALGREP_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOCALGREP_STORAGE_DIR", str(tmp_path / "default-index"))


@pytest.fixture()
def hash_config() -> EmbedderConfig:
    return EmbedderConfig(backend="hash", dimensions=HASH_DIM)


@pytest.fixture()
def embedder(hash_config: EmbedderConfig) -> HashingEmbedder:
    emb = HashingEmbedder(hash_config)
    emb.initialize()
    return emb


@pytest.fixture()
def store(tmp_path: Path) -> ShardedVectorStore:
    sharded = ShardedVectorStore(str(tmp_path / "index"), 4)
    sharded.initialize()
    return sharded


@pytest.fixture()
def engine_config(tmp_path: Path, hash_config: EmbedderConfig) -> EngineConfig:
    return EngineConfig(
        storage_dir=str(tmp_path / "service-index"),
        shard_count=2,
        executor="inline",
        embedder=hash_config,
    )


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    """A small source tree on disk."""
    root = tmp_path / "project"
    root.mkdir()
    for name, content in SAMPLE_FILES.items():
        (root / name).write_text(content)
    (root / "node_modules").mkdir()
    (root / "node_modules" / "dep.js").write_text("function ignored() {}\n")
    (root / "notes.bin").write_bytes(b"\x00\x01")
    return root
