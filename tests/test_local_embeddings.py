"""Tests for the hashing and sentence-transformers backends and backend selection."""

from __future__ import annotations

import math
import sys
import types
import zipfile
from pathlib import Path

import pytest

import localgrep.embeddings.factory as factory_module
import localgrep.embeddings.local as local_module
from localgrep.config import EmbedderConfig
from localgrep.embeddings import (
    GenAIEmbedder,
    HashingEmbedder,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
    build_embedder,
    create_embedder,
)
from localgrep.embeddings.hashing import hash_vector, tokenize
from localgrep.errors import InitializationError, ValidationError


def _cosine(a: list[float], b: list[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


# ---------------------------------------------------------------------------
# Hashing backend
# ---------------------------------------------------------------------------


def test_tokenize_splits_snake_and_camel_case() -> None:
    tokens = tokenize("parseConfig load_user_file 42")

    assert "parse" in tokens
    assert "config" in tokens
    assert "parseconfig" in tokens
    assert "load" in tokens
    assert "user" in tokens
    assert "load_user_file" in tokens
    assert "42" in tokens


def test_hash_vector_is_unit_length_and_deterministic() -> None:
    first = hash_vector("def authenticate(user): pass", 64)
    second = hash_vector("def authenticate(user): pass", 64)

    assert first == second
    assert len(first) == 64
    assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0, rel_tol=1e-9)


def test_hash_vector_of_empty_text_is_a_basis_vector() -> None:
    vector = hash_vector("   ", 8)

    assert vector == [1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]


def test_related_text_scores_higher_than_unrelated(embedder: HashingEmbedder) -> None:
    query = embedder.embed_query("authenticate user password")
    related = embedder.embed("def authenticate(user, password): return check(password)")
    unrelated = embedder.embed("def render_chart(data): return plot(data)")

    assert _cosine(query, related) > _cosine(query, unrelated)


def test_hashing_model_info(embedder: HashingEmbedder) -> None:
    info = embedder.get_model_info()

    assert info.name == "hashing/blake2b-256"
    assert info.dimensions == 256


def test_hashing_default_dimensions() -> None:
    assert HashingEmbedder().get_model_info().dimensions == 256


def test_progress_callback_reports_ready() -> None:
    events: list[tuple[str, float, str | None]] = []
    embedder = HashingEmbedder(on_progress=lambda *args: events.append(args))

    embedder.initialize()

    assert events == [("ready", 100.0, None)]


def test_dispose_is_idempotent(embedder: HashingEmbedder) -> None:
    embedder.dispose()
    embedder.dispose()

    assert not embedder.initialized


# ---------------------------------------------------------------------------
# Sentence-transformers backend
# ---------------------------------------------------------------------------


class _Row(list):
    def tolist(self) -> list[float]:
        return list(self)


class _FakeSentenceTransformer:
    instances: list["_FakeSentenceTransformer"] = []

    def __init__(self, source: str, device: str, cache_folder: str | None = None) -> None:
        self.source = source
        self.device = device
        self.max_seq_length = 128
        _FakeSentenceTransformer.instances.append(self)

    def get_sentence_embedding_dimension(self) -> int:
        return 3

    def encode(self, texts, **kwargs):
        assert kwargs["normalize_embeddings"] is True
        return [_Row([1.0, 0.0, 0.0]) for _ in texts]


@pytest.fixture()
def fake_sentence_transformers(monkeypatch):
    _FakeSentenceTransformer.instances = []
    module = types.ModuleType("sentence_transformers")
    module.SentenceTransformer = _FakeSentenceTransformer
    monkeypatch.setitem(sys.modules, "sentence_transformers", module)
    return _FakeSentenceTransformer


def test_cpu_backend_loads_on_cpu(fake_sentence_transformers) -> None:
    embedder = SentenceTransformerEmbedder(EmbedderConfig(backend="cpu"))

    vectors = embedder.embed_batch(["a", "b"])

    assert vectors == [[1.0, 0.0, 0.0], [1.0, 0.0, 0.0]]
    assert embedder.device == "cpu"
    info = embedder.get_model_info()
    assert info.dimensions == 3
    assert info.max_tokens == 128


def test_gpu_backend_requires_accelerator(monkeypatch, fake_sentence_transformers) -> None:
    monkeypatch.setattr(local_module, "detect_accelerator", lambda: None)
    embedder = SentenceTransformerEmbedder(EmbedderConfig(backend="gpu"))

    with pytest.raises(InitializationError, match="No GPU"):
        embedder.initialize()


def test_gpu_backend_uses_detected_accelerator(monkeypatch, fake_sentence_transformers) -> None:
    monkeypatch.setattr(local_module, "detect_accelerator", lambda: "mps")
    embedder = SentenceTransformerEmbedder(EmbedderConfig(backend="gpu"))

    embedder.initialize()

    assert embedder.device == "mps"


def test_missing_model_path_without_url_fails(tmp_path: Path, fake_sentence_transformers) -> None:
    config = EmbedderConfig(backend="cpu", model_path=str(tmp_path / "missing-model"))

    with pytest.raises(InitializationError, match="Model not found"):
        SentenceTransformerEmbedder(config).initialize()


def test_model_is_downloaded_and_unpacked(
    tmp_path: Path, monkeypatch, fake_sentence_transformers
) -> None:
    downloads: list[str] = []

    def fake_download(url, destination, *, cancel=None, on_progress=None):
        downloads.append(url)
        with zipfile.ZipFile(destination, "w") as archive:
            archive.writestr("config.json", "{}")
        if on_progress is not None:
            on_progress(10, 10)
        return Path(destination)

    monkeypatch.setattr(local_module, "download_model_archive", fake_download)
    model_dir = tmp_path / "models" / "mini"
    progress: list[tuple[str, float, str | None]] = []
    config = EmbedderConfig(
        backend="cpu",
        model_path=str(model_dir),
        model_url="https://example.com/models/mini.zip",
        cache_dir=str(tmp_path / "cache"),
    )
    (tmp_path / "cache").mkdir()

    embedder = SentenceTransformerEmbedder(
        config, on_progress=lambda *args: progress.append(args)
    )
    embedder.initialize()

    assert downloads == ["https://example.com/models/mini.zip"]
    assert (model_dir / "config.json").exists()
    assert not (tmp_path / "cache" / "mini.zip").exists()
    assert fake_sentence_transformers.instances[-1].source == str(model_dir)
    assert ("downloading", 100.0, "mini.zip") in progress


def test_missing_sentence_transformers_package(monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "sentence_transformers", None)
    embedder = SentenceTransformerEmbedder(EmbedderConfig(backend="cpu"))

    with pytest.raises(InitializationError, match="pip install"):
        embedder.initialize()


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("backend", "cls"),
    [
        ("genai", GenAIEmbedder),
        ("openai", OpenAIEmbedder),
        ("gpu", SentenceTransformerEmbedder),
        ("cpu", SentenceTransformerEmbedder),
        ("hash", HashingEmbedder),
    ],
)
def test_build_embedder_maps_backends(backend: str, cls: type) -> None:
    embedder = build_embedder(EmbedderConfig(backend=backend))

    assert isinstance(embedder, cls)
    assert not embedder.initialized


def test_build_embedder_rejects_unknown_backend() -> None:
    config = EmbedderConfig.model_construct(backend="word2vec")

    with pytest.raises(ValidationError):
        build_embedder(config)


def test_create_embedder_initializes_explicit_backend() -> None:
    embedder = create_embedder(EmbedderConfig(backend="hash"))

    assert isinstance(embedder, HashingEmbedder)
    assert embedder.initialized


def test_auto_without_initialize_uses_hardware_detection(monkeypatch) -> None:
    monkeypatch.setattr(factory_module, "detect_accelerator", lambda: "cuda")
    assert create_embedder(initialize=False).config.backend == "gpu"

    monkeypatch.setattr(factory_module, "detect_accelerator", lambda: None)
    assert create_embedder(initialize=False).config.backend == "cpu"


def test_auto_falls_back_from_gpu_to_cpu(monkeypatch) -> None:
    def fake_load(self) -> None:
        if self.config.backend == "gpu":
            raise InitializationError("no CUDA")

    monkeypatch.setattr(SentenceTransformerEmbedder, "_load", fake_load)

    embedder = create_embedder(EmbedderConfig())

    assert embedder.config.backend == "cpu"
    assert embedder.initialized


def test_auto_raises_when_no_backend_loads(monkeypatch) -> None:
    def fake_load(self) -> None:
        raise InitializationError(f"{self.config.backend} broken")

    monkeypatch.setattr(SentenceTransformerEmbedder, "_load", fake_load)

    with pytest.raises(InitializationError) as excinfo:
        create_embedder(EmbedderConfig())

    assert "gpu" in str(excinfo.value)
    assert "cpu" in str(excinfo.value)
