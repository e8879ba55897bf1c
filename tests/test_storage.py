"""Tests for the DuckDB shard store and the sharded vector store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from localgrep.errors import DimensionMismatchError, StorageError, ValidationError
from localgrep.storage import (
    DuckDBShardStore,
    ScoredRecord,
    ShardedVectorStore,
    StoredRecord,
    merge_scored,
    shard_for_path,
)


def _record(
    path: str, index: int, vector: list[float], shard_id: int = 0, content: str | None = None
) -> StoredRecord:
    return StoredRecord(
        file_path=path,
        chunk_index=index,
        content=content or f"{path}#{index}",
        embedding=vector,
        shard_id=shard_id,
        start_line=index * 10 + 1,
        end_line=index * 10 + 9,
        language="python",
    )


@pytest.fixture()
def shard(tmp_path: Path) -> DuckDBShardStore:
    return DuckDBShardStore(str(tmp_path / "shard-0.duckdb"), 0)


# ---------------------------------------------------------------------------
# Routing and merging
# ---------------------------------------------------------------------------


def test_shard_for_path_is_stable_and_in_range() -> None:
    for count in (1, 2, 7, 16):
        for path in ("a.py", "src/b.ts", "deep/nested/c.go"):
            shard_id = shard_for_path(path, count)
            assert 0 <= shard_id < count
            assert shard_for_path(path, count) == shard_id


def test_merge_scored_orders_by_score_then_path_then_index() -> None:
    groups = [
        [ScoredRecord("b.py", 0, "", 0, 0.9), ScoredRecord("a.py", 1, "", 0, 0.5)],
        [ScoredRecord("a.py", 0, "", 1, 0.9), ScoredRecord("c.py", 0, "", 1, 0.95)],
    ]

    merged = merge_scored(groups, limit=3)

    assert [(r.file_path, r.chunk_index) for r in merged] == [
        ("c.py", 0),
        ("a.py", 0),
        ("b.py", 0),
    ]


# ---------------------------------------------------------------------------
# DuckDB shard
# ---------------------------------------------------------------------------


def test_nearest_neighbors_respects_top_k_threshold_and_order(
    shard: DuckDBShardStore,
) -> None:
    shard.upsert(
        [
            _record("a.py", 0, [1.0, 0.0]),
            _record("b.py", 0, [0.8, 0.6]),
            _record("c.py", 0, [0.0, 1.0]),
        ]
    )

    results = shard.nearest_neighbors([1.0, 0.0], top_k=10, min_score=0.5)

    assert [r.file_path for r in results] == ["a.py", "b.py"]
    assert results[0].score == pytest.approx(1.0, abs=1e-5)
    assert results[1].score == pytest.approx(0.8, abs=1e-5)
    assert results[0].start_line == 1
    assert results[0].language == "python"
    assert len(shard.nearest_neighbors([1.0, 0.0], top_k=1)) == 1
    assert shard.nearest_neighbors([1.0, 0.0], top_k=0) == []


def test_ties_break_by_path_then_chunk_index(shard: DuckDBShardStore) -> None:
    shard.upsert(
        [
            _record("b.py", 0, [1.0, 0.0]),
            _record("a.py", 1, [1.0, 0.0]),
            _record("a.py", 0, [1.0, 0.0]),
        ]
    )

    results = shard.nearest_neighbors([1.0, 0.0], top_k=3)

    assert [(r.file_path, r.chunk_index) for r in results] == [
        ("a.py", 0),
        ("a.py", 1),
        ("b.py", 0),
    ]


def test_vectors_are_normalized_on_write(shard: DuckDBShardStore) -> None:
    shard.upsert([_record("a.py", 0, [3.0, 4.0])])

    stored = shard.all_records()[0]

    assert stored.embedding == pytest.approx([0.6, 0.8], abs=1e-6)


def test_upsert_replaces_by_key(shard: DuckDBShardStore) -> None:
    shard.upsert([_record("a.py", 0, [1.0, 0.0], content="old")])
    shard.upsert([_record("a.py", 0, [0.0, 1.0], content="new")])

    records = shard.records_for_file("a.py")

    assert len(records) == 1
    assert records[0].content == "new"


def test_replace_file_leaves_no_orphan_chunks(shard: DuckDBShardStore) -> None:
    shard.replace_file(
        "a.py", [_record("a.py", i, [1.0, float(i)]) for i in range(3)], "hash-1"
    )
    shard.replace_file("a.py", [_record("a.py", 0, [1.0, 0.0])], "hash-2")

    assert [r.chunk_index for r in shard.records_for_file("a.py")] == [0]
    assert shard.get_file_hash("a.py") == "hash-2"


def test_replace_file_with_no_records_forgets_file(shard: DuckDBShardStore) -> None:
    shard.replace_file("a.py", [_record("a.py", 0, [1.0, 0.0])], "hash-1")
    shard.replace_file("a.py", [], "hash-2")

    assert shard.records_for_file("a.py") == []
    assert shard.get_file_hash("a.py") is None


def test_delete_by_file_returns_count(shard: DuckDBShardStore) -> None:
    shard.replace_file("a.py", [_record("a.py", i, [1.0, 0.0]) for i in range(2)], "h")
    shard.replace_file("b.py", [_record("b.py", 0, [1.0, 0.0])], "h")

    assert shard.delete_by_file("a.py") == 2
    assert shard.delete_by_file("a.py") == 0
    assert shard.get_file_hash("a.py") is None
    assert [r.file_path for r in shard.all_records()] == ["b.py"]


def test_wrong_shard_record_rejected(shard: DuckDBShardStore) -> None:
    with pytest.raises(StorageError, match="belongs to shard 3"):
        shard.upsert([_record("a.py", 0, [1.0, 0.0], shard_id=3)])


def test_stats_reflect_contents(shard: DuckDBShardStore) -> None:
    shard.replace_file("a.py", [_record("a.py", i, [1.0, 0.0]) for i in range(2)], "h")
    shard.replace_file("b.py", [_record("b.py", 0, [1.0, 0.0])], "h")

    stats = shard.stats()

    assert stats.chunk_count == 3
    assert stats.file_count == 2
    assert stats.size_bytes > 0
    assert stats.last_indexed_at is not None

    shard.clear()
    assert shard.stats().chunk_count == 0


def test_unopenable_shard_raises_storage_error(tmp_path: Path) -> None:
    not_a_file = tmp_path / "shard-0.duckdb"
    not_a_file.mkdir()

    with pytest.raises(StorageError):
        DuckDBShardStore(str(not_a_file), 0)


# ---------------------------------------------------------------------------
# Sharded store
# ---------------------------------------------------------------------------


def _routed(store: ShardedVectorStore, path: str, index: int, vector: list[float]) -> StoredRecord:
    return _record(path, index, vector, shard_id=store.shard_id_for(path))


def test_initialize_writes_manifest(tmp_path: Path) -> None:
    store = ShardedVectorStore(str(tmp_path / "idx"), 3)
    store.initialize()

    manifest = json.loads((tmp_path / "idx" / "manifest.json").read_text())
    assert manifest == {"dimensions": None, "model": None, "shard_count": 3}
    assert sorted(store.shard_paths()) == [0, 1, 2]
    assert all(Path(p).exists() for p in store.shard_paths().values())


def test_reopen_with_different_shard_count_fails(tmp_path: Path) -> None:
    ShardedVectorStore(str(tmp_path / "idx"), 3).initialize()

    with pytest.raises(ValidationError, match="reshard"):
        ShardedVectorStore(str(tmp_path / "idx"), 5).initialize()


def test_open_existing_reads_shard_count(tmp_path: Path) -> None:
    ShardedVectorStore(str(tmp_path / "idx"), 5).initialize()

    assert ShardedVectorStore.open_existing(str(tmp_path / "idx")).shard_count == 5


def test_open_existing_without_index_fails(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="No index found"):
        ShardedVectorStore.open_existing(str(tmp_path / "nothing"))


def test_operations_require_initialize(tmp_path: Path) -> None:
    store = ShardedVectorStore(str(tmp_path / "idx"), 2)

    with pytest.raises(StorageError):
        store.get_stats()


def test_bind_model_records_and_enforces_dimensions(store: ShardedVectorStore) -> None:
    store.bind_model("hashing/blake2b-64", 64)
    store.bind_model("hashing/blake2b-64", 64)

    assert store.model == "hashing/blake2b-64"
    assert store.dimensions == 64
    with pytest.raises(DimensionMismatchError) as excinfo:
        store.bind_model("other", 32)
    assert excinfo.value.expected == 64
    assert excinfo.value.actual == 32
    with pytest.raises(DimensionMismatchError):
        store.check_dimensions([0.0] * 10)


def test_search_all_merges_every_shard(store: ShardedVectorStore) -> None:
    paths = [f"pkg/module_{i}.py" for i in range(12)]
    for i, path in enumerate(paths):
        store.replace_file(path, [_routed(store, path, 0, [1.0, i / 10])], f"h{i}")

    results = store.search_all([1.0, 0.0], top_k=5)

    assert len(results) == 5
    assert [r.file_path for r in results] == paths[:5]
    assert len({r.shard_id for r in store.search_all([1.0, 0.0], top_k=12)}) > 1


def test_get_stats_sums_shards(store: ShardedVectorStore) -> None:
    for path in ("a.py", "b.py", "c.py"):
        store.replace_file(path, [_routed(store, path, 0, [1.0, 0.0])], "h")
    store.bind_model("m", 2)

    stats = store.get_stats()

    assert stats.total_chunks == 3
    assert stats.total_files == 3
    assert stats.shard_count == 4
    assert len(stats.shards) == 4
    assert stats.model == "m"
    assert stats.dimensions == 2
    assert stats.database_size > 0
    assert stats.last_indexed_at is not None


def test_clear_empties_index_and_unbinds_model(store: ShardedVectorStore) -> None:
    store.replace_file("a.py", [_routed(store, "a.py", 0, [1.0, 0.0])], "h")
    store.bind_model("m", 2)

    store.clear()

    assert store.get_stats().total_chunks == 0
    assert store.dimensions is None
    store.bind_model("other", 8)


def test_reshard_moves_records_without_reembedding(store: ShardedVectorStore) -> None:
    paths = [f"src/file_{i}.py" for i in range(10)]
    for i, path in enumerate(paths):
        store.replace_file(path, [_routed(store, path, 0, [1.0, i / 10])], f"hash-{i}")
    before = store.search_all([1.0, 0.0], 10)

    store.reshard(3)

    assert store.shard_count == 3
    assert sorted(store.shard_paths()) == [0, 1, 2]
    after = store.search_all([1.0, 0.0], 10)
    assert [r.file_path for r in after] == [r.file_path for r in before]
    assert [r.score for r in after] == pytest.approx([r.score for r in before], abs=1e-5)
    for record in after:
        assert record.shard_id == shard_for_path(record.file_path, 3)
    for i, path in enumerate(paths):
        assert store.get_file_hash(path) == f"hash-{i}"
    reopened = ShardedVectorStore.open_existing(store.storage_dir)
    assert reopened.shard_count == 3
    assert reopened.get_stats().total_chunks == 10


def _two_shard_index(tmp_path: Path) -> tuple[ShardedVectorStore, list[str]]:
    store = ShardedVectorStore(str(tmp_path / "idx"), 2)
    store.initialize()
    paths = [f"src/file_{i}.py" for i in range(6)]
    for i, path in enumerate(paths):
        store.replace_file(path, [_routed(store, path, 0, [1.0, i / 10])], f"hash-{i}")
    return store, paths


def _assert_still_two_shards(store: ShardedVectorStore, paths: list[str]) -> None:
    assert store.shard_count == 2
    assert json.loads(store.manifest_path.read_text())["shard_count"] == 2
    assert not (Path(store.storage_dir) / ".reshard-staging").exists()
    assert not (Path(store.storage_dir) / ".reshard-retired").exists()
    assert len(store.search_all([1.0, 0.0], 10)) == 6
    reopened = ShardedVectorStore.open_existing(store.storage_dir)
    assert reopened.shard_count == 2
    assert reopened.get_stats().total_files == 6
    for i, path in enumerate(paths):
        assert reopened.get_file_hash(path) == f"hash-{i}"


def test_failed_reshard_write_leaves_index_intact(tmp_path: Path, monkeypatch) -> None:
    store, paths = _two_shard_index(tmp_path)
    real_replace = DuckDBShardStore.replace_file
    calls: list[str] = []

    def failing_replace(self, file_path, records, content_sha256):
        calls.append(file_path)
        if len(calls) == 2:
            raise StorageError("disk full")
        return real_replace(self, file_path, records, content_sha256)

    monkeypatch.setattr(DuckDBShardStore, "replace_file", failing_replace)

    with pytest.raises(StorageError, match="disk full"):
        store.reshard(4)

    _assert_still_two_shards(store, paths)


def test_failed_reshard_swap_restores_old_shards(tmp_path: Path, monkeypatch) -> None:
    store, paths = _two_shard_index(tmp_path)

    def failing_manifest(manifest: dict) -> None:
        raise OSError("read-only file system")

    monkeypatch.setattr(store, "_write_manifest", failing_manifest)

    with pytest.raises(StorageError, match="read-only file system"):
        store.reshard(4)

    assert not (Path(store.storage_dir) / "shard-3.duckdb").exists()
    _assert_still_two_shards(store, paths)
