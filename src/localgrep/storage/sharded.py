"""
A fixed set of DuckDB shards under one storage directory.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Iterator

from ..errors import DimensionMismatchError, StorageError, ValidationError
from ..models import IndexStats
from .base import ScoredRecord, StoredRecord, merge_scored, shard_for_path
from .duckdb import DuckDBShardStore

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
STAGING_DIR = ".reshard-staging"
RETIRED_DIR = ".reshard-retired"


def shard_file_name(shard_id: int) -> str:
    return f"shard-{shard_id}.duckdb"


def recorded_shard_count(storage_dir: str) -> int | None:
    """Return the shard count in an index's manifest, or ``None`` if there is no index yet."""
    manifest_path = Path(storage_dir).expanduser().resolve() / MANIFEST_NAME
    if not manifest_path.exists():
        return None
    try:
        return int(json.loads(manifest_path.read_text())["shard_count"])
    except (OSError, KeyError, ValueError) as exc:
        raise StorageError(f"Corrupt manifest at {manifest_path}: {exc}") from exc


class ShardedVectorStore:
    """
    Route records to shards by file path and keep per-shard write locks.

    The shard count is written to ``manifest.json`` on first initialization
    and must match on every later open; use :meth:`reshard` to change it.
    """

    def __init__(self, storage_dir: str, shard_count: int) -> None:
        if shard_count < 1:
            raise ValidationError("shard_count must be >= 1")
        self.storage_dir = str(Path(storage_dir).expanduser().resolve())
        self.shard_count = shard_count
        self._shards: dict[int, DuckDBShardStore] = {}
        self._locks = {shard_id: threading.RLock() for shard_id in range(shard_count)}
        self._manifest: dict = {}
        self._manifest_lock = threading.Lock()
        self._initialized = False

    @classmethod
    def open_existing(cls, storage_dir: str) -> ShardedVectorStore:
        """Open an index using the shard count recorded in its manifest."""
        shard_count = recorded_shard_count(storage_dir)
        if shard_count is None:
            raise ValidationError(f"No index found at {storage_dir}")
        store = cls(storage_dir, shard_count)
        store.initialize()
        return store

    @property
    def manifest_path(self) -> Path:
        return Path(self.storage_dir) / MANIFEST_NAME

    def initialize(self) -> None:
        if self._initialized:
            return
        try:
            Path(self.storage_dir).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create storage directory {self.storage_dir}: {exc}") from exc

        manifest = self._read_manifest()
        if manifest is None:
            manifest = {"shard_count": self.shard_count, "model": None, "dimensions": None}
            self._write_manifest(manifest)
        elif int(manifest.get("shard_count", 0)) != self.shard_count:
            raise ValidationError(
                f"Index at {self.storage_dir} was created with "
                f"{manifest.get('shard_count')} shards, not {self.shard_count}. "
                "Use reshard() to change the shard count."
            )
        self._manifest = manifest

        for shard_id in range(self.shard_count):
            self._shards[shard_id] = DuckDBShardStore(
                str(Path(self.storage_dir) / shard_file_name(shard_id)), shard_id
            )
        self._initialized = True
        logger.info("Opened %d shards in %s", self.shard_count, self.storage_dir)

    def _read_manifest(self) -> dict | None:
        if not self.manifest_path.exists():
            return None
        try:
            return json.loads(self.manifest_path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Corrupt manifest at {self.manifest_path}: {exc}") from exc

    def _write_manifest(self, manifest: dict) -> None:
        tmp = self.manifest_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(manifest, indent=2, sort_keys=True))
        tmp.replace(self.manifest_path)

    # -- routing -------------------------------------------------------

    def shard_id_for(self, file_path: str) -> int:
        return shard_for_path(file_path, self.shard_count)

    def shard(self, shard_id: int) -> DuckDBShardStore:
        self._require_initialized()
        try:
            return self._shards[shard_id]
        except KeyError:
            raise ValidationError(f"No shard {shard_id} (shard_count={self.shard_count})") from None

    def shard_paths(self) -> dict[int, str]:
        self._require_initialized()
        return {shard_id: store.path for shard_id, store in self._shards.items()}

    def lock(self, shard_id: int) -> threading.RLock:
        return self._locks[shard_id]

    @contextmanager
    def hold_shards(self, shard_ids: Iterable[int]) -> Iterator[None]:
        """Acquire several shard locks in ascending order."""
        with ExitStack() as stack:
            for shard_id in sorted(set(shard_ids)):
                stack.enter_context(self._locks[shard_id])
            yield

    # -- model binding -------------------------------------------------

    @property
    def model(self) -> str | None:
        return self._manifest.get("model")

    @property
    def dimensions(self) -> int | None:
        value = self._manifest.get("dimensions")
        return int(value) if value is not None else None

    def bind_model(self, name: str, dimensions: int) -> None:
        """Record the embedding model on first write; reject a different dimensionality."""
        self._require_initialized()
        with self._manifest_lock:
            current = self._manifest.get("dimensions")
            if current is None:
                self._manifest = {**self._manifest, "model": name, "dimensions": dimensions}
                self._write_manifest(self._manifest)
                return
            if int(current) != dimensions:
                raise DimensionMismatchError(int(current), dimensions)
            if self._manifest.get("model") != name:
                logger.warning(
                    "Index built with %s, now embedding with %s (same dimensionality)",
                    self._manifest.get("model"),
                    name,
                )

    def check_dimensions(self, vector: list[float]) -> None:
        expected = self.dimensions
        if expected is not None and len(vector) != expected:
            raise DimensionMismatchError(expected, len(vector))

    # -- per-shard operations -----------------------------------------

    def upsert(self, shard_id: int, records: list[StoredRecord]) -> int:
        with self._locks[shard_id]:
            return self.shard(shard_id).upsert(records)

    def replace_file(
        self, file_path: str, records: list[StoredRecord], content_sha256: str
    ) -> int:
        shard_id = self.shard_id_for(file_path)
        with self._locks[shard_id]:
            return self.shard(shard_id).replace_file(file_path, records, content_sha256)

    def delete_by_file(self, file_path: str) -> int:
        shard_id = self.shard_id_for(file_path)
        with self._locks[shard_id]:
            return self.shard(shard_id).delete_by_file(file_path)

    def get_file_hash(self, file_path: str) -> str | None:
        return self.shard(self.shard_id_for(file_path)).get_file_hash(file_path)

    def nearest_neighbors(
        self, shard_id: int, query_vector: list[float], top_k: int, min_score: float = 0.0
    ) -> list[ScoredRecord]:
        return self.shard(shard_id).nearest_neighbors(query_vector, top_k, min_score)

    def search_all(
        self, query_vector: list[float], top_k: int, min_score: float = 0.0
    ) -> list[ScoredRecord]:
        """Query every shard in-process and merge the results."""
        self.check_dimensions(query_vector)
        groups = [
            self.nearest_neighbors(shard_id, query_vector, top_k, min_score)
            for shard_id in range(self.shard_count)
        ]
        return merge_scored(groups, limit=top_k)

    # -- whole-index operations ---------------------------------------

    def get_stats(self) -> IndexStats:
        self._require_initialized()
        shard_stats = [self._shards[i].stats() for i in range(self.shard_count)]
        stamps = [s.last_indexed_at for s in shard_stats if s.last_indexed_at is not None]
        manifest_size = self.manifest_path.stat().st_size if self.manifest_path.exists() else 0
        return IndexStats(
            total_chunks=sum(s.chunk_count for s in shard_stats),
            total_files=sum(s.file_count for s in shard_stats),
            database_size=sum(s.size_bytes for s in shard_stats) + manifest_size,
            shard_count=self.shard_count,
            last_indexed_at=max(stamps) if stamps else None,
            model=self.model,
            dimensions=self.dimensions,
            shards=shard_stats,
        )

    def clear(self) -> None:
        self._require_initialized()
        with self.hold_shards(range(self.shard_count)):
            for shard_id in range(self.shard_count):
                self._shards[shard_id].clear()
            with self._manifest_lock:
                self._manifest = {"shard_count": self.shard_count, "model": None, "dimensions": None}
                self._write_manifest(self._manifest)
        logger.info("Cleared index at %s", self.storage_dir)

    def reshard(self, new_count: int) -> None:
        """
        Move every record to its shard under *new_count*.

        Stored vectors and content hashes are reused; nothing is re-embedded.
        The new shards are written to a staging directory first and swapped in
        only once every write has succeeded, so a failure at any point leaves
        the index as it was.
        """
        self._require_initialized()
        if new_count < 1:
            raise ValidationError("shard_count must be >= 1")
        if new_count == self.shard_count:
            return

        with self.hold_shards(range(self.shard_count)):
            records: list[StoredRecord] = []
            hashes: dict[str, str] = {}
            for store in self._shards.values():
                records.extend(store.all_records())
                hashes.update(store.file_hashes())

            staging = Path(self.storage_dir) / STAGING_DIR
            self._write_staged(staging, new_count, records, hashes)
            self._swap_in(staging, new_count)

            old_count = self.shard_count
            self.shard_count = new_count
            self._locks = {shard_id: threading.RLock() for shard_id in range(new_count)}
            self._shards = {
                shard_id: DuckDBShardStore(
                    str(Path(self.storage_dir) / shard_file_name(shard_id)), shard_id
                )
                for shard_id in range(new_count)
            }
        logger.info("Resharded %s from %d to %d shards", self.storage_dir, old_count, new_count)

    @staticmethod
    def _write_staged(
        staging: Path,
        new_count: int,
        records: list[StoredRecord],
        hashes: dict[str, str],
    ) -> None:
        shutil.rmtree(staging, ignore_errors=True)
        by_file: dict[str, list[StoredRecord]] = {}
        for record in records:
            by_file.setdefault(record.file_path, []).append(record)
        try:
            staging.mkdir(parents=True)
            stores = {
                shard_id: DuckDBShardStore(str(staging / shard_file_name(shard_id)), shard_id)
                for shard_id in range(new_count)
            }
            for file_path, file_records in sorted(by_file.items()):
                shard_id = shard_for_path(file_path, new_count)
                moved = [replace(record, shard_id=shard_id) for record in file_records]
                stores[shard_id].replace_file(file_path, moved, hashes.get(file_path, ""))
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    def _swap_in(self, staging: Path, new_count: int) -> None:
        """Retire the live shard files, move the staged ones in, then commit the manifest."""
        root = Path(self.storage_dir)
        retired = root / RETIRED_DIR
        shutil.rmtree(retired, ignore_errors=True)
        moved_out: list[str] = []
        moved_in: list[str] = []
        try:
            retired.mkdir(parents=True)
            for shard_id in range(self.shard_count):
                for name in (shard_file_name(shard_id), shard_file_name(shard_id) + ".wal"):
                    if (root / name).exists():
                        os.replace(root / name, retired / name)
                        moved_out.append(name)
            for shard_id in range(new_count):
                for name in (shard_file_name(shard_id), shard_file_name(shard_id) + ".wal"):
                    if (staging / name).exists():
                        os.replace(staging / name, root / name)
                        moved_in.append(name)
            with self._manifest_lock:
                self._write_manifest({**self._manifest, "shard_count": new_count})
                self._manifest = {**self._manifest, "shard_count": new_count}
        except OSError as exc:
            for name in moved_in:
                (root / name).unlink(missing_ok=True)
            for name in moved_out:
                os.replace(retired / name, root / name)
            shutil.rmtree(staging, ignore_errors=True)
            raise StorageError(f"Cannot swap in resharded index at {root}: {exc}") from exc
        shutil.rmtree(retired, ignore_errors=True)
        shutil.rmtree(staging, ignore_errors=True)

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise StorageError("Vector store is not initialized")
