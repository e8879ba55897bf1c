"""
DuckDB storage backend for a single shard.
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import duckdb

from ..errors import StorageError
from ..models import ShardStats
from .base import ScoredRecord, StoredRecord, normalize

logger = logging.getLogger(__name__)

_LOCK_RETRIES = 6
_LOCK_BACKOFF = 0.05

_RECORD_COLUMNS = (
    "file_path, chunk_index, content, embedding, start_line, end_line, language, symbol"
)


class DuckDBShardStore:
    """
    One shard persisted as its own DuckDB file.

    A connection is opened per operation and closed afterwards, so a worker
    process can open the same file once the owning process is done with it.
    Vectors are unit-normalized on write; similarity is then a plain inner
    product.

    DuckDB locks a file exclusively for a read-write connection, across
    processes. Search workers in other processes therefore open shards with
    ``read_only=True``, which any number of processes may share, and every
    open retries briefly while another process holds a conflicting lock.
    """

    def __init__(
        self,
        path: str,
        shard_id: int,
        *,
        initialize: bool = True,
        read_only: bool = False,
    ) -> None:
        self.path = str(Path(path).expanduser().resolve())
        self.shard_id = shard_id
        self.read_only = read_only
        if not read_only:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        if initialize and not read_only:
            self.initialize()

    def _connect(self) -> duckdb.DuckDBPyConnection:
        for attempt in range(_LOCK_RETRIES):
            try:
                return duckdb.connect(self.path, read_only=self.read_only)
            except duckdb.IOException as exc:
                if "lock" not in str(exc).lower() or attempt == _LOCK_RETRIES - 1:
                    raise StorageError(
                        f"Cannot open shard {self.shard_id} at {self.path}: {exc}"
                    ) from exc
                delay = _LOCK_BACKOFF * 2**attempt
                logger.debug(
                    "Shard %d is locked by another process, retrying in %.2fs",
                    self.shard_id,
                    delay,
                )
                time.sleep(delay)
            except duckdb.Error as exc:
                raise StorageError(
                    f"Cannot open shard {self.shard_id} at {self.path}: {exc}"
                ) from exc
        raise StorageError(f"Cannot open shard {self.shard_id} at {self.path}")

    @contextmanager
    def _connection(self) -> Iterator[duckdb.DuckDBPyConnection]:
        conn = self._connect()
        try:
            yield conn
        except duckdb.Error as exc:
            raise StorageError(f"Shard {self.shard_id} operation failed: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._connection() as conn:
            conn.execute("BEGIN TRANSACTION")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def initialize(self) -> None:
        with self._connection() as conn:
            # No primary key on chunks: DuckDB rejects delete-then-insert of the
            # same key inside one transaction. Uniqueness is kept by always
            # deleting a key before inserting it.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    file_path VARCHAR NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    content VARCHAR NOT NULL,
                    embedding FLOAT[] NOT NULL,
                    start_line INTEGER NOT NULL DEFAULT 1,
                    end_line INTEGER NOT NULL DEFAULT 1,
                    language VARCHAR,
                    symbol VARCHAR,
                    indexed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS indexed_files (
                    file_path VARCHAR PRIMARY KEY,
                    content_sha256 VARCHAR NOT NULL,
                    chunk_count INTEGER NOT NULL,
                    indexed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )

    @staticmethod
    def _rows(records: list[StoredRecord]) -> list[tuple]:
        return [
            (
                record.file_path,
                record.chunk_index,
                record.content,
                normalize(record.embedding),
                record.start_line,
                record.end_line,
                record.language,
                record.symbol,
            )
            for record in records
        ]

    def upsert(self, records: list[StoredRecord]) -> int:
        if not records:
            return 0
        self._check_shard(records)
        with self._transaction() as conn:
            conn.executemany(
                "DELETE FROM chunks WHERE file_path = ? AND chunk_index = ?",
                [record.key for record in records],
            )
            conn.executemany(
                f"INSERT INTO chunks ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                self._rows(records),
            )
        return len(records)

    def replace_file(
        self, file_path: str, records: list[StoredRecord], content_sha256: str
    ) -> int:
        """Drop every prior chunk of *file_path* and insert *records* in one transaction."""
        self._check_shard(records)
        with self._transaction() as conn:
            conn.execute("DELETE FROM chunks WHERE file_path = ?", [file_path])
            if records:
                conn.executemany(
                    f"INSERT INTO chunks ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    self._rows(records),
                )
                conn.execute(
                    """
                    INSERT INTO indexed_files (file_path, content_sha256, chunk_count)
                    VALUES (?, ?, ?)
                    ON CONFLICT(file_path) DO UPDATE SET
                        content_sha256 = excluded.content_sha256,
                        chunk_count = excluded.chunk_count,
                        indexed_at = now()
                    """,
                    [file_path, content_sha256, len(records)],
                )
            else:
                conn.execute("DELETE FROM indexed_files WHERE file_path = ?", [file_path])
        return len(records)

    def delete_by_file(self, file_path: str) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE file_path = ?", [file_path]
            ).fetchone()
            conn.execute("DELETE FROM chunks WHERE file_path = ?", [file_path])
            conn.execute("DELETE FROM indexed_files WHERE file_path = ?", [file_path])
        return int(row[0]) if row else 0

    def nearest_neighbors(
        self, query_vector: list[float], top_k: int, min_score: float = 0.0
    ) -> list[ScoredRecord]:
        if top_k < 1:
            return []
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT file_path, chunk_index, content, start_line, end_line,
                       language, symbol, score
                FROM (
                    SELECT *, list_inner_product(embedding, ?::FLOAT[]) AS score
                    FROM chunks
                ) AS scored
                WHERE score >= ?
                ORDER BY score DESC, file_path ASC, chunk_index ASC
                LIMIT ?
                """,
                [normalize(query_vector), min_score, top_k],
            ).fetchall()
        return [
            ScoredRecord(
                file_path=str(row[0]),
                chunk_index=int(row[1]),
                content=str(row[2]),
                shard_id=self.shard_id,
                score=float(row[7]),
                start_line=int(row[3]),
                end_line=int(row[4]),
                language=row[5],
                symbol=row[6],
            )
            for row in rows
        ]

    def get_file_hash(self, file_path: str) -> str | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT content_sha256 FROM indexed_files WHERE file_path = ?",
                [file_path],
            ).fetchone()
        return str(row[0]) if row else None

    def records_for_file(self, file_path: str) -> list[StoredRecord]:
        return self._select_records("WHERE file_path = ?", [file_path])

    def all_records(self) -> list[StoredRecord]:
        return self._select_records("", [])

    def _select_records(self, where: str, params: list) -> list[StoredRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM chunks {where} "
                "ORDER BY file_path ASC, chunk_index ASC",
                params,
            ).fetchall()
        return [
            StoredRecord(
                file_path=str(row[0]),
                chunk_index=int(row[1]),
                content=str(row[2]),
                embedding=[float(v) for v in row[3]],
                shard_id=self.shard_id,
                start_line=int(row[4]),
                end_line=int(row[5]),
                language=row[6],
                symbol=row[7],
            )
            for row in rows
        ]

    def file_hashes(self) -> dict[str, str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT file_path, content_sha256 FROM indexed_files"
            ).fetchall()
        return {str(path): str(digest) for path, digest in rows}

    def stats(self) -> ShardStats:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*), COUNT(DISTINCT file_path), MAX(indexed_at) FROM chunks"
            ).fetchone()
        size = 0
        for candidate in (self.path, self.path + ".wal"):
            if os.path.exists(candidate):
                size += os.path.getsize(candidate)
        return ShardStats(
            shard_id=self.shard_id,
            chunk_count=int(row[0]) if row else 0,
            file_count=int(row[1]) if row else 0,
            size_bytes=size,
            last_indexed_at=row[2] if row else None,
        )

    def clear(self) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM chunks")
            conn.execute("DELETE FROM indexed_files")

    def _check_shard(self, records: list[StoredRecord]) -> None:
        for record in records:
            if record.shard_id != self.shard_id:
                raise StorageError(
                    f"Record for {record.file_path} belongs to shard {record.shard_id}, "
                    f"not shard {self.shard_id}"
                )
