"""SQLite + sqlite-vec index store for memory chunks."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
import re
import sqlite3
import threading

import sqlite_vec

from cowcode_memory.chunking import Chunk, infer_chunk_date
from cowcode_memory.embeddings import Embedder
from cowcode_memory.exceptions import SchemaCorruptionError
from cowcode_memory.logging import get_logger
from cowcode_memory.sources import FILESYSTEM_PREFIX, SourceKind

log = get_logger(__name__)

FILES_TABLE = "files"
CHUNKS_TABLE = "chunks"
VECTOR_TABLE = "chunks_vec"
REBUILD_BATCH_SIZE = 16

_VECTOR_DIMS = re.compile(r"float\[(\d+)\]", re.IGNORECASE)
_VECTOR_KEY = re.compile(r"chunk_id\s+integer\s+primary\s+key", re.IGNORECASE)
_VECTOR_METRIC = re.compile(r"distance_metric\s*=\s*cosine", re.IGNORECASE)


def is_key_mismatch_message(message: str) -> bool:
    """Error text sqlite-vec produces when a key has the wrong numeric type."""
    lowered = (message or "").lower()
    if "datatype mismatch" in lowered:
        return True
    return "primary key" in lowered and VECTOR_TABLE in lowered


@dataclass(frozen=True)
class StoredChunk:
    """A chunk row as persisted, with its surrogate id."""

    id: int
    path: str
    start_line: int
    end_line: int
    text: str
    kind: SourceKind
    chunk_date: str | None


@dataclass(frozen=True)
class VectorLayout:
    dims: int | None
    compatible: bool


class IndexStore:
    """Durable chunk + vector index for one database file.

    The vector table is created lazily once the embedding dimensionality
    is known. A vector table in any other layout (different dimensions,
    legacy key type, missing entries) is rebuilt from the chunk texts.
    """

    def __init__(self, db_path: Path, embedder: Embedder):
        self.db_path = Path(db_path).expanduser()
        self.embedder = embedder
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._dims: int | None = None
        self._checked = False
        self._backfilled = False
        self._open()

    # ------------------------------------------------------------------ setup

    def _open(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level=None)
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {FILES_TABLE} (
                path TEXT PRIMARY KEY,
                mtime_ms INTEGER NOT NULL,
                source TEXT NOT NULL DEFAULT 'memory'
            )
            """
        )
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {CHUNKS_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL,
                start_line INTEGER NOT NULL,
                end_line INTEGER NOT NULL,
                text TEXT NOT NULL,
                source TEXT NOT NULL DEFAULT 'memory'
            )
            """
        )
        columns = {str(row[1]) for row in conn.execute(f"PRAGMA table_info({CHUNKS_TABLE})")}
        if "chunk_date" not in columns:
            conn.execute(f"ALTER TABLE {CHUNKS_TABLE} ADD COLUMN chunk_date TEXT")
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_chunks_path ON {CHUNKS_TABLE}(path)")
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_chunks_source ON {CHUNKS_TABLE}(source)")
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_chunks_chunk_date ON {CHUNKS_TABLE}(chunk_date)")
        self._conn = conn
        layout = self.vector_layout()
        self._dims = layout.dims if layout and layout.compatible else None

    def _conn_or_raise(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Memory index database is closed")
        return self._conn

    def close(self) -> None:
        """Close SQLite resources."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def dims(self) -> int | None:
        return self._dims

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN/COMMIT around the block; ROLLBACK if it raises. Re-entrant."""
        with self._lock:
            conn = self._conn_or_raise()
            if conn.in_transaction:
                yield conn
                return
            conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # ---------------------------------------------------------- vector table

    def vector_layout(self) -> VectorLayout | None:
        """Layout of the existing vector table, or None when there is none."""
        row = self._conn_or_raise().execute(
            "SELECT sql FROM sqlite_master WHERE name = ?",
            (VECTOR_TABLE,),
        ).fetchone()
        if row is None:
            return None
        sql = str(row[0] or "")
        dims_match = _VECTOR_DIMS.search(sql)
        dims = int(dims_match.group(1)) if dims_match else None
        compatible = bool(dims and _VECTOR_KEY.search(sql) and _VECTOR_METRIC.search(sql))
        return VectorLayout(dims=dims, compatible=compatible)

    def _create_vector_table(self, conn: sqlite3.Connection, dims: int) -> None:
        conn.execute(
            f"CREATE VIRTUAL TABLE {VECTOR_TABLE} USING vec0("
            f"chunk_id integer primary key, embedding float[{int(dims)}] distance_metric=cosine)"
        )

    def ensure_vectors(self, dims: int) -> None:
        """Make sure a vector table for ``dims``-wide embeddings exists."""
        with self._lock:
            if self._dims == dims:
                return
            layout = self.vector_layout()
            if layout is None:
                if self.count_chunks():
                    self.rebuild_vectors("vector table missing for stored chunks", dims)
                    return
                with self.transaction() as conn:
                    self._create_vector_table(conn, dims)
                self._dims = dims
                return
            if layout.compatible and layout.dims == dims:
                self._dims = dims
                return
            if not layout.compatible:
                reason = "incompatible vector key layout"
            else:
                reason = f"dimension change {layout.dims} -> {dims}"
            self.rebuild_vectors(reason, dims)

    def check_vectors(self) -> None:
        """Probe the persisted vector table once; rebuild it if unusable."""
        with self._lock:
            if self._checked:
                return
            try:
                self._probe_vectors()
            except SchemaCorruptionError as exc:
                self.rebuild_vectors(exc.reason)
            self._checked = True

    def _probe_vectors(self) -> None:
        conn = self._conn_or_raise()
        probe = conn.execute(f"SELECT id FROM {CHUNKS_TABLE} ORDER BY id LIMIT 1").fetchone()
        layout = self.vector_layout()
        if probe is None:
            return
        if layout is None:
            raise SchemaCorruptionError("vector table missing for stored chunks")
        if not layout.compatible:
            raise SchemaCorruptionError("incompatible vector key layout")
        try:
            hit = conn.execute(
                f"SELECT chunk_id FROM {VECTOR_TABLE} WHERE chunk_id = ?",
                (int(probe[0]),),
            ).fetchone()
        except sqlite3.Error as exc:
            if is_key_mismatch_message(str(exc)):
                raise SchemaCorruptionError(f"vector key lookup failed: {exc}") from exc
            raise
        if hit is None:
            raise SchemaCorruptionError(f"no vector stored for chunk {int(probe[0])}")

    def rebuild_vectors(self, reason: str, dims: int | None = None) -> int:
        """Drop the vector table and re-embed every stored chunk.

        Embedding happens before the table is touched, so an embedding
        failure leaves the previous table in place.
        """
        with self._lock:
            rows = self._conn_or_raise().execute(
                f"SELECT id, text FROM {CHUNKS_TABLE} ORDER BY id"
            ).fetchall()
            log.warning("Rebuilding vector table", reason=reason, chunks=len(rows))
            vectors: list[list[float]] = []
            for offset in range(0, len(rows), REBUILD_BATCH_SIZE):
                batch = rows[offset : offset + REBUILD_BATCH_SIZE]
                vectors.extend(self.embedder.embed([str(row[1] or "") for row in batch]))
            if len(vectors) != len(rows):
                raise RuntimeError("Embed count mismatch while rebuilding vector table")

            dims = len(vectors[0]) if vectors else (dims or self._dims)
            with self.transaction() as conn:
                conn.execute(f"DROP TABLE IF EXISTS {VECTOR_TABLE}")
                self._dims = None
                if dims:
                    self._create_vector_table(conn, dims)
                    conn.executemany(
                        f"INSERT INTO {VECTOR_TABLE} (chunk_id, embedding) VALUES (?, ?)",
                        [
                            (int(row[0]), sqlite_vec.serialize_float32(vector))
                            for row, vector in zip(rows, vectors, strict=True)
                        ],
                    )
            self._dims = dims
            self._checked = True
            log.info("Vector table rebuilt", chunks=len(rows), dims=dims)
            return len(rows)

    def _delete_vectors(self, conn: sqlite3.Connection, chunk_ids: Sequence[int]) -> None:
        if not chunk_ids:
            return
        layout = self.vector_layout()
        if layout is None:
            return
        if not layout.compatible:
            raise SchemaCorruptionError("incompatible vector key layout")
        for chunk_id in chunk_ids:
            try:
                conn.execute(f"DELETE FROM {VECTOR_TABLE} WHERE chunk_id = ?", (int(chunk_id),))
            except sqlite3.Error as exc:
                if is_key_mismatch_message(str(exc)):
                    raise SchemaCorruptionError(f"vector delete failed: {exc}") from exc
                raise

    def _insert_vector(self, conn: sqlite3.Connection, chunk_id: int, vector: list[float]) -> None:
        if self._dims != len(vector):
            raise ValueError(f"Vector has {len(vector)} dimensions, index expects {self._dims}")
        conn.execute(
            f"INSERT INTO {VECTOR_TABLE} (chunk_id, embedding) VALUES (?, ?)",
            (int(chunk_id), sqlite_vec.serialize_float32(vector)),
        )

    # --------------------------------------------------------------- maintenance

    def backfill_chunk_dates(self) -> int:
        """Fill chunk_date for rows stored before (or without) date inference."""
        with self._lock:
            if self._backfilled:
                return 0
            rows = self._conn_or_raise().execute(
                f"SELECT id, path, text FROM {CHUNKS_TABLE} WHERE chunk_date IS NULL AND source != ?",
                (SourceKind.FILESYSTEM.value,),
            ).fetchall()
            updates = []
            for chunk_id, path, text in rows:
                inferred = infer_chunk_date(str(path), str(text or ""))
                if inferred:
                    updates.append((inferred, int(chunk_id)))
            if updates:
                with self.transaction() as conn:
                    conn.executemany(f"UPDATE {CHUNKS_TABLE} SET chunk_date = ? WHERE id = ?", updates)
                log.info("Backfilled chunk dates", updated=len(updates))
            self._backfilled = True
            return len(updates)

    def prepare(self) -> None:
        """One-time per-process checks before the first sync or search."""
        self.check_vectors()
        self.backfill_chunk_dates()

    # -------------------------------------------------------------- files table

    def load_file_mtimes(self) -> dict[str, int]:
        rows = self._conn_or_raise().execute(
            f"SELECT path, mtime_ms FROM {FILES_TABLE} WHERE source != ?",
            (SourceKind.FILESYSTEM.value,),
        ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def set_file_mtime(self, path: str, mtime_ms: int, kind: SourceKind) -> None:
        with self.transaction() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {FILES_TABLE} (path, mtime_ms, source) VALUES (?, ?, ?)",
                (path, int(mtime_ms), kind.value),
            )

    # ------------------------------------------------------------- chunk rows

    def chunk_ids_for_path(self, path: str) -> list[int]:
        rows = self._conn_or_raise().execute(
            f"SELECT id FROM {CHUNKS_TABLE} WHERE path = ? ORDER BY id",
            (path,),
        ).fetchall()
        return [int(row[0]) for row in rows]

    def delete_path(self, path: str) -> None:
        """Remove a path's vectors, then its chunks, then its files row."""
        with self.transaction() as conn:
            self._delete_vectors(conn, self.chunk_ids_for_path(path))
            conn.execute(f"DELETE FROM {CHUNKS_TABLE} WHERE path = ?", (path,))
            conn.execute(f"DELETE FROM {FILES_TABLE} WHERE path = ?", (path,))

    def replace_path(
        self,
        path: str,
        kind: SourceKind,
        mtime_ms: int,
        chunks: Sequence[Chunk],
        vectors: Sequence[list[float]],
    ) -> list[int]:
        """Swap all chunks of one path for new ones and record its mtime, atomically."""
        if len(chunks) != len(vectors):
            raise ValueError("Embed count mismatch")
        if vectors:
            self.ensure_vectors(len(vectors[0]))
        with self.transaction() as conn:
            self._delete_vectors(conn, self.chunk_ids_for_path(path))
            conn.execute(f"DELETE FROM {CHUNKS_TABLE} WHERE path = ?", (path,))
            ids = [self._insert_chunk(conn, chunk, vector) for chunk, vector in zip(chunks, vectors)]
            conn.execute(
                f"INSERT OR REPLACE INTO {FILES_TABLE} (path, mtime_ms, source) VALUES (?, ?, ?)",
                (path, int(mtime_ms), kind.value),
            )
        return ids

    def insert_chunks(self, chunks: Sequence[Chunk], vectors: Sequence[list[float]]) -> list[int]:
        """Insert chunks with their vectors without touching other rows."""
        if len(chunks) != len(vectors):
            raise ValueError("Embed count mismatch")
        if vectors:
            self.ensure_vectors(len(vectors[0]))
        with self.transaction() as conn:
            return [self._insert_chunk(conn, chunk, vector) for chunk, vector in zip(chunks, vectors)]

    def _insert_chunk(self, conn: sqlite3.Connection, chunk: Chunk, vector: list[float]) -> int:
        cursor = conn.execute(
            f"""
            INSERT INTO {CHUNKS_TABLE} (path, start_line, end_line, text, source, chunk_date)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.path,
                chunk.start_line,
                chunk.end_line,
                chunk.text,
                chunk.kind.value,
                chunk.chunk_date,
            ),
        )
        chunk_id = int(cursor.lastrowid)
        self._insert_vector(conn, chunk_id, vector)
        return chunk_id

    def delete_source(self, kind: SourceKind) -> int:
        """Remove every chunk, vector and files row of one source kind."""
        with self.transaction() as conn:
            ids = [
                int(row[0])
                for row in conn.execute(
                    f"SELECT id FROM {CHUNKS_TABLE} WHERE source = ?",
                    (kind.value,),
                ).fetchall()
            ]
            self._delete_vectors(conn, ids)
            conn.execute(f"DELETE FROM {CHUNKS_TABLE} WHERE source = ?", (kind.value,))
            conn.execute(f"DELETE FROM {FILES_TABLE} WHERE source = ?", (kind.value,))
            if kind is SourceKind.FILESYSTEM:
                conn.execute(f"DELETE FROM {FILES_TABLE} WHERE path LIKE ?", (f"{FILESYSTEM_PREFIX}%",))
        return len(ids)

    def get_chunk(self, chunk_id: int) -> StoredChunk | None:
        row = self._conn_or_raise().execute(
            f"""
            SELECT id, path, start_line, end_line, text, source, chunk_date
            FROM {CHUNKS_TABLE} WHERE id = ?
            """,
            (int(chunk_id),),
        ).fetchone()
        if row is None:
            return None
        return StoredChunk(
            id=int(row[0]),
            path=str(row[1]),
            start_line=int(row[2]),
            end_line=int(row[3]),
            text=str(row[4] or ""),
            kind=SourceKind(str(row[5])),
            chunk_date=str(row[6]) if row[6] is not None else None,
        )

    def chunks_for_path(self, path: str) -> list[StoredChunk]:
        chunks = [self.get_chunk(chunk_id) for chunk_id in self.chunk_ids_for_path(path)]
        return [chunk for chunk in chunks if chunk is not None]

    def count_chunks(self, kind: SourceKind | None = None) -> int:
        conn = self._conn_or_raise()
        if kind is None:
            row = conn.execute(f"SELECT COUNT(*) FROM {CHUNKS_TABLE}").fetchone()
        else:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {CHUNKS_TABLE} WHERE source = ?",
                (kind.value,),
            ).fetchone()
        return int(row[0])

    def count_vectors(self) -> int:
        if self.vector_layout() is None:
            return 0
        row = self._conn_or_raise().execute(f"SELECT COUNT(*) FROM {VECTOR_TABLE}").fetchone()
        return int(row[0])

    # ----------------------------------------------------------------- queries

    def nearest(self, vector: list[float], k: int) -> list[tuple[int, float]]:
        """k nearest chunk ids by cosine distance, closest first."""
        with self._lock:
            self.ensure_vectors(len(vector))
            rows = self._conn_or_raise().execute(
                f"""
                SELECT chunk_id, distance
                FROM {VECTOR_TABLE}
                WHERE embedding MATCH ? AND k = ?
                ORDER BY distance
                """,
                (sqlite_vec.serialize_float32(vector), max(1, int(k))),
            ).fetchall()
        return [(int(row[0]), float(row[1])) for row in rows]
