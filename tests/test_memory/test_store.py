from pathlib import Path
import sqlite3

import pytest
import sqlite_vec

from cowcode_memory.chunking import Chunk
from cowcode_memory.embeddings import LocalHashEmbedder
from cowcode_memory.exceptions import SchemaCorruptionError
from cowcode_memory.sources import SourceKind
from cowcode_memory.store import VECTOR_TABLE, IndexStore, is_key_mismatch_message


class CountingEmbedder(LocalHashEmbedder):
    def __init__(self, dimensions: int = 64):
        super().__init__(dimensions=dimensions)
        self.texts_embedded = 0

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.texts_embedded += len(texts)
        return super().embed(texts)


def _note_chunks(path: str, *texts: str) -> list[Chunk]:
    return [
        Chunk(path=path, start_line=idx, end_line=idx, text=text, kind=SourceKind.NOTE)
        for idx, text in enumerate(texts, start=1)
    ]


def _seed(db_path: Path, embedder: LocalHashEmbedder) -> list[Chunk]:
    chunks = _note_chunks("MEMORY.md", "likes green tea", "works on the billing service", "lives in Zagreb")
    store = IndexStore(db_path, embedder)
    try:
        store.replace_path("MEMORY.md", SourceKind.NOTE, 1000, chunks, embedder.embed([c.text for c in chunks]))
    finally:
        store.close()
    return chunks


def _raw_connection(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    return conn


def test_vector_table_is_created_lazily_with_cosine_layout(tmp_path: Path):
    embedder = LocalHashEmbedder(dimensions=64)
    store = IndexStore(tmp_path / "index.db", embedder)
    try:
        assert store.vector_layout() is None
        assert store.dims is None

        chunks = _note_chunks("MEMORY.md", "hello world")
        store.insert_chunks(chunks, embedder.embed(["hello world"]))

        layout = store.vector_layout()
        assert layout is not None
        assert layout.compatible
        assert layout.dims == 64
        assert store.count_chunks() == store.count_vectors() == 1
    finally:
        store.close()


def test_replace_path_swaps_chunks_and_records_mtime(tmp_path: Path):
    embedder = LocalHashEmbedder(dimensions=64)
    db_path = tmp_path / "index.db"
    _seed(db_path, embedder)

    store = IndexStore(db_path, embedder)
    try:
        replacement = _note_chunks("MEMORY.md", "only one line now")
        store.replace_path("MEMORY.md", SourceKind.NOTE, 2000, replacement, embedder.embed(["only one line now"]))

        stored = store.chunks_for_path("MEMORY.md")
        assert [c.text for c in stored] == ["only one line now"]
        assert store.load_file_mtimes() == {"MEMORY.md": 2000}
        assert store.count_vectors() == 1
    finally:
        store.close()


def test_replace_path_rejects_mismatched_vector_count(tmp_path: Path):
    embedder = LocalHashEmbedder(dimensions=64)
    store = IndexStore(tmp_path / "index.db", embedder)
    try:
        with pytest.raises(ValueError):
            store.replace_path("MEMORY.md", SourceKind.NOTE, 1, _note_chunks("MEMORY.md", "a", "b"), [[1.0] * 64])
        assert store.count_chunks() == 0
    finally:
        store.close()


def test_delete_path_removes_chunks_vectors_and_files_row(tmp_path: Path):
    embedder = LocalHashEmbedder(dimensions=64)
    db_path = tmp_path / "index.db"
    _seed(db_path, embedder)

    store = IndexStore(db_path, embedder)
    try:
        store.delete_path("MEMORY.md")

        assert store.count_chunks() == 0
        assert store.count_vectors() == 0
        assert store.load_file_mtimes() == {}
    finally:
        store.close()


@pytest.mark.parametrize(
    "legacy_sql",
    [
        f"CREATE VIRTUAL TABLE {VECTOR_TABLE} USING vec0(chunk_id text primary key, embedding float[64])",
        f"CREATE VIRTUAL TABLE {VECTOR_TABLE} USING vec0(embedding float[64])",
    ],
)
def test_legacy_vector_table_is_rebuilt_with_one_vector_per_chunk(tmp_path: Path, legacy_sql: str):
    db_path = tmp_path / "index.db"
    chunks = _seed(db_path, LocalHashEmbedder(dimensions=64))

    conn = _raw_connection(db_path)
    try:
        conn.execute(f"DROP TABLE {VECTOR_TABLE}")
        conn.execute(legacy_sql)
        conn.commit()
    finally:
        conn.close()

    embedder = CountingEmbedder(dimensions=64)
    store = IndexStore(db_path, embedder)
    try:
        assert not store.vector_layout().compatible
        store.prepare()

        assert store.vector_layout().compatible
        assert store.count_vectors() == len(chunks)
        assert embedder.texts_embedded == len(chunks)

        query = embedder.embed(["works on the billing service"])[0]
        best_id, distance = store.nearest(query, 1)[0]
        assert store.get_chunk(best_id).text == "works on the billing service"
        assert distance < 0.01
    finally:
        store.close()


def test_missing_vector_entry_triggers_rebuild(tmp_path: Path):
    db_path = tmp_path / "index.db"
    chunks = _seed(db_path, LocalHashEmbedder(dimensions=64))

    conn = _raw_connection(db_path)
    try:
        first_id = conn.execute("SELECT MIN(id) FROM chunks").fetchone()[0]
        conn.execute(f"DELETE FROM {VECTOR_TABLE} WHERE chunk_id = ?", (first_id,))
        conn.commit()
    finally:
        conn.close()

    store = IndexStore(db_path, LocalHashEmbedder(dimensions=64))
    try:
        store.prepare()
        assert store.count_vectors() == len(chunks)
    finally:
        store.close()


def test_dimension_change_rebuilds_vectors(tmp_path: Path):
    db_path = tmp_path / "index.db"
    chunks = _seed(db_path, LocalHashEmbedder(dimensions=64))

    wider = CountingEmbedder(dimensions=128)
    store = IndexStore(db_path, wider)
    try:
        store.prepare()
        assert wider.texts_embedded == 0

        store.nearest(wider.embed(["lives in Zagreb"])[0], 3)

        assert store.vector_layout().dims == 128
        assert store.dims == 128
        assert store.count_vectors() == len(chunks)
    finally:
        store.close()


def test_rebuild_failure_keeps_previous_vector_table(tmp_path: Path):
    db_path = tmp_path / "index.db"
    _seed(db_path, LocalHashEmbedder(dimensions=64))

    class FailingEmbedder(LocalHashEmbedder):
        def embed(self, texts: list[str]) -> list[list[float]]:
            raise RuntimeError("embedding service down")

    store = IndexStore(db_path, FailingEmbedder(dimensions=64))
    try:
        with pytest.raises(RuntimeError):
            store.rebuild_vectors("manual")
        assert store.vector_layout().dims == 64
        assert store.count_vectors() == 3
    finally:
        store.close()


def test_incompatible_table_blocks_vector_delete(tmp_path: Path):
    db_path = tmp_path / "index.db"
    _seed(db_path, LocalHashEmbedder(dimensions=64))

    conn = _raw_connection(db_path)
    try:
        conn.execute(f"DROP TABLE {VECTOR_TABLE}")
        conn.execute(f"CREATE VIRTUAL TABLE {VECTOR_TABLE} USING vec0(chunk_id text primary key, embedding float[64])")
        conn.commit()
    finally:
        conn.close()

    store = IndexStore(db_path, LocalHashEmbedder(dimensions=64))
    try:
        with pytest.raises(SchemaCorruptionError):
            store.delete_path("MEMORY.md")
        assert store.count_chunks() == 3
    finally:
        store.close()


def test_backfill_fills_dates_for_notes_but_not_filesystem_rows(tmp_path: Path):
    embedder = LocalHashEmbedder(dimensions=64)
    store = IndexStore(tmp_path / "index.db", embedder)
    try:
        chunks = [
            Chunk(path="memory/2025-02-20.md", start_line=1, end_line=1, text="standup notes", kind=SourceKind.NOTE),
            Chunk(path="filesystem/2025-02-20", start_line=1, end_line=1, text="Directory: x", kind=SourceKind.FILESYSTEM),
        ]
        ids = store.insert_chunks(chunks, embedder.embed([c.text for c in chunks]))

        assert store.backfill_chunk_dates() == 1
        assert store.get_chunk(ids[0]).chunk_date == "2025-02-20"
        assert store.get_chunk(ids[1]).chunk_date is None
        assert store.backfill_chunk_dates() == 0
    finally:
        store.close()


def test_delete_source_only_touches_that_kind(tmp_path: Path):
    embedder = LocalHashEmbedder(dimensions=64)
    store = IndexStore(tmp_path / "index.db", embedder)
    try:
        notes = _note_chunks("MEMORY.md", "note text")
        dirs = [Chunk(path="filesystem/src", start_line=1, end_line=1, text="Directory: src", kind=SourceKind.FILESYSTEM)]
        store.replace_path("MEMORY.md", SourceKind.NOTE, 1, notes, embedder.embed(["note text"]))
        store.insert_chunks(dirs, embedder.embed(["Directory: src"]))
        store.set_file_mtime("filesystem/src", 5, SourceKind.FILESYSTEM)

        assert store.delete_source(SourceKind.FILESYSTEM) == 1
        assert store.count_chunks(SourceKind.NOTE) == 1
        assert store.count_chunks(SourceKind.FILESYSTEM) == 0
        assert store.count_vectors() == 1
        assert store.load_file_mtimes() == {"MEMORY.md": 1}
    finally:
        store.close()


def test_key_mismatch_message_detection():
    assert is_key_mismatch_message("Datatype mismatch")
    assert is_key_mismatch_message(f"UNIQUE constraint failed on {VECTOR_TABLE} primary key")
    assert not is_key_mismatch_message("no such table: chunks")
