"""Incremental resync of notes and chat logs into the index."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from cowcode_memory.chunking import CHUNK_CHARS, CHUNK_OVERLAP_CHARS, chunk_source
from cowcode_memory.embeddings import Embedder
from cowcode_memory.exceptions import SchemaCorruptionError
from cowcode_memory.logging import get_logger
from cowcode_memory.sources import enumerate_sources, read_source
from cowcode_memory.store import IndexStore

log = get_logger(__name__)

T = TypeVar("T")


@dataclass
class SyncReport:
    """What one sync call changed."""

    upserted: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    unchanged: int = 0
    embed_calls: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.upserted or self.deleted)


def _with_vector_repair(store: IndexStore, operation: Callable[[], T]) -> T:
    """Run a write; on a vector key mismatch rebuild the vector table and retry once."""
    try:
        return operation()
    except SchemaCorruptionError as exc:
        log.warning("Vector key mismatch during sync; rebuilding", reason=exc.reason)
        store.rebuild_vectors(exc.reason)
        return operation()


def sync_sources(
    store: IndexStore,
    embedder: Embedder,
    workspace: Path,
    *,
    chunk_chars: int = CHUNK_CHARS,
    overlap_chars: int = CHUNK_OVERLAP_CHARS,
    max_files: int | None = None,
    on_file: Callable[[str], None] | None = None,
) -> SyncReport:
    """Bring the index in line with the notes and chat logs on disk.

    Paths whose mtime is unchanged are skipped; removed paths are deleted;
    changed paths are re-chunked, embedded one chunk per request and
    swapped in within a single transaction. Embedding errors propagate,
    leaving already processed paths committed.
    """
    report = SyncReport()
    sources = enumerate_sources(workspace)
    stored = store.load_file_mtimes()
    live_paths = {source.relative_path for source in sources}

    to_upsert = [source for source in sources if stored.get(source.relative_path) != source.mtime_ms]
    report.unchanged = len(sources) - len(to_upsert)
    if max_files is not None:
        to_upsert = to_upsert[: max(1, int(max_files))]
    to_delete = [path for path in stored if path not in live_paths]

    for path in to_delete:
        _with_vector_repair(store, lambda: store.delete_path(path))
        report.deleted.append(path)
        log.info("Removed deleted source from index", path=path)

    for source in to_upsert:
        path = source.relative_path
        if on_file is not None:
            on_file(path)
        text = read_source(workspace, path)
        if text is None:
            log.warning("Skipping unreadable source; will retry next sync", path=path)
            report.skipped.append(path)
            continue

        chunks = chunk_source(
            source.kind,
            text,
            path,
            chunk_chars=chunk_chars,
            overlap_chars=overlap_chars,
        )
        vectors: list[list[float]] = []
        for chunk in chunks:
            vectors.extend(embedder.embed([chunk.text]))
            report.embed_calls += 1

        _with_vector_repair(
            store,
            lambda: store.replace_path(path, source.kind, source.mtime_ms, chunks, vectors),
        )
        report.upserted.append(path)
        log.info("Indexed source", path=path, kind=source.kind.value, chunks=len(chunks))

    return report
