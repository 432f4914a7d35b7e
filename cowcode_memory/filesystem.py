"""Full reindex of a directory tree as per-directory chunks."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
import time

from cowcode_memory.chunking import DirectoryBatches
from cowcode_memory.config import DEFAULT_FILESYSTEM_EXCLUDE_DIRS
from cowcode_memory.embeddings import Embedder
from cowcode_memory.logging import get_logger
from cowcode_memory.sources import SourceKind
from cowcode_memory.store import IndexStore

log = get_logger(__name__)


@dataclass
class FilesystemIndexOptions:
    """Walk limits and batching for one filesystem indexing run."""

    max_depth: int = 8
    max_chunks: int | None = None
    exclude_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_FILESYSTEM_EXCLUDE_DIRS))
    include_hidden: bool = False
    embed_batch_size: int = 1
    on_dir: Callable[[str], None] | None = None


def resolve_root(workspace: Path, root: str | Path | None) -> tuple[Path, str]:
    """Absolute walk root and the prefix used for stored paths."""
    raw = str(root or "").strip()
    candidate = Path(raw).expanduser() if raw else workspace
    if not candidate.is_absolute():
        candidate = workspace / candidate
    resolved = candidate.resolve()
    try:
        rel_prefix = resolved.relative_to(workspace.resolve()).as_posix()
    except ValueError:
        rel_prefix = ""
    return resolved, "" if rel_prefix == "." else rel_prefix


def index_filesystem(
    store: IndexStore,
    embedder: Embedder,
    workspace: Path,
    root: str | Path | None = None,
    options: FilesystemIndexOptions | None = None,
) -> int:
    """Replace all filesystem chunks with a fresh walk of ``root``.

    Batches are embedded as the walk produces them, so the first
    directories become searchable before the walk is finished.

    Returns:
        Number of directory chunks indexed.
    """
    opts = options or FilesystemIndexOptions()
    resolved_root, rel_prefix = resolve_root(workspace, root)

    store.prepare()
    removed = store.delete_source(SourceKind.FILESYSTEM)
    if removed:
        log.info("Cleared previous filesystem chunks", removed=removed)

    batches = DirectoryBatches(
        resolved_root,
        batch_size=opts.embed_batch_size,
        max_depth=opts.max_depth,
        max_chunks=opts.max_chunks,
        exclude_dirs=opts.exclude_dirs,
        is_hidden=None if opts.include_hidden else (lambda name: name.startswith(".")),
        rel_prefix=rel_prefix,
        on_dir=opts.on_dir,
    )

    total = 0
    for number, batch in enumerate(batches, start=1):
        log.debug("Embedding directory batch", batch=number, chunks=len(batch))
        vectors = embedder.embed([chunk.text for chunk in batch])
        store.insert_chunks(batch, vectors)
        now_ms = int(time.time() * 1000)
        for chunk in batch:
            store.set_file_mtime(chunk.path, now_ms, SourceKind.FILESYSTEM)
        total += len(batch)

    if total == 0:
        log.info("No directory chunks found", root=str(resolved_root))
    else:
        log.info("Indexed filesystem", root=str(resolved_root), chunks=total)
    return total
