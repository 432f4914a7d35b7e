"""Memory index handle: the API the assistant calls into."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from pathlib import Path

from cowcode_memory.chat_log import ChatExchange, append_exchange
from cowcode_memory.chunking import Chunk, format_exchange, infer_chunk_date
from cowcode_memory.config import Config, MemoryConfig
from cowcode_memory.embeddings import Embedder, build_embedder
from cowcode_memory.filesystem import FilesystemIndexOptions, index_filesystem
from cowcode_memory.logging import get_logger
from cowcode_memory.reader import ReadResult, read_file
from cowcode_memory.search import SearchOptions, SearchResult, search_index
from cowcode_memory.sources import SourceKind
from cowcode_memory.store import IndexStore
from cowcode_memory.sync import SyncReport, sync_sources

log = get_logger(__name__)


class MemoryIndex:
    """One workspace + one index database + one embedding provider.

    Construct once and pass it to whoever needs memory; the database
    connection lives as long as the handle.
    """

    def __init__(self, config: MemoryConfig, *, embedder: Embedder | None = None):
        self.config = config
        self.workspace: Path = config.resolved_workspace_path()
        self.embedder = embedder or build_embedder(config.embedding)
        self.store = IndexStore(config.resolved_index_path(), self.embedder)

    def close(self) -> None:
        self.store.close()
        close = getattr(self.embedder, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> MemoryIndex:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def sync(
        self,
        *,
        max_files: int | None = None,
        on_file: Callable[[str], None] | None = None,
    ) -> SyncReport:
        """Incrementally re-index notes and chat logs."""
        self.store.prepare()
        return sync_sources(
            self.store,
            self.embedder,
            self.workspace,
            chunk_chars=self.config.chunking.chunk_chars,
            overlap_chars=self.config.chunking.chunk_overlap_chars,
            max_files=max_files,
            on_file=on_file,
        )

    def search(
        self,
        query: str,
        *,
        max_results: int | None = None,
        min_score: float | None = None,
        date_from: str | date | None = None,
        date_to: str | date | None = None,
    ) -> list[SearchResult]:
        """Sync, then return the chunks closest to ``query``."""
        self.sync()
        defaults = self.config.search
        options = SearchOptions(
            max_results=defaults.max_results if max_results is None else int(max_results),
            min_score=defaults.min_score if min_score is None else float(min_score),
            date_from=date_from,
            date_to=date_to,
        )
        return search_index(self.store, self.embedder, query, options)

    def read_file(
        self,
        rel_path: str,
        from_line: int | None = None,
        lines: int | None = None,
    ) -> ReadResult:
        return read_file(self.workspace, rel_path, from_line, lines)

    def index_chat_exchange(self, exchange: ChatExchange) -> int:
        """Log one exchange and make it searchable right away, without a sync.

        Returns:
            The 1-based line number of the exchange in its transcript.
        """
        path, line_number = append_exchange(self.workspace, exchange)
        text = format_exchange(exchange.user, exchange.assistant)
        self.store.prepare()
        vectors = self.embedder.embed([text])
        chunk = Chunk(
            path=path,
            start_line=line_number,
            end_line=line_number,
            text=text,
            kind=SourceKind.CHAT_LOG,
            chunk_date=infer_chunk_date(path, text),
        )
        self.store.insert_chunks([chunk], vectors)
        log.debug("Indexed chat exchange", path=path, line=line_number)
        return line_number

    def index_chat_exchange_safely(self, exchange: ChatExchange) -> bool:
        """Hot-path variant for message delivery: failures are logged, never raised."""
        try:
            self.index_chat_exchange(exchange)
        except Exception as exc:
            log.warning("Could not save chat exchange to memory", error=str(exc))
            return False
        return True

    def index_filesystem(
        self,
        root: str | Path | None = None,
        *,
        max_depth: int | None = None,
        max_chunks: int | None = None,
        exclude_dirs: list[str] | None = None,
        include_hidden: bool | None = None,
        embed_batch_size: int | None = None,
        on_dir: Callable[[str], None] | None = None,
    ) -> int:
        """Full rebuild of the filesystem source from ``root`` (default: configured root or workspace)."""
        fs_cfg = self.config.filesystem
        options = FilesystemIndexOptions(
            max_depth=fs_cfg.max_depth if max_depth is None else max_depth,
            max_chunks=max_chunks,
            exclude_dirs=list(fs_cfg.exclude_dirs if exclude_dirs is None else exclude_dirs),
            include_hidden=fs_cfg.include_hidden if include_hidden is None else include_hidden,
            embed_batch_size=fs_cfg.embed_batch_size if embed_batch_size is None else embed_batch_size,
            on_dir=on_dir,
        )
        return index_filesystem(
            self.store,
            self.embedder,
            self.workspace,
            root if root is not None else (fs_cfg.root or None),
            options,
        )


def create_memory_index(config: Config | MemoryConfig, *, embedder: Embedder | None = None) -> MemoryIndex | None:
    """Build the memory index handle, or None when memory is disabled."""
    memory_cfg = config.memory if isinstance(config, Config) else config
    if not memory_cfg.enabled:
        return None
    return MemoryIndex(memory_cfg, embedder=embedder)
