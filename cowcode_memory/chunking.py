"""Split sources into line-range-tagged chunks."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date
import json
import os
from pathlib import Path
import re

from cowcode_memory.logging import get_logger
from cowcode_memory.sources import FILESYSTEM_PREFIX, SourceKind

log = get_logger(__name__)

CHUNK_CHARS = 600
CHUNK_OVERLAP_CHARS = 80
# Overlap is expressed in lines; assume ~20 chars per note line.
_CHARS_PER_OVERLAP_LINE = 20

_DATE_IN_PATH = re.compile(r"(\d{4}-\d{2}-\d{2})")
_DATE_IN_NOTE_LINE = re.compile(r"^\s*-\s*(\d{4}-\d{2}-\d{2})[\s:]", re.MULTILINE)


@dataclass(frozen=True)
class Chunk:
    """One unit of indexing before it is assigned a stored id."""

    path: str
    start_line: int
    end_line: int
    text: str
    kind: SourceKind
    chunk_date: str | None = None


def _valid_date(value: str) -> str | None:
    try:
        date.fromisoformat(value)
    except ValueError:
        return None
    return value


def infer_chunk_date(path: str, text: str) -> str | None:
    """YYYY-MM-DD from the path (chat-log/2025-02-20.jsonl, memory/2025-02-20.md)
    or from a "- YYYY-MM-DD:" note line inside the text."""
    from_path = _DATE_IN_PATH.search(path)
    if from_path and _valid_date(from_path.group(1)):
        return from_path.group(1)
    for match in _DATE_IN_NOTE_LINE.finditer(text or ""):
        if _valid_date(match.group(1)):
            return match.group(1)
    return None


def _note_line_date(line: str) -> str | None:
    match = _DATE_IN_NOTE_LINE.match(line)
    if match:
        return _valid_date(match.group(1))
    return None


def chunk_markdown(
    text: str,
    path: str,
    *,
    chunk_chars: int = CHUNK_CHARS,
    overlap_chars: int = CHUNK_OVERLAP_CHARS,
) -> list[Chunk]:
    """Chunk note text into windows of roughly chunk_chars characters.

    Adjacent windows share a few trailing lines of context. A dated note
    entry ("- 2025-02-10: ...") carrying a different date than the window
    so far closes the window, so each chunk keeps a single inferred date.
    """
    lines = text.splitlines()
    path_dated = infer_chunk_date(path, "") is not None
    overlap_lines = max(0, int(overlap_chars) // _CHARS_PER_OVERLAP_LINE)
    chunks: list[Chunk] = []
    start = 0
    while start < len(lines):
        end = start
        used = 0
        window_date: str | None = None
        date_boundary = False
        while end < len(lines) and (used < chunk_chars or end == start):
            line_date = None if path_dated else _note_line_date(lines[end])
            if line_date is not None:
                if window_date is not None and line_date != window_date and end > start:
                    date_boundary = True
                    break
                window_date = window_date or line_date
            used += len(lines[end]) + 1
            end += 1
        segment = "\n".join(lines[start:end])
        if segment.strip():
            chunks.append(
                Chunk(
                    path=path,
                    start_line=start + 1,
                    end_line=end,
                    text=segment,
                    kind=SourceKind.NOTE,
                    chunk_date=infer_chunk_date(path, segment),
                )
            )
        if end >= len(lines):
            break
        if date_boundary:
            start = end
        else:
            start = max(start + 1, end - overlap_lines)
    return chunks


def format_exchange(user: object, assistant: object) -> str:
    """Render one user/assistant pair the way it is indexed and read back."""
    user_text = "" if user is None else str(user).strip()
    assistant_text = "" if assistant is None else str(assistant).strip()
    return f"User: {user_text}\nAssistant: {assistant_text}".strip()


def parse_exchange_line(line: str) -> str | None:
    """Format one JSONL transcript line, or None when it is malformed."""
    try:
        row = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(row, dict):
        return None
    return format_exchange(row.get("user"), row.get("assistant"))


def chunk_chat_log(text: str, path: str) -> list[Chunk]:
    """One chunk per exchange; line numbers count non-blank lines."""
    rows = [line for line in text.splitlines() if line.strip()]
    chunk_date = infer_chunk_date(path, "")
    chunks: list[Chunk] = []
    for idx, line in enumerate(rows, start=1):
        formatted = parse_exchange_line(line)
        if not formatted:
            log.debug("Skipping malformed chat-log line", path=path, line=idx)
            continue
        chunks.append(
            Chunk(
                path=path,
                start_line=idx,
                end_line=idx,
                text=formatted,
                kind=SourceKind.CHAT_LOG,
                chunk_date=chunk_date,
            )
        )
    return chunks


def chunk_source(
    kind: SourceKind,
    text: str,
    path: str,
    *,
    chunk_chars: int = CHUNK_CHARS,
    overlap_chars: int = CHUNK_OVERLAP_CHARS,
) -> list[Chunk]:
    """Pick the chunking strategy for a file-backed source."""
    match kind:
        case SourceKind.NOTE:
            return chunk_markdown(text, path, chunk_chars=chunk_chars, overlap_chars=overlap_chars)
        case SourceKind.CHAT_LOG:
            return chunk_chat_log(text, path)
        case SourceKind.FILESYSTEM:
            raise ValueError("Filesystem sources are chunked by DirectoryBatches, not from file text")
    raise ValueError(f"Unknown source kind: {kind!r}")


def _is_dot_entry(name: str) -> bool:
    return name.startswith(".")


def _never_hidden(name: str) -> bool:
    return False


class DirectoryBatches:
    """Pull-based iterator over batches of per-directory chunks.

    Walks the tree with an explicit stack (pre-order, subdirectories in
    sorted order) and hands out a batch as soon as it holds batch_size
    chunks, so the caller can embed while the walk continues.
    """

    def __init__(
        self,
        root: Path,
        *,
        batch_size: int = 1,
        max_depth: int = 8,
        max_chunks: int | None = None,
        exclude_dirs: Iterable[str] = (),
        is_hidden: Callable[[str], bool] | None = _is_dot_entry,
        rel_prefix: str = "",
        on_dir: Callable[[str], None] | None = None,
    ):
        self.root = Path(root)
        self.batch_size = max(1, int(batch_size))
        self.max_depth = max(1, min(20, int(max_depth)))
        self.max_chunks = None if max_chunks is None else max(1, int(max_chunks))
        self.exclude_dirs = set(exclude_dirs)
        self.is_hidden = is_hidden or _never_hidden
        self.on_dir = on_dir
        self.total_chunks = 0
        self._stack: list[tuple[Path, int, str]] = []
        if self.root.is_dir():
            self._stack.append((self.root, 1, rel_prefix.strip("/")))

    def __iter__(self) -> DirectoryBatches:
        return self

    def __next__(self) -> list[Chunk]:
        batch: list[Chunk] = []
        while len(batch) < self.batch_size and self._stack and not self._cap_reached():
            chunk = self._visit_next()
            if chunk is not None:
                batch.append(chunk)
        if not batch:
            raise StopIteration
        return batch

    def _cap_reached(self) -> bool:
        return self.max_chunks is not None and self.total_chunks >= self.max_chunks

    def _visit_next(self) -> Chunk | None:
        directory, depth, rel_path = self._stack.pop()
        try:
            entries = list(os.scandir(directory))
        except OSError as exc:
            log.debug("Skipping unreadable directory", path=str(directory), error=str(exc))
            return None

        files: list[str] = []
        subdirs: list[str] = []
        for entry in entries:
            if self.is_hidden(entry.name):
                continue
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                continue
            if is_dir:
                if entry.name in self.exclude_dirs:
                    continue
                subdirs.append(entry.name)
            else:
                files.append(entry.name)
        subdirs.sort()
        files.sort()

        listing = [f"{name}/" for name in subdirs] + files
        text = f"Directory: {directory}\nContents: {', '.join(listing) or '(empty)'}"
        chunk = Chunk(
            path=f"{FILESYSTEM_PREFIX}{rel_path}",
            start_line=1,
            end_line=1,
            text=text,
            kind=SourceKind.FILESYSTEM,
        )
        self.total_chunks += 1
        if self.on_dir is not None:
            self.on_dir(str(directory))

        if depth < self.max_depth:
            for name in reversed(subdirs):
                child_rel = f"{rel_path}/{name}" if rel_path else name
                self._stack.append((directory / name, depth + 1, child_rel))
        return chunk
