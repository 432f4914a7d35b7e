"""Read back indexed notes and chat logs by workspace-relative path."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from cowcode_memory.chunking import parse_exchange_line
from cowcode_memory.exceptions import PathTraversalError, SourceReadError, UnsupportedPathError
from cowcode_memory.sources import SourceKind


@dataclass
class ReadResult:
    path: str
    text: str


def normalize_relative_path(rel_path: str) -> str:
    """Normalize separators; reject absolute paths and anything containing '..'."""
    normalized = str(rel_path or "").replace("\\", "/").strip()
    if (
        not normalized
        or normalized.startswith("/")
        or normalized.startswith("~")
        or (len(normalized) > 1 and normalized[1] == ":")
        or ".." in normalized
    ):
        raise PathTraversalError(str(rel_path))
    return normalized


def _read_text(path: Path, rel_path: str) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise SourceReadError(rel_path, str(exc)) from exc


def read_file(
    workspace: Path,
    rel_path: str,
    from_line: int | None = None,
    lines: int | None = None,
) -> ReadResult:
    """Return a note or chat log, whole or as a 1-based line range.

    Chat-log lines are rendered as "User: ...\\nAssistant: ..." blocks
    separated by blank lines.
    """
    normalized = normalize_relative_path(rel_path)
    root = Path(workspace).resolve()
    resolved = (root / normalized).resolve()
    if not resolved.is_relative_to(root):
        raise PathTraversalError(str(rel_path))

    match SourceKind.for_path(normalized):
        case SourceKind.CHAT_LOG:
            content = _read_text(resolved, normalized)
            rows = [line for line in content.splitlines() if line.strip()]
            start = max(0, (from_line or 1) - 1)
            count = max(1, lines if lines is not None else len(rows))
            blocks = [parse_exchange_line(line) or line for line in rows[start : start + count]]
            return ReadResult(path=normalized, text="\n\n".join(blocks))
        case SourceKind.NOTE:
            content = _read_text(resolved, normalized)
            if from_line is None and lines is None:
                return ReadResult(path=normalized, text=content)
            all_lines = content.splitlines()
            start = max(1, from_line or 1) - 1
            count = max(1, lines if lines is not None else len(all_lines))
            return ReadResult(path=normalized, text="\n".join(all_lines[start : start + count]))
        case _:
            raise UnsupportedPathError(normalized)
