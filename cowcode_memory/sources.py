"""Indexable memory sources: notes, chat transcripts and filesystem trees."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from cowcode_memory.logging import get_logger

log = get_logger(__name__)

CHAT_LOG_DIR = "chat-log"
PRIVATE_CHAT_DIR = "private"
NOTES_DIR = "memory"
ROOT_NOTE_NAMES = ("MEMORY.md", "memory.md")
FILESYSTEM_PREFIX = "filesystem/"


class SourceKind(Enum):
    """Kind of source a chunk came from; the value is the persisted tag."""

    NOTE = "memory"
    CHAT_LOG = "chat"
    FILESYSTEM = "filesystem"

    @classmethod
    def for_path(cls, rel_path: str) -> SourceKind | None:
        """Classify a workspace-relative path, or None when it is not a memory source."""
        if rel_path.startswith(FILESYSTEM_PREFIX):
            return cls.FILESYSTEM
        if rel_path.startswith(f"{CHAT_LOG_DIR}/") and rel_path.endswith(".jsonl"):
            return cls.CHAT_LOG
        if rel_path.endswith(".md"):
            return cls.NOTE
        return None


@dataclass(frozen=True)
class SourceDescriptor:
    """One indexable file and its modification time, used for change detection."""

    relative_path: str
    kind: SourceKind
    mtime_ms: int


def _mtime_ms(path: Path) -> int | None:
    try:
        stat = path.stat()
    except OSError as exc:
        log.debug("Skipping vanished source", path=str(path), error=str(exc))
        return None
    if not path.is_file():
        return None
    return int(stat.st_mtime_ns // 1_000_000)


def list_note_files(workspace: Path) -> list[SourceDescriptor]:
    """MEMORY.md / memory.md at the root plus memory/*.md."""
    found: list[SourceDescriptor] = []
    for name in ROOT_NOTE_NAMES:
        candidate = workspace / name
        if not candidate.exists():
            continue
        mtime = _mtime_ms(candidate)
        if mtime is not None:
            found.append(SourceDescriptor(name, SourceKind.NOTE, mtime))

    notes_dir = workspace / NOTES_DIR
    if notes_dir.is_dir():
        for entry in sorted(notes_dir.iterdir()):
            if entry.suffix != ".md":
                continue
            mtime = _mtime_ms(entry)
            if mtime is not None:
                found.append(SourceDescriptor(f"{NOTES_DIR}/{entry.name}", SourceKind.NOTE, mtime))
    return found


def list_chat_log_files(workspace: Path) -> list[SourceDescriptor]:
    """chat-log/*.jsonl plus chat-log/private/*.jsonl."""
    found: list[SourceDescriptor] = []
    chat_dir = workspace / CHAT_LOG_DIR
    if not chat_dir.is_dir():
        return found
    for entry in sorted(chat_dir.iterdir()):
        if entry.suffix == ".jsonl":
            mtime = _mtime_ms(entry)
            if mtime is not None:
                found.append(SourceDescriptor(f"{CHAT_LOG_DIR}/{entry.name}", SourceKind.CHAT_LOG, mtime))
        elif entry.name == PRIVATE_CHAT_DIR and entry.is_dir():
            for sub in sorted(entry.iterdir()):
                if sub.suffix != ".jsonl":
                    continue
                mtime = _mtime_ms(sub)
                if mtime is not None:
                    found.append(
                        SourceDescriptor(
                            f"{CHAT_LOG_DIR}/{PRIVATE_CHAT_DIR}/{sub.name}",
                            SourceKind.CHAT_LOG,
                            mtime,
                        )
                    )
    return found


def enumerate_sources(workspace: Path) -> list[SourceDescriptor]:
    """All notes and chat logs currently present under the workspace."""
    if not workspace.is_dir():
        return []
    return [*list_note_files(workspace), *list_chat_log_files(workspace)]


def read_source(workspace: Path, rel_path: str) -> str | None:
    """Read a source file as UTF-8, or None if it vanished or is unreadable.

    Callers decide how to report a None result.
    """
    try:
        return (workspace / rel_path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
