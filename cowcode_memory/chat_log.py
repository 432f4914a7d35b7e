"""Append-only chat transcripts and dated notes under the workspace."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
from pathlib import Path
import time

from cowcode_memory.sources import CHAT_LOG_DIR, NOTES_DIR


@dataclass
class ChatExchange:
    """One user message and the assistant's reply."""

    user: str
    assistant: str
    timestamp_ms: int | None = None
    jid: str | None = None

    def resolved_timestamp_ms(self) -> int:
        if self.timestamp_ms is None:
            return int(time.time() * 1000)
        return int(self.timestamp_ms)


def _local_date(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d")


def _count_entries(path: Path) -> int:
    with open(path, encoding="utf-8") as f:
        return sum(1 for line in f if line.strip())


def append_exchange(workspace: Path, exchange: ChatExchange) -> tuple[str, int]:
    """Append an exchange to chat-log/YYYY-MM-DD.jsonl.

    Returns:
        The workspace-relative path and the 1-based line number of the
        new entry (blank lines are not counted).
    """
    timestamp_ms = exchange.resolved_timestamp_ms()
    day = _local_date(timestamp_ms)
    chat_dir = Path(workspace) / CHAT_LOG_DIR
    chat_dir.mkdir(parents=True, exist_ok=True)
    file_path = chat_dir / f"{day}.jsonl"
    row = {
        "ts": timestamp_ms,
        "jid": exchange.jid,
        "user": str(exchange.user or "").strip(),
        "assistant": str(exchange.assistant or "").strip(),
    }
    with open(file_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(row, ensure_ascii=False) + "\n")
    return f"{CHAT_LOG_DIR}/{day}.jsonl", _count_entries(file_path)


def append_note(workspace: Path, text: str, when: datetime | None = None) -> str | None:
    """Append one line to memory/YYYY-MM-DD.md; the next sync indexes it.

    Returns the relative path written, or None when text is blank.
    """
    line = str(text or "").strip()
    if not line:
        return None
    day = (when or datetime.now()).strftime("%Y-%m-%d")
    notes_dir = Path(workspace) / NOTES_DIR
    notes_dir.mkdir(parents=True, exist_ok=True)
    with open(notes_dir / f"{day}.md", "a", encoding="utf-8") as f:
        f.write(line + "\n")
    return f"{NOTES_DIR}/{day}.md"
