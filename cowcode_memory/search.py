"""Semantic search over the memory index."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from cowcode_memory.embeddings import Embedder
from cowcode_memory.logging import get_logger
from cowcode_memory.store import IndexStore

log = get_logger(__name__)

SNIPPET_MAX_CHARS = 700
DATE_FILTER_HEADROOM = 5
DATE_FILTER_MAX_CANDIDATES = 100


@dataclass
class SearchOptions:
    max_results: int = 6
    min_score: float = 0.0
    date_from: str | date | None = None
    date_to: str | date | None = None


@dataclass
class SearchResult:
    """One search hit."""

    path: str
    start_line: int
    end_line: int
    snippet: str
    score: float


def normalize_date_bound(value: str | date | None) -> str | None:
    """Coerce a date bound to YYYY-MM-DD; blank means unbounded."""
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()[:10]
    raw = str(value).strip()
    if not raw:
        return None
    return date.fromisoformat(raw[:10]).isoformat()


def distance_to_score(distance: float) -> float:
    """Map cosine distance in [0, 2] onto a similarity score in [0, 1]."""
    return max(0.0, min(1.0, 1.0 - float(distance) / 2.0))


def make_snippet(text: str, max_chars: int = SNIPPET_MAX_CHARS) -> str:
    text = text or ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "…"


def search_index(
    store: IndexStore,
    embedder: Embedder,
    query: str,
    options: SearchOptions | None = None,
) -> list[SearchResult]:
    """Nearest chunks to ``query``, best first.

    With a date range, more neighbours are fetched up front because
    undated and out-of-range chunks are dropped after retrieval.
    """
    opts = options or SearchOptions()
    cleaned = str(query or "").strip()
    if not cleaned:
        return []
    max_results = max(1, int(opts.max_results))
    date_from = normalize_date_bound(opts.date_from)
    date_to = normalize_date_bound(opts.date_to)
    has_date_filter = bool(date_from or date_to)

    vectors = embedder.embed([cleaned])
    if not vectors or not vectors[0]:
        return []

    limit = max_results
    if has_date_filter:
        limit = max(max_results, min(DATE_FILTER_MAX_CANDIDATES, max_results * DATE_FILTER_HEADROOM))
    candidates = store.nearest(vectors[0], limit)

    scored: list[tuple[float, int, SearchResult]] = []
    for rank, (chunk_id, distance) in enumerate(candidates):
        score = distance_to_score(distance)
        if score < opts.min_score:
            continue
        chunk = store.get_chunk(chunk_id)
        if chunk is None:
            continue
        if has_date_filter:
            if chunk.chunk_date is None:
                continue
            if date_from and chunk.chunk_date < date_from:
                continue
            if date_to and chunk.chunk_date > date_to:
                continue
        scored.append(
            (
                score,
                rank,
                SearchResult(
                    path=chunk.path,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    snippet=make_snippet(chunk.text),
                    score=score,
                ),
            )
        )

    scored.sort(key=lambda item: (-item[0], item[1]))
    results = [item[2] for item in scored[:max_results]]
    log.debug("Memory search", query=cleaned, candidates=len(candidates), results=len(results))
    return results
