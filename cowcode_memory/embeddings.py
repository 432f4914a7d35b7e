"""Embedding providers: OpenAI-compatible HTTP client and an offline hash embedder."""

from __future__ import annotations

from collections.abc import Iterable
import hashlib
import math
import re
from typing import Any, Protocol

import httpx

from cowcode_memory.config import EmbeddingConfig
from cowcode_memory.exceptions import ConfigurationError, ContextLengthError, EmbeddingServiceError
from cowcode_memory.logging import get_logger

log = get_logger(__name__)

TRUNCATION_MARKER = "\n…[truncated]"
_CONTEXT_LENGTH_PATTERN = re.compile(
    r"maximum context length|reduce your prompt|context length|8192 tokens|exceeded|too long",
    re.IGNORECASE,
)


class Embedder(Protocol):
    model: str

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per text, in input order."""


def is_context_length_message(message: str) -> bool:
    return bool(_CONTEXT_LENGTH_PATTERN.search(message or ""))


def truncate_for_embedding(text: str, max_chars: int) -> str:
    """Cut text to max_chars and mark the cut."""
    limit = max(1, int(max_chars))
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def _normalize_embedding(values: Iterable[float]) -> list[float]:
    vector = [float(v) if isinstance(v, (float, int)) and math.isfinite(float(v)) else 0.0 for v in values]
    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 1e-12:
        return vector
    return [v / norm for v in vector]


def _tokenize(text: str) -> list[str]:
    return [token for token in re.findall(r"[\w]+", text.lower()) if token]


class LocalHashEmbedder:
    """Deterministic signed bag-of-words embedding; no network needed."""

    provider_id = "local_hash"

    def __init__(self, dimensions: int = 256):
        self._dimensions = max(64, int(dimensions))
        self.model = f"sha1-bow-{self._dimensions}"

    def embed(self, texts: list[str]) -> list[list[float]]:
        embeddings: list[list[float]] = []
        for text in texts:
            bucket = [0.0] * self._dimensions
            for token in _tokenize(text):
                digest = hashlib.sha1(token.encode("utf-8", errors="ignore")).digest()
                idx = int.from_bytes(digest[:4], byteorder="big", signed=False) % self._dimensions
                sign = -1.0 if digest[4] % 2 else 1.0
                bucket[idx] += sign
            if not any(bucket):
                # Keep empty texts representable under cosine distance.
                bucket[0] = 1.0
            embeddings.append(_normalize_embedding(bucket))
        return embeddings


class EmbeddingClient:
    """Client for an OpenAI-compatible ``/embeddings`` endpoint.

    Batches that hit the model's context length are split in half until
    they fit; a single text that is still too long is truncated and
    retried once. Other failures raise EmbeddingServiceError.
    """

    provider_id = "openai"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        model: str = "text-embedding-3-small",
        timeout_seconds: int = 60,
        truncate_chars: int = 8000,
        client: httpx.Client | Any | None = None,
    ):
        self.base_url = str(base_url or "").strip().rstrip("/")
        if not self.base_url:
            raise ConfigurationError("Embedding base_url must be configured")
        self.model = str(model or "").strip() or "text-embedding-3-small"
        self._api_key = str(api_key or "").strip()
        self.truncate_chars = max(1, int(truncate_chars))
        self._client = client or httpx.Client(timeout=max(3, int(timeout_seconds)))
        self.request_count = 0

    def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return self._embed_adaptive(list(texts))

    def _embed_adaptive(self, texts: list[str]) -> list[list[float]]:
        try:
            return self._request(texts)
        except ContextLengthError as exc:
            if len(texts) > 1:
                mid = (len(texts) + 1) // 2
                log.debug("Embedding batch too long; splitting", size=len(texts), error=str(exc))
                return self._embed_adaptive(texts[:mid]) + self._embed_adaptive(texts[mid:])
            text = texts[0]
            limit = self.truncate_chars if len(text) > self.truncate_chars else max(1, len(text) // 2)
            log.warning("Embedding input too long; truncating", chars=len(text), limit=limit)
            return self._request([truncate_for_embedding(text, limit)])

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key and self._api_key != "not-needed":
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _request(self, texts: list[str]) -> list[list[float]]:
        payload = {
            "model": self.model,
            "input": texts[0] if len(texts) == 1 else texts,
        }
        self.request_count += 1
        try:
            response = self._client.post(
                f"{self.base_url}/embeddings",
                json=payload,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise EmbeddingServiceError(f"Embeddings API request failed: {exc}") from exc

        if response.status_code >= 400:
            body = str(response.text or "")[:500]
            message = f"Embeddings API failed {response.status_code}: {body}"
            if response.status_code != 429 and is_context_length_message(body):
                raise ContextLengthError(message, status_code=response.status_code)
            raise EmbeddingServiceError(message, status_code=response.status_code)

        try:
            data = response.json().get("data")
        except (ValueError, AttributeError) as exc:
            raise EmbeddingServiceError("Embeddings API returned invalid JSON") from exc
        if not isinstance(data, list):
            raise EmbeddingServiceError("Embeddings API response missing data array")
        if len(data) != len(texts):
            raise EmbeddingServiceError(
                f"Embeddings API returned {len(data)} vectors for {len(texts)} inputs"
            )
        if all(isinstance(row, dict) and isinstance(row.get("index"), int) for row in data):
            data = sorted(data, key=lambda row: row["index"])

        vectors: list[list[float]] = []
        for idx, row in enumerate(data):
            embedding = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingServiceError(f"Embedding {idx} is not a list")
            vectors.append([float(v) for v in embedding])
        return vectors


def build_embedder(cfg: EmbeddingConfig) -> Embedder:
    """Create the embedding provider selected in configuration."""
    match cfg.provider:
        case "local_hash":
            return LocalHashEmbedder(dimensions=cfg.local_dimensions)
        case "openai":
            return EmbeddingClient(
                base_url=cfg.base_url,
                api_key=cfg.api_key,
                model=cfg.model,
                timeout_seconds=cfg.timeout_seconds,
                truncate_chars=cfg.truncate_chars,
            )
    raise ConfigurationError(f"Unknown embedding provider: {cfg.provider!r}")
