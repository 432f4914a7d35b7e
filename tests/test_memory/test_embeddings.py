import httpx
import pytest

from cowcode_memory.config import EmbeddingConfig
from cowcode_memory.embeddings import (
    TRUNCATION_MARKER,
    EmbeddingClient,
    LocalHashEmbedder,
    build_embedder,
    is_context_length_message,
    truncate_for_embedding,
)
from cowcode_memory.exceptions import ContextLengthError, EmbeddingServiceError


class _FakeResponse:
    def __init__(self, status_code: int = 200, payload: dict | None = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> dict:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _FakeClient:
    """Embeds each input as [len(text), 1.0]; rejects inputs longer than max_chars."""

    def __init__(self, max_chars: int = 10_000, status_code: int = 200, error_text: str = ""):
        self.max_chars = max_chars
        self.status_code = status_code
        self.error_text = error_text
        self.calls: list[list[str]] = []
        self.headers: list[dict] = []

    def post(self, url: str, json: dict, headers: dict) -> _FakeResponse:
        raw = json["input"]
        texts = [raw] if isinstance(raw, str) else list(raw)
        self.calls.append(texts)
        self.headers.append(headers)
        if self.status_code >= 400:
            return _FakeResponse(status_code=self.status_code, text=self.error_text)
        if sum(len(t) for t in texts) > self.max_chars:
            return _FakeResponse(
                status_code=400,
                text="This model's maximum context length is 8192 tokens",
            )
        data = [{"index": idx, "embedding": [float(len(t)), 1.0]} for idx, t in enumerate(texts)]
        return _FakeResponse(payload={"data": list(reversed(data))})


class _BrokenClient:
    def post(self, url: str, json: dict, headers: dict) -> _FakeResponse:
        raise httpx.ConnectError("connection refused")


def _client(fake, **kwargs) -> EmbeddingClient:
    return EmbeddingClient(base_url="http://embed.local/v1/", api_key="sk-test", client=fake, **kwargs)


def test_embed_returns_vectors_in_input_order():
    fake = _FakeClient()
    client = _client(fake)

    vectors = client.embed(["a", "bbb", "cc"])

    assert vectors == [[1.0, 1.0], [3.0, 1.0], [2.0, 1.0]]
    assert client.request_count == 1
    assert fake.headers[0]["Authorization"] == "Bearer sk-test"


def test_single_input_is_sent_unwrapped_and_empty_list_makes_no_request():
    fake = _FakeClient()
    client = _client(fake)

    assert client.embed([]) == []
    client.embed(["solo"])

    assert client.request_count == 1
    assert fake.calls == [["solo"]]


def test_context_length_error_splits_batch_until_it_fits():
    fake = _FakeClient(max_chars=10)
    client = _client(fake)
    texts = ["aaaaa", "bbbbb", "ccccc", "ddddd"]

    vectors = client.embed(texts)

    assert [v[0] for v in vectors] == [5.0, 5.0, 5.0, 5.0]
    assert fake.calls[0] == texts
    assert ["aaaaa", "bbbbb"] in fake.calls
    assert ["ccccc", "ddddd"] in fake.calls


def test_single_text_too_long_is_truncated_and_retried_once():
    fake = _FakeClient(max_chars=50)
    client = _client(fake, truncate_chars=20)

    vectors = client.embed(["x" * 100])

    assert len(fake.calls) == 2
    assert fake.calls[1][0] == "x" * 20 + TRUNCATION_MARKER
    assert vectors == [[float(20 + len(TRUNCATION_MARKER)), 1.0]]


def test_truncated_text_still_too_long_raises():
    fake = _FakeClient(max_chars=5)
    client = _client(fake, truncate_chars=20)

    with pytest.raises(ContextLengthError):
        client.embed(["y" * 100])
    assert len(fake.calls) == 2


def test_rate_limit_is_not_treated_as_context_length():
    fake = _FakeClient(status_code=429, error_text="Rate limit exceeded, try again")
    client = _client(fake)

    with pytest.raises(EmbeddingServiceError) as excinfo:
        client.embed(["a", "b"])

    assert not isinstance(excinfo.value, ContextLengthError)
    assert excinfo.value.status_code == 429
    assert len(fake.calls) == 1


def test_other_http_errors_surface_with_status():
    fake = _FakeClient(status_code=500, error_text="internal error")
    client = _client(fake)

    with pytest.raises(EmbeddingServiceError) as excinfo:
        client.embed(["a"])

    assert excinfo.value.status_code == 500
    assert "internal error" in str(excinfo.value)


def test_network_failure_becomes_embedding_service_error():
    client = _client(_BrokenClient())

    with pytest.raises(EmbeddingServiceError):
        client.embed(["a"])


def test_not_needed_api_key_sends_no_authorization_header():
    fake = _FakeClient()
    client = EmbeddingClient(base_url="http://localhost:11434/v1", api_key="not-needed", client=fake)

    client.embed(["a"])

    assert "Authorization" not in fake.headers[0]


def test_context_length_message_detection():
    assert is_context_length_message("This model's maximum context length is 8192 tokens")
    assert is_context_length_message("Please reduce your prompt")
    assert not is_context_length_message("invalid api key")


def test_truncate_for_embedding_marks_cut():
    assert truncate_for_embedding("short", 100) == "short"
    assert truncate_for_embedding("abcdef", 3) == "abc" + TRUNCATION_MARKER


def test_local_hash_embedder_is_deterministic_and_normalized():
    embedder = LocalHashEmbedder(dimensions=128)

    first, second, empty = embedder.embed(["dark mode please", "dark mode please", ""])

    assert first == second
    assert len(first) == 128
    assert abs(sum(v * v for v in first) - 1.0) < 1e-9
    assert abs(sum(v * v for v in empty) - 1.0) < 1e-9


def test_build_embedder_follows_provider():
    local = build_embedder(EmbeddingConfig(provider="local_hash", local_dimensions=64))
    remote = build_embedder(EmbeddingConfig(provider="openai", api_key="sk-test"))
    try:
        assert isinstance(local, LocalHashEmbedder)
        assert isinstance(remote, EmbeddingClient)
        assert remote.model == "text-embedding-3-small"
    finally:
        remote.close()
