import math

import httpx
import pytest

from lumen_api.config import get_settings
from lumen_api.errors import EmbeddingFailure
from lumen_api.services.rag.embedder import HashEmbeddingClient, deterministic_embedding
from lumen_api.services.rag.embedding_client import (
    OpenAICompatibleEmbeddingClient,
    get_embedding_client,
)


class _FakeResponse:
    def __init__(self, payload: dict[str, object], *, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "http://localhost:11434/v1/embeddings")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("request failed", request=request, response=response)

    def json(self) -> dict[str, object]:
        return self._payload


def test_embedding_client_parses_vectors(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_post(
        url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float
    ) -> _FakeResponse:
        captured["url"] = url
        captured["json"] = json
        captured["headers"] = headers
        captured["timeout"] = timeout
        return _FakeResponse(
            {
                "data": [
                    {"embedding": [1, 2, 3]},
                    {"embedding": [4.5, 5.0, 6.25]},
                ]
            }
        )

    monkeypatch.setattr("lumen_api.services.rag.embedding_client.httpx.post", fake_post)

    client = OpenAICompatibleEmbeddingClient(
        base_url="http://localhost:11434/v1/",
        model="nomic-embed-text",
        api_key="secret",
        timeout_seconds=12,
    )
    vectors = client.embed_texts(["first", "second"])

    assert vectors == [[1.0, 2.0, 3.0], [4.5, 5.0, 6.25]]
    assert captured["url"] == "http://localhost:11434/v1/embeddings"
    assert captured["json"] == {"model": "nomic-embed-text", "input": ["first", "second"]}
    assert captured["headers"] == {"Authorization": "Bearer secret"}
    assert captured["timeout"] == 12


def test_embedding_client_orders_vectors_by_index(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, *, json, headers, timeout) -> _FakeResponse:
        del url, headers, timeout
        return _FakeResponse(
            {
                "data": [
                    {"index": 1, "embedding": [0.0, 1.0]},
                    {"index": 0, "embedding": [1.0, 0.0]},
                ]
            }
        )

    monkeypatch.setattr("lumen_api.services.rag.embedding_client.httpx.post", fake_post)

    client = OpenAICompatibleEmbeddingClient(base_url="http://embed", model="m")

    assert client.embed_texts(["x", "y"]) == [[1.0, 0.0], [0.0, 1.0]]


def test_embedding_client_rejects_payload_size_mismatch(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_post(url: str, *, json, headers, timeout) -> _FakeResponse:
        del url, json, headers, timeout
        return _FakeResponse({"data": [{"embedding": [1, 2, 3]}]})

    monkeypatch.setattr("lumen_api.services.rag.embedding_client.httpx.post", fake_post)

    client = OpenAICompatibleEmbeddingClient(base_url="http://embed", model="m")

    with pytest.raises(EmbeddingFailure, match="expected 2 vectors"):
        client.embed_texts(["first", "second"])


def test_embedding_client_splits_large_batches(monkeypatch: pytest.MonkeyPatch) -> None:
    batches: list[list[str]] = []

    def fake_post(url: str, *, json, headers, timeout) -> _FakeResponse:
        del url, headers, timeout
        batches.append(list(json["input"]))
        return _FakeResponse(
            {"data": [{"embedding": [float(len(text)), 1.0]} for text in json["input"]]}
        )

    monkeypatch.setattr("lumen_api.services.rag.embedding_client.httpx.post", fake_post)

    client = OpenAICompatibleEmbeddingClient(base_url="http://embed", model="m", max_batch_size=2)
    texts = ["a", "bb", "ccc", "dddd", "eeeee"]

    vectors = client.embed_texts(texts)

    assert batches == [["a", "bb"], ["ccc", "dddd"], ["eeeee"]]
    assert [vector[0] for vector in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]


def test_embedding_client_fails_whole_call_when_one_batch_fails(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[int] = []

    def fake_post(url: str, *, json, headers, timeout) -> _FakeResponse:
        del url, headers, timeout
        calls.append(len(json["input"]))
        if len(calls) == 2:
            return _FakeResponse({}, status_code=503)
        return _FakeResponse({"data": [{"embedding": [1.0]} for _ in json["input"]]})

    monkeypatch.setattr("lumen_api.services.rag.embedding_client.httpx.post", fake_post)

    client = OpenAICompatibleEmbeddingClient(base_url="http://embed", model="m", max_batch_size=2)

    with pytest.raises(EmbeddingFailure):
        client.embed_texts(["a", "b", "c", "d"])
    assert calls == [2, 2]


def test_embedding_client_rejects_mixed_dimensions(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, *, json, headers, timeout) -> _FakeResponse:
        del url, json, headers, timeout
        return _FakeResponse({"data": [{"embedding": [1.0, 2.0]}, {"embedding": [1.0]}]})

    monkeypatch.setattr("lumen_api.services.rag.embedding_client.httpx.post", fake_post)

    client = OpenAICompatibleEmbeddingClient(base_url="http://embed", model="m")

    with pytest.raises(EmbeddingFailure, match="mixed vector dimensions"):
        client.embed_texts(["a", "b"])


def test_embedding_client_skips_request_for_empty_input(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(*args, **kwargs) -> _FakeResponse:
        raise AssertionError("no request expected")

    monkeypatch.setattr("lumen_api.services.rag.embedding_client.httpx.post", fake_post)

    client = OpenAICompatibleEmbeddingClient(base_url="http://embed", model="m")

    assert client.embed_texts([]) == []


def test_hash_embedding_is_deterministic_unit_vector() -> None:
    first = deterministic_embedding("predictive maintenance", dimensions=16)
    second = deterministic_embedding("predictive maintenance", dimensions=16)
    other = deterministic_embedding("something else", dimensions=16)

    assert first == second
    assert first != other
    assert len(first) == 16
    assert math.isclose(math.sqrt(sum(value * value for value in first)), 1.0, rel_tol=1e-9)


def test_get_embedding_client_selects_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RAG_EMBED_PROVIDER", "hash")
    monkeypatch.setenv("RAG_EMBEDDING_DIM", "24")

    client = get_embedding_client(get_settings())

    assert isinstance(client, HashEmbeddingClient)
    assert len(client.embed_texts(["x"])[0]) == 24

    monkeypatch.setenv("RAG_EMBED_PROVIDER", "openai")
    get_settings.cache_clear()

    assert isinstance(get_embedding_client(get_settings()), OpenAICompatibleEmbeddingClient)


def test_embedding_client_returns_one_vector_per_text_in_order(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_post(url: str, *, json, headers, timeout) -> _FakeResponse:
        del url, headers, timeout
        return _FakeResponse(
            {"data": [{"embedding": [float(ord(text))]} for text in json["input"]]}
        )

    monkeypatch.setattr("lumen_api.services.rag.embedding_client.httpx.post", fake_post)

    client = OpenAICompatibleEmbeddingClient(base_url="http://embed", model="m")

    assert client.embed_texts(["a", "b", "c"]) == [[97.0], [98.0], [99.0]]


@pytest.mark.parametrize("bad_value", ["oops", None, {"x": 1}])
def test_embedding_client_rejects_non_numeric_values(
    monkeypatch: pytest.MonkeyPatch, bad_value: object
) -> None:
    def fake_post(url: str, *, json, headers, timeout) -> _FakeResponse:
        del url, json, headers, timeout
        return _FakeResponse({"data": [{"index": 0, "embedding": [0.1, bad_value]}]})

    monkeypatch.setattr("lumen_api.services.rag.embedding_client.httpx.post", fake_post)

    client = OpenAICompatibleEmbeddingClient(base_url="http://embed", model="m")

    with pytest.raises(EmbeddingFailure, match="Invalid embeddings payload"):
        client.embed_texts(["a"])
