from __future__ import annotations

import logging
from typing import Protocol

import httpx

from lumen_api.config import Settings
from lumen_api.errors import EmbeddingFailure

logger = logging.getLogger(__name__)


class EmbeddingClient(Protocol):
    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class OpenAICompatibleEmbeddingClient:
    """Client for any ``/embeddings`` endpoint speaking the OpenAI wire format.

    Inputs are sent in sub-batches of ``max_batch_size``; a failure in any
    sub-batch fails the whole call, so callers never see a partial result.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        max_batch_size: int = 64,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_batch_size = max_batch_size

    @property
    def model(self) -> str:
        return self._model

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        vectors: list[list[float]] = []
        for start in range(0, len(texts), self._max_batch_size):
            vectors.extend(self._embed_batch(texts[start : start + self._max_batch_size]))

        dimensions = {len(vector) for vector in vectors}
        if len(dimensions) != 1:
            raise EmbeddingFailure(
                f"Invalid embeddings payload: mixed vector dimensions {sorted(dimensions)}"
            )
        return vectors

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={"model": self._model, "input": texts},
                headers=self._headers(),
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise EmbeddingFailure(str(exc)) from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingFailure("Invalid embeddings payload: missing data")

        if data and all(isinstance(item, dict) and isinstance(item.get("index"), int) for item in data):
            data = sorted(data, key=lambda item: item["index"])

        vectors: list[list[float]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingFailure("Invalid embeddings payload: missing embedding vector")
            try:
                vectors.append([float(value) for value in embedding])
            except (TypeError, ValueError) as exc:
                raise EmbeddingFailure(f"Invalid embeddings payload: {exc}") from exc

        if len(vectors) != len(texts):
            raise EmbeddingFailure(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}"
            )

        logger.debug("embedded batch size=%d model=%s", len(texts), self._model)
        return vectors


def get_embedding_client(settings: Settings) -> EmbeddingClient:
    if settings.rag_embed_provider == "hash":
        from lumen_api.services.rag.embedder import HashEmbeddingClient

        return HashEmbeddingClient(dimensions=settings.rag_embedding_dim)

    return OpenAICompatibleEmbeddingClient(
        base_url=settings.rag_embed_base_url,
        model=settings.rag_embed_model,
        api_key=settings.rag_embed_api_key,
        timeout_seconds=settings.llm_timeout_seconds,
        max_batch_size=settings.rag_embed_batch_size,
    )
