"""Embedding providers: text → vector, one vector per input text."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx

from .config import (
    EMBED_CONCURRENCY,
    EMBEDDINGS_BACKEND,
    HTTP_TIMEOUT,
    OLLAMA_EMBED_MODEL,
    OLLAMA_URL,
)
from .errors import InvalidInputError

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per text, same order. Failed texts map to ``[]``."""


class OllamaEmbeddingProvider:
    """Embeds through a local Ollama server, one request per text.

    Requests fan out with at most ``max_concurrency`` in flight. Results land
    in a pre-sized list by position, so completion order never affects which
    vector belongs to which text.
    """

    def __init__(
        self,
        base_url: str = OLLAMA_URL,
        model: str = OLLAMA_EMBED_MODEL,
        max_concurrency: int = EMBED_CONCURRENCY,
        client: httpx.AsyncClient | None = None,
    ):
        if max_concurrency < 1:
            raise InvalidInputError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_concurrency = max_concurrency
        self._client = client

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        results: list[list[float]] = [[] for _ in texts]
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _one(client: httpx.AsyncClient, i: int, text: str) -> None:
            async with semaphore:
                results[i] = await self._embed_one(client, text)

        if self._client is not None:
            await asyncio.gather(*(_one(self._client, i, t) for i, t in enumerate(texts)))
        else:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
                await asyncio.gather(*(_one(client, i, t) for i, t in enumerate(texts)))

        failed = sum(1 for r in results if not r)
        if failed:
            logger.warning("%d of %d texts could not be embedded", failed, len(texts))
        return results

    async def _embed_one(self, client: httpx.AsyncClient, text: str) -> list[float]:
        try:
            res = await client.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
            )
        except httpx.HTTPError as e:
            logger.warning("Ollama embeddings request failed: %s", e)
            return []

        if res.status_code != 200:
            logger.warning("Ollama embeddings error %s: %s", res.status_code, res.text[:200])
            return []

        try:
            embedding = res.json().get("embedding") or []
            return [float(x) for x in embedding]
        except (ValueError, TypeError, AttributeError):
            logger.warning("Malformed Ollama embeddings response: %s", res.text[:200])
            return []


class ChromaEmbeddingProvider:
    """Local ONNX MiniLM embeddings, the same model chromadb uses by default."""

    def __init__(self, embedding_function=None):
        if embedding_function is None:
            from chromadb.utils.embedding_functions import DefaultEmbeddingFunction

            embedding_function = DefaultEmbeddingFunction()
        self._fn = embedding_function

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._embed_sync, texts)

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        try:
            return [[float(x) for x in vec] for vec in self._fn(texts)]
        except Exception:
            logger.warning("Batch embedding failed, retrying texts one by one", exc_info=True)

        results: list[list[float]] = []
        for text in texts:
            try:
                results.append([float(x) for x in self._fn([text])[0]])
            except Exception as e:
                logger.warning("Could not embed text (%d chars): %s", len(text), e)
                results.append([])
        return results


def get_embedding_provider(backend: str = EMBEDDINGS_BACKEND) -> EmbeddingProvider:
    if backend == "ollama":
        return OllamaEmbeddingProvider()
    if backend == "chroma":
        return ChromaEmbeddingProvider()
    raise InvalidInputError(f"Unknown embeddings backend: {backend!r} (use 'ollama' or 'chroma')")
