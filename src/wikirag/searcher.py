"""Cosine-similarity ranking of index chunks against a query."""

from __future__ import annotations

import numpy as np

from .config import SNIPPET_CHARS
from .embeddings import EmbeddingProvider
from .models import SearchResult, WikiIndex


def cosine_similarity(a: list[float], b: list[float]) -> float | None:
    """Cosine similarity over the longer vector, padding the shorter with zeros.

    Returns None when either vector has zero norm.
    """
    size = max(len(a), len(b))
    v1 = np.pad(np.asarray(a, dtype=float), (0, size - len(a)))
    v2 = np.pad(np.asarray(b, dtype=float), (0, size - len(b)))

    norm = np.linalg.norm(v1) * np.linalg.norm(v2)
    if norm == 0.0:
        return None

    # Rounding can push |score| a hair past 1
    return float(np.clip(np.dot(v1, v2) / norm, -1.0, 1.0))


class WikiSearcher:
    def __init__(self, embeddings: EmbeddingProvider, snippet_chars: int = SNIPPET_CHARS):
        self.embeddings = embeddings
        self.snippet_chars = snippet_chars

    async def search(self, index: WikiIndex, query: str, top_k: int) -> list[SearchResult]:
        """Return at most ``top_k`` chunks, best first.

        Ties keep index order (``sorted`` is stable).
        """
        if not index.chunks or top_k <= 0:
            return []

        vectors = await self.embeddings.embed([query])
        query_vec = vectors[0] if vectors else []
        if not query_vec:
            return []

        scored = []
        for chunk in index.chunks:
            score = cosine_similarity(query_vec, chunk.embedding)
            if score is not None:
                scored.append((chunk, score))

        ranked = sorted(scored, key=lambda pair: pair[1], reverse=True)[:top_k]

        titles = {a.id: a.title for a in index.articles}
        return [
            SearchResult(
                chunk_id=chunk.id,
                article_id=chunk.article_id,
                title=titles.get(chunk.article_id, chunk.article_id),
                score=score,
                snippet=chunk.text[: self.snippet_chars],
            )
            for chunk, score in ranked
        ]
