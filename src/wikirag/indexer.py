"""Index pipeline: fetch → read → chunk → embed → persist."""

from __future__ import annotations

import logging

from .chunker import chunk_text, validate_chunking
from .config import CHUNK_OVERLAP, CHUNK_SIZE
from .embeddings import EmbeddingProvider
from .errors import InvalidInputError
from .fetcher import WikiFetcher
from .index_store import IndexRepository
from .models import WikiArticleMeta, WikiChunk, WikiIndex, chunk_id, now_millis

logger = logging.getLogger(__name__)


class WikiIndexer:
    """Builds the searchable index from a list of topics.

    Every build produces a complete new index that replaces the stored one.
    A fetch failure for any topic aborts the build before anything is saved.
    """

    def __init__(
        self,
        fetcher: WikiFetcher,
        embeddings: EmbeddingProvider,
        store: IndexRepository,
        chunk_size: int = CHUNK_SIZE,
        chunk_overlap: int = CHUNK_OVERLAP,
    ):
        validate_chunking(chunk_size, chunk_overlap)
        self.fetcher = fetcher
        self.embeddings = embeddings
        self.store = store
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    async def build_index_for_topics(self, topics: list[str]) -> WikiIndex:
        if any(not t.strip() for t in topics):
            raise InvalidInputError("Topics must not be blank")

        articles: list[WikiArticleMeta] = []
        chunks: list[WikiChunk] = []
        seen: set[str] = set()

        for topic in topics:
            article = await self._resolve_article(topic)
            if article.id in seen:
                logger.debug("Article '%s' already in this build, skipping", article.title)
                continue
            seen.add(article.id)
            articles.append(article)
            chunks.extend(await self._index_article(article))

        index = WikiIndex(created_at=now_millis(), articles=articles, chunks=chunks)
        self.store.replace(index)
        logger.info("Built wiki index: %d articles, %d chunks", len(articles), len(chunks))
        return index

    async def build_index_from_local(self) -> WikiIndex:
        """Rebuild from every article already cached on disk."""
        titles = [a.title for a in self.fetcher.list_local_articles()]
        return await self.build_index_for_topics(titles)

    async def _resolve_article(self, topic: str) -> WikiArticleMeta:
        local = self.fetcher.find_local(topic)
        if local is not None:
            logger.debug("Reusing cached article '%s'", local.title)
            return local
        return await self.fetcher.fetch_and_save(topic)

    async def _index_article(self, article: WikiArticleMeta) -> list[WikiChunk]:
        text = self.fetcher.read_article_text(article)
        pieces = chunk_text(text, self.chunk_size, self.chunk_overlap)

        logger.info("Generating embeddings for %d chunks from article: %s", len(pieces), article.title)
        embeddings = await self.embeddings.embed(pieces) if pieces else []

        return [
            WikiChunk(
                id=chunk_id(article.id, i),
                article_id=article.id,
                index=i,
                text=piece,
                embedding=embeddings[i] if i < len(embeddings) else [],
            )
            for i, piece in enumerate(pieces)
        ]
