"""Retrieval-augmented answers over the wiki index, compared against a baseline."""

from __future__ import annotations

import asyncio
import logging

from .config import DEFAULT_TOP_K
from .errors import (
    IndexNotReadyError,
    InsufficientContextError,
    InvalidInputError,
    UpstreamError,
)
from .index_store import IndexRepository
from .indexer import WikiIndexer
from .llm import LanguageModel
from .models import (
    ChatMessage,
    LabeledSource,
    RagAnswerComparison,
    RagChatReply,
    RagCitedAnswer,
    RagFilteringComparison,
    SearchResult,
    TopicSuggestions,
    WikiIndex,
)
from .searcher import WikiSearcher

logger = logging.getLogger(__name__)

NO_EXTERNAL_CONTEXT = "No external context available."
MAX_SUGGESTED_TOPICS = 4
CHAT_HISTORY_MESSAGES = 6

BASELINE_PROMPT = """You are a helpful assistant.
Answer the user's question clearly and concisely.

Question:
{question}"""

RAG_PROMPT = """You are a helpful assistant that must answer using the provided context from a local wiki index.

Use ONLY the information in the context below when possible.
If the context is insufficient, say you don't know based on the available context.

-------------------- CONTEXT START --------------------
{context}
-------------------- CONTEXT END ----------------------

Now answer the user's question using the context above.

Question:
{question}"""

CITATION_PROMPT = """You are a helpful assistant that must answer using ONLY the provided context from a local wiki index.

CRITICAL REQUIREMENTS:
1. Use ONLY the information in the context below. Do not use any external knowledge.
2. For each sentence or claim you make that uses information from the context, add inline citations in square brackets at the end of that sentence.
3. Citations should reference the source labels [1], [2], [3], etc. that correspond to the numbered sources in the context.
4. You can cite multiple sources like [1,2] if information comes from multiple sources.
5. If the context does not contain enough information to answer the question, you MUST say: "I don't know based on the provided sources."
6. At the end of your answer, add a "Sources:" section listing all cited sources in the format: [label] Title — Wikipedia

-------------------- CONTEXT START --------------------
{context}
-------------------- CONTEXT END ----------------------

Now answer the user's question using the context above. Remember to add citations [1], [2], etc. for each claim, and include a Sources section at the end.

Question:
{question}"""

CHAT_PROMPT = """You are a helpful assistant that must answer using the provided context from a local wiki index, while also considering the conversation history.

CRITICAL REQUIREMENTS:
1. Use the information in the context below when available. You can also reference the conversation history for context.
2. For each sentence or claim you make that uses information from the context, add inline citations in square brackets at the end of that sentence.
3. Citations should reference the source labels [1], [2], [3], etc. that correspond to the numbered sources in the context.
4. You can cite multiple sources like [1,2] if information comes from multiple sources.
5. If the context does not contain enough information to answer the question, you can use your general knowledge, but still try to cite sources when possible.
6. At the end of your answer, add a "Sources:" section listing all cited sources in the format: [label] Title — Wikipedia

-------------------- CONVERSATION HISTORY --------------------
{history}
-------------------- CONVERSATION HISTORY END ----------------

-------------------- CONTEXT FROM DOCUMENTS --------------------
{context}
-------------------- CONTEXT END ----------------------

Now answer the user's latest question using both the conversation history and the document context above. Remember to add citations [1], [2], etc. for each claim that uses document context, and include a Sources section at the end.

Latest Question:
{question}"""

TOPICS_PROMPT = """Based on the following question, suggest 2-4 specific Wikipedia article titles that would be most relevant to answer it.
Use the exact titles as they appear on Wikipedia, with proper capitalization (e.g. "Quantum computing", "Machine learning").

Question: {question}"""


def build_context_from_chunks(chunks: list[SearchResult]) -> str:
    if not chunks:
        return NO_EXTERNAL_CONTEXT

    sections = [
        f"=== Context #{i} (score={c.score:.3f}) ===\nTitle: {c.title}\n{c.snippet}\n"
        for i, c in enumerate(chunks, 1)
    ]
    return "\n".join(sections)


def build_labeled_context(sources: list[LabeledSource]) -> str:
    if not sources:
        return NO_EXTERNAL_CONTEXT

    sections = [
        f"=== [{s.label}] {s.title} (score={s.score:.3f}) ===\n{s.snippet}\n" for s in sources
    ]
    return "\n".join(sections)


def label_sources(chunks: list[SearchResult]) -> list[LabeledSource]:
    return [LabeledSource(label=str(i), **c.model_dump()) for i, c in enumerate(chunks, 1)]


def filter_chunks(chunks: list[SearchResult], min_similarity: float, enable: bool) -> list[SearchResult]:
    """Keep chunks scoring at least ``min_similarity``; never filter down to nothing."""
    if not enable:
        return chunks

    kept = [c for c in chunks if c.score >= min_similarity]
    if kept or not chunks:
        return kept
    return [max(chunks, key=lambda c: c.score)]


def has_usable_context(chunks: list[SearchResult], min_best_score: float) -> bool:
    return bool(chunks) and max(c.score for c in chunks) >= min_best_score


def format_history(messages: list[ChatMessage]) -> str:
    return "\n".join(f"{m.role}: {m.content}" for m in messages[-CHAT_HISTORY_MESSAGES:])


def _validate_question(question: str) -> str:
    question = question.strip()
    if not question:
        raise InvalidInputError("Question must not be empty")
    return question


async def _gather(*coros):
    """Like ``asyncio.gather``, but a failure cancels the calls still running."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class RagService:
    """Answers questions with and without retrieved wiki context."""

    def __init__(
        self,
        store: IndexRepository,
        searcher: WikiSearcher,
        llm: LanguageModel,
        indexer: WikiIndexer | None = None,
    ):
        self.store = store
        self.searcher = searcher
        self.llm = llm
        self.indexer = indexer

    def _load_index(self) -> WikiIndex:
        index = self.store.load()
        if index is None:
            raise IndexNotReadyError()
        return index

    async def answer_with_comparison(
        self, question: str, top_k: int = DEFAULT_TOP_K
    ) -> RagAnswerComparison:
        """Answer once from the model alone and once grounded in the top ``top_k`` chunks."""
        question = _validate_question(question)
        index = self._load_index()

        async def grounded() -> tuple[str, list[SearchResult]]:
            chunks = await self.searcher.search(index, question, top_k)
            context = build_context_from_chunks(chunks)
            answer = await self.llm.generate(RAG_PROMPT.format(context=context, question=question))
            return answer, chunks

        baseline_answer, (rag_answer, used_chunks) = await _gather(
            self.llm.generate(BASELINE_PROMPT.format(question=question)),
            grounded(),
        )

        return RagAnswerComparison(
            question=question,
            baseline_answer=baseline_answer,
            rag_answer=rag_answer,
            used_chunks=used_chunks,
        )

    async def answer_with_filtering(
        self,
        question: str,
        min_similarity: float,
        top_k: int = DEFAULT_TOP_K,
        enable_filter: bool = True,
    ) -> RagFilteringComparison:
        """Like answer_with_comparison, plus a third answer from similarity-filtered chunks."""
        question = _validate_question(question)
        index = self._load_index()

        raw_chunks = await self.searcher.search(index, question, top_k)
        filtered_chunks = filter_chunks(raw_chunks, min_similarity, enable_filter)

        baseline, rag_raw, rag_filtered = await _gather(
            self.llm.generate(BASELINE_PROMPT.format(question=question)),
            self.llm.generate(
                RAG_PROMPT.format(context=build_context_from_chunks(raw_chunks), question=question)
            ),
            self.llm.generate(
                RAG_PROMPT.format(context=build_context_from_chunks(filtered_chunks), question=question)
            ),
        )

        return RagFilteringComparison(
            question=question,
            baseline_answer=baseline,
            rag_raw_answer=rag_raw,
            rag_filtered_answer=rag_filtered,
            used_chunks_raw=raw_chunks,
            used_chunks_filtered=filtered_chunks,
            filter_enabled=enable_filter,
            min_similarity=min_similarity,
        )

    async def answer_with_citations(
        self,
        question: str,
        min_similarity: float,
        min_best_score: float,
        top_k: int = DEFAULT_TOP_K,
        enable_filter: bool = True,
        allow_model_fallback: bool = True,
        auto_fetch: bool = False,
    ) -> RagCitedAnswer:
        """Answer with inline [n] citations to numbered sources.

        When the best chunk scores below ``min_best_score`` and ``auto_fetch``
        is set, Wikipedia articles suggested by the model are indexed and the
        search is repeated once. Without usable context the answer falls back
        to the baseline prompt, or raises InsufficientContextError.
        """
        question = _validate_question(question)
        index = self._load_index()

        chunks, used_wiki_fetch = await self._search_with_auto_fetch(
            index, question, top_k, min_best_score, auto_fetch
        )
        chunks = self._usable_chunks(
            chunks, min_similarity, min_best_score, enable_filter, allow_model_fallback
        )

        if not chunks:
            logger.info("No usable context for %r, answering without sources", question)
            answer = await self.llm.generate(BASELINE_PROMPT.format(question=question))
            return RagCitedAnswer(
                question=question,
                answer_with_citations=answer,
                labeled_sources=[],
                used_wiki_fetch=used_wiki_fetch,
                used_model_fallback=True,
            )

        sources = label_sources(chunks)
        prompt = CITATION_PROMPT.format(context=build_labeled_context(sources), question=question)
        answer = await self.llm.generate(prompt)

        return RagCitedAnswer(
            question=question,
            answer_with_citations=answer,
            labeled_sources=sources,
            used_wiki_fetch=used_wiki_fetch,
        )

    async def answer_chat_with_sources(
        self,
        messages: list[ChatMessage],
        min_similarity: float,
        min_best_score: float,
        top_k: int = DEFAULT_TOP_K,
        enable_filter: bool = True,
        allow_model_fallback: bool = True,
        auto_fetch: bool = False,
    ) -> RagChatReply:
        """Answer the latest user message with citations, using recent turns as history.

        The question is the last ``user`` message; the last six messages are
        passed along as conversation history. Retrieval, auto-fetch and
        fallback behave as in answer_with_citations, except the fallback keeps
        the history and renders the context as the no-context marker.
        """
        latest = next((m for m in reversed(messages) if m.role == "user"), None)
        if latest is None:
            raise InvalidInputError("No user message found")
        question = _validate_question(latest.content)
        history = format_history(messages)
        index = self._load_index()

        chunks, used_wiki_fetch = await self._search_with_auto_fetch(
            index, question, top_k, min_best_score, auto_fetch
        )
        chunks = self._usable_chunks(
            chunks, min_similarity, min_best_score, enable_filter, allow_model_fallback
        )

        sources = label_sources(chunks)
        if not sources:
            logger.info("No usable context for chat question %r, answering without sources", question)
        prompt = CHAT_PROMPT.format(
            history=history, context=build_labeled_context(sources), question=question
        )
        answer = await self.llm.generate(prompt)

        return RagChatReply(
            message=ChatMessage(role="assistant", content=answer),
            labeled_sources=sources,
            used_wiki_fetch=used_wiki_fetch,
            used_model_fallback=not sources,
        )

    def _usable_chunks(
        self,
        chunks: list[SearchResult],
        min_similarity: float,
        min_best_score: float,
        enable_filter: bool,
        allow_model_fallback: bool,
    ) -> list[SearchResult]:
        """Filtered chunks, or [] when the model should answer without sources."""
        if has_usable_context(chunks, min_best_score):
            return filter_chunks(chunks, min_similarity, enable_filter)
        if not allow_model_fallback:
            raise InsufficientContextError("No relevant sources found and fallback is disabled")
        return []

    async def _search_with_auto_fetch(
        self,
        index: WikiIndex,
        question: str,
        top_k: int,
        min_best_score: float,
        auto_fetch: bool,
    ) -> tuple[list[SearchResult], bool]:
        chunks = await self.searcher.search(index, question, top_k)
        if has_usable_context(chunks, min_best_score) or not auto_fetch or self.indexer is None:
            return chunks, False

        refreshed = await self._fetch_and_reindex(question, index)
        if refreshed is None:
            return chunks, False
        return await self.searcher.search(refreshed, question, top_k), True

    async def _fetch_and_reindex(self, question: str, index: WikiIndex) -> WikiIndex | None:
        """Index model-suggested articles alongside the current ones.

        Returns None when no topics could be suggested or the rebuild failed.
        """
        try:
            suggestions = await self.llm.generate_structured(
                TOPICS_PROMPT.format(question=question), TopicSuggestions
            )
        except UpstreamError as e:
            logger.info("Could not get topic suggestions: %s", e)
            return None

        known = {a.title.casefold() for a in index.articles}
        topics = [
            t.strip()
            for t in suggestions.topics
            if t.strip() and t.strip().casefold() not in known
        ][:MAX_SUGGESTED_TOPICS]
        if not topics:
            return None

        logger.info("Fetching Wikipedia articles for %r: %s", question, ", ".join(topics))
        try:
            return await self.indexer.build_index_for_topics(
                [a.title for a in index.articles] + topics
            )
        except UpstreamError as e:
            logger.info("Fetch and reindex failed, keeping current index: %s", e)
            return None
