"""Data models for conversations, wiki articles, the search index and RAG answers."""

from __future__ import annotations

import time
import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import InvalidInputError

Role = Literal["user", "assistant", "tool", "system"]


def now_millis() -> int:
    return int(time.time() * 1000)


def chunk_id(article_id: str, index: int) -> str:
    return f"{article_id}::{index}"


class _Model(BaseModel):
    # camelCase on disk and over the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Conversations ──


class ChatMessage(_Model):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Role
    content: str
    timestamp: int = Field(default_factory=now_millis)


class ConversationSegment(_Model):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    summary: str | None = None
    messages: list[ChatMessage] = []

    @property
    def is_sealed(self) -> bool:
        return self.summary is not None


class ConversationState(_Model):
    """Summaries of sealed segments plus one open segment collecting raw turns.

    States are treated as values: every transition returns a new state and
    leaves the original untouched.
    """

    conversation_id: str
    segments: list[ConversationSegment]
    open_segment_id: str

    @classmethod
    def new(cls, conversation_id: str | None = None) -> ConversationState:
        segment = ConversationSegment()
        return cls(
            conversation_id=conversation_id or str(uuid.uuid4()),
            segments=[segment],
            open_segment_id=segment.id,
        )

    def open_segment(self) -> ConversationSegment | None:
        return next((s for s in self.segments if s.id == self.open_segment_id), None)

    def with_message(self, message: ChatMessage) -> ConversationState:
        """Return a copy with ``message`` appended to the open segment."""
        open_seg = self.open_segment()
        if open_seg is None:
            raise InvalidInputError(
                f"Conversation {self.conversation_id}: open segment "
                f"{self.open_segment_id} not found"
            )
        if open_seg.is_sealed:
            raise InvalidInputError(
                f"Conversation {self.conversation_id}: open segment {open_seg.id} is sealed"
            )
        updated = open_seg.model_copy(update={"messages": [*open_seg.messages, message]})
        return self.model_copy(
            update={"segments": [updated if s.id == open_seg.id else s for s in self.segments]}
        )

    def all_messages(self) -> list[ChatMessage]:
        return [m for s in self.segments for m in s.messages]

    def summaries(self) -> list[str]:
        return [s.summary for s in self.segments if s.summary is not None]


class CompressionStats(_Model):
    tokens_raw_approx: int
    tokens_compressed_approx: int
    savings_percent: int


class ChatReply(_Model):
    conversation_id: str
    message: ChatMessage
    summarized: bool
    compression: CompressionStats
    latest_summary_preview: str | None = None
    request_prompt: str


# ── Wiki index ──


class WikiArticleMeta(_Model):
    id: str
    title: str
    file_path: str


class WikiChunk(_Model):
    id: str
    article_id: str
    index: int
    text: str
    embedding: list[float] = []


class WikiIndex(_Model):
    created_at: int
    articles: list[WikiArticleMeta] = []
    chunks: list[WikiChunk] = []


class SearchResult(_Model):
    chunk_id: str
    article_id: str
    title: str
    score: float
    snippet: str


# ── RAG answers ──


class RagAnswerComparison(_Model):
    question: str
    baseline_answer: str
    rag_answer: str
    used_chunks: list[SearchResult]


class RagFilteringComparison(_Model):
    question: str
    baseline_answer: str
    rag_raw_answer: str
    rag_filtered_answer: str
    used_chunks_raw: list[SearchResult]
    used_chunks_filtered: list[SearchResult]
    filter_enabled: bool
    min_similarity: float


class LabeledSource(SearchResult):
    label: str


class RagCitedAnswer(_Model):
    question: str
    answer_with_citations: str
    labeled_sources: list[LabeledSource]
    used_wiki_fetch: bool = False
    used_model_fallback: bool = False


class RagChatReply(_Model):
    message: ChatMessage
    labeled_sources: list[LabeledSource]
    used_wiki_fetch: bool = False
    used_model_fallback: bool = False


class TopicSuggestions(BaseModel):
    """Structured model output: Wikipedia titles worth fetching for a question."""

    topics: list[str]
