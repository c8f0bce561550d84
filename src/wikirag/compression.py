"""Conversation compaction: summarize full segments to keep the prompt bounded.

A conversation is a list of segments. Only the open segment collects new
messages; compaction seals it behind a model-written summary, drops its raw
messages and opens a fresh segment. The context sent to the model is either
every raw message (before the first seal) or the summaries followed by the
open segment's recent turns.
"""

from __future__ import annotations

import logging

from .config import SEGMENT_WINDOW_SIZE
from .errors import InvalidInputError
from .llm import LanguageModel
from .models import ChatMessage, CompressionStats, ConversationSegment, ConversationState

logger = logging.getLogger(__name__)

NO_CONTEXT = "No prior context."

SUMMARY_PROMPT = """You are a dialogue compressor. Summarize the conversation faithfully and concisely.
Preserve: user goals, decisions, constraints, facts, numbers, action items, tool results, unresolved questions.
Remove fluff and phatic language. Keep <300 words. Use bullet points if helpful.

Transcript:

{transcript}

Output: a single compact summary paragraph(s) or bullets, no metadata."""


def format_transcript(messages: list[ChatMessage]) -> str:
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


def approx_tokens(text: str) -> int:
    """Rough token count: ~4 characters per token, at least 1 for non-blank text."""
    if not text.strip():
        return 0
    return max(1, round(len(text) / 4))


class CompressionService:
    def __init__(self, llm: LanguageModel, segment_window_size: int = SEGMENT_WINDOW_SIZE):
        if segment_window_size < 1:
            raise InvalidInputError(f"segment_window_size must be >= 1, got {segment_window_size}")
        self.llm = llm
        self.segment_window_size = segment_window_size

    async def maybe_summarize(self, state: ConversationState) -> tuple[ConversationState, bool]:
        """Seal the open segment once it holds ``segment_window_size`` messages."""
        open_seg = self._open_segment(state)
        if open_seg is None or open_seg.is_sealed:
            return state, False
        if len(open_seg.messages) < self.segment_window_size:
            return state, False
        return await self._seal(state, open_seg), True

    async def force_summarize(self, state: ConversationState) -> tuple[ConversationState, bool]:
        """Seal the open segment regardless of size, as long as it has messages."""
        open_seg = self._open_segment(state)
        if open_seg is None or open_seg.is_sealed or not open_seg.messages:
            return state, False
        return await self._seal(state, open_seg), True

    def _open_segment(self, state: ConversationState) -> ConversationSegment | None:
        open_seg = state.open_segment()
        if open_seg is None:
            logger.warning(
                "Conversation %s: open segment %s not found, skipping compaction",
                state.conversation_id,
                state.open_segment_id,
            )
        return open_seg

    async def _seal(self, state: ConversationState, open_seg: ConversationSegment) -> ConversationState:
        # The input state is never mutated, so a failed model call leaves it intact
        summary = await self.summarize(open_seg.messages)

        sealed = open_seg.model_copy(update={"summary": summary, "messages": []})
        fresh = ConversationSegment()
        segments = [sealed if s.id == open_seg.id else s for s in state.segments]
        segments.append(fresh)

        logger.info(
            "Conversation %s: summarized %d messages into segment %s",
            state.conversation_id,
            len(open_seg.messages),
            open_seg.id,
        )
        return state.model_copy(update={"segments": segments, "open_segment_id": fresh.id})

    async def summarize(self, messages: list[ChatMessage]) -> str:
        prompt = SUMMARY_PROMPT.format(transcript=format_transcript(messages))
        return (await self.llm.generate(prompt)).strip()

    def build_context(self, state: ConversationState) -> str:
        """Render the conversation as the model should see it for the next turn."""
        lines: list[str] = []

        if not any(s.is_sealed for s in state.segments):
            lines.extend(f"{m.role}: {m.content}" for m in state.all_messages())
        else:
            summaries = [
                s.summary for s in state.segments if s.is_sealed and s.id != state.open_segment_id
            ]
            if summaries:
                lines.append("Conversation summaries (old → new):")
                lines.extend(f"S{i}: {summary}" for i, summary in enumerate(summaries, 1))
                lines.append("")

            open_seg = state.open_segment()
            if open_seg is not None and open_seg.messages:
                lines.append("Recent turns:")
                lines.extend(f"{m.role}: {m.content}" for m in open_seg.messages)

        context = "\n".join(lines)
        return context if context.strip() else NO_CONTEXT

    # ── Token accounting ──

    def measure_tokens_raw(self, messages: list[ChatMessage]) -> int:
        return approx_tokens(format_transcript(messages))

    def measure_tokens_if_no_compression(self, state: ConversationState) -> int:
        """Tokens needed to send every raw message still held by the state.

        Sealed segments no longer carry their messages; pass the full history
        to ``compression_stats`` when the caller keeps one.
        """
        return self.measure_tokens_raw(state.all_messages())

    def measure_tokens_compressed(self, context: str) -> int:
        return approx_tokens(context)

    def compression_stats(
        self,
        state: ConversationState,
        context: str,
        history: list[ChatMessage] | None = None,
    ) -> CompressionStats:
        if history is not None:
            raw = self.measure_tokens_raw(history)
        else:
            raw = self.measure_tokens_if_no_compression(state)
        compressed = self.measure_tokens_compressed(context)
        savings = 0 if raw == 0 else round((raw - compressed) / raw * 100)
        return CompressionStats(
            tokens_raw_approx=raw,
            tokens_compressed_approx=compressed,
            savings_percent=savings,
        )
