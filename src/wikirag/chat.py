"""Chat turns over a compacted conversation memory."""

from __future__ import annotations

import logging

from .compression import CompressionService
from .errors import InvalidInputError
from .llm import LanguageModel
from .models import ChatMessage, ChatReply, ConversationState
from .storage import ConversationStore

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = (
    "You are a helpful assistant with access to external memory. "
    "Use the context faithfully; if details are missing, ask clarifying questions."
)

# Appended after a compaction so the new open segment starts with a user turn
CONTINUATION = "Please continue our conversation naturally."

SUMMARY_PREVIEW_CHARS = 280


class ChatService:
    """Runs one user turn: record, compact, build context, reply, persist.

    Nothing is persisted unless the model reply succeeds. Turns for the same
    conversation must not run concurrently.
    """

    def __init__(self, compression: CompressionService, llm: LanguageModel, store: ConversationStore):
        self.compression = compression
        self.llm = llm
        self.store = store

    def get_or_create_state(self, conversation_id: str | None) -> ConversationState:
        if conversation_id:
            existing = self.store.load_state(conversation_id)
            if existing is not None:
                return existing
        return ConversationState.new(conversation_id)

    async def send(self, conversation_id: str | None, content: str) -> ChatReply:
        content = content.strip()
        if not content:
            raise InvalidInputError("Message must not be empty")

        state = self.get_or_create_state(conversation_id)
        user_message = ChatMessage(role="user", content=content)
        recorded = [user_message]

        state = state.with_message(user_message)
        state, summarized = await self.compression.maybe_summarize(state)
        if summarized:
            continuation = ChatMessage(role="user", content=CONTINUATION)
            state = state.with_message(continuation)
            recorded.append(continuation)

        context = self.compression.build_context(state)
        history = self.store.get_history(state.conversation_id) + recorded
        stats = self.compression.compression_stats(state, context, history=history)

        prompt = f"{SYSTEM_INSTRUCTION}\n\n{context}\n\nAssistant:"
        reply_text = await self.llm.generate(prompt)

        assistant_message = ChatMessage(role="assistant", content=reply_text)
        state = state.with_message(assistant_message)
        recorded.append(assistant_message)

        self.store.save_state(state, new_messages=recorded)
        logger.debug(
            "Conversation %s: %d → %d tokens (%d%% saved)",
            state.conversation_id,
            stats.tokens_raw_approx,
            stats.tokens_compressed_approx,
            stats.savings_percent,
        )

        return ChatReply(
            conversation_id=state.conversation_id,
            message=assistant_message,
            summarized=summarized,
            compression=stats,
            latest_summary_preview=_latest_summary_preview(state),
            request_prompt=prompt,
        )

    async def force_summarize(self, conversation_id: str) -> tuple[ConversationState, bool]:
        state = self.store.load_state(conversation_id)
        if state is None:
            raise InvalidInputError(f"Conversation not found: {conversation_id}")

        state, summarized = await self.compression.force_summarize(state)
        if summarized:
            continuation = ChatMessage(role="user", content=CONTINUATION)
            state = state.with_message(continuation)
            self.store.save_state(state, new_messages=[continuation])
        return state, summarized

    def build_context(self, conversation_id: str) -> str:
        state = self.store.load_state(conversation_id)
        if state is None:
            raise InvalidInputError(f"Conversation not found: {conversation_id}")
        return self.compression.build_context(state)


def _latest_summary_preview(state: ConversationState) -> str | None:
    summaries = state.summaries()
    return summaries[-1][:SUMMARY_PREVIEW_CHARS] if summaries else None
