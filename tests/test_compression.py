import asyncio

import pytest
from conftest import FakeLLM

from wikirag.compression import NO_CONTEXT, CompressionService, approx_tokens
from wikirag.errors import InvalidInputError, UpstreamError
from wikirag.models import ChatMessage, ConversationState


def msg(content, role="user"):
    return ChatMessage(role=role, content=content)


def state_with(*contents):
    state = ConversationState.new("conv-1")
    for i, c in enumerate(contents):
        state = state.with_message(msg(c, "user" if i % 2 == 0 else "assistant"))
    return state


def test_window_must_be_positive(llm):
    with pytest.raises(InvalidInputError):
        CompressionService(llm, segment_window_size=0)


def test_below_window_is_a_no_op(llm):
    service = CompressionService(llm, segment_window_size=3)
    state = state_with("hi", "hello")

    new_state, summarized = asyncio.run(service.maybe_summarize(state))

    assert not summarized
    assert new_state is state
    assert llm.prompts == []


def test_compacts_every_full_window():
    llm = FakeLLM(responder=lambda prompt: "  summary  ")
    service = CompressionService(llm, segment_window_size=2)
    state = ConversationState.new("conv-1")
    triggered = []

    for i, content in enumerate(["hi", "hello", "how are you", "good"]):
        state = state.with_message(msg(content, "user" if i % 2 == 0 else "assistant"))
        state, summarized = asyncio.run(service.maybe_summarize(state))
        triggered.append(summarized)

    assert triggered == [False, True, False, True]
    assert len(state.segments) == 3
    first, second, last = state.segments
    assert first.is_sealed and first.messages == []
    assert second.is_sealed and second.messages == []
    assert not last.is_sealed and last.messages == []
    assert state.open_segment_id == last.id
    assert state.summaries() == ["summary", "summary"]


def test_summary_prompt_carries_transcript(llm):
    service = CompressionService(llm, segment_window_size=2)
    state = state_with("Budget is 40k EUR", "Noted, deadline Friday")

    asyncio.run(service.maybe_summarize(state))

    (prompt,) = llm.prompts
    assert "user: Budget is 40k EUR\nassistant: Noted, deadline Friday" in prompt
    for kept in ("decisions", "constraints", "numbers", "action items", "unresolved questions"):
        assert kept in prompt


def test_force_summarize(llm):
    service = CompressionService(llm, segment_window_size=10)

    empty = ConversationState.new("conv-1")
    same, summarized = asyncio.run(service.force_summarize(empty))
    assert not summarized and same is empty
    assert llm.prompts == []

    state, summarized = asyncio.run(service.force_summarize(state_with("just one")))
    assert summarized
    assert state.summaries() == ["reply 1"]
    assert state.open_segment().messages == []


def test_unknown_open_segment_is_left_alone(llm):
    service = CompressionService(llm, segment_window_size=1)
    state = state_with("hi").model_copy(update={"open_segment_id": "missing"})

    for op in (service.maybe_summarize, service.force_summarize):
        new_state, summarized = asyncio.run(op(state))
        assert new_state is state
        assert not summarized
    assert llm.prompts == []


def test_model_failure_leaves_state_unchanged():
    service = CompressionService(FakeLLM(fail=True), segment_window_size=1)
    state = state_with("hi")
    before = state.model_dump()

    with pytest.raises(UpstreamError):
        asyncio.run(service.maybe_summarize(state))

    assert state.model_dump() == before


def test_context_before_first_seal_is_raw_transcript(llm):
    service = CompressionService(llm)
    assert service.build_context(ConversationState.new()) == NO_CONTEXT
    assert service.build_context(state_with("hi", "hello")) == "user: hi\nassistant: hello"


def test_context_after_seal_lists_summaries_then_recent_turns(llm):
    service = CompressionService(llm, segment_window_size=2)
    state, _ = asyncio.run(service.maybe_summarize(state_with("hi", "hello")))

    assert service.build_context(state).startswith(
        "Conversation summaries (old → new):\nS1: reply 1\n"
    )
    assert "Recent turns" not in service.build_context(state)

    state = state.with_message(msg("how are you"))
    assert service.build_context(state) == (
        "Conversation summaries (old → new):\n"
        "S1: reply 1\n"
        "\n"
        "Recent turns:\n"
        "user: how are you"
    )


def test_approx_tokens():
    assert approx_tokens("") == 0
    assert approx_tokens("   \n") == 0
    assert approx_tokens("a") == 1
    assert approx_tokens("abcdefgh") == 2
    assert approx_tokens("x" * 400) == 100


def test_compression_stats(llm):
    service = CompressionService(llm)

    empty = ConversationState.new()
    stats = service.compression_stats(empty, service.build_context(empty))
    assert stats.tokens_raw_approx == 0
    assert stats.savings_percent == 0

    history = [msg("x" * 391), msg("y" * 391, "assistant")]
    stats = service.compression_stats(empty, "z" * 200, history=history)
    assert stats.tokens_raw_approx == 200
    assert stats.tokens_compressed_approx == 50
    assert stats.savings_percent == 75
