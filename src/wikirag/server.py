"""FastMCP server exposing wiki search, RAG answers and compacted chat."""

from __future__ import annotations

import logging
import sys

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from .config import DATA_DIR, DEFAULT_TOP_K, SQLITE_PATH
from .errors import WikiRagError
from .models import ChatMessage, LabeledSource
from .services import (
    get_chat_service,
    get_conversation_store,
    get_fetcher,
    get_index_store,
    get_indexer,
    get_rag_service,
    get_searcher,
)
from .storage import format_ts

# Logging to stderr only, stdout is the MCP JSON-RPC transport
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)

mcp = FastMCP(
    "wikirag",
    instructions=(
        "Answer questions grounded in a local index of Wikipedia articles, "
        "and hold long conversations whose history is summarized automatically. "
        "Use build_wiki_index to add articles, search_wiki to find passages, "
        "ask_wiki to compare a plain answer with a grounded one, ask_wiki_cited "
        "or ask_wiki_chat for answers with numbered sources, and chat for "
        "multi-turn conversations with compacted memory."
    ),
)

NOT_READY = (
    "No wiki index found. Build one first with build_wiki_index, e.g. "
    'build_wiki_index(["Quantum computing"]).'
)


@mcp.tool()
async def search_wiki(query: str, top_k: int = DEFAULT_TOP_K) -> str:
    """Semantic search over the indexed Wikipedia articles.

    Args:
        query: What to search for (natural language)
        top_k: Maximum number of passages (default 5)
    """
    try:
        index = get_index_store().load()
        if index is None:
            return NOT_READY
        results = await get_searcher().search(index, query, top_k)
    except WikiRagError as e:
        return f"Error: {e}"

    if not results:
        return f"No passages found matching '{query}'."

    lines = [f"Found {len(results)} passages matching '{query}':\n"]
    for i, r in enumerate(results, 1):
        lines.append(f"{i}. **{r.title}** (`{r.chunk_id}`, score {r.score:.3f})")
        lines.append(f"   {r.snippet.replace(chr(10), ' ')}")
        lines.append("")
    return "\n".join(lines)


@mcp.tool()
async def ask_wiki(question: str, top_k: int = DEFAULT_TOP_K) -> str:
    """Answer a question twice: from the model alone and grounded in wiki passages.

    Args:
        question: The question to answer
        top_k: How many passages to ground the answer on (default 5)
    """
    try:
        result = await get_rag_service().answer_with_comparison(question, top_k=top_k)
    except WikiRagError as e:
        return f"Error: {e}"

    lines = [
        "## Without context",
        result.baseline_answer,
        "",
        "## With wiki context",
        result.rag_answer,
        "",
        "## Sources",
    ]
    if not result.used_chunks:
        lines.append("(none)")
    for c in result.used_chunks:
        lines.append(f"- {c.title} (`{c.chunk_id}`, score {c.score:.3f})")
    return "\n".join(lines)


def _format_sourced_answer(
    answer: str, sources: list[LabeledSource], used_fallback: bool, used_fetch: bool
) -> str:
    lines = [answer, "", "## Sources"]
    if used_fallback:
        lines.append("(no usable sources, answered without wiki context)")
    for s in sources:
        lines.append(f"[{s.label}] {s.title} (`{s.chunk_id}`, score {s.score:.3f})")
    if used_fetch:
        lines.append("\n*New Wikipedia articles were fetched and indexed for this answer.*")
    return "\n".join(lines)


@mcp.tool()
async def ask_wiki_cited(
    question: str,
    min_similarity: float,
    min_best_score: float,
    top_k: int = DEFAULT_TOP_K,
    auto_fetch: bool = False,
    allow_model_fallback: bool = True,
) -> str:
    """Answer a question with [n] citations to numbered wiki sources.

    Args:
        question: The question to answer
        min_similarity: Drop sources scoring below this (the best one is always kept)
        min_best_score: If no source scores at least this, answer without sources
        top_k: How many passages to consider (default 5)
        auto_fetch: Fetch and index suggested Wikipedia articles when sources are weak
        allow_model_fallback: Answer without sources instead of failing
    """
    try:
        result = await get_rag_service().answer_with_citations(
            question,
            min_similarity=min_similarity,
            min_best_score=min_best_score,
            top_k=top_k,
            allow_model_fallback=allow_model_fallback,
            auto_fetch=auto_fetch,
        )
    except WikiRagError as e:
        return f"Error: {e}"

    return _format_sourced_answer(
        result.answer_with_citations,
        result.labeled_sources,
        result.used_model_fallback,
        result.used_wiki_fetch,
    )


@mcp.tool()
async def ask_wiki_chat(
    messages: list[dict[str, str]],
    min_similarity: float,
    min_best_score: float,
    top_k: int = DEFAULT_TOP_K,
    auto_fetch: bool = False,
    allow_model_fallback: bool = True,
) -> str:
    """Answer the latest user message of a conversation, citing wiki sources.

    Args:
        messages: Conversation so far, each {"role": "user"|"assistant", "content": "..."}
        min_similarity: Drop sources scoring below this (the best one is always kept)
        min_best_score: If no source scores at least this, answer without sources
        top_k: How many passages to consider (default 5)
        auto_fetch: Fetch and index suggested Wikipedia articles when sources are weak
        allow_model_fallback: Answer without sources instead of failing
    """
    try:
        history = [ChatMessage(role=m.get("role"), content=m.get("content", "")) for m in messages]
    except ValidationError as e:
        return f"Error: invalid messages: {e.errors()[0]['msg']}"

    try:
        reply = await get_rag_service().answer_chat_with_sources(
            history,
            min_similarity=min_similarity,
            min_best_score=min_best_score,
            top_k=top_k,
            allow_model_fallback=allow_model_fallback,
            auto_fetch=auto_fetch,
        )
    except WikiRagError as e:
        return f"Error: {e}"

    return _format_sourced_answer(
        reply.message.content,
        reply.labeled_sources,
        reply.used_model_fallback,
        reply.used_wiki_fetch,
    )


@mcp.tool()
async def build_wiki_index(topics: list[str] | None = None) -> str:
    """Fetch Wikipedia articles and rebuild the search index.

    Args:
        topics: Article titles to index. Empty re-indexes every cached article.
    """
    indexer = get_indexer()
    if not topics and not indexer.fetcher.list_local_articles():
        return 'No cached articles to re-index. Pass topics, e.g. build_wiki_index(["Quantum computing"]).'
    try:
        if topics:
            index = await indexer.build_index_for_topics(topics)
        else:
            index = await indexer.build_index_from_local()
    except WikiRagError as e:
        return f"Error: {e}"

    titles = ", ".join(a.title for a in index.articles) or "(none)"
    return f"Indexed {len(index.articles)} articles ({len(index.chunks)} chunks): {titles}"


@mcp.tool()
def list_wiki_articles() -> str:
    """List the Wikipedia articles cached locally."""
    articles = get_fetcher().list_local_articles()
    if not articles:
        return "No articles cached yet."
    return "\n".join(f"- {a.title} (`{a.id}`)" for a in articles)


@mcp.tool()
async def chat(message: str, conversation_id: str | None = None) -> str:
    """Send a message in a conversation whose older turns are summarized automatically.

    Args:
        message: The user message
        conversation_id: Existing conversation to continue (omit to start a new one)
    """
    try:
        reply = await get_chat_service().send(conversation_id, message)
    except WikiRagError as e:
        return f"Error: {e}"

    s = reply.compression
    return (
        f"{reply.message.content}\n\n"
        f"---\nconversation_id: `{reply.conversation_id}` | "
        f"tokens ≈ {s.tokens_compressed_approx}/{s.tokens_raw_approx} ({s.savings_percent}% saved)"
    )


@mcp.tool()
async def force_summarize(conversation_id: str) -> str:
    """Summarize the current segment of a conversation right away.

    Args:
        conversation_id: The conversation to compact
    """
    try:
        state, summarized = await get_chat_service().force_summarize(conversation_id)
    except WikiRagError as e:
        return f"Error: {e}"

    if not summarized:
        return "Nothing to summarize."
    return f"Summarized. Latest summary:\n\n{state.summaries()[-1]}"


@mcp.tool()
def list_conversations(limit: int = 20, offset: int = 0) -> str:
    """List stored conversations, most recently updated first.

    Args:
        limit: Maximum number of conversations (default 20)
        offset: Skip this many conversations, for paging
    """
    if not SQLITE_PATH.exists():
        return "No conversations yet."

    rows = get_conversation_store().list_conversations(limit=limit, offset=offset)
    if not rows:
        return "No conversations yet."

    lines = [f"Found {len(rows)} conversations:\n"]
    for c in rows:
        lines.append(
            f"- `{c['id']}` (updated {format_ts(c['updated_at'])}): "
            f"{c['message_count']} messages, {c['summaries']} summaries"
        )
    return "\n".join(lines)


@mcp.tool()
def delete_conversation(conversation_id: str) -> str:
    """Delete a conversation and its full message history.

    Args:
        conversation_id: The conversation to delete
    """
    if not get_conversation_store().delete_conversation(conversation_id):
        return f"Conversation not found: {conversation_id}"
    return f"Deleted conversation `{conversation_id}`."


@mcp.tool()
def get_stats() -> str:
    """Get statistics about the wiki index and stored conversations."""
    try:
        index = get_index_store().load()
    except WikiRagError as e:
        return f"Error: {e}"

    lines = ["# wikirag statistics", ""]
    if index is None:
        lines.append("- **Wiki index**: not built")
    else:
        lines.append(f"- **Articles**: {len(index.articles):,}")
        lines.append(f"- **Chunks**: {len(index.chunks):,}")

    if SQLITE_PATH.exists():
        s = get_conversation_store().get_stats()
        lines.append(f"- **Conversations**: {s['total_conversations']:,}")
        lines.append(f"- **Messages**: {s['total_messages']:,}")
        lines.append(f"- **Summaries**: {s['total_summaries']:,}")

    lines.append(f"\n*Data stored in: {DATA_DIR}*")
    return "\n".join(lines)
