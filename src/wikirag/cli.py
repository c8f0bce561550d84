"""CLI interface for wikirag."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import sys

import click

from . import __version__
from .config import DATA_DIR, DEFAULT_TOP_K, INDEX_PATH, SQLITE_PATH, WIKI_DIR
from .errors import WikiRagError


def _run(coro):
    """Run a coroutine, turning wikirag errors into CLI errors."""
    try:
        return asyncio.run(coro)
    except WikiRagError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version=__version__, prog_name="wikirag")
@click.option("-v", "--verbose", count=True, help="-v for progress, -vv for debug output")
def cli(verbose: int):
    """wikirag — Wikipedia-grounded answers and compacted chat memory.

    Fetch and index Wikipedia articles, then ask questions that are answered
    both with and without the retrieved context.
    """
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


@cli.command()
@click.argument("topic")
def fetch(topic: str):
    """Download a Wikipedia article into the local cache.

    Example:
        wikirag fetch "Quantum computing"
    """
    from .services import get_fetcher

    meta = _run(get_fetcher().fetch_and_save(topic))
    click.echo(f"Saved '{meta.title}' → {WIKI_DIR / meta.file_path}")


@cli.command("index")
@click.argument("topics", nargs=-1)
def index_cmd(topics: tuple[str, ...]):
    """Build the search index for TOPICS.

    Without TOPICS, every cached article is re-indexed. The new index
    replaces the old one.
    """
    from .services import get_indexer

    indexer = get_indexer()
    if topics:
        index = _run(indexer.build_index_for_topics(list(topics)))
    else:
        if not indexer.fetcher.list_local_articles():
            raise click.ClickException(
                "No cached articles. Fetch some first:\n  wikirag index \"Quantum computing\""
            )
        index = _run(indexer.build_index_from_local())

    missing = sum(1 for c in index.chunks if not c.embedding)
    click.echo()
    click.echo(click.style("Index built!", fg="green", bold=True))
    click.echo(f"  Articles: {len(index.articles)}")
    click.echo(f"  Chunks:   {len(index.chunks)}")
    if missing:
        click.echo(f"  Without embedding: {missing} (not searchable)")
    click.echo(f"  Location: {INDEX_PATH}")


@cli.command()
@click.argument("query")
@click.option("--top-k", default=DEFAULT_TOP_K, show_default=True, help="Number of chunks")
def search(query: str, top_k: int):
    """Semantic search over the indexed articles."""
    from .errors import IndexNotReadyError
    from .services import get_index_store, get_searcher

    try:
        index = get_index_store().load()
    except WikiRagError as e:
        raise click.ClickException(str(e)) from e
    if index is None:
        raise click.ClickException(str(IndexNotReadyError()))

    results = _run(get_searcher().search(index, query, top_k))
    if not results:
        click.echo(f"No chunks found matching '{query}'.")
        return

    for i, r in enumerate(results, 1):
        click.echo(f"{i}. {click.style(r.title, bold=True)} ({r.chunk_id}) score={r.score:.3f}")
        click.echo(f"   {r.snippet.replace(chr(10), ' ')[:150]}")


@cli.command()
@click.argument("question")
@click.option("--top-k", default=DEFAULT_TOP_K, show_default=True, help="Number of chunks")
@click.option("--min-similarity", type=float, help="Also answer from chunks scoring at least this")
@click.option("--cite", is_flag=True, help="Answer with numbered citations (needs --min-similarity and --min-best-score)")
@click.option("--min-best-score", type=float, help="With --cite: best score needed to use any source")
@click.option("--auto-fetch", is_flag=True, help="With --cite: fetch suggested articles when sources are weak")
@click.option("--no-fallback", is_flag=True, help="With --cite: fail instead of answering without sources")
@click.option("--json", "as_json", is_flag=True, help="Print the raw result as JSON")
def ask(
    question: str,
    top_k: int,
    min_similarity: float | None,
    cite: bool,
    min_best_score: float | None,
    auto_fetch: bool,
    no_fallback: bool,
    as_json: bool,
):
    """Answer QUESTION with and without retrieved context, side by side.

    With --min-similarity a third answer uses only chunks above that score.
    With --cite the answer carries [n] citations to numbered sources.
    """
    from .services import get_rag_service

    rag = get_rag_service()

    if cite:
        if min_similarity is None or min_best_score is None:
            raise click.UsageError("--cite needs --min-similarity and --min-best-score")
        result = _run(
            rag.answer_with_citations(
                question,
                min_similarity=min_similarity,
                min_best_score=min_best_score,
                top_k=top_k,
                allow_model_fallback=not no_fallback,
                auto_fetch=auto_fetch,
            )
        )
        if as_json:
            click.echo(result.model_dump_json(by_alias=True, indent=2))
            return
        click.echo(result.answer_with_citations)
        if result.used_model_fallback:
            click.echo(click.style("\n(no usable sources, answered without context)", dim=True))
        for s in result.labeled_sources:
            click.echo(f"  [{s.label}] {s.title} ({s.chunk_id}) score={s.score:.3f}")
        return

    if min_similarity is not None:
        result = _run(rag.answer_with_filtering(question, min_similarity=min_similarity, top_k=top_k))
        if as_json:
            click.echo(result.model_dump_json(by_alias=True, indent=2))
            return
        _echo_section("Without context", result.baseline_answer)
        _echo_section("With all retrieved chunks", result.rag_raw_answer)
        _echo_section(f"With chunks scoring >= {min_similarity}", result.rag_filtered_answer)
        _echo_sources(result.used_chunks_filtered)
        return

    result = _run(rag.answer_with_comparison(question, top_k=top_k))

    if as_json:
        click.echo(result.model_dump_json(by_alias=True, indent=2))
        return

    _echo_section("Without context", result.baseline_answer)
    _echo_section("With wiki context", result.rag_answer)
    _echo_sources(result.used_chunks)


def _echo_section(title: str, body: str):
    click.echo(click.style(title, bold=True))
    click.echo(body)
    click.echo()


def _echo_sources(chunks):
    click.echo(click.style("Sources", bold=True))
    if not chunks:
        click.echo("  (none)")
    for c in chunks:
        click.echo(f"  [{c.score:.3f}] {c.title} ({c.chunk_id})")


@cli.command()
@click.argument("conversation_id")
@click.argument("message")
def chat(conversation_id: str, message: str):
    """Send MESSAGE in conversation CONVERSATION_ID and print the reply."""
    from .services import get_chat_service

    reply = _run(get_chat_service().send(conversation_id, message))

    click.echo(reply.message.content)
    stats = reply.compression
    click.echo(
        click.style(
            f"\n[tokens ≈ {stats.tokens_compressed_approx} sent / {stats.tokens_raw_approx} raw, "
            f"{stats.savings_percent}% saved"
            + (", history summarized" if reply.summarized else "")
            + "]",
            dim=True,
        ),
        err=True,
    )


@cli.command()
@click.argument("conversation_id")
def compact(conversation_id: str):
    """Summarize the open segment of CONVERSATION_ID now."""
    from .services import get_chat_service

    state, summarized = _run(get_chat_service().force_summarize(conversation_id))
    if summarized:
        click.echo(f"Summarized. {len(state.summaries())} summaries in conversation.")
    else:
        click.echo("Nothing to summarize.")


@cli.command()
@click.argument("conversation_id")
def context(conversation_id: str):
    """Print the context the model would see for CONVERSATION_ID."""
    from .services import get_chat_service

    try:
        click.echo(get_chat_service().build_context(conversation_id))
    except WikiRagError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@click.option("--limit", default=20, show_default=True, help="Number of conversations")
@click.option("--offset", default=0, help="Skip this many conversations")
def conversations(limit: int, offset: int):
    """List stored conversations, most recently updated first."""
    if not SQLITE_PATH.exists():
        click.echo("No conversations yet.")
        return

    from .services import get_conversation_store

    rows = get_conversation_store().list_conversations(limit=limit, offset=offset)
    if not rows:
        click.echo("No conversations yet.")
        return

    from .storage import format_ts

    for c in rows:
        click.echo(
            f"{c['id']}  {format_ts(c['updated_at'])}  "
            f"{c['message_count']} messages, {c['summaries']} summaries"
        )


@cli.command()
@click.argument("conversation_id")
def forget(conversation_id: str):
    """Delete conversation CONVERSATION_ID and its history."""
    from .services import get_conversation_store

    if not get_conversation_store().delete_conversation(conversation_id):
        raise click.ClickException(f"Conversation not found: {conversation_id}")
    click.echo(f"Deleted conversation {conversation_id}")


@cli.command()
def stats():
    """Show statistics about the index and stored conversations."""
    from .services import get_conversation_store, get_index_store

    click.echo()
    click.echo(click.style("Wiki index", bold=True))
    try:
        index = get_index_store().load()
    except WikiRagError as e:
        raise click.ClickException(str(e)) from e
    if index is None:
        click.echo("  Not built yet. Run: wikirag index \"<topic>\"")
    else:
        click.echo(f"  Articles:  {len(index.articles):,}")
        click.echo(f"  Chunks:    {len(index.chunks):,}")

    click.echo(click.style("Conversations", bold=True))
    if not SQLITE_PATH.exists():
        click.echo("  None yet.")
    else:
        s = get_conversation_store().get_stats()
        click.echo(f"  Conversations:  {s['total_conversations']:,}")
        click.echo(f"  Messages:       {s['total_messages']:,}")
        click.echo(f"  Summaries:      {s['total_summaries']:,}")
        if s["date_range_start"]:
            click.echo(f"  Date range:     {s['date_range_start']} → {s['date_range_end']}")

    click.echo(f"  Location:       {DATA_DIR}")
    click.echo()


@cli.command()
def serve():
    """Start the MCP server (stdio transport)."""
    from .services import get_index_store

    if not get_index_store().exists():
        click.echo("Warning: No wiki index yet. Build one first:", err=True)
        click.echo('  wikirag index "Quantum computing"', err=True)

    from .server import mcp

    mcp.run(transport="stdio")


@cli.command()
def config():
    """Print the MCP configuration snippet for desktop clients."""
    wikirag_path = shutil.which("wikirag")
    command = {"command": wikirag_path, "args": ["serve"]} if wikirag_path else {
        "command": "uvx",
        "args": ["wikirag", "serve"],
    }
    click.echo(json.dumps({"mcpServers": {"wikirag": command}}, indent=2))


@cli.command()
@click.confirmation_option(prompt="This will delete all articles, the index and conversations. Are you sure?")
def reset():
    """Delete all local data and start fresh."""
    if DATA_DIR.exists():
        shutil.rmtree(DATA_DIR)
        click.echo(f"Deleted {DATA_DIR}")
    else:
        click.echo("No data to delete.")
